#!/usr/bin/env python
"""
知识库向量化 Worker

用法:
  cd backend && python -m scripts.vectorization_worker

需先启动 Redis 与 PostgreSQL (pgvector)。
"""
import logging
import os
import sys

# 确保 backend 根目录在 path 中
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from redis import Redis
from rq import Queue, Worker

from knowledge.config import get_queue_name, get_redis_url

# 配置知识库日志，确保 [KB] 向量化过程输出到终端
_kb_log = logging.getLogger("knowledge")
_kb_log.setLevel(logging.INFO)
if not _kb_log.handlers:
    _h = logging.StreamHandler(sys.stdout)
    _h.setFormatter(logging.Formatter("%(asctime)s %(name)s %(message)s"))
    _kb_log.addHandler(_h)


def main():
    conn = Redis.from_url(get_redis_url())
    queue_name = get_queue_name()
    queue = Queue(queue_name, connection=conn)

    print(f"[KB Worker] 监听队列: {queue_name} (Ctrl+C 退出)")
    worker = Worker([queue], connection=conn)
    # Retry 的退避间隔依赖 RQ scheduler
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
