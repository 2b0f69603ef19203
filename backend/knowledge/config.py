"""
知识库配置

环境变量按需读取（入口处由 python-dotenv 加载 .env），常量集中在此处。
"""
from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# 向量化
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE = 10
MAX_BATCH_SIZE = 50
MIN_BATCH_SIZE = 1

# 队列任务进度: 初始化与收尾各预留 10%
JOB_PROGRESS_START = 10
JOB_PROGRESS_SPAN = 80

# ---------------------------------------------------------------------------
# 检索
# ---------------------------------------------------------------------------

DEFAULT_TOP_K = 3
DEFAULT_SCORE_THRESHOLD = 0.5
DEFAULT_SEMANTIC_WEIGHT = 0.7
DEFAULT_KEYWORD_WEIGHT = 0.3
WEIGHT_SUM_TOLERANCE = 0.01
# 全文检索 ts_rank 分数量级很小，乘以因子后与余弦相似度可比
FULLTEXT_SCORE_MULTIPLIER = 100
# 余弦相似度已在 0~1
VECTOR_SCORE_MULTIPLIER = 1
HYBRID_CANDIDATE_MULTIPLIER = 2
HYBRID_MIN_CANDIDATES = 10
# 单路最大分数下限，避免除零
MIN_NORMALIZATION_SCORE = 0.01
MAX_QUERY_TOKENS = 3


def get_embedding_batch_size() -> int:
    """
    返回向量化单次请求的期望批大小，最终仍受模型 max_chunks 限制。

    可通过 KB_EMBEDDING_BATCH_SIZE 覆盖。
    """
    raw = os.getenv("KB_EMBEDDING_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)).strip()
    try:
        val = int(raw)
    except ValueError:
        val = DEFAULT_BATCH_SIZE
    return min(MAX_BATCH_SIZE, max(MIN_BATCH_SIZE, val))


def get_embedding_timeout() -> float:
    return float(os.getenv("KB_EMBEDDING_TIMEOUT", "30"))


def get_rerank_timeout() -> float:
    return float(os.getenv("KB_RERANK_TIMEOUT", "30"))


def get_fts_config() -> str:
    """PostgreSQL 全文检索配置名，默认 zhparser 的 chinese_zh；未安装 zhparser 时可设为 simple"""
    return os.getenv("KB_FTS_CONFIG", "chinese_zh").strip() or "chinese_zh"


def get_queue_name() -> str:
    return os.getenv("KB_QUEUE_NAME", "vectorization")


def get_dsn() -> str:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "aiweb")
    password = os.getenv("POSTGRES_PASSWORD", "aiweb")
    database = os.getenv("POSTGRES_DB", "aiweb")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def get_redis_url() -> str:
    host = os.getenv("REDIS_HOST", "localhost")
    port = os.getenv("REDIS_PORT", "6379")
    db = os.getenv("REDIS_DB", "0")
    password = os.getenv("REDIS_PASSWORD") or None
    if password:
        return f"redis://:{password}@{host}:{port}/{db}"
    return f"redis://{host}:{port}/{db}"
