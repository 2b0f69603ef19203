"""
在未安装 psql 时，用 Python + asyncpg 执行知识库建表脚本。
用法（在 backend 目录下）:
  python -m db.run_schema
"""
import asyncio
import os
import sys

# 确保 backend 在 path 上并加载 .env
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from dotenv import load_dotenv

load_dotenv()

import asyncpg

from knowledge.config import get_dsn

SCHEMA_FILES = ["schema_knowledge.sql"]


async def run_file(conn: asyncpg.Connection, filepath: str) -> None:
    with open(filepath, "r", encoding="utf-8") as f:
        sql = f.read()
    # 脚本含 DO $$ ... $$ 块，不能按分号拆分；无参数时 asyncpg 支持一次执行多条语句
    try:
        await conn.execute(sql)
    except Exception as e:
        raise RuntimeError(f"执行 {os.path.basename(filepath)} 失败: {e}") from e


async def main() -> None:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    database = os.getenv("POSTGRES_DB", "aiweb")
    user = os.getenv("POSTGRES_USER", "aiweb")
    print(f"连接: {host}:{port}/{database} (用户: {user})")
    schema_dir = os.path.dirname(os.path.abspath(__file__))
    try:
        conn = await asyncpg.connect(get_dsn())
    except Exception as e:
        print(f"连接数据库失败: {e}")
        print("请确认: 1) Postgres 已启动且安装 pgvector  2) .env 中 POSTGRES_* 正确")
        sys.exit(1)
    try:
        for name in SCHEMA_FILES:
            path = os.path.join(schema_dir, name)
            if not os.path.isfile(path):
                print(f"跳过（文件不存在）: {path}")
                continue
            print(f"执行: {name}")
            await run_file(conn, path)
        rows = await conn.fetch(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public' ORDER BY tablename"
        )
        tables = [r["tablename"] for r in rows]
        print(f"建表完成。当前数据库 [{database}] public 下表: {tables}")
        has_zh = await conn.fetchval("SELECT EXISTS (SELECT 1 FROM pg_ts_config WHERE cfgname = 'chinese_zh')")
        if not has_zh:
            print("未检测到 zhparser (chinese_zh)，全文检索请设置 KB_FTS_CONFIG=simple")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main())
