"""
PostgreSQL 连接封装 (asyncpg + pgvector)

每次调用独立建连、用完即关；需要原子写入时通过 transaction() 取得同一连接，
并把 conn 传给各 repository 方法。
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg
from pgvector.asyncpg import register_vector

from .config import get_dsn


async def connect() -> asyncpg.Connection:
    conn = await asyncpg.connect(get_dsn())
    await register_vector(conn)
    return conn


@asynccontextmanager
async def acquire(conn: asyncpg.Connection | None = None) -> AsyncIterator[asyncpg.Connection]:
    """复用调用方传入的连接（事务内），否则新建并在结束时关闭"""
    if conn is not None:
        yield conn
        return
    own = await connect()
    try:
        yield own
    finally:
        await own.close()


class Database:

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        conn = await connect()
        try:
            async with conn.transaction():
                yield conn
        finally:
            await conn.close()


def parse_json(val: Any) -> Any:
    """解析 JSONB 字段（asyncpg 默认返回 str）"""
    if val is None or isinstance(val, (dict, list)):
        return val
    if isinstance(val, str):
        try:
            return json.loads(val)
        except json.JSONDecodeError:
            return None
    return None


def affected_rows(result: str) -> int:
    """'UPDATE 3' → 3"""
    parts = (result or "").split()
    try:
        return int(parts[-1]) if parts else 0
    except ValueError:
        return 0


database = Database()
