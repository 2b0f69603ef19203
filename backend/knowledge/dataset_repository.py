"""
datasets 表 CRUD (asyncpg)
"""
from __future__ import annotations

import json
from typing import Any

import asyncpg

from .database import acquire, affected_rows, parse_json


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    d = dict(row)
    d["retrieval_config"] = parse_json(d.get("retrieval_config")) or {}
    return d


_COLUMNS = """
    id, name, embedding_model_id, retrieval_mode, retrieval_config,
    document_count, chunk_count, storage_size,
    created_at, updated_at
"""


class DatasetRepository:

    # ------------------------------------------------------------------
    # 按 ID 查询
    # ------------------------------------------------------------------
    async def get_by_id(
        self,
        dataset_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> dict[str, Any]:
        async with acquire(conn) as c:
            row = await c.fetchrow(
                f"SELECT {_COLUMNS} FROM datasets WHERE id = $1", dataset_id,
            )
            return _row_to_dict(row)

    # ------------------------------------------------------------------
    # 更换 Embedding 模型
    # ------------------------------------------------------------------
    async def update_embedding_model(
        self,
        dataset_id: str,
        model_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> bool:
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets
                SET embedding_model_id = $2, updated_at = CURRENT_TIMESTAMP
                WHERE id = $1
                """,
                dataset_id, model_id,
            )
            return affected_rows(result) == 1

    # ------------------------------------------------------------------
    # 检索配置
    # ------------------------------------------------------------------
    async def update_retrieval(
        self,
        dataset_id: str,
        retrieval_mode: str,
        retrieval_config: dict[str, Any],
        conn: asyncpg.Connection | None = None,
    ) -> dict[str, Any]:
        async with acquire(conn) as c:
            row = await c.fetchrow(
                f"""
                UPDATE datasets
                SET retrieval_mode = $2, retrieval_config = $3::jsonb,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                dataset_id, retrieval_mode, json.dumps(retrieval_config),
            )
            return _row_to_dict(row)

    # ------------------------------------------------------------------
    # 聚合计数: 从文档 / 切片行重新计算
    # ------------------------------------------------------------------
    async def recount(
        self,
        dataset_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> dict[str, Any]:
        async with acquire(conn) as c:
            row = await c.fetchrow(
                """
                UPDATE datasets
                SET document_count = (
                        SELECT COUNT(*) FROM datasets_documents WHERE dataset_id = $1
                    ),
                    chunk_count = (
                        SELECT COUNT(*) FROM datasets_segments WHERE dataset_id = $1
                    ),
                    storage_size = (
                        SELECT COALESCE(SUM(file_size), 0) FROM datasets_documents WHERE dataset_id = $1
                    ),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $1
                RETURNING document_count, chunk_count, storage_size
                """,
                dataset_id,
            )
            return dict(row) if row else {}


dataset_repository = DatasetRepository()
