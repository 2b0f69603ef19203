"""
datasets_documents 表 CRUD (asyncpg)

状态 / 进度字段只由 state 模块写入。
"""
from __future__ import annotations

from typing import Any, Sequence

import asyncpg

from .database import acquire, affected_rows


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    return dict(row)


_COLUMNS = """
    id, dataset_id, file_name, file_size, embedding_model_id,
    status, progress, chunk_count, character_count, enabled, error,
    created_at, updated_at
"""


class DocumentRepository:

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def get_by_id(
        self,
        document_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> dict[str, Any]:
        async with acquire(conn) as c:
            row = await c.fetchrow(
                f"SELECT {_COLUMNS} FROM datasets_documents WHERE id = $1", document_id,
            )
            return _row_to_dict(row)

    # ------------------------------------------------------------------
    # 状态流转
    # ------------------------------------------------------------------
    async def mark_processing(
        self,
        document_ids: Sequence[str],
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """status=processing, progress=0, 清空 error"""
        if not document_ids:
            return 0
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_documents
                SET status = 'processing', progress = 0, error = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ANY($1::varchar[])
                """,
                list(document_ids),
            )
            return affected_rows(result)

    async def update_status(
        self,
        document_id: str,
        status: str,
        progress: int,
        error: str | None = None,
        conn: asyncpg.Connection | None = None,
    ) -> bool:
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_documents
                SET status = $2, progress = $3, error = $4,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $1
                """,
                document_id, status, progress, error,
            )
            return affected_rows(result) == 1

    async def mark_failed(
        self,
        document_ids: Sequence[str],
        error: str,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """status=failed 并记录错误，progress 保持不变"""
        if not document_ids:
            return 0
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_documents
                SET status = 'failed', error = $2, updated_at = CURRENT_TIMESTAMP
                WHERE id = ANY($1::varchar[])
                """,
                list(document_ids), error,
            )
            return affected_rows(result)

    async def update_progress(
        self,
        document_ids: Sequence[str],
        progress: int,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        if not document_ids:
            return 0
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_documents
                SET progress = $2, updated_at = CURRENT_TIMESTAMP
                WHERE id = ANY($1::varchar[])
                """,
                list(document_ids), progress,
            )
            return affected_rows(result)

    # ------------------------------------------------------------------
    # 更换模型: 全部文档回到 processing
    # ------------------------------------------------------------------
    async def reset_for_model(
        self,
        dataset_id: str,
        model_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_documents
                SET status = 'processing', progress = 0, error = NULL,
                    embedding_model_id = $2, updated_at = CURRENT_TIMESTAMP
                WHERE dataset_id = $1
                """,
                dataset_id, model_id,
            )
            return affected_rows(result)

    # ------------------------------------------------------------------
    # 计数: 从切片行重新计算
    # ------------------------------------------------------------------
    async def recount_by_dataset(
        self,
        dataset_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_documents d
                SET chunk_count = agg.cnt, character_count = agg.chars,
                    updated_at = CURRENT_TIMESTAMP
                FROM (
                    SELECT d2.id,
                           COUNT(s.id) AS cnt,
                           COALESCE(SUM(s.content_length), 0) AS chars
                    FROM datasets_documents d2
                    LEFT JOIN datasets_segments s ON s.document_id = d2.id
                    WHERE d2.dataset_id = $1
                    GROUP BY d2.id
                ) agg
                WHERE d.id = agg.id
                """,
                dataset_id,
            )
            return affected_rows(result)


document_repository = DocumentRepository()
