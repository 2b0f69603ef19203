"""
datasets_segments 表 CRUD (asyncpg + pgvector)

提供待处理切片加载、向量结果写入、状态统计，以及向量 / 全文检索查询。
"""
from __future__ import annotations

import re
from typing import Any, Sequence

import asyncpg

from .config import get_fts_config
from .database import acquire, affected_rows, parse_json

_FTS_CONFIG_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    d = dict(row)
    if "metadata" in d:
        d["metadata"] = parse_json(d["metadata"])
    return d


def _fts_config() -> str:
    """全文检索配置名直接拼入 SQL (以便命中表达式索引)，必须是合法标识符"""
    cfg = get_fts_config()
    if not _FTS_CONFIG_RE.match(cfg):
        raise ValueError(f"非法的全文检索配置: {cfg}")
    return cfg


_COLUMNS = """
    id, document_id, dataset_id, content, chunk_index, content_length,
    status, error, enabled, metadata
"""

# 检索结果列: 切片 + 来源文件名
_SEARCH_COLUMNS = """
    s.id, s.document_id, s.content, s.metadata,
    s.chunk_index, s.content_length, d.file_name
"""


class SegmentRepository:

    # ------------------------------------------------------------------
    # 待处理切片 (按 chunk_index 排序)
    # ------------------------------------------------------------------
    async def list_pending_by_document(
        self,
        document_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> list[dict[str, Any]]:
        async with acquire(conn) as c:
            rows = await c.fetch(
                f"""
                SELECT {_COLUMNS} FROM datasets_segments
                WHERE document_id = $1 AND status = 'pending'
                ORDER BY chunk_index
                """,
                document_id,
            )
            return [_row_to_dict(r) for r in rows]

    async def list_pending_by_dataset(
        self,
        dataset_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> list[dict[str, Any]]:
        async with acquire(conn) as c:
            rows = await c.fetch(
                f"""
                SELECT {_COLUMNS} FROM datasets_segments
                WHERE dataset_id = $1 AND status = 'pending'
                ORDER BY document_id, chunk_index
                """,
                dataset_id,
            )
            return [_row_to_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # 状态写入
    # ------------------------------------------------------------------
    async def mark_processing(
        self,
        segment_ids: Sequence[str],
        conn: asyncpg.Connection | None = None,
    ) -> list[str]:
        """
        pending → processing，返回本次实际认领的切片 ID。

        已被其他任务认领或已被重置 / 写入结果的切片不会出现在返回值中。
        """
        if not segment_ids:
            return []
        async with acquire(conn) as c:
            rows = await c.fetch(
                """
                UPDATE datasets_segments
                SET status = 'processing', updated_at = CURRENT_TIMESTAMP
                WHERE id = ANY($1::varchar[]) AND status = 'pending'
                RETURNING id
                """,
                list(segment_ids),
            )
            return [r["id"] for r in rows]

    # 结果写入只落在仍为 processing 的切片上: 运行期间被更换模型重置的切片保持 pending
    async def save_embeddings(
        self,
        rows: Sequence[tuple[str, list[float], int, str | None]],
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """rows: [(segment_id, embedding, dimension, embedding_model_id), ...]"""
        if not rows:
            return 0
        async with acquire(conn) as c:
            await c.executemany(
                """
                UPDATE datasets_segments
                SET embedding = $2, vector_dimension = $3,
                    embedding_model_id = COALESCE($4, embedding_model_id),
                    status = 'completed', error = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $1 AND status = 'processing'
                """,
                list(rows),
            )
            return len(rows)

    async def save_failures(
        self,
        rows: Sequence[tuple[str, str]],
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """rows: [(segment_id, error), ...]"""
        if not rows:
            return 0
        async with acquire(conn) as c:
            await c.executemany(
                """
                UPDATE datasets_segments
                SET status = 'failed', error = $2, embedding = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $1 AND status = 'processing'
                """,
                list(rows),
            )
            return len(rows)

    async def mark_failed(
        self,
        segment_ids: Sequence[str],
        error: str,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """仅处理仍为 processing 的切片 (已写入结果的不覆盖)"""
        if not segment_ids:
            return 0
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_segments
                SET status = 'failed', error = $2, updated_at = CURRENT_TIMESTAMP
                WHERE id = ANY($1::varchar[]) AND status = 'processing'
                """,
                list(segment_ids), error,
            )
            return affected_rows(result)

    # ------------------------------------------------------------------
    # 统计
    # ------------------------------------------------------------------
    async def count_by_status(
        self,
        document_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> dict[str, int]:
        async with acquire(conn) as c:
            rows = await c.fetch(
                """
                SELECT status, COUNT(*) AS cnt FROM datasets_segments
                WHERE document_id = $1
                GROUP BY status
                """,
                document_id,
            )
            return {r["status"]: r["cnt"] for r in rows}

    async def document_ids_for(
        self,
        segment_ids: Sequence[str],
        conn: asyncpg.Connection | None = None,
    ) -> list[str]:
        if not segment_ids:
            return []
        async with acquire(conn) as c:
            rows = await c.fetch(
                """
                SELECT DISTINCT document_id FROM datasets_segments
                WHERE id = ANY($1::varchar[])
                """,
                list(segment_ids),
            )
            return [r["document_id"] for r in rows]

    async def count_by_dataset(
        self,
        dataset_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        async with acquire(conn) as c:
            return await c.fetchval(
                "SELECT COUNT(*) FROM datasets_segments WHERE dataset_id = $1", dataset_id,
            )

    # ------------------------------------------------------------------
    # 重置
    # ------------------------------------------------------------------
    async def reset_failed(
        self,
        document_id: str | None = None,
        dataset_id: str | None = None,
        segment_ids: Sequence[str] | None = None,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """failed → pending 并清空 error，返回重置条数"""
        if segment_ids is not None:
            where, key = "id = ANY($1::varchar[])", list(segment_ids)
        elif document_id:
            where, key = "document_id = $1", document_id
        elif dataset_id:
            where, key = "dataset_id = $1", dataset_id
        else:
            raise ValueError("segment_ids、document_id、dataset_id 必须提供其一")
        async with acquire(conn) as c:
            result = await c.execute(
                f"""
                UPDATE datasets_segments
                SET status = 'pending', error = NULL, updated_at = CURRENT_TIMESTAMP
                WHERE {where} AND status = 'failed'
                """,
                key,
            )
            return affected_rows(result)

    async def reset_for_model(
        self,
        dataset_id: str,
        model_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        """更换模型: 清空向量，全部回到 pending"""
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_segments
                SET status = 'pending', error = NULL, embedding = NULL,
                    vector_dimension = NULL, embedding_model_id = $2,
                    updated_at = CURRENT_TIMESTAMP
                WHERE dataset_id = $1
                """,
                dataset_id, model_id,
            )
            return affected_rows(result)

    async def set_enabled(
        self,
        segment_ids: Sequence[str],
        enabled: bool,
        conn: asyncpg.Connection | None = None,
    ) -> int:
        if not segment_ids:
            return 0
        async with acquire(conn) as c:
            result = await c.execute(
                """
                UPDATE datasets_segments
                SET enabled = $2, updated_at = CURRENT_TIMESTAMP
                WHERE id = ANY($1::varchar[])
                """,
                list(segment_ids), enabled,
            )
            return affected_rows(result)

    # ------------------------------------------------------------------
    # 检索
    # ------------------------------------------------------------------
    async def vector_search(
        self,
        dataset_id: str,
        query_vector: list[float],
        limit: int,
        conn: asyncpg.Connection | None = None,
    ) -> list[dict[str, Any]]:
        """
        余弦相似度 Top-N: score = 1 - (embedding <=> query)

        仅检索 completed + enabled 且维度与查询向量一致的切片。
        """
        async with acquire(conn) as c:
            rows = await c.fetch(
                f"""
                SELECT {_SEARCH_COLUMNS},
                       1 - (s.embedding <=> $2) AS score
                FROM datasets_segments s
                JOIN datasets_documents d ON d.id = s.document_id
                WHERE s.dataset_id = $1
                  AND s.status = 'completed'
                  AND s.enabled = TRUE
                  AND d.enabled = TRUE
                  AND s.embedding IS NOT NULL
                  AND s.vector_dimension = $4
                ORDER BY s.embedding <=> $2
                LIMIT $3
                """,
                dataset_id, query_vector, limit, len(query_vector),
            )
            return [_row_to_dict(r) for r in rows]

    async def fulltext_search(
        self,
        dataset_id: str,
        ts_query: str,
        limit: int,
        conn: asyncpg.Connection | None = None,
    ) -> list[dict[str, Any]]:
        """ts_rank 排序的全文检索，ts_query 形如 'a & b & c'"""
        cfg = _fts_config()
        async with acquire(conn) as c:
            rows = await c.fetch(
                f"""
                SELECT {_SEARCH_COLUMNS},
                       ts_rank(to_tsvector('{cfg}', s.content), to_tsquery('{cfg}', $2)) AS score
                FROM datasets_segments s
                JOIN datasets_documents d ON d.id = s.document_id
                WHERE s.dataset_id = $1
                  AND s.status = 'completed'
                  AND s.enabled = TRUE
                  AND d.enabled = TRUE
                  AND to_tsvector('{cfg}', s.content) @@ to_tsquery('{cfg}', $2)
                ORDER BY score DESC
                LIMIT $3
                """,
                dataset_id, ts_query, limit,
            )
            return [_row_to_dict(r) for r in rows]


segment_repository = SegmentRepository()
