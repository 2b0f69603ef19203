"""
ai_models / ai_providers 只读查询 (asyncpg)
"""
from __future__ import annotations

from typing import Any

import asyncpg

from .database import acquire, parse_json


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    d = dict(row)
    d["model_config"] = parse_json(d.get("model_config")) or []
    return d


class ModelRepository:

    # ------------------------------------------------------------------
    # 模型 + 供应商凭证
    # ------------------------------------------------------------------
    async def get_with_provider(
        self,
        model_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> dict[str, Any]:
        """
        返回模型及其供应商信息；不存在返回 {}。
        启用状态由调用方判断 (is_active / provider_active)。
        """
        async with acquire(conn) as c:
            row = await c.fetchrow(
                """
                SELECT m.id, m.model, m.model_type, m.is_active, m.model_config,
                       p.provider, p.api_key, p.base_url,
                       p.is_active AS provider_active
                FROM ai_models m
                JOIN ai_providers p ON p.id = m.provider_id
                WHERE m.id = $1
                """,
                model_id,
            )
            return _row_to_dict(row)


model_repository = ModelRepository()
