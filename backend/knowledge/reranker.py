"""
Rerank 精排

用知识库配置的 Rerank 模型对候选切片重新打分，按及格线过滤后截断到 top_k。
Rerank 失败 (模型不可用 / 接口异常) 时降级: 按原始分数过滤、排序、截断，不写 relevance_score。
"""
from __future__ import annotations

import logging
from typing import Sequence

from .model_adapter import ModelAdapter, model_adapter
from .models import RetrievalChunk

logger = logging.getLogger("knowledge.reranker")


def fallback_rerank(
    chunks: Sequence[RetrievalChunk],
    top_k: int,
    score_threshold: float | None = None,
    score_threshold_enabled: bool = False,
) -> list[RetrievalChunk]:
    """不精排: 及格线过滤 → 原始分数降序 → 截断"""
    threshold = score_threshold or 0.0
    kept = [c for c in chunks if not score_threshold_enabled or c.score >= threshold]
    kept.sort(key=lambda c: c.score, reverse=True)
    return kept[:top_k]


class RerankHelper:

    def __init__(self, adapter: ModelAdapter | None = None):
        self.adapter = adapter or model_adapter

    async def rerank(
        self,
        query: str,
        chunks: Sequence[RetrievalChunk],
        model_id: str,
        top_k: int,
        score_threshold: float | None = None,
        score_threshold_enabled: bool = False,
    ) -> list[RetrievalChunk]:
        if not chunks:
            return []
        try:
            model_config = await self.adapter.get_rerank_config(model_id)
            client = self.adapter.create_reranker(model_config)
            scored = await client.rerank(query, [c.content for c in chunks], top_n=top_k)
        except Exception as e:
            logger.warning(f"[KB] Rerank 失败 (model={model_id})，降级为原始排序: {e}")
            return fallback_rerank(chunks, top_k, score_threshold, score_threshold_enabled)

        threshold = score_threshold or 0.0
        output: list[RetrievalChunk] = []
        for idx, relevance in sorted(scored, key=lambda x: x[1], reverse=True):
            if score_threshold_enabled and relevance < threshold:
                continue
            output.append(chunks[idx].model_copy(update={"relevance_score": relevance}))
        return output[:top_k]


rerank_helper = RerankHelper()
