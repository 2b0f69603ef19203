"""
知识库检索

- vector: 查询向量化 → pgvector 余弦相似度 Top-K → 及格线过滤 → (可选) Rerank
- full_text: jieba 分词 → PostgreSQL ts_rank，分数 × 100 与余弦相似度对齐量纲
- hybrid: 两路并发召回 max(top_k × 2, 10) 个候选，再按策略融合
    - weighted_score: 各路按自身最大分归一化，权重归一化后加权求和 (并集，缺失一路记 0)
    - rerank: 按切片 ID 合并取最高分，交给 Rerank 模型精排；不可用时按原始分数排序截断

检索模式 / 融合策略通过字典分发，新增策略只需注册处理函数。
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Sequence

from .config import (
    DEFAULT_KEYWORD_WEIGHT,
    DEFAULT_SCORE_THRESHOLD,
    DEFAULT_SEMANTIC_WEIGHT,
    DEFAULT_TOP_K,
    FULLTEXT_SCORE_MULTIPLIER,
    HYBRID_CANDIDATE_MULTIPLIER,
    HYBRID_MIN_CANDIDATES,
    MIN_NORMALIZATION_SCORE,
    VECTOR_SCORE_MULTIPLIER,
)
from .dataset_repository import dataset_repository
from .embedding import EmbeddingHelper, embedding_helper
from .errors import InvalidRetrievalConfigError, NotFoundError, UnsupportedRetrievalModeError
from .models import (
    HybridStrategy,
    RetrievalChunk,
    RetrievalConfig,
    RetrievalMode,
    RetrievalResult,
    WeightConfig,
)
from .query_preprocessor import preprocess_query
from .reranker import RerankHelper, fallback_rerank, rerank_helper
from .segment_repository import segment_repository

logger = logging.getLogger("knowledge.retrieval")


# ---------------------------------------------------------------------------
# 融合计算 (纯函数)
# ---------------------------------------------------------------------------

def hybrid_candidate_count(top_k: int) -> int:
    return max(top_k * HYBRID_CANDIDATE_MULTIPLIER, HYBRID_MIN_CANDIDATES)


def normalize_weights(weight_config: WeightConfig | None) -> tuple[float, float]:
    """权重归一化为和为 1；总和非正时回退默认权重"""
    semantic = DEFAULT_SEMANTIC_WEIGHT
    keyword = DEFAULT_KEYWORD_WEIGHT
    if weight_config is not None:
        if weight_config.semantic_weight is not None:
            semantic = max(0.0, float(weight_config.semantic_weight))
        if weight_config.keyword_weight is not None:
            keyword = max(0.0, float(weight_config.keyword_weight))
    total = semantic + keyword
    if total <= 0:
        semantic, keyword = DEFAULT_SEMANTIC_WEIGHT, DEFAULT_KEYWORD_WEIGHT
        total = semantic + keyword
    return semantic / total, keyword / total


def weighted_fusion(
    vector_chunks: Sequence[RetrievalChunk],
    text_chunks: Sequence[RetrievalChunk],
    semantic_weight: float,
    keyword_weight: float,
    top_k: int,
) -> list[RetrievalChunk]:
    """
    score = semantic_weight × vec / max(vec) + keyword_weight × text / max(text)

    semantic_weight / keyword_weight 需已归一化。
    """
    vector_max = max([c.score for c in vector_chunks] + [MIN_NORMALIZATION_SCORE])
    text_max = max([c.score for c in text_chunks] + [MIN_NORMALIZATION_SCORE])

    merged: dict[str, RetrievalChunk] = {}
    norm_vec: dict[str, float] = {}
    norm_text: dict[str, float] = {}
    for c in vector_chunks:
        merged.setdefault(c.id, c)
        norm_vec[c.id] = c.score / vector_max
    for c in text_chunks:
        merged.setdefault(c.id, c)
        norm_text[c.id] = c.score / text_max

    fused = [
        chunk.model_copy(update={
            "score": semantic_weight * norm_vec.get(cid, 0.0) + keyword_weight * norm_text.get(cid, 0.0),
        })
        for cid, chunk in merged.items()
    ]
    fused.sort(key=lambda c: c.score, reverse=True)
    return fused[:top_k]


def merge_keep_max(*sources: Sequence[RetrievalChunk]) -> list[RetrievalChunk]:
    """按切片 ID 合并，重复时保留分数更高的一条"""
    merged: dict[str, RetrievalChunk] = {}
    for chunks in sources:
        for c in chunks:
            existing = merged.get(c.id)
            if existing is None or c.score > existing.score:
                merged[c.id] = c
    return list(merged.values())


def _row_to_chunk(row: dict[str, Any], multiplier: float) -> RetrievalChunk:
    metadata = row.get("metadata")
    return RetrievalChunk(
        id=row["id"],
        document_id=row["document_id"],
        content=row.get("content") or "",
        score=float(row.get("score") or 0.0) * multiplier,
        metadata=metadata if isinstance(metadata, dict) else None,
        chunk_index=row.get("chunk_index") or 0,
        content_length=row.get("content_length") or 0,
        file_name=row.get("file_name"),
    )


# ---------------------------------------------------------------------------
# 检索引擎
# ---------------------------------------------------------------------------

class RetrievalEngine:

    def __init__(
        self,
        datasets: Any = None,
        segments: Any = None,
        embedder: EmbeddingHelper | None = None,
        reranker: RerankHelper | None = None,
    ):
        self.datasets = datasets or dataset_repository
        self.segments = segments or segment_repository
        self.embedder = embedder or embedding_helper
        self.reranker = reranker or rerank_helper
        self._modes = {
            RetrievalMode.VECTOR: self._vector_mode,
            RetrievalMode.FULL_TEXT: self._full_text_mode,
            RetrievalMode.HYBRID: self._hybrid_mode,
        }
        self._strategies = {
            HybridStrategy.WEIGHTED_SCORE: self._weighted_strategy,
            HybridStrategy.RERANK: self._rerank_strategy,
        }

    async def query_dataset_with_config(
        self,
        dataset_id: str,
        query_text: str,
        config: RetrievalConfig | None = None,
    ) -> RetrievalResult:
        """
        检索入口。config 为空时使用知识库保存的检索配置；
        检索模式优先取 config.retrieval_mode，其次知识库的 retrieval_mode。
        """
        start = time.monotonic()
        dataset = await self.datasets.get_by_id(dataset_id)
        if not dataset:
            raise NotFoundError(f"知识库不存在: {dataset_id}")

        effective = config or RetrievalConfig.model_validate(dataset.get("retrieval_config") or {})
        raw_mode = (config.retrieval_mode if config else None) or dataset.get("retrieval_mode")
        try:
            mode = RetrievalMode(raw_mode)
        except ValueError:
            raise UnsupportedRetrievalModeError(f"不支持的检索模式: {raw_mode}") from None

        effective = effective.model_copy(update={"top_k": effective.top_k or DEFAULT_TOP_K})
        logger.debug(f"[KB] 检索模式: {mode.value}, 配置: {effective.model_dump(exclude_none=True)}")

        try:
            chunks = await self._modes[mode](dataset, query_text, effective)
        except Exception as e:
            logger.error(f"[KB] 检索失败 [mode: {mode.value}]: {e}")
            raise

        return RetrievalResult(chunks=chunks, total_time=int((time.monotonic() - start) * 1000))

    # ------------------------------------------------------------------
    # 单路召回
    # ------------------------------------------------------------------
    async def vector_search(
        self,
        dataset: dict[str, Any],
        query_text: str,
        limit: int,
        config: RetrievalConfig,
    ) -> list[RetrievalChunk]:
        query_vector = await self.embedder.embed_query(
            dataset["id"], dataset.get("embedding_model_id"), query_text,
        )
        rows = await self.segments.vector_search(dataset["id"], query_vector, limit)
        chunks = [_row_to_chunk(r, VECTOR_SCORE_MULTIPLIER) for r in rows]
        if config.score_threshold_enabled:
            threshold = config.score_threshold if config.score_threshold is not None else DEFAULT_SCORE_THRESHOLD
            chunks = [c for c in chunks if c.score >= threshold]
        return chunks

    async def full_text_search(
        self,
        dataset: dict[str, Any],
        query_text: str,
        limit: int,
    ) -> list[RetrievalChunk]:
        expression = preprocess_query(query_text)
        if not expression:
            return []
        rows = await self.segments.fulltext_search(dataset["id"], expression, limit)
        logger.debug(f"[KB] 全文检索结果: {len(rows)} 条")
        return [_row_to_chunk(r, FULLTEXT_SCORE_MULTIPLIER) for r in rows]

    # ------------------------------------------------------------------
    # 检索模式
    # ------------------------------------------------------------------
    async def _vector_mode(
        self,
        dataset: dict[str, Any],
        query_text: str,
        config: RetrievalConfig,
    ) -> list[RetrievalChunk]:
        top_k = config.top_k or DEFAULT_TOP_K
        chunks = await self.vector_search(dataset, query_text, top_k, config)
        rerank = config.rerank_config
        if rerank and rerank.enabled and rerank.model_id:
            chunks = await self.reranker.rerank(
                query_text, chunks, rerank.model_id, top_k,
                self._threshold(config), bool(config.score_threshold_enabled),
            )
        return chunks

    async def _full_text_mode(
        self,
        dataset: dict[str, Any],
        query_text: str,
        config: RetrievalConfig,
    ) -> list[RetrievalChunk]:
        return await self.full_text_search(dataset, query_text, config.top_k or DEFAULT_TOP_K)

    async def _hybrid_mode(
        self,
        dataset: dict[str, Any],
        query_text: str,
        config: RetrievalConfig,
    ) -> list[RetrievalChunk]:
        strategy = config.strategy or HybridStrategy.WEIGHTED_SCORE
        handler = self._strategies.get(strategy)
        if handler is None:
            raise InvalidRetrievalConfigError(f"不支持的混合检索策略: {strategy}")

        top_k = config.top_k or DEFAULT_TOP_K
        candidates = hybrid_candidate_count(top_k)
        vector_chunks, text_chunks = await asyncio.gather(
            self.vector_search(dataset, query_text, candidates, config),
            self.full_text_search(dataset, query_text, candidates),
        )
        return await handler(query_text, vector_chunks, text_chunks, config, top_k)

    # ------------------------------------------------------------------
    # 融合策略
    # ------------------------------------------------------------------
    async def _weighted_strategy(
        self,
        query_text: str,
        vector_chunks: list[RetrievalChunk],
        text_chunks: list[RetrievalChunk],
        config: RetrievalConfig,
        top_k: int,
    ) -> list[RetrievalChunk]:
        semantic, keyword = normalize_weights(config.weight_config)
        return weighted_fusion(vector_chunks, text_chunks, semantic, keyword, top_k)

    async def _rerank_strategy(
        self,
        query_text: str,
        vector_chunks: list[RetrievalChunk],
        text_chunks: list[RetrievalChunk],
        config: RetrievalConfig,
        top_k: int,
    ) -> list[RetrievalChunk]:
        candidates = merge_keep_max(vector_chunks, text_chunks)
        threshold = self._threshold(config)
        enabled = bool(config.score_threshold_enabled)
        rerank = config.rerank_config
        if rerank and rerank.enabled and rerank.model_id:
            return await self.reranker.rerank(query_text, candidates, rerank.model_id, top_k, threshold, enabled)
        return fallback_rerank(candidates, top_k, threshold, enabled)

    @staticmethod
    def _threshold(config: RetrievalConfig) -> float:
        return config.score_threshold if config.score_threshold is not None else DEFAULT_SCORE_THRESHOLD


retrieval_engine = RetrievalEngine()


async def query_dataset_with_config(
    dataset_id: str,
    query_text: str,
    config: RetrievalConfig | None = None,
) -> RetrievalResult:
    return await retrieval_engine.query_dataset_with_config(dataset_id, query_text, config)
