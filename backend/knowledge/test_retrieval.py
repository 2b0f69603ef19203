"""
检索测试: 权重归一化、加权融合、混合召回、Rerank 降级
"""
from __future__ import annotations

import asyncio

import pytest

from knowledge.fakes import (
    RERANK_MODEL_ID,
    FakeDatasetRepository,
    FakeModelAdapter,
    FakeRerankClient,
    FakeSegmentRepository,
    KnowledgeStore,
)
from knowledge.embedding import EmbeddingHelper
from knowledge.errors import NotFoundError, ProviderError, UnsupportedRetrievalModeError
from knowledge.models import (
    HybridStrategy,
    RerankConfig,
    RetrievalChunk,
    RetrievalConfig,
    RetrievalMode,
    WeightConfig,
)
from knowledge.reranker import RerankHelper, fallback_rerank
from knowledge.retrieval import (
    RetrievalEngine,
    hybrid_candidate_count,
    merge_keep_max,
    normalize_weights,
    weighted_fusion,
)


def _chunk(cid: str, score: float) -> RetrievalChunk:
    return RetrievalChunk(id=cid, document_id="doc-a", content=f"content {cid}", score=score)


def _row(cid: str, score: float) -> dict:
    return {
        "id": cid,
        "document_id": "doc-a",
        "content": f"content {cid}",
        "score": score,
        "chunk_index": 0,
        "content_length": 10,
        "file_name": "doc-a.txt",
        "metadata": None,
    }


def _engine(retrieval_mode: str = "vector", rerank_client: FakeRerankClient | None = None, retrieval_config=None):
    store = KnowledgeStore()
    store.add_dataset(retrieval_mode=retrieval_mode, retrieval_config=retrieval_config)
    segments = FakeSegmentRepository(store)
    adapter = FakeModelAdapter(rerank_client=rerank_client)
    engine = RetrievalEngine(
        datasets=FakeDatasetRepository(store),
        segments=segments,
        embedder=EmbeddingHelper(adapter),
        reranker=RerankHelper(adapter),
    )
    return engine, segments


# ---------------------------------------------------------------------------
# 1. 融合计算
# ---------------------------------------------------------------------------

def test_normalize_weights() -> None:
    assert normalize_weights(WeightConfig(semantic_weight=0.6, keyword_weight=0.6)) == pytest.approx((0.5, 0.5))
    assert normalize_weights(WeightConfig(semantic_weight=0, keyword_weight=0)) == pytest.approx((0.7, 0.3))
    assert normalize_weights(None) == pytest.approx((0.7, 0.3))
    assert normalize_weights(WeightConfig(semantic_weight=1.0)) == pytest.approx((1 / 1.3, 0.3 / 1.3))


def test_weighted_fusion_scores() -> None:
    """并集融合: 每路按自身最大分归一化，缺失一路记 0"""
    vector = [_chunk("a", 0.8), _chunk("b", 0.4)]
    text = [_chunk("b", 2.0), _chunk("c", 1.0)]

    fused = weighted_fusion(vector, text, 0.7, 0.3, top_k=3)

    assert [c.id for c in fused] == ["a", "b", "c"]
    assert fused[0].score == pytest.approx(0.7)
    assert fused[1].score == pytest.approx(0.7 * 0.5 + 0.3 * 1.0)
    assert fused[2].score == pytest.approx(0.3 * 0.5)


def test_weighted_fusion_empty_side() -> None:
    fused = weighted_fusion([_chunk("a", 0.5)], [], 0.7, 0.3, top_k=3)
    assert len(fused) == 1
    assert fused[0].score == pytest.approx(0.7)


def test_merge_keep_max() -> None:
    merged = {c.id: c.score for c in merge_keep_max([_chunk("a", 0.3)], [_chunk("a", 5.0), _chunk("b", 1.0)])}
    assert merged == {"a": 5.0, "b": 1.0}


def test_hybrid_candidate_count() -> None:
    assert hybrid_candidate_count(3) == 10
    assert hybrid_candidate_count(8) == 16


def test_fallback_rerank() -> None:
    chunks = [_chunk("a", 0.4), _chunk("b", 0.9), _chunk("c", 0.6)]
    assert [c.id for c in fallback_rerank(chunks, 2)] == ["b", "c"]
    assert [c.id for c in fallback_rerank(chunks, 5, 0.5, True)] == ["b", "c"]


# ---------------------------------------------------------------------------
# 2. 检索引擎
# ---------------------------------------------------------------------------

def test_vector_search_threshold() -> None:
    engine, segments = _engine()
    segments.vector_rows = [_row("a", 0.9), _row("b", 0.3)]
    config = RetrievalConfig(score_threshold=0.5, score_threshold_enabled=True)

    result = asyncio.run(engine.query_dataset_with_config("ds-1", "vector search", config))

    assert [c.id for c in result.chunks] == ["a"]
    assert segments.search_calls[0][0] == "vector"
    assert segments.search_calls[0][2] == 3


def test_uses_dataset_saved_config() -> None:
    engine, segments = _engine(retrieval_config={"top_k": 1})
    segments.vector_rows = [_row("a", 0.9), _row("b", 0.8)]

    result = asyncio.run(engine.query_dataset_with_config("ds-1", "vector search"))

    assert segments.search_calls[0][2] == 1
    assert len(result.chunks) == 1


def test_full_text_scores_scaled() -> None:
    engine, segments = _engine(retrieval_mode="full_text")
    segments.fulltext_rows = [_row("a", 0.05)]

    result = asyncio.run(engine.query_dataset_with_config("ds-1", "vector search"))

    assert result.chunks[0].score == pytest.approx(5.0)
    assert segments.search_calls == [("full_text", "vector & search", 3)]


def test_full_text_without_tokens_skips_search() -> None:
    engine, segments = _engine(retrieval_mode="full_text")
    result = asyncio.run(engine.query_dataset_with_config("ds-1", "！？"))
    assert result.chunks == []
    assert segments.search_calls == []


def test_hybrid_weighted_requests_candidates() -> None:
    """top_k=3 时两路各召回 10 个候选，融合后截断到 3"""
    engine, segments = _engine(retrieval_mode="hybrid")
    segments.vector_rows = [_row(f"v{i}", 0.9 - i * 0.05) for i in range(10)]
    segments.fulltext_rows = [_row("v0", 0.02), _row("t1", 0.01)]
    config = RetrievalConfig(
        retrieval_mode=RetrievalMode.HYBRID,
        top_k=3,
        strategy=HybridStrategy.WEIGHTED_SCORE,
        weight_config=WeightConfig(semantic_weight=0.7, keyword_weight=0.3),
    )

    result = asyncio.run(engine.query_dataset_with_config("ds-1", "vector search", config))

    assert sorted((kind, limit) for kind, _, limit in segments.search_calls) == [("full_text", 10), ("vector", 10)]
    assert len(result.chunks) == 3
    assert result.chunks[0].id == "v0"
    assert result.chunks[0].score == pytest.approx(1.0)


def test_hybrid_rerank_falls_back_on_failure() -> None:
    """Rerank 失败: 按原始分数排序截断，不写 relevance_score"""
    engine, segments = _engine(
        retrieval_mode="hybrid",
        rerank_client=FakeRerankClient(error=ProviderError("503 upstream")),
    )
    segments.vector_rows = [_row("a", 0.4), _row("b", 0.6)]
    segments.fulltext_rows = [_row("c", 0.005)]
    config = RetrievalConfig(
        retrieval_mode=RetrievalMode.HYBRID,
        top_k=2,
        strategy=HybridStrategy.RERANK,
        rerank_config=RerankConfig(enabled=True, model_id=RERANK_MODEL_ID),
    )

    result = asyncio.run(engine.query_dataset_with_config("ds-1", "vector search", config))

    assert [c.id for c in result.chunks] == ["b", "c"]
    assert all(c.relevance_score is None for c in result.chunks)


def test_vector_rerank_sets_relevance() -> None:
    engine, segments = _engine(rerank_client=FakeRerankClient(scores=[(0, 0.2), (1, 0.95)]))
    segments.vector_rows = [_row("a", 0.9), _row("b", 0.8)]
    config = RetrievalConfig(
        top_k=2,
        rerank_config=RerankConfig(enabled=True, model_id=RERANK_MODEL_ID),
    )

    result = asyncio.run(engine.query_dataset_with_config("ds-1", "vector search", config))

    assert [c.id for c in result.chunks] == ["b", "a"]
    assert [c.relevance_score for c in result.chunks] == [0.95, 0.2]


def test_rerank_requests_only_top_k() -> None:
    """Rerank 服务只需返回 top_k 条，候选集可以更大"""
    client = FakeRerankClient(scores=[(0, 0.1), (1, 0.7), (2, 0.9)])
    helper = RerankHelper(FakeModelAdapter(rerank_client=client))
    chunks = [_chunk("a", 0.9), _chunk("b", 0.8), _chunk("c", 0.7)]

    result = asyncio.run(helper.rerank("q", chunks, RERANK_MODEL_ID, top_k=2))

    assert client.calls[0][2] == 2
    assert [c.id for c in result] == ["c", "b"]


def test_unsupported_mode() -> None:
    engine, _ = _engine(retrieval_mode="graph")
    with pytest.raises(UnsupportedRetrievalModeError):
        asyncio.run(engine.query_dataset_with_config("ds-1", "vector search"))


def test_missing_dataset() -> None:
    engine, _ = _engine()
    with pytest.raises(NotFoundError):
        asyncio.run(engine.query_dataset_with_config("missing", "vector search"))
