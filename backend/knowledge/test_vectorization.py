"""
向量化编排测试: 文档 / 知识库向量化、重试、失败收尾

全部使用 knowledge.fakes 中的内存 repository，无需数据库与模型服务。
"""
from __future__ import annotations

import asyncio

from knowledge.models import ProcessingStatus, percent
from knowledge.vectorization import aggregate_dataset_status, compose_progress


def _setup_document(kb, document_id: str = "doc-a", pending: int = 5) -> list[str]:
    if "ds-1" not in kb.store.datasets:
        kb.store.add_dataset()
    kb.store.add_document(document_id)
    return kb.store.add_segments(document_id, pending)


# ---------------------------------------------------------------------------
# 1. 文档向量化
# ---------------------------------------------------------------------------

def test_vectorize_document_all_success(kb) -> None:
    _setup_document(kb, pending=5)
    seen: list[int] = []

    async def on_progress(processed: int, total: int, percentage: int) -> None:
        seen.append(percentage)

    result = asyncio.run(kb.coordinator.vectorize_document("doc-a", on_progress))

    assert result.success
    assert result.type == "document"
    assert result.total_segments == 5
    assert result.success_count == 5
    assert result.final_status == ProcessingStatus.COMPLETED
    assert kb.store.statuses("doc-a") == ["completed"] * 5
    assert kb.store.documents["doc-a"]["status"] == "completed"
    assert kb.store.documents["doc-a"]["progress"] == 100
    # 批大小受模型 max_chunks=2 限制
    assert [len(c) for c in kb.client.calls] == [2, 2, 1]
    assert seen == [40, 80, 100]
    assert [p for _, p in kb.documents.progress_updates] == [40, 80, 100]


def test_vectorize_document_partial_failure(kb) -> None:
    """一个批次失败: 文档进入 error，进度 = 成功数 / 切片总数"""
    _setup_document(kb, pending=5)
    kb.client.fail_calls = {2}

    result = asyncio.run(kb.coordinator.vectorize_document("doc-a"))

    assert not result.success
    assert result.success_count == 3
    assert result.failure_count == 2
    assert result.final_status == ProcessingStatus.ERROR
    statuses = kb.store.statuses("doc-a")
    assert "pending" not in statuses and "processing" not in statuses
    doc = kb.store.documents["doc-a"]
    assert doc["status"] == "error"
    assert doc["progress"] == percent(statuses.count("completed"), len(statuses))


def test_vectorize_document_without_pending_is_noop(kb) -> None:
    """无 pending 切片: 返回成功结果，文档状态不变"""
    kb.store.add_dataset()
    kb.store.add_document("doc-a", status="error", progress=50)
    kb.store.add_segments("doc-a", 1, status="completed")
    kb.store.add_segments("doc-a", 1, status="failed")

    result = asyncio.run(kb.coordinator.vectorize_document("doc-a"))

    assert result.success
    assert result.total_segments == 0
    assert kb.store.documents["doc-a"]["status"] == "error"
    assert kb.store.documents["doc-a"]["progress"] == 50
    assert kb.client.calls == []


def test_vectorize_missing_document_returns_failure(kb) -> None:
    result = asyncio.run(kb.coordinator.vectorize_document("missing"))
    assert not result.success
    assert result.final_status == ProcessingStatus.FAILED
    assert result.error


def test_vectorize_document_invalid_model(kb) -> None:
    """模型不可用: 文档标记失败，切片保持 pending 以便之后重试"""
    kb.store.add_dataset(embedding_model_id="no-such-model")
    kb.store.add_document("doc-a")
    kb.store.add_segments("doc-a", 2)

    result = asyncio.run(kb.coordinator.vectorize_document("doc-a"))

    assert not result.success
    assert "no-such-model" in result.error
    assert kb.store.documents["doc-a"]["status"] == "failed"
    assert kb.store.statuses("doc-a") == ["pending", "pending"]


def test_vectorize_document_never_raises(kb) -> None:
    """写入阶段异常: 仍在 processing 的切片与文档标记为失败，入口不抛异常"""
    _setup_document(kb, pending=2)

    async def broken(*args, **kwargs):
        raise RuntimeError("db gone")

    kb.state.save_embedding_results = broken

    result = asyncio.run(kb.coordinator.vectorize_document("doc-a"))

    assert not result.success
    assert result.error == "db gone"
    assert kb.store.statuses("doc-a") == ["failed", "failed"]
    assert kb.store.documents["doc-a"]["status"] == "failed"


# ---------------------------------------------------------------------------
# 2. 知识库向量化
# ---------------------------------------------------------------------------

def test_vectorize_dataset_only_touches_involved_documents(kb) -> None:
    _setup_document(kb, "doc-a", pending=3)
    _setup_document(kb, "doc-b", pending=1)
    kb.store.add_document("doc-done", status="completed", progress=100)
    kb.store.add_segments("doc-done", 2, status="completed")

    result = asyncio.run(kb.coordinator.vectorize_dataset("ds-1"))

    assert result.success
    assert result.type == "dataset"
    assert result.total_segments == 4
    assert result.final_status == ProcessingStatus.COMPLETED
    assert kb.store.documents["doc-a"]["status"] == "completed"
    assert kb.store.documents["doc-b"]["status"] == "completed"
    assert all("doc-done" not in ids for ids, _ in kb.documents.progress_updates)
    assert kb.store.documents["doc-done"]["progress"] == 100


def test_vectorize_dataset_aggregates_failures(kb) -> None:
    _setup_document(kb, "doc-a", pending=2)
    _setup_document(kb, "doc-b", pending=2)
    kb.client.fail_calls = {2}

    result = asyncio.run(kb.coordinator.vectorize_dataset("ds-1"))

    assert not result.success
    assert kb.store.documents["doc-a"]["status"] == "completed"
    assert kb.store.documents["doc-b"]["status"] == "failed"
    assert result.final_status == ProcessingStatus.ERROR


def test_vectorize_missing_dataset_returns_failure(kb) -> None:
    result = asyncio.run(kb.coordinator.vectorize_dataset("missing"))
    assert not result.success
    assert result.type == "dataset"
    assert result.final_status == ProcessingStatus.FAILED


def test_model_change_during_run_keeps_segments_pending(kb) -> None:
    """向量化进行中更换模型: 旧模型的结果不落库，切片留给新模型的任务"""
    ids = _setup_document(kb, pending=5)

    async def change_model(call: int) -> None:
        if call == 1:
            await kb.state.reset_dataset_for_model_change("ds-1", "model-new")

    kb.client.on_call = change_model

    asyncio.run(kb.coordinator.vectorize_document("doc-a"))

    assert len(kb.client.calls) == 3
    assert kb.store.statuses("doc-a") == ["pending"] * 5
    for sid in ids:
        seg = kb.store.segments[sid]
        assert seg["embedding"] is None
        assert seg["embedding_model_id"] == "model-new"
    pending = asyncio.run(kb.segments.list_pending_by_dataset("ds-1"))
    assert [s["id"] for s in pending] == ids
    assert kb.store.documents["doc-a"]["status"] == "processing"


def test_vectorize_document_skips_segments_claimed_elsewhere(kb) -> None:
    """读取 pending 之后切片已被另一个任务认领: 本次不再向量化"""
    ids = _setup_document(kb, pending=3)
    list_pending = kb.segments.list_pending_by_document

    async def list_then_claimed(document_id, conn=None):
        rows = await list_pending(document_id, conn=conn)
        for sid in ids:
            kb.store.segments[sid]["status"] = "processing"
        return rows

    kb.segments.list_pending_by_document = list_then_claimed

    result = asyncio.run(kb.coordinator.vectorize_document("doc-a"))

    assert result.success
    assert result.total_segments == 0
    assert kb.client.calls == []
    assert kb.store.statuses("doc-a") == ["processing"] * 3
    assert result.final_status == ProcessingStatus.PROCESSING


# ---------------------------------------------------------------------------
# 3. 重试
# ---------------------------------------------------------------------------

def test_retry_document_without_failures_is_noop(kb) -> None:
    kb.store.add_dataset()
    kb.store.add_document("doc-a", status="completed", progress=100)
    kb.store.add_segments("doc-a", 2, status="completed")

    result = asyncio.run(kb.coordinator.retry_document("doc-a"))

    assert result.success
    assert result.total_segments == 0
    assert kb.client.calls == []


def test_retry_document_recovers_failed_segments(kb) -> None:
    _setup_document(kb, pending=2)
    kb.client.fail_calls = {1}
    first = asyncio.run(kb.coordinator.vectorize_document("doc-a"))
    assert first.final_status == ProcessingStatus.FAILED

    second = asyncio.run(kb.coordinator.retry_document("doc-a"))

    assert second.success
    assert second.total_segments == 2
    assert kb.store.statuses("doc-a") == ["completed", "completed"]
    assert kb.store.documents["doc-a"]["status"] == "completed"


def test_retry_dataset_resets_failed_segments(kb) -> None:
    _setup_document(kb, "doc-a", pending=1)
    kb.store.add_segments("doc-a", 1, status="failed")

    result = asyncio.run(kb.coordinator.retry_dataset("ds-1"))

    assert result.success
    assert result.total_segments == 2
    assert kb.store.statuses("doc-a") == ["completed", "completed"]


# ---------------------------------------------------------------------------
# 4. 辅助函数
# ---------------------------------------------------------------------------

def test_aggregate_dataset_status() -> None:
    c, f, e, p = (
        ProcessingStatus.COMPLETED,
        ProcessingStatus.FAILED,
        ProcessingStatus.ERROR,
        ProcessingStatus.PROCESSING,
    )
    assert aggregate_dataset_status([]) == c
    assert aggregate_dataset_status([c, c]) == c
    assert aggregate_dataset_status([f, f]) == f
    assert aggregate_dataset_status([c, f]) == e
    assert aggregate_dataset_status([c, e]) == e
    assert aggregate_dataset_status([c, p]) == p


def test_compose_progress_calls_in_order() -> None:
    seen: list[str] = []

    async def first(processed, total, percentage):
        seen.append(f"a{percentage}")

    async def second(processed, total, percentage):
        seen.append(f"b{percentage}")

    asyncio.run(compose_progress(first, None, second)(1, 2, 50))
    assert seen == ["a50", "b50"]
