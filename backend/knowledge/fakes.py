"""
知识库测试替身: 内存版 repository / 数据库事务 / 供应商客户端

无需 PostgreSQL、Redis 或真实模型服务。
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Sequence

from knowledge.errors import ProviderError, VectorizationErrorType
from knowledge.model_adapter import ModelAdapter

EMBED_MODEL_ID = "model-embed"
RERANK_MODEL_ID = "model-rerank"
DIMENSION = 4


def model_row(
    model: str,
    max_chunks: int | None = 2,
    dimension: int | None = DIMENSION,
    max_tokens: int | None = None,
    is_active: bool = True,
) -> dict[str, Any]:
    config = []
    if max_chunks is not None:
        config.append({"key": "max_chunks", "value": max_chunks})
    if dimension is not None:
        config.append({"key": "dimension", "value": dimension})
    if max_tokens is not None:
        config.append({"key": "max_tokens", "value": max_tokens})
    return {
        "id": model,
        "model": model,
        "model_type": "text-embedding",
        "is_active": is_active,
        "model_config": config,
        "provider": "openai",
        "api_key": "sk-test",
        "base_url": "http://provider.local/v1",
        "provider_active": True,
    }


# ---------------------------------------------------------------------------
# 数据库
# ---------------------------------------------------------------------------

class FakeDatabase:

    def __init__(self):
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield "tx-conn"


class KnowledgeStore:
    """datasets / documents / segments 三张表的内存副本"""

    def __init__(self):
        self.datasets: dict[str, dict[str, Any]] = {}
        self.documents: dict[str, dict[str, Any]] = {}
        self.segments: dict[str, dict[str, Any]] = {}

    def add_dataset(
        self,
        dataset_id: str = "ds-1",
        embedding_model_id: str | None = EMBED_MODEL_ID,
        retrieval_mode: str = "vector",
        retrieval_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.datasets[dataset_id] = {
            "id": dataset_id,
            "name": dataset_id,
            "embedding_model_id": embedding_model_id,
            "retrieval_mode": retrieval_mode,
            "retrieval_config": retrieval_config or {},
            "document_count": 0,
            "chunk_count": 0,
            "storage_size": 0,
        }
        return self.datasets[dataset_id]

    def add_document(
        self,
        document_id: str,
        dataset_id: str = "ds-1",
        status: str = "pending",
        progress: int = 0,
        file_size: int = 0,
    ) -> dict[str, Any]:
        self.documents[document_id] = {
            "id": document_id,
            "dataset_id": dataset_id,
            "file_name": f"{document_id}.txt",
            "file_size": file_size,
            "embedding_model_id": self.datasets.get(dataset_id, {}).get("embedding_model_id"),
            "status": status,
            "progress": progress,
            "chunk_count": 0,
            "character_count": 0,
            "enabled": True,
            "error": None,
        }
        return self.documents[document_id]

    def add_segments(self, document_id: str, count: int, status: str = "pending") -> list[str]:
        doc = self.documents[document_id]
        start = sum(1 for s in self.segments.values() if s["document_id"] == document_id)
        ids = []
        for i in range(start, start + count):
            seg_id = f"{document_id}-seg-{i}"
            content = f"{document_id} 第 {i} 段内容"
            self.segments[seg_id] = {
                "id": seg_id,
                "document_id": document_id,
                "dataset_id": doc["dataset_id"],
                "content": content,
                "chunk_index": i,
                "content_length": len(content),
                "status": status,
                "error": None,
                "enabled": True,
                "metadata": None,
                "embedding": [0.1] * DIMENSION if status == "completed" else None,
                "vector_dimension": DIMENSION if status == "completed" else None,
                "embedding_model_id": doc["embedding_model_id"],
            }
            ids.append(seg_id)
        return ids

    def statuses(self, document_id: str) -> list[str]:
        return [s["status"] for s in self.segments.values() if s["document_id"] == document_id]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class FakeSegmentRepository:

    def __init__(self, store: KnowledgeStore):
        self.store = store
        self.vector_rows: list[dict[str, Any]] = []
        self.fulltext_rows: list[dict[str, Any]] = []
        self.search_calls: list[tuple[str, Any, int]] = []

    def _pending(self, key: str, value: str) -> list[dict[str, Any]]:
        rows = [dict(s) for s in self.store.segments.values() if s[key] == value and s["status"] == "pending"]
        rows.sort(key=lambda s: (s["document_id"], s["chunk_index"]))
        return rows

    async def list_pending_by_document(self, document_id, conn=None):
        return self._pending("document_id", document_id)

    async def list_pending_by_dataset(self, dataset_id, conn=None):
        return self._pending("dataset_id", dataset_id)

    async def mark_processing(self, segment_ids, conn=None):
        claimed = []
        for sid in segment_ids:
            seg = self.store.segments[sid]
            if seg["status"] == "pending":
                seg["status"] = "processing"
                claimed.append(sid)
        return claimed

    async def save_embeddings(self, rows, conn=None):
        for sid, embedding, dimension, model_id in rows:
            seg = self.store.segments[sid]
            if seg["status"] != "processing":
                continue
            seg.update(embedding=embedding, vector_dimension=dimension, status="completed", error=None)
            if model_id:
                seg["embedding_model_id"] = model_id
        return len(rows)

    async def save_failures(self, rows, conn=None):
        for sid, error in rows:
            seg = self.store.segments[sid]
            if seg["status"] == "processing":
                seg.update(status="failed", error=error, embedding=None)
        return len(rows)

    async def mark_failed(self, segment_ids, error, conn=None):
        count = 0
        for sid in segment_ids:
            seg = self.store.segments[sid]
            if seg["status"] == "processing":
                seg.update(status="failed", error=error)
                count += 1
        return count

    async def count_by_status(self, document_id, conn=None):
        counts: dict[str, int] = {}
        for status in self.store.statuses(document_id):
            counts[status] = counts.get(status, 0) + 1
        return counts

    async def document_ids_for(self, segment_ids, conn=None):
        ids = [self.store.segments[sid]["document_id"] for sid in segment_ids if sid in self.store.segments]
        return list(dict.fromkeys(ids))

    async def count_by_dataset(self, dataset_id, conn=None):
        return sum(1 for s in self.store.segments.values() if s["dataset_id"] == dataset_id)

    async def reset_failed(self, document_id=None, dataset_id=None, segment_ids=None, conn=None):
        if segment_ids is not None:
            targets = [self.store.segments[sid] for sid in segment_ids if sid in self.store.segments]
        else:
            key, value = ("document_id", document_id) if document_id else ("dataset_id", dataset_id)
            targets = [s for s in self.store.segments.values() if s[key] == value]
        count = 0
        for seg in targets:
            if seg["status"] == "failed":
                seg.update(status="pending", error=None)
                count += 1
        return count

    async def reset_for_model(self, dataset_id, model_id, conn=None):
        count = 0
        for seg in self.store.segments.values():
            if seg["dataset_id"] == dataset_id:
                seg.update(
                    status="pending", error=None, embedding=None,
                    vector_dimension=None, embedding_model_id=model_id,
                )
                count += 1
        return count

    async def set_enabled(self, segment_ids, enabled, conn=None):
        for sid in segment_ids:
            self.store.segments[sid]["enabled"] = enabled
        return len(segment_ids)

    async def vector_search(self, dataset_id, query_vector, limit, conn=None):
        self.search_calls.append(("vector", query_vector, limit))
        return [dict(r) for r in self.vector_rows[:limit]]

    async def fulltext_search(self, dataset_id, ts_query, limit, conn=None):
        self.search_calls.append(("full_text", ts_query, limit))
        return [dict(r) for r in self.fulltext_rows[:limit]]


class FakeDocumentRepository:

    def __init__(self, store: KnowledgeStore):
        self.store = store
        self.progress_updates: list[tuple[list[str], int]] = []

    async def get_by_id(self, document_id, conn=None):
        return dict(self.store.documents.get(document_id, {}))

    async def mark_processing(self, document_ids, conn=None):
        count = 0
        for did in document_ids:
            if did in self.store.documents:
                self.store.documents[did].update(status="processing", progress=0, error=None)
                count += 1
        return count

    async def update_status(self, document_id, status, progress, error=None, conn=None):
        self.store.documents[document_id].update(status=status, progress=progress, error=error)
        return True

    async def mark_failed(self, document_ids, error, conn=None):
        for did in document_ids:
            self.store.documents[did].update(status="failed", error=error)
        return len(document_ids)

    async def update_progress(self, document_ids, progress, conn=None):
        self.progress_updates.append((list(document_ids), progress))
        for did in document_ids:
            self.store.documents[did]["progress"] = progress
        return len(document_ids)

    async def reset_for_model(self, dataset_id, model_id, conn=None):
        count = 0
        for doc in self.store.documents.values():
            if doc["dataset_id"] == dataset_id:
                doc.update(status="processing", progress=0, error=None, embedding_model_id=model_id)
                count += 1
        return count

    async def recount_by_dataset(self, dataset_id, conn=None):
        count = 0
        for doc in self.store.documents.values():
            if doc["dataset_id"] != dataset_id:
                continue
            segs = [s for s in self.store.segments.values() if s["document_id"] == doc["id"]]
            doc["chunk_count"] = len(segs)
            doc["character_count"] = sum(s["content_length"] for s in segs)
            count += 1
        return count


class FakeDatasetRepository:

    def __init__(self, store: KnowledgeStore):
        self.store = store

    async def get_by_id(self, dataset_id, conn=None):
        return dict(self.store.datasets.get(dataset_id, {}))

    async def update_embedding_model(self, dataset_id, model_id, conn=None):
        self.store.datasets[dataset_id]["embedding_model_id"] = model_id
        return True

    async def update_retrieval(self, dataset_id, retrieval_mode, retrieval_config, conn=None):
        self.store.datasets[dataset_id].update(retrieval_mode=retrieval_mode, retrieval_config=retrieval_config)
        return dict(self.store.datasets[dataset_id])

    async def recount(self, dataset_id, conn=None):
        docs = [d for d in self.store.documents.values() if d["dataset_id"] == dataset_id]
        counters = {
            "document_count": len(docs),
            "chunk_count": sum(1 for s in self.store.segments.values() if s["dataset_id"] == dataset_id),
            "storage_size": sum(d["file_size"] for d in docs),
        }
        self.store.datasets[dataset_id].update(counters)
        return counters


class FakeModelRepository:

    def __init__(self, rows: dict[str, dict[str, Any]] | None = None):
        self.rows = rows if rows is not None else {
            EMBED_MODEL_ID: model_row(EMBED_MODEL_ID),
            RERANK_MODEL_ID: model_row(RERANK_MODEL_ID, max_chunks=None, dimension=None),
        }

    async def get_with_provider(self, model_id, conn=None):
        return dict(self.rows.get(model_id, {}))


# ---------------------------------------------------------------------------
# 供应商客户端
# ---------------------------------------------------------------------------

class FakeEmbeddingClient:
    """
    每次 embed_documents 调用计数 (从 1 开始)；fail_calls 中的调用抛出 error。
    """

    def __init__(
        self,
        dimension: int = DIMENSION,
        fail_calls: Sequence[int] = (),
        error: BaseException | None = None,
    ):
        self.dimension = dimension
        self.fail_calls = set(fail_calls)
        self.error = error or ProviderError("429 Too Many Requests", VectorizationErrorType.RATE_LIMIT)
        self.calls: list[list[str]] = []
        self.vector_override: list[list[float]] | None = None
        # 每次调用返回前执行的协程函数 (参数为调用序号)，用于模拟运行期间的并发写入
        self.on_call = None

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if len(self.calls) in self.fail_calls:
            raise self.error
        if self.on_call is not None:
            await self.on_call(len(self.calls))
        if self.vector_override is not None:
            return self.vector_override
        return [[float(len(t))] + [0.5] * (self.dimension - 1) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_documents([text])
        return vectors[0]


class FakeRerankClient:

    def __init__(self, scores: list[tuple[int, float]] | None = None, error: BaseException | None = None):
        self.scores = scores or []
        self.error = error
        self.calls: list[tuple[str, list[str], int | None]] = []

    async def rerank(self, query, documents, top_n=None):
        self.calls.append((query, list(documents), top_n))
        if self.error is not None:
            raise self.error
        return sorted(self.scores, key=lambda x: x[1], reverse=True)[:top_n]


class FakeModelAdapter(ModelAdapter):
    """真实的配置解析 / 校验逻辑，客户端替换为 fake"""

    def __init__(self, client=None, rerank_client=None, repository=None):
        super().__init__(repository or FakeModelRepository())
        self.client = client or FakeEmbeddingClient()
        self.rerank_client = rerank_client or FakeRerankClient()

    def create_generator(self, model_config):
        return self.client

    def create_reranker(self, model_config):
        return self.rerank_client
