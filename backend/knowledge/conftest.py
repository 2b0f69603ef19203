"""
知识库测试夹具

替身实现见 knowledge/fakes.py。
"""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from knowledge.fakes import (
    FakeDatabase,
    FakeDatasetRepository,
    FakeDocumentRepository,
    FakeModelAdapter,
    FakeSegmentRepository,
    KnowledgeStore,
)
from knowledge.generator import EmbeddingGenerator
from knowledge.state import StateManager
from knowledge.vectorization import VectorizationCoordinator


@pytest.fixture
def kb() -> SimpleNamespace:
    """装配好 fake 依赖的 state / generator / coordinator"""
    store = KnowledgeStore()
    db = FakeDatabase()
    segments = FakeSegmentRepository(store)
    documents = FakeDocumentRepository(store)
    datasets = FakeDatasetRepository(store)
    adapter = FakeModelAdapter()
    state = StateManager(db=db, segments=segments, documents=documents, datasets=datasets)
    generator = EmbeddingGenerator(adapter)
    coordinator = VectorizationCoordinator(
        state=state,
        generator=generator,
        adapter=adapter,
        datasets=datasets,
        documents=documents,
        segments=segments,
    )
    return SimpleNamespace(
        store=store,
        db=db,
        segments=segments,
        documents=documents,
        datasets=datasets,
        adapter=adapter,
        client=adapter.client,
        state=state,
        generator=generator,
        coordinator=coordinator,
    )
