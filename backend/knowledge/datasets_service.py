"""
知识库维护

- 更换 Embedding 模型: 全部切片回到 pending 并重新入队向量化
- 更新检索配置
- 批量启用 / 禁用切片
- 聚合计数校准: 从文档 / 切片行重新计算，消除分散增减造成的漂移
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from . import tasks
from .database import database
from .dataset_repository import dataset_repository
from .document_repository import document_repository
from .errors import NotFoundError
from .models import RetrievalConfig, RetrievalMode
from .retrieval_config import build_retrieval_config
from .segment_repository import segment_repository
from .state import StateManager, state_manager

logger = logging.getLogger("knowledge.datasets")


class DatasetService:

    def __init__(
        self,
        state: StateManager | None = None,
        db: Any = None,
        datasets: Any = None,
        documents: Any = None,
        segments: Any = None,
        enqueue: Callable[[str], str | None] | None = None,
    ):
        self.state = state or state_manager
        self.db = db or database
        self.datasets = datasets or dataset_repository
        self.documents = documents or document_repository
        self.segments = segments or segment_repository
        self.enqueue = enqueue or tasks.enqueue_dataset_vectorization

    async def _get_dataset(self, dataset_id: str) -> dict[str, Any]:
        dataset = await self.datasets.get_by_id(dataset_id)
        if not dataset:
            raise NotFoundError(f"知识库不存在: {dataset_id}")
        return dataset

    # ------------------------------------------------------------------
    # 更换 Embedding 模型
    # ------------------------------------------------------------------
    async def change_embedding_model(self, dataset_id: str, model_id: str) -> str | None:
        """
        返回向量化任务 job_id；模型未变化或知识库无切片时返回 None。
        """
        dataset = await self._get_dataset(dataset_id)
        if dataset.get("embedding_model_id") == model_id:
            return None

        segment_count = await self.segments.count_by_dataset(dataset_id)
        if segment_count == 0:
            await self.datasets.update_embedding_model(dataset_id, model_id)
            logger.info(f"[KB] 知识库 {dataset_id} 无切片，仅更新模型: {model_id}")
            return None

        await self.state.reset_dataset_for_model_change(dataset_id, model_id)
        job_id = self.enqueue(dataset_id)
        logger.info(f"[KB] 知识库 {dataset_id} 更换模型后重新向量化: job={job_id}")
        return job_id

    # ------------------------------------------------------------------
    # 检索配置
    # ------------------------------------------------------------------
    async def update_retrieval_config(
        self,
        dataset_id: str,
        config: RetrievalConfig | dict[str, Any],
    ) -> RetrievalConfig:
        """未指定检索模式时沿用知识库当前模式，再按该模式校验"""
        dataset = await self._get_dataset(dataset_id)
        if isinstance(config, RetrievalConfig):
            config = config.model_dump(exclude_none=True)
        data = dict(config)
        if not data.get("retrieval_mode"):
            data["retrieval_mode"] = dataset.get("retrieval_mode") or RetrievalMode.VECTOR.value
        built = build_retrieval_config(data)
        mode = built.retrieval_mode
        await self.datasets.update_retrieval(
            dataset_id, mode.value, built.model_dump(mode="json", exclude_none=True),
        )
        logger.info(f"[KB] 知识库 {dataset_id} 检索配置已更新: mode={mode.value}")
        return built

    # ------------------------------------------------------------------
    # 切片启用 / 禁用
    # ------------------------------------------------------------------
    async def set_segments_enabled(self, segment_ids: Sequence[str], enabled: bool) -> int:
        count = await self.segments.set_enabled(list(segment_ids), enabled)
        logger.info(f"[KB] {count} 个切片已{'启用' if enabled else '禁用'}")
        return count

    # ------------------------------------------------------------------
    # 计数校准
    # ------------------------------------------------------------------
    async def reconcile_counters(self, dataset_id: str) -> dict[str, Any]:
        await self._get_dataset(dataset_id)
        async with self.db.transaction() as conn:
            await self.documents.recount_by_dataset(dataset_id, conn=conn)
            counters = await self.datasets.recount(dataset_id, conn=conn)
        logger.info(f"[KB] 知识库 {dataset_id} 计数已校准: {counters}")
        return counters


dataset_service = DatasetService()
