"""
向量化编排

一次文档 / 知识库向量化: 加载 → 初始化 → 解析模型 → 向量化 → 写入 → 状态同步。
所有入口都不抛异常，调用方 (队列 Worker) 以 VectorizationResult.success 判断成败。
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

from .dataset_repository import dataset_repository
from .document_repository import document_repository
from .errors import NotFoundError
from .generator import EmbeddingGenerator, ProgressCallback, embedding_generator
from .model_adapter import ModelAdapter, model_adapter
from .models import ProcessingStatus, VectorizationResult
from .segment_repository import segment_repository
from .state import StateManager, state_manager

logger = logging.getLogger("knowledge.vectorization")


def compose_progress(*callbacks: Optional[ProgressCallback]) -> ProgressCallback:
    """按顺序串联多个进度回调 (None 跳过)"""
    chain = [cb for cb in callbacks if cb is not None]

    async def _progress(processed: int, total: int, percentage: int) -> None:
        for cb in chain:
            await cb(processed, total, percentage)

    return _progress


def aggregate_dataset_status(statuses: list[ProcessingStatus]) -> ProcessingStatus:
    """参与本次运行的文档状态 → 知识库运行结果状态"""
    if not statuses:
        return ProcessingStatus.COMPLETED
    if all(s == ProcessingStatus.COMPLETED for s in statuses):
        return ProcessingStatus.COMPLETED
    if all(s == ProcessingStatus.FAILED for s in statuses):
        return ProcessingStatus.FAILED
    if any(s in (ProcessingStatus.FAILED, ProcessingStatus.ERROR) for s in statuses):
        return ProcessingStatus.ERROR
    return ProcessingStatus.PROCESSING


def _claimed(pending: list[dict[str, Any]], claimed_ids: list[str]) -> list[dict[str, Any]]:
    """保持 chunk_index 顺序，只留下本次认领成功的切片"""
    claimed = set(claimed_ids)
    return [s for s in pending if s["id"] in claimed]


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class VectorizationCoordinator:

    def __init__(
        self,
        state: StateManager | None = None,
        generator: EmbeddingGenerator | None = None,
        adapter: ModelAdapter | None = None,
        datasets: Any = None,
        documents: Any = None,
        segments: Any = None,
    ):
        self.state = state or state_manager
        self.generator = generator or embedding_generator
        self.adapter = adapter or model_adapter
        self.datasets = datasets or dataset_repository
        self.documents = documents or document_repository
        self.segments = segments or segment_repository

    # ------------------------------------------------------------------
    # 文档
    # ------------------------------------------------------------------
    async def vectorize_document(
        self,
        document_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> VectorizationResult:
        start = time.monotonic()
        logger.info(f"[KB] 开始文档向量化: {document_id}")
        segment_ids: list[str] = []
        initialized = False
        try:
            document = await self.documents.get_by_id(document_id)
            if not document:
                raise NotFoundError(f"文档不存在: {document_id}")

            # 只处理 pending 切片，已完成 / 已失败的不受影响
            pending = await self.segments.list_pending_by_document(document_id)
            if not pending:
                logger.info(f"[KB] 文档无待处理切片: {document_id}")
                return VectorizationResult(
                    success=True,
                    type="document",
                    entity_id=document_id,
                    processing_time=_elapsed_ms(start),
                    final_status=ProcessingStatus.COMPLETED,
                )

            await self.state.initialize_document_vectorization(document_id)
            initialized = True

            embedding_model_id = document.get("embedding_model_id")
            if not embedding_model_id:
                dataset = await self.datasets.get_by_id(document["dataset_id"])
                embedding_model_id = dataset.get("embedding_model_id")
            model_config = await self.adapter.get_model_config(document["dataset_id"], embedding_model_id)

            segment_ids = await self.state.mark_segments_as_processing([s["id"] for s in pending])
            pending = _claimed(pending, segment_ids)
            if not pending:
                final_status = await self.state.sync_document_status(document_id)
                logger.info(f"[KB] 文档 {document_id} 的待处理切片已被其他任务认领")
                return VectorizationResult(
                    success=True,
                    type="document",
                    entity_id=document_id,
                    processing_time=_elapsed_ms(start),
                    final_status=final_status,
                )
            logger.info(f"[KB] 文档 {document_id}: {len(pending)} 个切片待向量化")

            async def _db_progress(processed: int, total: int, percentage: int) -> None:
                await self.state.update_document_progress(document_id, percentage)

            response = await self.generator.batch_embed(
                pending,
                model_config,
                on_progress=compose_progress(_db_progress, on_progress),
            )

            await self.state.save_embedding_results(response.results, embedding_model_id)
            final_status = await self.state.sync_document_status(document_id)

            elapsed = _elapsed_ms(start)
            logger.info(
                f"[KB] 文档向量化完成: {document_id} - "
                f"{response.success_count}/{len(pending)} 成功, {elapsed}ms"
            )
            return VectorizationResult(
                success=response.failure_count == 0,
                type="document",
                entity_id=document_id,
                total_segments=len(pending),
                success_count=response.success_count,
                failure_count=response.failure_count,
                processing_time=elapsed,
                final_status=final_status,
                errors=response.errors,
            )
        except Exception as e:
            logger.exception(f"[KB] 文档向量化失败: {document_id} - {e}")
            if initialized:
                await self._mark_failed(segment_ids, [document_id], str(e))
            return self._failed_result("document", document_id, str(e), start)

    # ------------------------------------------------------------------
    # 知识库
    # ------------------------------------------------------------------
    async def vectorize_dataset(
        self,
        dataset_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> VectorizationResult:
        start = time.monotonic()
        logger.info(f"[KB] 开始知识库向量化: {dataset_id}")
        segment_ids: list[str] = []
        document_ids: list[str] = []
        try:
            dataset = await self.datasets.get_by_id(dataset_id)
            if not dataset:
                raise NotFoundError(f"知识库不存在: {dataset_id}")

            pending = await self.segments.list_pending_by_dataset(dataset_id)
            if not pending:
                logger.info(f"[KB] 知识库无待处理切片: {dataset_id}")
                return VectorizationResult(
                    success=True,
                    type="dataset",
                    entity_id=dataset_id,
                    processing_time=_elapsed_ms(start),
                    final_status=ProcessingStatus.COMPLETED,
                )

            document_ids = list(dict.fromkeys(s["document_id"] for s in pending))
            await self.state.initialize_dataset_vectorization(dataset_id, document_ids)

            embedding_model_id = dataset.get("embedding_model_id")
            model_config = await self.adapter.get_model_config(dataset_id, embedding_model_id)

            segment_ids = await self.state.mark_segments_as_processing([s["id"] for s in pending])
            pending = _claimed(pending, segment_ids)
            if not pending:
                statuses = [await self.state.sync_document_status(doc_id) for doc_id in document_ids]
                logger.info(f"[KB] 知识库 {dataset_id} 的待处理切片已被其他任务认领")
                return VectorizationResult(
                    success=True,
                    type="dataset",
                    entity_id=dataset_id,
                    processing_time=_elapsed_ms(start),
                    final_status=aggregate_dataset_status(statuses),
                )
            logger.info(
                f"[KB] 知识库 {dataset_id}: {len(pending)} 个切片, {len(document_ids)} 个文档待向量化"
            )

            async def _db_progress(processed: int, total: int, percentage: int) -> None:
                await self.state.update_multiple_documents_progress(document_ids, percentage)

            response = await self.generator.batch_embed(
                pending,
                model_config,
                on_progress=compose_progress(_db_progress, on_progress),
            )

            await self.state.save_embedding_results(response.results, embedding_model_id)
            statuses = [await self.state.sync_document_status(doc_id) for doc_id in document_ids]
            final_status = aggregate_dataset_status(statuses)

            elapsed = _elapsed_ms(start)
            logger.info(
                f"[KB] 知识库向量化完成: {dataset_id} - "
                f"{response.success_count}/{len(pending)} 成功, {elapsed}ms"
            )
            return VectorizationResult(
                success=response.failure_count == 0,
                type="dataset",
                entity_id=dataset_id,
                total_segments=len(pending),
                success_count=response.success_count,
                failure_count=response.failure_count,
                processing_time=elapsed,
                final_status=final_status,
                errors=response.errors,
            )
        except Exception as e:
            logger.exception(f"[KB] 知识库向量化失败: {dataset_id} - {e}")
            await self._mark_failed(segment_ids, document_ids, str(e))
            return self._failed_result("dataset", dataset_id, str(e), start)

    # ------------------------------------------------------------------
    # 重试
    # ------------------------------------------------------------------
    async def retry_document(
        self,
        document_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> VectorizationResult:
        logger.info(f"[KB] 重试文档向量化: {document_id}")
        try:
            reset = await self.state.reset_failed_segments(document_id=document_id)
        except Exception as e:
            logger.exception(f"[KB] 重置失败切片出错: {document_id} - {e}")
            return self._failed_result("document", document_id, str(e), time.monotonic())
        if reset == 0:
            return VectorizationResult(
                success=True,
                type="document",
                entity_id=document_id,
                final_status=ProcessingStatus.COMPLETED,
            )
        return await self.vectorize_document(document_id, on_progress)

    async def retry_dataset(
        self,
        dataset_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> VectorizationResult:
        logger.info(f"[KB] 重试知识库向量化: {dataset_id}")
        try:
            reset = await self.state.reset_failed_segments(dataset_id=dataset_id)
        except Exception as e:
            logger.exception(f"[KB] 重置失败切片出错: {dataset_id} - {e}")
            return self._failed_result("dataset", dataset_id, str(e), time.monotonic())
        if reset == 0:
            return VectorizationResult(
                success=True,
                type="dataset",
                entity_id=dataset_id,
                final_status=ProcessingStatus.COMPLETED,
            )
        return await self.vectorize_dataset(dataset_id, on_progress)

    # ------------------------------------------------------------------
    # 失败收尾
    # ------------------------------------------------------------------
    async def _mark_failed(self, segment_ids: list[str], document_ids: list[str], error: str) -> None:
        """收尾本身失败只记录日志，保证入口不抛异常"""
        try:
            await self.state.mark_segments_failed(segment_ids, error)
            await self.state.mark_documents_failed(document_ids, error)
        except Exception as e:
            logger.error(f"[KB] 标记失败状态出错: {e}")

    @staticmethod
    def _failed_result(kind: str, entity_id: str, error: str, start: float) -> VectorizationResult:
        return VectorizationResult(
            success=False,
            type=kind,
            entity_id=entity_id,
            processing_time=_elapsed_ms(start),
            final_status=ProcessingStatus.FAILED,
            error=error,
        )


vectorization_coordinator = VectorizationCoordinator()


async def vectorize_document(document_id: str, on_progress: Optional[ProgressCallback] = None) -> VectorizationResult:
    return await vectorization_coordinator.vectorize_document(document_id, on_progress)


async def vectorize_dataset(dataset_id: str, on_progress: Optional[ProgressCallback] = None) -> VectorizationResult:
    return await vectorization_coordinator.vectorize_dataset(dataset_id, on_progress)


async def retry_document(document_id: str, on_progress: Optional[ProgressCallback] = None) -> VectorizationResult:
    return await vectorization_coordinator.retry_document(document_id, on_progress)


async def retry_dataset(dataset_id: str, on_progress: Optional[ProgressCallback] = None) -> VectorizationResult:
    return await vectorization_coordinator.retry_dataset(dataset_id, on_progress)
