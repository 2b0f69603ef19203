"""
向量化状态管理

Segment / Document 状态机的唯一写入方:
- 初始化、标记处理中、批量写入向量结果 (单事务)
- 按切片状态汇总重新计算文档状态与进度
- 失败重置、更换模型重置
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from .database import database
from .dataset_repository import dataset_repository
from .document_repository import document_repository
from .errors import NotFoundError
from .models import EmbeddingResult, ProcessingStatus, VectorizationProgress, percent
from .segment_repository import segment_repository

logger = logging.getLogger("knowledge.state")


def determine_document_status(counts: Mapping[str, int]) -> tuple[ProcessingStatus, int]:
    """
    切片状态统计 → (文档状态, 进度)

    - 仍有 pending / processing: processing, 完成比例
    - 全部失败: failed, 0
    - 部分失败: error, 完成比例
    - 全部完成: completed, 100
    """
    completed = counts.get(ProcessingStatus.COMPLETED.value, 0)
    failed = counts.get(ProcessingStatus.FAILED.value, 0)
    pending = counts.get(ProcessingStatus.PENDING.value, 0)
    processing = counts.get(ProcessingStatus.PROCESSING.value, 0)
    total = sum(counts.values())

    if total == 0:
        return ProcessingStatus.PENDING, 0
    if pending > 0 or processing > 0:
        return ProcessingStatus.PROCESSING, percent(completed, total)
    if failed == total:
        return ProcessingStatus.FAILED, 0
    if failed > 0 and completed > 0:
        return ProcessingStatus.ERROR, percent(completed, total)
    return ProcessingStatus.COMPLETED, 100


def _clamp_progress(percentage: float) -> int:
    return min(100, max(0, int(percentage + 0.5)))


class StateManager:

    def __init__(
        self,
        db: Any = None,
        segments: Any = None,
        documents: Any = None,
        datasets: Any = None,
    ):
        self.db = db or database
        self.segments = segments or segment_repository
        self.documents = documents or document_repository
        self.datasets = datasets or dataset_repository

    # ------------------------------------------------------------------
    # 初始化
    # ------------------------------------------------------------------
    async def initialize_document_vectorization(self, document_id: str) -> None:
        count = await self.documents.mark_processing([document_id])
        if count == 0:
            raise NotFoundError(f"文档不存在: {document_id}")
        logger.info(f"[KB] 文档向量化初始化: {document_id}")

    async def initialize_dataset_vectorization(self, dataset_id: str, document_ids: Sequence[str]) -> None:
        """仅初始化参与本次运行的文档"""
        count = await self.documents.mark_processing(list(document_ids))
        logger.info(f"[KB] 知识库向量化初始化: {dataset_id}, {count} 个文档")

    async def mark_segments_as_processing(self, segment_ids: Sequence[str]) -> list[str]:
        """认领仍为 pending 的切片，返回认领成功的 ID；本次运行只处理这些切片"""
        if not segment_ids:
            return []
        claimed = await self.segments.mark_processing(list(segment_ids))
        if len(claimed) < len(segment_ids):
            logger.warning(f"[KB] {len(segment_ids) - len(claimed)} 个切片已不是 pending，跳过")
        logger.debug(f"[KB] {len(claimed)} 个切片标记为 processing")
        return claimed

    # ------------------------------------------------------------------
    # 写入结果
    # ------------------------------------------------------------------
    async def save_embedding_results(
        self,
        results: Sequence[EmbeddingResult],
        embedding_model_id: str | None = None,
    ) -> list[str]:
        """
        单事务写入全部结果并同步受影响文档的状态，返回受影响的文档 ID。

        embedding_model_id 为 ai_models.id；为空时保持切片原值。
        """
        if not results:
            return []
        ok = [
            (r.segment_id, r.embedding, r.dimension, embedding_model_id)
            for r in results if r.success
        ]
        failed = [(r.segment_id, r.error or "Unknown error") for r in results if not r.success]

        async with self.db.transaction() as conn:
            await self.segments.save_embeddings(ok, conn=conn)
            await self.segments.save_failures(failed, conn=conn)
            document_ids = await self.segments.document_ids_for(
                [r.segment_id for r in results], conn=conn,
            )
            for document_id in document_ids:
                await self._sync_document_status(document_id, conn=conn)

        logger.info(
            f"[KB] 向量结果已写入: 成功 {len(ok)}, 失败 {len(failed)}, 文档 {len(document_ids)}"
        )
        return document_ids

    async def _sync_document_status(self, document_id: str, conn: Any = None) -> tuple[ProcessingStatus, int]:
        counts = await self.segments.count_by_status(document_id, conn=conn)
        status, progress = determine_document_status(counts)
        await self.documents.update_status(document_id, status.value, progress, conn=conn)
        return status, progress

    async def sync_document_status(self, document_id: str) -> ProcessingStatus:
        status, progress = await self._sync_document_status(document_id)
        logger.info(f"[KB] 文档状态同步: {document_id} -> {status.value} ({progress}%)")
        return status

    # ------------------------------------------------------------------
    # 实时进度 (主事务之外)
    # ------------------------------------------------------------------
    async def update_document_progress(self, document_id: str, percentage: float) -> None:
        await self.documents.update_progress([document_id], _clamp_progress(percentage))

    async def update_multiple_documents_progress(
        self,
        document_ids: Sequence[str],
        percentage: float,
    ) -> None:
        if not document_ids:
            return
        await self.documents.update_progress(list(document_ids), _clamp_progress(percentage))

    # ------------------------------------------------------------------
    # 失败
    # ------------------------------------------------------------------
    async def mark_document_failed(self, document_id: str, error: str) -> None:
        await self.mark_documents_failed([document_id], error)

    async def mark_documents_failed(self, document_ids: Sequence[str], error: str) -> None:
        if not document_ids:
            return
        await self.documents.mark_failed(list(document_ids), error)
        logger.error(f"[KB] 文档标记为失败: {list(document_ids)} - {error}")

    async def mark_segments_failed(self, segment_ids: Sequence[str], error: str) -> int:
        """仅处理仍为 processing 的切片"""
        if not segment_ids:
            return 0
        count = await self.segments.mark_failed(list(segment_ids), error)
        if count:
            logger.warning(f"[KB] {count} 个切片标记为失败: {error}")
        return count

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def get_document_progress(self, document_id: str) -> VectorizationProgress:
        counts = await self.segments.count_by_status(document_id)
        total = sum(counts.values())
        completed = counts.get(ProcessingStatus.COMPLETED.value, 0)
        failed = counts.get(ProcessingStatus.FAILED.value, 0)
        status, _ = determine_document_status(counts)
        return VectorizationProgress(
            total=total,
            processed=completed + failed,
            success=completed,
            failed=failed,
            percentage=percent(completed, total),
            status=status,
        )

    # ------------------------------------------------------------------
    # 重置
    # ------------------------------------------------------------------
    async def reset_failed_segments(
        self,
        document_id: str | None = None,
        dataset_id: str | None = None,
        segment_ids: Sequence[str] | None = None,
    ) -> int:
        """
        failed → pending；无可重置切片时返回 0

        指定 segment_ids 时只重置这些切片 (队列重试只重置上一次尝试失败的切片)。
        """
        if segment_ids is not None and not segment_ids:
            return 0
        count = await self.segments.reset_failed(
            document_id=document_id, dataset_id=dataset_id, segment_ids=segment_ids,
        )
        logger.info(f"[KB] 重置失败切片: {count} (document={document_id}, dataset={dataset_id})")
        return count

    async def reset_dataset_for_model_change(self, dataset_id: str, model_id: str) -> int:
        """更换 Embedding 模型: 清空全部向量，切片回到 pending，文档回到 processing"""
        async with self.db.transaction() as conn:
            segment_count = await self.segments.reset_for_model(dataset_id, model_id, conn=conn)
            await self.documents.reset_for_model(dataset_id, model_id, conn=conn)
            await self.datasets.update_embedding_model(dataset_id, model_id, conn=conn)
        logger.info(f"[KB] 知识库 {dataset_id} 更换模型 {model_id}: {segment_count} 个切片待重新向量化")
        return segment_count


state_manager = StateManager()
