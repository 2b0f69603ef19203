"""
向量化任务队列 (Redis RQ)

任务载荷: {"type": "document" | "dataset", "params": {"dataset_id": ..., "document_id": ...}}

- 最多执行 3 次，指数退避 2s / 4s
- 任务进度写入 job.meta["progress"]: 0~100 的向量化进度映射到 10~90，
  开始与结束各预留 10
- 仅当失败切片全部为可重试错误 (transient / rate_limit) 时抛出 VectorizationJobError 交给 RQ 重试，
  失败切片 ID 记入 job.meta["retry_segments"]；重试时只把这些切片重置为 pending 再执行
- 鉴权失败、非法输入等不可重试错误，以及文档 / 知识库级别的失败，直接返回结果不再重试
"""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Literal, Optional

from redis import Redis
from rq import Queue, Retry, get_current_job
from rq.exceptions import NoSuchJobError
from rq.job import Job

from . import vectorization
from .config import JOB_PROGRESS_SPAN, JOB_PROGRESS_START, get_queue_name, get_redis_url
from .errors import VectorizationJobError, is_retryable_error
from .models import VectorizationResult

logger = logging.getLogger("knowledge.tasks")

MAX_ATTEMPTS = 3
RETRY_INTERVALS = [2, 4]  # 秒，指数退避
JOB_TIMEOUT = "30m"
FAILURE_TTL = 86400  # 失败记录保留 24h

JobType = Literal["document", "dataset"]


def job_progress(percentage: float) -> int:
    """向量化进度 0~100 → 任务进度 10~90"""
    pct = min(100.0, max(0.0, float(percentage)))
    return JOB_PROGRESS_START + math.floor(pct / 100 * JOB_PROGRESS_SPAN)


def _set_progress(job: Optional[Job], progress: int) -> None:
    if job is None:
        return
    job.meta["progress"] = progress
    job.save_meta()


def _connection() -> Redis:
    return Redis.from_url(get_redis_url())


def get_queue(connection: Redis | None = None) -> Queue:
    return Queue(get_queue_name(), connection=connection or _connection(), default_timeout=600)


# ---------------------------------------------------------------------------
# Worker 侧
# ---------------------------------------------------------------------------

async def _execute(
    job_type: JobType,
    params: dict[str, Any],
    retry_segments: list[str],
    on_progress,
) -> VectorizationResult:
    coordinator = vectorization.vectorization_coordinator
    if retry_segments:
        await coordinator.state.reset_failed_segments(segment_ids=retry_segments)
    if job_type == "dataset":
        return await coordinator.vectorize_dataset(params["dataset_id"], on_progress)
    return await coordinator.vectorize_document(params["document_id"], on_progress)


def _retry_segments(result: VectorizationResult, attempt: int) -> list[str]:
    """
    需要交给 RQ 重试的失败切片 ID；返回空列表表示不再重试。

    文档 / 知识库级别的失败 (result.error) 和任一不可重试的切片错误都不重试，
    最后一次执行也不再抛出。
    """
    if result.success or result.error or attempt >= MAX_ATTEMPTS:
        return []
    errors = result.errors or []
    if not errors or not all(is_retryable_error(e.error_type) for e in errors):
        return []
    return [e.segment_id for e in errors]


def run_vectorization_job(payload: dict[str, Any]) -> dict[str, Any]:
    """
    同步任务入口: RQ Worker 调用，内部用 asyncio.run 执行异步向量化。
    """
    job = get_current_job()
    job_type = payload.get("type")
    params = payload.get("params") or {}
    if job_type not in ("document", "dataset"):
        raise VectorizationJobError(f"未知向量化任务类型: {job_type}")

    attempt = 1
    retry_segments: list[str] = []
    if job is not None:
        attempt = int(job.meta.get("attempt", 0)) + 1
        job.meta["attempt"] = attempt
        retry_segments = list(job.meta.pop("retry_segments", None) or [])
    _set_progress(job, JOB_PROGRESS_START)

    task_id = params.get("document_id") or params.get("dataset_id")
    logger.info(f"[KB] 开始向量化任务: {job_type} {task_id} (第 {attempt} 次)")

    async def _progress(processed: int, total: int, percentage: int) -> None:
        progress = job_progress(percentage)
        _set_progress(job, progress)
        logger.debug(f"[KB] 任务进度: {progress}% ({processed}/{total})")

    try:
        result = asyncio.run(_execute(job_type, params, retry_segments, _progress))
    except Exception as e:
        logger.error(f"[KB] 向量化任务执行失败 {job_type} {task_id}: {e}")
        raise

    logger.info(
        f"[KB] 向量化任务结束: {job_type} {task_id} - "
        f"{result.success_count}/{result.total_segments} 成功, 状态 {result.final_status.value}"
    )
    failed_ids = _retry_segments(result, attempt)
    if failed_ids:
        if job is not None:
            job.meta["retry_segments"] = failed_ids
            job.save_meta()
        raise VectorizationJobError(f"{len(failed_ids)} 个切片向量化失败 (可重试)")
    if not result.success:
        logger.warning(f"[KB] 向量化任务失败且不再重试: {job_type} {task_id} - {result.error or result.failure_count}")
    _set_progress(job, 100)
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# 生产侧
# ---------------------------------------------------------------------------

def enqueue_vectorization(
    job_type: JobType,
    dataset_id: str,
    document_id: str | None = None,
    queue: Queue | None = None,
) -> str | None:
    """
    将向量化任务入队，返回 job_id；失败返回 None。
    """
    params: dict[str, Any] = {"dataset_id": dataset_id}
    if document_id:
        params["document_id"] = document_id
    try:
        q = queue or get_queue()
        job = q.enqueue(
            run_vectorization_job,
            {"type": job_type, "params": params},
            job_timeout=JOB_TIMEOUT,
            retry=Retry(max=MAX_ATTEMPTS - 1, interval=RETRY_INTERVALS),
            failure_ttl=FAILURE_TTL,
        )
    except Exception as e:
        logger.warning(f"[KB] 向量化任务入队失败: {e}")
        return None
    logger.info(f"[KB] {'知识库' if job_type == 'dataset' else '文档'}向量化任务已入队: {job.id} - {document_id or dataset_id}")
    return job.id


def enqueue_dataset_vectorization(dataset_id: str, queue: Queue | None = None) -> str | None:
    return enqueue_vectorization("dataset", dataset_id, queue=queue)


def enqueue_document_vectorization(dataset_id: str, document_id: str, queue: Queue | None = None) -> str | None:
    return enqueue_vectorization("document", dataset_id, document_id, queue=queue)


# ---------------------------------------------------------------------------
# 队列查询 / 管理
# ---------------------------------------------------------------------------

def _fetch(job_id: str, connection: Redis | None = None) -> Job | None:
    try:
        return Job.fetch(job_id, connection=connection or _connection())
    except NoSuchJobError:
        return None


def get_job(job_id: str, connection: Redis | None = None) -> dict[str, Any] | None:
    job = _fetch(job_id, connection)
    if job is None:
        return None
    return {
        "id": job.id,
        "status": job.get_status(),
        "progress": job.meta.get("progress", 0),
        "attempt": job.meta.get("attempt", 0),
        "payload": job.args[0] if job.args else None,
    }


def remove_job(job_id: str, connection: Redis | None = None) -> bool:
    job = _fetch(job_id, connection)
    if job is None:
        return False
    job.delete()
    return True


def retry_job(job_id: str, connection: Redis | None = None) -> bool:
    """重新入队失败任务"""
    job = _fetch(job_id, connection)
    if job is None or not job.is_failed:
        return False
    job.requeue()
    return True


def is_queue_available() -> bool:
    """检查 Redis 是否可用"""
    try:
        return bool(_connection().ping())
    except Exception:
        return False
