"""
批量向量化

- 按模型能力切分批次 (批量模型一次请求整批，单条模型逐条请求)
- 批次失败只影响本批切片，继续处理后续批次，整个调用不抛异常
- 每批结束后回调进度 (仅统计成功条数，进度单调不回退)

本模块不读写数据库。
"""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional, Sequence

from .config import get_embedding_batch_size
from .errors import VectorizationErrorType, classify_error
from .model_adapter import ModelAdapter, model_adapter
from .models import BatchEmbeddingResponse, EmbeddingResult, ModelConfig, SegmentError, percent

logger = logging.getLogger("knowledge.generator")

# (success_so_far, total, percentage)
ProgressCallback = Callable[[int, int, int], Awaitable[None]]


def _failed(segment_id: str, model_config: ModelConfig, error: str) -> EmbeddingResult:
    return EmbeddingResult(
        segment_id=segment_id,
        model_id=model_config.model_id,
        success=False,
        error=error,
    )


def _truncate(text: str, max_length: int | None) -> str:
    text = text or ""
    if max_length and len(text) > max_length:
        return text[:max_length]
    return text


class EmbeddingGenerator:

    def __init__(self, adapter: ModelAdapter | None = None):
        self.adapter = adapter or model_adapter

    async def batch_embed(
        self,
        segments: Sequence[dict[str, Any]],
        model_config: ModelConfig,
        batch_size: int | None = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchEmbeddingResponse:
        """
        segments: [{"id": ..., "content": ...}, ...]

        batch_size 为期望批大小，最终仍受模型 max_batch_size 限制。
        """
        start = time.monotonic()
        if not segments:
            return BatchEmbeddingResponse()

        total = len(segments)
        size = self.adapter.calculate_optimal_batch_size(
            model_config, total, batch_size or get_embedding_batch_size(),
        )
        logger.info(
            f"[KB] 开始向量化: {total} 个切片, 模型 {model_config.model_id}, 批大小 {size}"
        )

        results: list[EmbeddingResult] = []
        errors: list[SegmentError] = []

        try:
            client = self.adapter.create_generator(model_config)
        except Exception as e:
            error_type = classify_error(e)
            logger.error(f"[KB] 创建 Embedding 客户端失败: {e}")
            for seg in segments:
                results.append(_failed(seg["id"], model_config, str(e)))
                errors.append(SegmentError(segment_id=seg["id"], error=str(e), error_type=error_type))
            return self._response(results, errors, start)

        success_so_far = 0
        for batch_no, i in enumerate(range(0, total, size), start=1):
            batch = segments[i:i + size]
            batch_results, batch_errors = await self._process_batch(batch, client, model_config)
            results.extend(batch_results)
            errors.extend(batch_errors)

            batch_success = sum(1 for r in batch_results if r.success)
            success_so_far += batch_success
            percentage = percent(success_so_far, total)
            logger.debug(
                f"[KB] 批次 {batch_no} 完成: 成功 {batch_success}, "
                f"失败 {len(batch_results) - batch_success} ({percentage}%)"
            )

            if on_progress is not None and batch_success > 0:
                try:
                    await on_progress(success_so_far, total, percentage)
                except Exception as e:
                    logger.warning(f"[KB] 进度回调失败 (已忽略): {e}")

        response = self._response(results, errors, start)
        logger.info(
            f"[KB] 向量化完成: 成功 {response.success_count}, 失败 {response.failure_count}, "
            f"{response.processing_time}ms"
        )
        return response

    @staticmethod
    def _response(
        results: list[EmbeddingResult],
        errors: list[SegmentError],
        start: float,
    ) -> BatchEmbeddingResponse:
        success = sum(1 for r in results if r.success)
        return BatchEmbeddingResponse(
            results=results,
            success_count=success,
            failure_count=len(results) - success,
            processing_time=int((time.monotonic() - start) * 1000),
            errors=errors or None,
        )

    async def _process_batch(
        self,
        batch: Sequence[dict[str, Any]],
        client: Any,
        model_config: ModelConfig,
    ) -> tuple[list[EmbeddingResult], list[SegmentError]]:
        if not self.adapter.supports_batch_processing(model_config):
            return await self._process_single(batch, client, model_config)

        results: list[EmbeddingResult] = []
        errors: list[SegmentError] = []
        max_len = model_config.capabilities.max_text_length
        try:
            vectors = await client.embed_documents([_truncate(s.get("content"), max_len) for s in batch])
            if vectors is None or len(vectors) != len(batch):
                got = len(vectors) if vectors is not None else 0
                raise ValueError(f"Embedding response mismatch: expected {len(batch)}, got {got}")
        except Exception as e:
            error_type = classify_error(e)
            logger.error(f"[KB] 批次向量化失败 ({error_type.value}): {e}")
            for seg in batch:
                results.append(_failed(seg["id"], model_config, str(e)))
                errors.append(SegmentError(segment_id=seg["id"], error=str(e), error_type=error_type))
            return results, errors

        for seg, vector in zip(batch, vectors):
            validation = self.adapter.validate_embedding(vector, model_config)
            if validation.valid:
                results.append(EmbeddingResult(
                    segment_id=seg["id"],
                    embedding=list(vector),
                    dimension=len(vector),
                    model_id=model_config.model_id,
                    success=True,
                ))
            else:
                results.append(_failed(seg["id"], model_config, validation.error or "Validation failed"))
                errors.append(SegmentError(
                    segment_id=seg["id"],
                    error=validation.error or "Validation failed",
                    error_type=VectorizationErrorType.INVALID_INPUT,
                ))
        return results, errors

    async def _process_single(
        self,
        batch: Sequence[dict[str, Any]],
        client: Any,
        model_config: ModelConfig,
    ) -> tuple[list[EmbeddingResult], list[SegmentError]]:
        """单条模型: 逐条请求，单条失败互不影响"""
        results: list[EmbeddingResult] = []
        errors: list[SegmentError] = []
        max_len = model_config.capabilities.max_text_length
        for seg in batch:
            try:
                vectors = await client.embed_documents([_truncate(seg.get("content"), max_len)])
                if not vectors:
                    raise ValueError("Empty embedding response")
                vector = vectors[0]
                validation = self.adapter.validate_embedding(vector, model_config)
                if not validation.valid:
                    results.append(_failed(seg["id"], model_config, f"Invalid embedding: {validation.error}"))
                    errors.append(SegmentError(
                        segment_id=seg["id"],
                        error=f"Invalid embedding: {validation.error}",
                        error_type=VectorizationErrorType.INVALID_INPUT,
                    ))
                    continue
                results.append(EmbeddingResult(
                    segment_id=seg["id"],
                    embedding=list(vector),
                    dimension=len(vector),
                    model_id=model_config.model_id,
                    success=True,
                ))
            except Exception as e:
                results.append(_failed(seg["id"], model_config, str(e)))
                errors.append(SegmentError(segment_id=seg["id"], error=str(e), error_type=classify_error(e)))
        return results, errors


embedding_generator = EmbeddingGenerator()
