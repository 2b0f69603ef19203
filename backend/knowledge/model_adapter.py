"""
模型适配层

- 从 ai_models / ai_providers 解析模型凭证与能力上限 (max_chunks / max_tokens / dimension)
- 按 ModelConfig 构建供应商客户端 (凭证显式传入)
- 校验向量结果、计算批大小
"""
from __future__ import annotations

import logging
import math
from typing import Any

from .config import DEFAULT_BATCH_SIZE
from .errors import InvalidModelError, VectorizationErrorType
from .model_repository import model_repository
from .models import ApiConfig, EmbeddingValidation, ModelCapabilities, ModelConfig
from .providers import EmbeddingClient, RerankClient

logger = logging.getLogger("knowledge.model_adapter")

# max_tokens → 最大字符数的粗略换算
CHARS_PER_TOKEN = 4


def _config_value(key: str, config: list[dict[str, Any]]) -> Any:
    for item in config or []:
        if isinstance(item, dict) and item.get("key") == key:
            return item.get("value") or None
    return None


def _as_int(val: Any) -> int | None:
    if val is None:
        return None
    try:
        return int(float(val))
    except (TypeError, ValueError):
        return None


def parse_capabilities(config: list[dict[str, Any]]) -> ModelCapabilities:
    """model_config 的 [{key, value}] 列表 → 能力上限"""
    max_chunks = _as_int(_config_value("max_chunks", config))
    max_tokens = _as_int(_config_value("max_tokens", config))
    dimension = _as_int(_config_value("dimension", config))
    return ModelCapabilities(
        max_batch_size=max_chunks if max_chunks and max_chunks > 0 else 1,
        max_text_length=max_tokens * CHARS_PER_TOKEN if max_tokens else None,
        dimension=dimension or None,
    )


class ModelAdapter:

    def __init__(self, repository: Any = None):
        self.repository = repository or model_repository

    async def _load(self, model_id: str) -> ModelConfig:
        if not model_id:
            raise InvalidModelError("未配置模型")
        row = await self.repository.get_with_provider(model_id)
        if not row or not row.get("is_active") or not row.get("provider_active", True):
            raise InvalidModelError(f"模型不存在或未启用: {model_id}")
        return ModelConfig(
            model_id=row["model"],
            provider=row.get("provider") or "",
            api_config=ApiConfig(api_key=row.get("api_key") or "", base_url=row.get("base_url")),
            capabilities=parse_capabilities(row.get("model_config") or []),
        )

    async def get_model_config(self, dataset_id: str, embedding_model_id: str) -> ModelConfig:
        """解析知识库使用的 Embedding 模型；缺失或未启用抛出 InvalidModelError"""
        try:
            return await self._load(embedding_model_id)
        except InvalidModelError as e:
            logger.error(f"[KB] 获取模型配置失败 dataset={dataset_id}: {e}")
            raise

    async def get_rerank_config(self, rerank_model_id: str) -> ModelConfig:
        return await self._load(rerank_model_id)

    def create_generator(self, model_config: ModelConfig) -> EmbeddingClient:
        try:
            client = EmbeddingClient(model_config)
        except Exception as e:
            raise InvalidModelError(f"创建 Embedding 客户端失败: {e}", VectorizationErrorType.INVALID_MODEL) from e
        logger.info(f"[KB] Embedding 客户端已创建: {model_config.provider}/{model_config.model_id}")
        return client

    def create_reranker(self, model_config: ModelConfig) -> RerankClient:
        return RerankClient(model_config)

    @staticmethod
    def validate_embedding(embedding: Any, model_config: ModelConfig) -> EmbeddingValidation:
        if not isinstance(embedding, (list, tuple)):
            return EmbeddingValidation(valid=False, error="Embedding is not an array")
        if len(embedding) == 0:
            return EmbeddingValidation(valid=False, error="Embedding is empty")
        dimension = model_config.capabilities.dimension
        if dimension and len(embedding) != dimension:
            return EmbeddingValidation(
                valid=False,
                error=f"Dimension mismatch: expected {dimension}, got {len(embedding)}",
            )
        for val in embedding:
            if isinstance(val, bool) or not isinstance(val, (int, float)) or not math.isfinite(val):
                return EmbeddingValidation(valid=False, error="Embedding contains invalid values")
        return EmbeddingValidation(valid=True)

    @staticmethod
    def calculate_optimal_batch_size(
        model_config: ModelConfig,
        total_count: int,
        preferred: int = DEFAULT_BATCH_SIZE,
    ) -> int:
        max_batch_size = model_config.capabilities.max_batch_size
        # 单条模型只能逐条调用
        if max_batch_size <= 1:
            return 1
        size = min(max_batch_size, preferred, total_count)
        logger.debug(
            f"[KB] 批大小: {size} (模型上限 {max_batch_size}, 期望 {preferred}, 总数 {total_count})"
        )
        return max(1, size)

    @staticmethod
    def supports_batch_processing(model_config: ModelConfig) -> bool:
        return model_config.capabilities.max_batch_size > 1


model_adapter = ModelAdapter()
