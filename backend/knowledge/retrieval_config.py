"""
检索配置构建与校验

保存知识库检索配置前调用 build_retrieval_config:
- hybrid: 权重默认 0.7 / 0.3，两者之和必须为 1 (容差 0.01)，策略默认 weighted_score
- vector: 权重固定 1 / 0；full_text: 权重固定 0 / 1
- 启用 Rerank 必须指定模型；hybrid 的 rerank 策略要求已启用 Rerank
"""
from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from .config import DEFAULT_KEYWORD_WEIGHT, DEFAULT_SEMANTIC_WEIGHT, WEIGHT_SUM_TOLERANCE
from .errors import InvalidRetrievalConfigError
from .models import HybridStrategy, RerankConfig, RetrievalConfig, RetrievalMode, WeightConfig


def build_weight_config(weight_config: WeightConfig | None, mode: RetrievalMode | None) -> WeightConfig:
    if mode == RetrievalMode.HYBRID:
        semantic = DEFAULT_SEMANTIC_WEIGHT
        keyword = DEFAULT_KEYWORD_WEIGHT
        if weight_config is not None:
            if weight_config.semantic_weight is not None:
                semantic = weight_config.semantic_weight
            if weight_config.keyword_weight is not None:
                keyword = weight_config.keyword_weight
        if abs(semantic + keyword - 1) > WEIGHT_SUM_TOLERANCE:
            raise InvalidRetrievalConfigError("语义权重与关键词权重之和必须为 1")
        return WeightConfig(semantic_weight=semantic, keyword_weight=keyword)
    if mode == RetrievalMode.VECTOR:
        return WeightConfig(semantic_weight=1.0, keyword_weight=0.0)
    if mode == RetrievalMode.FULL_TEXT:
        return WeightConfig(semantic_weight=0.0, keyword_weight=1.0)
    return WeightConfig()


def build_rerank_config(rerank_config: RerankConfig | None) -> RerankConfig | None:
    if rerank_config is None:
        return None
    if rerank_config.enabled and not rerank_config.model_id:
        raise InvalidRetrievalConfigError("启用 Rerank 时必须指定模型")
    return RerankConfig(enabled=rerank_config.enabled, model_id=rerank_config.model_id or "")


def build_retrieval_config(data: RetrievalConfig | dict[str, Any]) -> RetrievalConfig:
    if isinstance(data, dict):
        try:
            data = RetrievalConfig.model_validate(data)
        except ValidationError as e:
            raise InvalidRetrievalConfigError(f"检索配置格式错误: {e}") from e

    mode = data.retrieval_mode
    config = RetrievalConfig(
        retrieval_mode=mode,
        top_k=data.top_k,
        score_threshold=data.score_threshold,
        score_threshold_enabled=data.score_threshold_enabled,
        weight_config=build_weight_config(data.weight_config, mode),
        rerank_config=build_rerank_config(data.rerank_config),
    )

    if mode == RetrievalMode.HYBRID:
        config.strategy = data.strategy or HybridStrategy.WEIGHTED_SCORE
        if config.strategy == HybridStrategy.RERANK and not (config.rerank_config and config.rerank_config.enabled):
            raise InvalidRetrievalConfigError("混合检索使用 rerank 策略时必须启用 Rerank 并指定模型")

    return config
