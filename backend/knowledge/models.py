"""
知识库 RAG 核心 Pydantic 数据模型

包含状态枚举、模型配置、检索配置、检索结果以及向量化结果等内部传输对象。
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import VectorizationErrorType


# ---------------------------------------------------------------------------
# 枚举
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """Segment / Document 共用的处理状态；ERROR 仅用于文档（部分失败）"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


class RetrievalMode(str, Enum):
    VECTOR = "vector"
    FULL_TEXT = "full_text"
    HYBRID = "hybrid"


class HybridStrategy(str, Enum):
    WEIGHTED_SCORE = "weighted_score"
    RERANK = "rerank"


# ---------------------------------------------------------------------------
# 模型配置 (Model Adapter)
# ---------------------------------------------------------------------------

class ApiConfig(BaseModel):
    """供应商凭证，随 ModelConfig 显式传入每次调用"""
    api_key: str = ""
    base_url: Optional[str] = None


class ModelCapabilities(BaseModel):
    max_batch_size: int = 1
    max_text_length: Optional[int] = None
    dimension: Optional[int] = None


class ModelConfig(BaseModel):
    """已解析的 Embedding / Rerank 模型配置"""
    model_id: str  # 实际调用的模型名称
    provider: str
    api_config: ApiConfig
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)

    # 关闭受保护命名空间限制，允许使用 model_id 字段名
    model_config = ConfigDict(protected_namespaces=())


class EmbeddingValidation(BaseModel):
    valid: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# 向量化
# ---------------------------------------------------------------------------

class EmbeddingResult(BaseModel):
    """单个 Segment 的向量化结果"""
    segment_id: str
    embedding: list[float] = Field(default_factory=list)
    dimension: int = 0
    model_id: str
    success: bool
    error: Optional[str] = None

    model_config = ConfigDict(protected_namespaces=())


class SegmentError(BaseModel):
    segment_id: str
    error: str
    error_type: VectorizationErrorType


class BatchEmbeddingResponse(BaseModel):
    results: list[EmbeddingResult] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    processing_time: int = Field(0, description="毫秒")
    errors: Optional[list[SegmentError]] = None


def percent(part: int, total: int) -> int:
    """整数百分比，0.5 向上取整"""
    if total <= 0:
        return 0
    return int(part * 100 / total + 0.5)


class VectorizationProgress(BaseModel):
    total: int
    processed: int
    success: int
    failed: int
    percentage: int
    status: ProcessingStatus


class VectorizationResult(BaseModel):
    """一次文档 / 知识库向量化的结构化结果；调用方以 success 判定成败，而非异常"""
    success: bool
    type: Literal["document", "dataset"]
    entity_id: str
    total_segments: int = 0
    success_count: int = 0
    failure_count: int = 0
    processing_time: int = Field(0, description="毫秒")
    final_status: ProcessingStatus
    error: Optional[str] = None
    errors: Optional[list[SegmentError]] = None


# ---------------------------------------------------------------------------
# 检索
# ---------------------------------------------------------------------------

class WeightConfig(BaseModel):
    semantic_weight: Optional[float] = None
    keyword_weight: Optional[float] = None


class RerankConfig(BaseModel):
    enabled: bool = False
    model_id: str = ""

    model_config = ConfigDict(protected_namespaces=())


class RetrievalConfig(BaseModel):
    """知识库检索配置；自定义配置可覆盖知识库默认配置"""
    retrieval_mode: Optional[RetrievalMode] = None
    top_k: Optional[int] = Field(None, ge=1)
    score_threshold: Optional[float] = Field(None, ge=0.0)
    score_threshold_enabled: Optional[bool] = None
    weight_config: Optional[WeightConfig] = None
    rerank_config: Optional[RerankConfig] = None
    strategy: Optional[HybridStrategy] = None


class RetrievalChunk(BaseModel):
    """单条检索命中"""
    id: str
    document_id: str
    content: str
    score: float
    metadata: Optional[dict[str, Any]] = None
    chunk_index: int = 0
    content_length: int = 0
    file_name: Optional[str] = None
    relevance_score: Optional[float] = Field(None, description="Rerank 精排分数 (若启用)")


class RetrievalResult(BaseModel):
    chunks: list[RetrievalChunk]
    total_time: int = Field(0, description="毫秒")
