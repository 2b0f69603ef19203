"""
知识库异常体系与向量化错误分类

- 实体级错误 (NotFoundError / InvalidModelError): 中止本次向量化，由协调器转为失败结果
- 供应商错误 (ProviderError): 在 providers 边界完成分类，携带 error_type
- 分批 / 单条失败: 只记录，不中止
"""
from __future__ import annotations

from enum import Enum
from typing import Any


class VectorizationErrorType(str, Enum):
    TRANSIENT = "transient"            # 网络抖动 / 超时，可重试
    RATE_LIMIT = "rate_limit"          # 限流，可重试（退避更久）
    INVALID_MODEL = "invalid_model"
    INVALID_INPUT = "invalid_input"
    MODEL_NOT_FOUND = "model_not_found"
    AUTH_FAILED = "auth_failed"
    FATAL = "fatal"


# 供队列层参考的重试策略（本模块内部不做重试循环）
RETRY_STRATEGY: dict[str, dict[str, Any]] = {
    "transient": {"max_attempts": 3, "backoff": "exponential", "initial_delay": 1.0, "max_delay": 10.0},
    "rate_limit": {"max_attempts": 5, "backoff": "linear", "initial_delay": 5.0, "max_delay": 30.0},
    "fatal": {"max_attempts": 0, "backoff": "none", "initial_delay": 0.0, "max_delay": 0.0},
}

_RATE_LIMIT_PATTERNS = ("rate limit", "too many requests", "429")
_AUTH_PATTERNS = ("unauthorized", "invalid api key", "401", "403")
_MODEL_PATTERNS = ("model not found", "invalid model")
_INPUT_PATTERNS = ("invalid input", "validation")
_TRANSIENT_PATTERNS = ("timeout", "timed out", "econnreset", "econnrefused", "network")


# ---------------------------------------------------------------------------
# 异常
# ---------------------------------------------------------------------------

class KnowledgeBaseError(Exception):
    """知识库模块异常基类"""


class NotFoundError(KnowledgeBaseError):
    """知识库 / 文档不存在"""


class InvalidModelError(KnowledgeBaseError):
    """模型不存在、未启用或配置不可用"""

    def __init__(self, message: str, error_type: VectorizationErrorType = VectorizationErrorType.INVALID_MODEL):
        super().__init__(message)
        self.error_type = error_type


class ProviderError(KnowledgeBaseError):
    """供应商调用失败（已分类）"""

    def __init__(self, message: str, error_type: VectorizationErrorType = VectorizationErrorType.FATAL):
        super().__init__(message)
        self.error_type = error_type

    @property
    def retryable(self) -> bool:
        return is_retryable_error(self.error_type)


class UnsupportedRetrievalModeError(KnowledgeBaseError):
    pass


class InvalidRetrievalConfigError(KnowledgeBaseError):
    pass


class VectorizationJobError(KnowledgeBaseError):
    """队列任务失败，交给队列按 attempts/backoff 处理"""


# ---------------------------------------------------------------------------
# 分类
# ---------------------------------------------------------------------------

def classify_message(message: str) -> VectorizationErrorType:
    """按错误信息关键字分类，未命中一律视为 fatal"""
    msg = (message or "").lower()
    if any(p in msg for p in _RATE_LIMIT_PATTERNS):
        return VectorizationErrorType.RATE_LIMIT
    if any(p in msg for p in _AUTH_PATTERNS):
        return VectorizationErrorType.AUTH_FAILED
    if any(p in msg for p in _MODEL_PATTERNS):
        return VectorizationErrorType.MODEL_NOT_FOUND
    if any(p in msg for p in _INPUT_PATTERNS):
        return VectorizationErrorType.INVALID_INPUT
    if any(p in msg for p in _TRANSIENT_PATTERNS):
        return VectorizationErrorType.TRANSIENT
    return VectorizationErrorType.FATAL


def classify_error(error: BaseException) -> VectorizationErrorType:
    """已分类的异常直接取 error_type，其余按信息关键字兜底"""
    error_type = getattr(error, "error_type", None)
    if isinstance(error_type, VectorizationErrorType):
        return error_type
    return classify_message(str(error))


def is_retryable_error(error_type: VectorizationErrorType) -> bool:
    return error_type in (VectorizationErrorType.TRANSIENT, VectorizationErrorType.RATE_LIMIT)


def get_retry_strategy(error_type: VectorizationErrorType) -> dict[str, Any]:
    if error_type == VectorizationErrorType.TRANSIENT:
        return RETRY_STRATEGY["transient"]
    if error_type == VectorizationErrorType.RATE_LIMIT:
        return RETRY_STRATEGY["rate_limit"]
    return RETRY_STRATEGY["fatal"]
