"""
错误分类与供应商异常映射测试

运行方式（在仓库根目录下）:

    pytest backend/knowledge/test_errors.py
"""
from __future__ import annotations

import httpx
import openai

from knowledge.errors import (
    InvalidModelError,
    ProviderError,
    VectorizationErrorType,
    classify_error,
    classify_message,
    get_retry_strategy,
    is_retryable_error,
)
from knowledge.providers import to_provider_error

_REQUEST = httpx.Request("POST", "http://provider.local/v1/embeddings")


def _response(status: int) -> httpx.Response:
    return httpx.Response(status, request=_REQUEST)


# ---------------------------------------------------------------------------
# 1. 关键字分类
# ---------------------------------------------------------------------------

def test_classify_message_patterns() -> None:
    """按错误信息关键字分类"""
    assert classify_message("Rate limit exceeded") == VectorizationErrorType.RATE_LIMIT
    assert classify_message("HTTP 429") == VectorizationErrorType.RATE_LIMIT
    assert classify_message("Invalid API key provided") == VectorizationErrorType.AUTH_FAILED
    assert classify_message("model not found: foo") == VectorizationErrorType.MODEL_NOT_FOUND
    assert classify_message("validation failed") == VectorizationErrorType.INVALID_INPUT
    assert classify_message("Request timed out") == VectorizationErrorType.TRANSIENT
    assert classify_message("ECONNRESET") == VectorizationErrorType.TRANSIENT
    assert classify_message("something odd") == VectorizationErrorType.FATAL
    assert classify_message("") == VectorizationErrorType.FATAL


def test_classify_error_prefers_error_type() -> None:
    """已分类异常直接取 error_type，不看信息内容"""
    err = ProviderError("timeout while calling", VectorizationErrorType.AUTH_FAILED)
    assert classify_error(err) == VectorizationErrorType.AUTH_FAILED
    assert classify_error(InvalidModelError("x")) == VectorizationErrorType.INVALID_MODEL
    assert classify_error(RuntimeError("connection timeout")) == VectorizationErrorType.TRANSIENT


def test_retry_strategy() -> None:
    assert is_retryable_error(VectorizationErrorType.TRANSIENT)
    assert is_retryable_error(VectorizationErrorType.RATE_LIMIT)
    assert not is_retryable_error(VectorizationErrorType.AUTH_FAILED)
    assert not is_retryable_error(VectorizationErrorType.FATAL)

    assert get_retry_strategy(VectorizationErrorType.TRANSIENT)["max_attempts"] == 3
    assert get_retry_strategy(VectorizationErrorType.RATE_LIMIT)["max_delay"] == 30.0
    assert get_retry_strategy(VectorizationErrorType.INVALID_INPUT)["max_attempts"] == 0
    assert ProviderError("x", VectorizationErrorType.RATE_LIMIT).retryable
    assert not ProviderError("x").retryable


# ---------------------------------------------------------------------------
# 2. 供应商异常映射
# ---------------------------------------------------------------------------

def test_openai_errors_mapped() -> None:
    """openai SDK 异常 → ProviderError"""
    rate = openai.RateLimitError("slow down", response=_response(429), body=None)
    auth = openai.AuthenticationError("bad key", response=_response(401), body=None)
    missing = openai.NotFoundError("no such model", response=_response(404), body=None)
    timeout = openai.APITimeoutError(request=_REQUEST)

    assert to_provider_error(rate).error_type == VectorizationErrorType.RATE_LIMIT
    assert to_provider_error(auth).error_type == VectorizationErrorType.AUTH_FAILED
    assert to_provider_error(missing).error_type == VectorizationErrorType.MODEL_NOT_FOUND
    assert to_provider_error(timeout).error_type == VectorizationErrorType.TRANSIENT


def test_httpx_errors_mapped() -> None:
    """Rerank 使用的 httpx 异常 → ProviderError"""
    too_many = httpx.HTTPStatusError("429", request=_REQUEST, response=_response(429))
    server = httpx.HTTPStatusError("502", request=_REQUEST, response=_response(502))
    timeout = httpx.ReadTimeout("read timeout", request=_REQUEST)

    assert to_provider_error(too_many).error_type == VectorizationErrorType.RATE_LIMIT
    assert to_provider_error(server).error_type == VectorizationErrorType.TRANSIENT
    assert to_provider_error(timeout).error_type == VectorizationErrorType.TRANSIENT
    assert to_provider_error(ValueError("weird")).error_type == VectorizationErrorType.FATAL
