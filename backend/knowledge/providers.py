"""
供应商客户端 (Embedding / Rerank)

- Embedding: OpenAI 兼容接口 (AsyncOpenAI.embeddings.create)
- Rerank: Jina 风格 HTTP 接口 POST {base_url}/rerank

凭证由 ModelConfig.api_config 显式传入，不持有全局客户端。
供应商异常在此处统一转换为 ProviderError(error_type)。
"""
from __future__ import annotations

import logging
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from .config import get_embedding_timeout, get_rerank_timeout
from .errors import ProviderError, VectorizationErrorType, classify_message
from .models import ModelConfig

logger = logging.getLogger("knowledge.providers")

_OPENAI_ERROR_TYPES: tuple[tuple[type[BaseException], VectorizationErrorType], ...] = (
    (openai.RateLimitError, VectorizationErrorType.RATE_LIMIT),
    (openai.AuthenticationError, VectorizationErrorType.AUTH_FAILED),
    (openai.PermissionDeniedError, VectorizationErrorType.AUTH_FAILED),
    (openai.NotFoundError, VectorizationErrorType.MODEL_NOT_FOUND),
    (openai.BadRequestError, VectorizationErrorType.INVALID_INPUT),
    (openai.APITimeoutError, VectorizationErrorType.TRANSIENT),
    (openai.APIConnectionError, VectorizationErrorType.TRANSIENT),
)


def to_provider_error(error: BaseException) -> ProviderError:
    """SDK / HTTP 异常 → ProviderError；未知类型按错误信息兜底分类"""
    for exc_type, error_type in _OPENAI_ERROR_TYPES:
        if isinstance(error, exc_type):
            return ProviderError(str(error), error_type)
    if isinstance(error, httpx.TimeoutException):
        return ProviderError(str(error) or "timeout", VectorizationErrorType.TRANSIENT)
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return ProviderError(str(error), VectorizationErrorType.RATE_LIMIT)
        if status in (401, 403):
            return ProviderError(str(error), VectorizationErrorType.AUTH_FAILED)
        if status == 404:
            return ProviderError(str(error), VectorizationErrorType.MODEL_NOT_FOUND)
        if status >= 500:
            return ProviderError(str(error), VectorizationErrorType.TRANSIENT)
    if isinstance(error, httpx.TransportError):
        return ProviderError(str(error) or "network error", VectorizationErrorType.TRANSIENT)
    return ProviderError(str(error), classify_message(str(error)))


class EmbeddingClient:
    """绑定单个模型凭证的 Embedding 客户端"""

    def __init__(self, model_config: ModelConfig, client: Any = None):
        self.model_config = model_config
        api = model_config.api_config
        self._client = client or AsyncOpenAI(
            api_key=api.api_key,
            base_url=api.base_url,
            timeout=get_embedding_timeout(),
        )

    @property
    def model(self) -> str:
        return self.model_config.model_id

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """批量向量化，返回顺序与输入一致"""
        if not texts:
            return []
        kwargs: dict[str, Any] = {"model": self.model, "input": texts}
        dimension = self.model_config.capabilities.dimension
        if dimension and "text-embedding-v" in self.model:
            kwargs["dimensions"] = dimension
        try:
            resp = await self._client.embeddings.create(**kwargs)
        except Exception as e:
            raise to_provider_error(e) from e
        data = sorted(resp.data, key=lambda x: x.index)
        return [d.embedding for d in data]

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_documents([text])
        if not vectors:
            raise ProviderError("empty embedding response", VectorizationErrorType.FATAL)
        return vectors[0]


class RerankClient:
    """绑定单个模型凭证的 Rerank 客户端"""

    def __init__(self, model_config: ModelConfig, http_client: httpx.AsyncClient | None = None):
        self.model_config = model_config
        self._http_client = http_client

    def _url(self) -> str:
        base = (self.model_config.api_config.base_url or "").rstrip("/")
        if not base:
            raise ProviderError("rerank base_url 未配置", VectorizationErrorType.INVALID_MODEL)
        return base if base.endswith("/rerank") else f"{base}/rerank"

    async def rerank(
        self,
        query: str,
        documents: list[str],
        top_n: int | None = None,
    ) -> list[tuple[int, float]]:
        """
        返回 [(original_index, relevance_score), ...]，按分数降序。
        """
        if not documents:
            return []
        body = {
            "model": self.model_config.model_id,
            "query": query,
            "documents": documents,
            "top_n": top_n or len(documents),
            "return_documents": False,
        }
        headers = {
            "Authorization": f"Bearer {self.model_config.api_config.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._http_client is not None:
                resp = await self._http_client.post(self._url(), json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=get_rerank_timeout()) as client:
                    resp = await client.post(self._url(), json=body, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except ProviderError:
            raise
        except Exception as e:
            raise to_provider_error(e) from e

        output: list[tuple[int, float]] = []
        for r in data.get("results", []):
            idx = r.get("index", -1)
            if isinstance(idx, int) and 0 <= idx < len(documents):
                output.append((idx, float(r.get("relevance_score", r.get("score", 0.0)))))
        output.sort(key=lambda x: x[1], reverse=True)
        return output
