"""
查询向量化

按知识库绑定的 Embedding 模型为单条查询生成向量 (与切片向量同一模型、同一维度)。
"""
from __future__ import annotations

import logging

from .errors import ProviderError, VectorizationErrorType
from .model_adapter import ModelAdapter, model_adapter

logger = logging.getLogger("knowledge.embedding")


class EmbeddingHelper:

    def __init__(self, adapter: ModelAdapter | None = None):
        self.adapter = adapter or model_adapter

    async def embed_query(self, dataset_id: str, embedding_model_id: str, text: str) -> list[float]:
        model_config = await self.adapter.get_model_config(dataset_id, embedding_model_id)
        client = self.adapter.create_generator(model_config)
        vector = await client.embed_query(text)
        validation = self.adapter.validate_embedding(vector, model_config)
        if not validation.valid:
            raise ProviderError(f"查询向量无效: {validation.error}", VectorizationErrorType.INVALID_INPUT)
        return list(vector)


embedding_helper = EmbeddingHelper()
