"""
知识库 RAG 核心

模块职责:
- model_adapter / providers: 模型凭证与能力解析，Embedding / Rerank 供应商客户端
- generator: 批量向量化 (分批、失败隔离、进度回调)
- state: Segment / Document 状态机与事务写入
- vectorization: 文档 / 知识库向量化编排 (不抛异常，返回结构化结果)
- retrieval: 向量 / 全文 / 混合检索与融合
- tasks: Redis RQ 向量化任务
- datasets_service: 更换模型、检索配置、计数校准
"""
from .models import RetrievalConfig, RetrievalResult, VectorizationResult
from .retrieval import query_dataset_with_config
from .vectorization import retry_dataset, retry_document, vectorize_dataset, vectorize_document

__all__ = [
    "RetrievalConfig",
    "RetrievalResult",
    "VectorizationResult",
    "query_dataset_with_config",
    "retry_dataset",
    "retry_document",
    "vectorize_dataset",
    "vectorize_document",
]
