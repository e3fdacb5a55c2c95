"""
文档索引与检索流水线

模块职责:
- chunking: 标题感知切块 (Section → Chunk，带重叠)
- embedding: DashScope 向量化服务封装
- vector_store: Milvus collection 管理与 load/delete/insert/search
- indexer: 单文件 / 目录重建索引 (先删后写，按路径加锁)
- retriever: Query 向量化 + Top-K 检索
- similarity: 余弦相似度 (诊断用)
- router: FastAPI HTTP 接口
- tools: 供 Agent 调用的 query_internal_docs
- tasks: 目录索引 RQ 异步任务
"""
from .chunking import Chunk, chunk_document
from .indexer import DocumentIndexer, get_indexer
from .retriever import DocumentRetriever, get_retriever
from .similarity import cosine_similarity

__all__ = [
    "Chunk",
    "chunk_document",
    "DocumentIndexer",
    "get_indexer",
    "DocumentRetriever",
    "get_retriever",
    "cosine_similarity",
]
