"""
向量检索服务

Query → Embedding → Milvus Top-K 检索 → 原样返回 (id / content / score / metadata)。
不做客户端重排、去重或分数阈值过滤，排序以 Milvus 配置的度量为准。
"""
from __future__ import annotations

import logging

from .config import IndexSettings, get_settings
from .embedding import EmbeddingClient, get_embedding_client
from .errors import DimensionMismatchError, EmptyQueryError, InputError
from .models import SearchResult
from .vector_store import MilvusVectorStore, get_vector_store

logger = logging.getLogger("rag_index.retriever")


class DocumentRetriever:

    def __init__(
        self,
        settings: IndexSettings | None = None,
        embedder: EmbeddingClient | None = None,
        store: MilvusVectorStore | None = None,
    ):
        self.settings = settings or get_settings()
        self.embedder = embedder or get_embedding_client()
        self.store = store or get_vector_store()

    async def search(self, query: str, top_k: int | None = None) -> list[SearchResult]:
        """
        搜索相似文档，按相似度从高到低返回。

        Args:
            query: 查询文本
            top_k: 返回条数，默认取 RAG_TOP_K
        """
        if not query or not query.strip():
            raise EmptyQueryError()
        if top_k is None:
            top_k = self.settings.top_k
        if top_k <= 0:
            raise InputError(f"top_k 必须为正数: {top_k}")

        logger.info(f"[RAG] 开始搜索相似文档, 查询: {query}, topK: {top_k}")

        query_vector = await self.embedder.embed(query)
        if len(query_vector) != self.settings.vector_dim:
            raise DimensionMismatchError(self.settings.vector_dim, len(query_vector))
        logger.debug(f"[RAG] 查询向量生成成功, 维度: {len(query_vector)}")

        results = await self.store.search(query_vector, top_k)
        logger.info(f"[RAG] 搜索完成, 找到 {len(results)} 个相似文档")
        return results


_retriever: DocumentRetriever | None = None


def get_retriever() -> DocumentRetriever:
    global _retriever
    if _retriever is None:
        _retriever = DocumentRetriever()
    return _retriever
