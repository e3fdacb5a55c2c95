"""
供 Agent 调用的内部文档检索工具

返回 JSON 字符串；检索失败时返回 status=error 的 JSON，工具边界不向 Agent 抛异常。
"""
from __future__ import annotations

import json
import logging

from .errors import RagIndexError
from .retriever import DocumentRetriever, get_retriever

logger = logging.getLogger("rag_index.tools")

QUERY_INTERNAL_DOCS_DESCRIPTION = (
    "Use this tool to search internal documentation and knowledge base for relevant information. "
    "It performs RAG (Retrieval-Augmented Generation) to find similar documents and extract processing steps. "
    "This is useful when you need to understand internal procedures, best practices, or step-by-step guides "
    "stored in the company's documentation."
)


async def query_internal_docs(
    query: str,
    top_k: int | None = None,
    retriever: DocumentRetriever | None = None,
) -> str:
    retriever = retriever or get_retriever()
    try:
        results = await retriever.search(query, top_k)
    except RagIndexError as e:
        logger.error(f"[RAG] queryInternalDocs 执行失败: {e}", exc_info=True)
        return json.dumps(
            {"status": "error", "message": f"Failed to query internal docs: {e}"},
            ensure_ascii=False,
        )

    if not results:
        return json.dumps(
            {"status": "no_results", "message": "No relevant documents found in the knowledge base."},
            ensure_ascii=False,
        )
    return json.dumps([r.model_dump(mode="json") for r in results], ensure_ascii=False)
