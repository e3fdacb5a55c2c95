"""
文档索引 FastAPI 路由（挂载于 /api/index）

directory 批量重建目录索引 (可选走 RQ 队列)；document 重建单个文件；
search 为 Top-K 向量检索；health 检查 Milvus 连通性。
"""
from __future__ import annotations

import logging
from typing import Union

from fastapi import APIRouter, Depends, HTTPException

from . import tasks
from .config import IndexSettings, get_settings
from .errors import (
    CallTimeoutError,
    DirectoryNotFoundError,
    DocumentNotFoundError,
    InputError,
    RagIndexError,
)
from .indexer import DocumentIndexer, get_indexer
from .models import (
    IndexDirectoryRequest,
    IndexDocumentRequest,
    IndexedDocument,
    IndexingResult,
    QueuedJob,
    SearchRequest,
    SearchResponse,
)
from .retriever import DocumentRetriever, get_retriever
from .vector_store import MilvusVectorStore, get_vector_store

logger = logging.getLogger("rag_index.router")

router = APIRouter(prefix="/index", tags=["index"])


def _to_http_error(e: RagIndexError) -> HTTPException:
    if isinstance(e, (DocumentNotFoundError, DirectoryNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InputError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, CallTimeoutError):
        return HTTPException(status_code=504, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


@router.post(
    "/directory",
    response_model=Union[QueuedJob, IndexingResult],
    summary="重建目录索引",
)
async def index_directory(
    body: IndexDirectoryRequest,
    indexer: DocumentIndexer = Depends(get_indexer),
    settings: IndexSettings = Depends(get_settings),
):
    """
    索引目录下所有 .txt / .md 文件。

    - directory_path 为空时使用 RAG_UPLOAD_DIR
    - RAG_USE_QUEUE=true 且 Redis 可用时入队并返回 job_id
    """
    if settings.use_queue:
        job_id = tasks.enqueue_index_directory(body.directory_path)
        if job_id:
            logger.info(f"[RAG] 目录索引任务已入队: job_id={job_id}")
            return QueuedJob(job_id=job_id)
        logger.warning("[RAG] 队列不可用，改为同步执行目录索引")

    try:
        return await indexer.index_directory(body.directory_path)
    except RagIndexError as e:
        raise _to_http_error(e)


@router.post("/document", response_model=IndexedDocument, summary="重建单个文件索引")
async def index_document(
    body: IndexDocumentRequest,
    indexer: DocumentIndexer = Depends(get_indexer),
):
    try:
        return await indexer.index_document(body.path)
    except RagIndexError as e:
        logger.error(f"[RAG] 文件索引失败: {body.path}, {e}")
        raise _to_http_error(e)


@router.post("/search", response_model=SearchResponse, summary="相似文档检索")
async def search(
    body: SearchRequest,
    retriever: DocumentRetriever = Depends(get_retriever),
):
    try:
        results = await retriever.search(body.query, body.top_k)
    except RagIndexError as e:
        raise _to_http_error(e)
    return SearchResponse(query=body.query, results=results, total=len(results))


@router.get("/health", summary="Milvus 健康检查")
async def health(store: MilvusVectorStore = Depends(get_vector_store)):
    try:
        collections = await store.list_collections()
    except RagIndexError as e:
        raise HTTPException(status_code=503, detail=f"Milvus 连接失败: {e}")
    return {"status": "ok", "collections": collections}
