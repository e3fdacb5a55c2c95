"""
文档索引服务

单文件重建索引流程 (同一路径全程持有进程内锁，保证并发重建不交错):
  读取文件 → 按 metadata._source 删除旧数据 (失败仅记录日志) → 切块
  → 全部分片向量化 (任一失败则在写入前中止) → 批量写入 Milvus

目录索引: 逐个处理目录下 (不递归) 的 .txt / .md 文件，
单个文件失败记入结果，不影响后续文件。
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import uuid
import weakref
from datetime import datetime
from pathlib import Path
from typing import Union

from . import chunking
from .config import IndexSettings, get_settings
from .embedding import EmbeddingClient, get_embedding_client
from .errors import (
    CallTimeoutError,
    DimensionMismatchError,
    DirectoryNotFoundError,
    DocumentNotFoundError,
    InputError,
    PartialIndexError,
    ProviderError,
    StoreError,
)
from .models import ChunkMetadata, IndexedDocument, IndexingResult, IndexRecord
from .vector_store import MilvusVectorStore, get_vector_store, source_filter

logger = logging.getLogger("rag_index.indexer")

PathLike = Union[str, os.PathLike]


def normalize_source(path: PathLike) -> str:
    """规范化路径并统一使用正斜杠，作为 metadata._source"""
    normalized = os.path.normpath(os.fspath(path))
    return normalized.replace(os.sep, "/")


def record_id(source: str, chunk_index: int) -> str:
    """由 (_source, chunk_index) 生成确定性 ID (基于 MD5 的 name-based UUID)"""
    digest = hashlib.md5(f"{source}_{chunk_index}".encode("utf-8")).digest()
    return str(uuid.UUID(bytes=digest, version=3))


def build_metadata(source: str, chunk: chunking.Chunk, total_chunks: int) -> ChunkMetadata:
    file_name = source.rsplit("/", 1)[-1]
    dot = file_name.rfind(".")
    extension = file_name[dot:] if dot > 0 else ""
    return ChunkMetadata(
        source=source,
        extension=extension,
        file_name=file_name,
        chunk_index=chunk.chunk_index,
        total_chunks=total_chunks,
        title=chunk.title or None,
    )


class DocumentIndexer:

    def __init__(
        self,
        settings: IndexSettings | None = None,
        embedder: EmbeddingClient | None = None,
        store: MilvusVectorStore | None = None,
    ):
        self.settings = settings or get_settings()
        self.embedder = embedder or get_embedding_client()
        self.store = store or get_vector_store()
        # 按 _source 分配的锁，无人持有时自动回收
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, source: str) -> asyncio.Lock:
        lock = self._locks.get(source)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[source] = lock
        return lock

    # ------------------------------------------------------------------
    # 单文件
    # ------------------------------------------------------------------

    async def index_document(self, path: PathLike) -> IndexedDocument:
        """
        重建单个文件的索引。

        Raises:
            DocumentNotFoundError: 路径不存在或不是文件
            ProviderError / CallTimeoutError: 向量化失败 (此时尚未写入任何新分片)
            StoreError: 写入失败
            PartialIndexError: 部分批次已写入后失败
        """
        file_path = Path(path)
        if not file_path.is_file():
            raise DocumentNotFoundError(os.fspath(path))

        source = normalize_source(file_path)
        async with self._lock_for(source):
            return await self._reindex(file_path, source)

    async def _reindex(self, file_path: Path, source: str) -> IndexedDocument:
        logger.info(f"[RAG] 开始索引文件: {source}")

        try:
            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except UnicodeDecodeError as e:
            raise InputError(f"文件不是有效的 UTF-8 文本: {source}") from e
        logger.info(f"[RAG] 读取文件: {source}, 内容长度: {len(content)} 字符")

        deleted = await self._delete_existing(source)

        chunks = chunking.chunk_document(
            content,
            source,
            max_size=self.settings.chunk_max_size,
            overlap=self.settings.chunk_overlap,
        )
        if not chunks:
            logger.info(f"[RAG] 文件无可索引内容: {source}")
            return IndexedDocument(source=source, chunk_count=0, deleted_count=deleted)

        vectors = await self._embed_chunks(source, chunks)
        total = len(chunks)
        records = [
            IndexRecord(
                id=record_id(source, chunk.chunk_index),
                content=chunk.content,
                vector=vector,
                metadata=build_metadata(source, chunk, total),
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        await self._insert_records(source, records)

        logger.info(f"[RAG] 文件索引完成: {source}, 共 {total} 个分片")
        return IndexedDocument(source=source, chunk_count=total, deleted_count=deleted)

    async def _delete_existing(self, source: str) -> int:
        """删除该文件的旧数据；失败视为可能是首次索引，不中断流程"""
        expr = source_filter(source)
        logger.info(f"[RAG] 准备删除旧数据: {expr}")
        try:
            await self.store.ensure_loaded()
            deleted = await self.store.delete(expr)
        except (StoreError, CallTimeoutError) as e:
            logger.warning(f"[RAG] 删除旧数据失败（可能是首次索引）: {source}, {e}")
            return 0
        logger.info(f"[RAG] 已删除旧数据: {source}, 删除记录数: {deleted}")
        return deleted

    async def _embed_chunks(self, source: str, chunks: list[chunking.Chunk]) -> list[list[float]]:
        vectors = await self.embedder.embed_batch([c.content for c in chunks])
        if len(vectors) != len(chunks):
            raise ProviderError(
                f"向量数量与分片数量不一致: {source}, 分片 {len(chunks)}, 向量 {len(vectors)}"
            )
        dim = self.settings.vector_dim
        for vector in vectors:
            if len(vector) != dim:
                raise DimensionMismatchError(dim, len(vector))
        return vectors

    async def _insert_records(self, source: str, records: list[IndexRecord]) -> None:
        await self.store.ensure_loaded()

        batch_size = self.settings.insert_batch_size
        total = len(records)
        inserted = 0
        for start in range(0, total, batch_size):
            batch = records[start:start + batch_size]
            try:
                await self.store.insert(batch)
            except (StoreError, CallTimeoutError) as e:
                logger.error(f"[RAG] 分片写入失败: {source}, 批次 {start}:{start + len(batch)}, {e}")
                if inserted:
                    raise PartialIndexError(source, inserted, total, e) from e
                raise
            inserted += len(batch)
            logger.debug(f"[RAG] 分片 {inserted}/{total} 写入成功: {source}")

    # ------------------------------------------------------------------
    # 目录
    # ------------------------------------------------------------------

    def _list_files(self, directory: Path) -> list[Path]:
        exts = self.settings.supported_extensions
        return sorted(
            p for p in directory.iterdir()
            if p.is_file() and p.suffix.lower() in exts
        )

    async def index_directory(self, directory_path: PathLike | None = None) -> IndexingResult:
        """
        索引目录下的全部受支持文件 (不递归)。

        目录本身无效时抛出 DirectoryNotFoundError；单个文件的失败只记入结果。
        """
        result = IndexingResult(start_time=datetime.now())

        target = directory_path if directory_path and str(directory_path).strip() else self.settings.upload_dir
        directory = Path(os.path.normpath(os.fspath(target)))
        if not directory.is_dir():
            raise DirectoryNotFoundError(os.fspath(target))

        result.directory_path = str(directory.resolve())
        files = await asyncio.to_thread(self._list_files, directory)
        result.total_files = len(files)

        if not files:
            logger.warning(f"[RAG] 目录中没有找到支持的文件: {directory}")
            result.success = True
            result.end_time = datetime.now()
            return result

        logger.info(f"[RAG] 开始索引目录: {directory}, 找到 {len(files)} 个文件")
        for file in files:
            file_path = str(file.resolve())
            try:
                await self.index_document(file_path)
            except Exception as e:
                result.record_failure(file_path, str(e))
                logger.error(f"[RAG] ✗ 文件索引失败: {file.name}", exc_info=True)
                continue
            result.record_success()
            logger.info(f"[RAG] ✓ 文件索引成功: {file.name}")

        result.success = result.fail_count == 0
        result.end_time = datetime.now()
        logger.info(
            f"[RAG] 目录索引完成: 总数={result.total_files}, "
            f"成功={result.success_count}, 失败={result.fail_count}"
        )
        return result


_indexer: DocumentIndexer | None = None


def get_indexer() -> DocumentIndexer:
    global _indexer
    if _indexer is None:
        _indexer = DocumentIndexer()
    return _indexer
