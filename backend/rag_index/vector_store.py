"""
Milvus 向量存储

Schema (collection 默认 "biz"):
- id: VARCHAR 主键，由 (_source, chunk_index) 确定性生成
- vector: FLOAT_VECTOR(dim)，IVF_FLAT 索引
- content: VARCHAR 分片原文
- metadata: JSON (_source / _extension / _file_name / chunk_index / total_chunks / title)

pymilvus 为同步 SDK，所有调用经 asyncio.to_thread 执行。超时通过 pymilvus 的
timeout 参数下发到 RPC 本身，调用返回时底层写入必然已结束或已放弃；
超时转换为 CallTimeoutError，其余 MilvusException / gRPC 错误转换为 StoreError。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

import grpc
from pymilvus import (
    Collection,
    CollectionSchema,
    DataType,
    FieldSchema,
    MilvusException,
    connections,
    utility,
)

from .config import IndexSettings, get_settings
from .errors import CallTimeoutError, StoreError
from .models import IndexRecord, SearchResult

logger = logging.getLogger("rag_index.vector_store")

T = TypeVar("T")

# Milvus 对已加载 collection 重复 load 时返回的状态码
_ALREADY_LOADED_CODE = 65535


def _entity_field(entity: Any, key: str, default: Any = "") -> Any:
    """兼容 pymilvus 各版本: entity 可能是 dict 或 Hit"""
    if entity is None:
        return default
    if isinstance(entity, dict):
        return entity.get(key, default)
    try:
        val = getattr(entity, key, None)
        return default if val is None else val
    except Exception:
        return default


def _is_already_loaded(e: MilvusException) -> bool:
    code = getattr(e, "code", None)
    message = str(getattr(e, "message", "") or e).lower()
    return code == _ALREADY_LOADED_CODE or "already loaded" in message


def _is_timeout(e: Exception) -> bool:
    """RPC 超时: gRPC DEADLINE_EXCEEDED，或 pymilvus 重试超时 (Retry timeout)"""
    code = getattr(e, "code", None)
    if isinstance(e, grpc.RpcError) and callable(code):
        return code() == grpc.StatusCode.DEADLINE_EXCEEDED
    message = str(getattr(e, "message", "") or e).lower()
    return "retry timeout" in message or "deadline exceeded" in message


def source_filter(source: str) -> str:
    """按 metadata._source 过滤的表达式: metadata["_source"] == "xxx" """
    escaped = source.replace("\\", "\\\\").replace('"', '\\"')
    return f'metadata["_source"] == "{escaped}"'


class MilvusVectorStore:

    def __init__(self, settings: IndexSettings | None = None, alias: str = "default"):
        self.settings = settings or get_settings()
        self.alias = alias
        self._collection: Collection | None = None

    # ------------------------------------------------------------------
    # 连接 / Collection 初始化
    # ------------------------------------------------------------------

    def _connect(self) -> None:
        """按需建立连接（多次调用是幂等的）"""
        s = self.settings
        params: dict[str, Any] = {
            "host": s.milvus_host,
            "port": str(s.milvus_port),
            "db_name": s.milvus_db_name,
            "timeout": s.milvus_timeout_ms / 1000.0,
        }
        if s.milvus_user:
            params["user"] = s.milvus_user
            params["password"] = s.milvus_password
        connections.connect(self.alias, **params)

    def _build_schema(self) -> CollectionSchema:
        s = self.settings
        fields = [
            FieldSchema(
                name="id",
                dtype=DataType.VARCHAR,
                max_length=s.id_max_length,
                is_primary=True,
                auto_id=False,
            ),
            FieldSchema(name="vector", dtype=DataType.FLOAT_VECTOR, dim=s.vector_dim),
            FieldSchema(name="content", dtype=DataType.VARCHAR, max_length=s.content_max_length),
            FieldSchema(name="metadata", dtype=DataType.JSON),
        ]
        return CollectionSchema(
            fields=fields,
            description="Document chunk vectors for retrieval",
            enable_dynamic_field=False,
        )

    def _get_or_create_collection(self) -> Collection:
        if self._collection is not None:
            return self._collection

        self._connect()
        name = self.settings.collection_name
        if utility.has_collection(name, using=self.alias, timeout=self._rpc_timeout):
            logger.info(f"[RAG] Milvus collection '{name}' 已存在")
            self._collection = Collection(name, using=self.alias, timeout=self._rpc_timeout)
            return self._collection

        logger.info(f"[RAG] Milvus collection '{name}' 不存在，正在创建...")
        coll = Collection(
            name=name,
            schema=self._build_schema(),
            using=self.alias,
            shards_num=self.settings.shard_num,
            timeout=self._rpc_timeout,
        )
        coll.create_index(
            field_name="vector",
            index_params={
                "metric_type": self.settings.metric,
                "index_type": "IVF_FLAT",
                "params": {"nlist": self.settings.index_nlist},
            },
            timeout=self._rpc_timeout,
        )
        logger.info(
            f"[RAG] Milvus collection '{name}' 创建完成 "
            f"(dim={self.settings.vector_dim}, metric={self.settings.metric})"
        )
        self._collection = coll
        return coll

    @property
    def _rpc_timeout(self) -> float:
        return self.settings.call_timeout_seconds

    async def _run(self, operation: str, fn: Callable[[], T]) -> T:
        """在线程中执行同步调用，等待其真正返回后再把异常转换为流水线异常"""
        try:
            return await asyncio.to_thread(fn)
        except (MilvusException, grpc.RpcError) as e:
            if _is_timeout(e):
                raise CallTimeoutError(f"milvus.{operation}", self._rpc_timeout) from e
            raise StoreError(f"Milvus {operation} 失败: {e}") from e

    async def ensure_collection(self) -> None:
        """连接 Milvus，collection 不存在时按 schema 创建并建索引"""
        await self._run("ensure_collection", self._get_or_create_collection)

    # ------------------------------------------------------------------
    # 加载 / 删除 / 写入
    # ------------------------------------------------------------------

    def _load(self, coll: Collection) -> None:
        """加载 collection；已加载视为成功"""
        try:
            coll.load(timeout=self._rpc_timeout)
        except MilvusException as e:
            if not _is_already_loaded(e):
                raise

    async def ensure_loaded(self) -> None:
        await self._run("load", lambda: self._load(self._get_or_create_collection()))

    async def delete(self, filter_expr: str) -> int:
        """按过滤表达式删除，返回删除条数"""

        def _delete() -> int:
            coll = self._get_or_create_collection()
            res = coll.delete(filter_expr, timeout=self._rpc_timeout)
            return int(getattr(res, "delete_count", 0) or 0)

        return await self._run("delete", _delete)

    async def insert(self, records: list[IndexRecord]) -> int:
        """写入一批记录，返回写入条数；content 超长时截断到字段上限"""
        if not records:
            return 0

        max_len = self.settings.content_max_length
        entities = [
            [r.id for r in records],
            [r.vector for r in records],
            [r.content[:max_len] for r in records],
            [r.metadata.to_store() for r in records],
        ]

        def _insert() -> int:
            coll = self._get_or_create_collection()
            res = coll.insert(entities, timeout=self._rpc_timeout)
            coll.flush(timeout=self._rpc_timeout)
            return int(getattr(res, "insert_count", len(records)) or len(records))

        return await self._run("insert", _insert)

    # ------------------------------------------------------------------
    # 检索
    # ------------------------------------------------------------------

    async def search(self, query_vector: list[float], top_k: int) -> list[SearchResult]:
        """Top-K 相似度检索，按 Milvus 原生排序返回"""
        metric = self.settings.metric

        def _search() -> list[SearchResult]:
            coll = self._get_or_create_collection()
            self._load(coll)
            results = coll.search(
                data=[query_vector],
                anns_field="vector",
                param={"metric_type": metric, "params": {"nprobe": self.settings.search_nprobe}},
                limit=top_k,
                output_fields=["id", "content", "metadata"],
                timeout=self._rpc_timeout,
            )
            hits: list[SearchResult] = []
            if not results:
                return hits
            for hit in results[0]:
                entity = getattr(hit, "entity", None)
                hits.append(
                    SearchResult(
                        id=str(hit.id),
                        content=_entity_field(entity, "content", ""),
                        score=float(hit.distance),
                        metadata=_entity_field(entity, "metadata", None),
                        metric=metric,
                    )
                )
            return hits

        return await self._run("search", _search)

    # ------------------------------------------------------------------
    # 运维
    # ------------------------------------------------------------------

    async def list_collections(self) -> list[str]:
        def _list() -> list[str]:
            self._connect()
            return list(utility.list_collections(timeout=self._rpc_timeout, using=self.alias))

        return await self._run("list_collections", _list)

    async def drop_collection(self) -> bool:
        """删除 collection，不存在时返回 False；下次写入会自动重建"""
        name = self.settings.collection_name

        def _drop() -> bool:
            self._connect()
            if not utility.has_collection(name, using=self.alias, timeout=self._rpc_timeout):
                return False
            utility.drop_collection(name, timeout=self._rpc_timeout, using=self.alias)
            return True

        dropped = await self._run("drop_collection", _drop)
        self._collection = None
        return dropped


_vector_store: MilvusVectorStore | None = None


def get_vector_store() -> MilvusVectorStore:
    global _vector_store
    if _vector_store is None:
        _vector_store = MilvusVectorStore()
    return _vector_store
