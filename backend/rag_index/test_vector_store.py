"""
Milvus 向量库测试: 用内存版 Collection 替换 pymilvus，不连接 Milvus

覆盖 load 容错、检索结果组装、删除 / 写入参数，以及 RPC 超时映射。
"""
from __future__ import annotations

import asyncio
import threading
import time
from types import SimpleNamespace

import grpc
import pytest
from pymilvus import MilvusException

from .conftest import FakeEmbeddingClient
from .errors import CallTimeoutError, StoreError
from .indexer import DocumentIndexer
from .models import ChunkMetadata, IndexRecord
from .vector_store import MilvusVectorStore, source_filter


class _DeadlineExceeded(grpc.RpcError):
    def code(self):
        return grpc.StatusCode.DEADLINE_EXCEEDED

    def details(self):
        return "Deadline Exceeded"


class _Unavailable(grpc.RpcError):
    def code(self):
        return grpc.StatusCode.UNAVAILABLE

    def details(self):
        return "failed to connect to all addresses"


class StubCollection:
    """只实现 MilvusVectorStore 用到的 Collection 方法"""

    def __init__(self, hits=None, load_error=None, delete_result=None, insert_delay=0.0, insert_error=None):
        self.hits = hits or []
        self.load_error = load_error
        self.delete_result = delete_result
        self.insert_delay = insert_delay
        self.insert_error = insert_error
        self.rows: list[dict] = []
        self.calls: list[tuple[str, object]] = []
        self.search_kwargs: dict = {}
        self.in_flight = 0
        self._mutex = threading.Lock()

    def load(self, timeout=None):
        self.calls.append(("load", timeout))
        if self.load_error is not None:
            raise self.load_error

    def delete(self, expr, timeout=None):
        self.calls.append(("delete", expr))
        return self.delete_result

    def insert(self, data, timeout=None):
        self.calls.append(("insert", timeout))
        with self._mutex:
            self.in_flight += 1
        try:
            if self.insert_delay:
                # RPC 截止时间先到则放弃写入
                if timeout is not None and timeout < self.insert_delay:
                    time.sleep(timeout)
                    raise _DeadlineExceeded()
                time.sleep(self.insert_delay)
            if self.insert_error is not None:
                raise self.insert_error
            ids, vectors, contents, metadatas = data
            for row in zip(ids, vectors, contents, metadatas):
                self.rows.append(dict(zip(("id", "vector", "content", "metadata"), row)))
            return SimpleNamespace(insert_count=len(ids))
        finally:
            with self._mutex:
                self.in_flight -= 1

    def flush(self, timeout=None):
        self.calls.append(("flush", timeout))

    def search(self, **kwargs):
        self.search_kwargs = kwargs
        return [self.hits[: kwargs["limit"]]]


def _store(settings, coll: StubCollection) -> MilvusVectorStore:
    store = MilvusVectorStore(settings=settings)
    store._collection = coll
    return store


def _record(content: str, idx: int = 0) -> IndexRecord:
    return IndexRecord(
        id=f"id-{idx}",
        content=content,
        vector=[0.1] * 8,
        metadata=ChunkMetadata(source="docs/a.md", extension=".md", file_name="a.md",
                               chunk_index=idx, total_chunks=1),
    )


# ---------------------------------------------------------------------------
# load
# ---------------------------------------------------------------------------

async def test_already_loaded_code_counts_as_success(settings) -> None:
    coll = StubCollection(load_error=MilvusException(code=65535, message="collection not released"))
    await _store(settings, coll).ensure_loaded()
    assert coll.calls == [("load", settings.call_timeout_seconds)]


async def test_already_loaded_message_counts_as_success(settings) -> None:
    coll = StubCollection(load_error=MilvusException(code=1, message="Collection Already Loaded"))
    await _store(settings, coll).ensure_loaded()


async def test_other_load_error_is_store_error(settings) -> None:
    coll = StubCollection(load_error=MilvusException(code=100, message="collection not found"))
    with pytest.raises(StoreError):
        await _store(settings, coll).ensure_loaded()


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------

def _hits():
    return [
        SimpleNamespace(id="b", distance=0.12, entity={"content": "second", "metadata": {"_source": "x.md", "k": [1]}}),
        SimpleNamespace(id="a", distance=0.57, entity=SimpleNamespace(content="first", metadata={"_source": "y.md"})),
        SimpleNamespace(id=7, distance=1.5, entity={"content": "third"}),
    ]


async def test_search_maps_hits_in_store_order(settings) -> None:
    coll = StubCollection(hits=_hits())
    results = await _store(settings, coll).search([0.0] * 8, top_k=3)

    assert [r.id for r in results] == ["b", "a", "7"]
    assert [r.content for r in results] == ["second", "first", "third"]
    assert [r.score for r in results] == [0.12, 0.57, 1.5]
    assert results[0].metadata == {"_source": "x.md", "k": [1]}
    assert results[1].metadata == {"_source": "y.md"}
    assert results[2].metadata is None
    assert all(r.metric == "L2" for r in results)


async def test_search_passes_query_parameters(settings) -> None:
    coll = StubCollection(hits=_hits())
    await _store(settings, coll).search([0.5] * 8, top_k=2)

    kw = coll.search_kwargs
    assert kw["data"] == [[0.5] * 8]
    assert kw["anns_field"] == "vector"
    assert kw["limit"] == 2
    assert kw["param"] == {"metric_type": "L2", "params": {"nprobe": settings.search_nprobe}}
    assert kw["output_fields"] == ["id", "content", "metadata"]
    assert kw["timeout"] == settings.call_timeout_seconds


async def test_search_tolerates_already_loaded(settings) -> None:
    coll = StubCollection(hits=_hits(), load_error=MilvusException(code=65535, message="already loaded"))
    results = await _store(settings, coll).search([0.0] * 8, top_k=1)
    assert [r.id for r in results] == ["b"]


async def test_search_load_failure_is_store_error(settings) -> None:
    coll = StubCollection(hits=_hits(), load_error=MilvusException(code=100, message="collection not found"))
    with pytest.raises(StoreError):
        await _store(settings, coll).search([0.0] * 8, top_k=1)


async def test_search_empty_collection(settings) -> None:
    assert await _store(settings, StubCollection()).search([0.0] * 8, top_k=3) == []


# ---------------------------------------------------------------------------
# delete / insert
# ---------------------------------------------------------------------------

async def test_delete_uses_escaped_source_filter(settings) -> None:
    coll = StubCollection(delete_result=SimpleNamespace(delete_count=4))
    deleted = await _store(settings, coll).delete(source_filter('docs/"q".md'))

    assert deleted == 4
    assert coll.calls == [("delete", 'metadata["_source"] == "docs/\\"q\\".md"')]


async def test_delete_without_count_returns_zero(settings) -> None:
    assert await _store(settings, StubCollection(delete_result=None)).delete(source_filter("a.md")) == 0


async def test_insert_writes_columns_and_truncates_content(settings) -> None:
    settings = settings.model_copy(update={"content_max_length": 5})
    coll = StubCollection()
    store = _store(settings, coll)

    inserted = await store.insert([_record("abcdefghij"), _record("xyz", 1)])

    assert inserted == 2
    assert [row["content"] for row in coll.rows] == ["abcde", "xyz"]
    assert coll.rows[0]["metadata"] == {
        "_source": "docs/a.md",
        "_extension": ".md",
        "_file_name": "a.md",
        "chunk_index": 0,
        "total_chunks": 1,
    }
    assert ("flush", settings.call_timeout_seconds) in coll.calls


async def test_insert_nothing_skips_collection(settings) -> None:
    coll = StubCollection()
    assert await _store(settings, coll).insert([]) == 0
    assert coll.calls == []


# ---------------------------------------------------------------------------
# 超时
# ---------------------------------------------------------------------------

async def test_retry_timeout_maps_to_call_timeout(settings) -> None:
    error = MilvusException(code=1, message="Retry timeout: 5s, message=server busy")
    coll = StubCollection(insert_error=error)
    with pytest.raises(CallTimeoutError) as exc:
        await _store(settings, coll).insert([_record("text")])
    assert exc.value.operation == "milvus.insert"


async def test_grpc_deadline_maps_to_call_timeout(settings) -> None:
    coll = StubCollection(insert_error=_DeadlineExceeded())
    with pytest.raises(CallTimeoutError):
        await _store(settings, coll).insert([_record("text")])


async def test_grpc_unavailable_is_store_error(settings) -> None:
    coll = StubCollection(insert_error=_Unavailable())
    with pytest.raises(StoreError):
        await _store(settings, coll).insert([_record("text")])


async def test_timed_out_insert_leaves_no_rows_behind(settings, tmp_path) -> None:
    """超时返回时写入调用已结束，之后不会再有迟到的数据落库"""
    settings = settings.model_copy(update={"call_timeout_seconds": 0.1})
    coll = StubCollection(insert_delay=0.3)
    store = _store(settings, coll)
    indexer = DocumentIndexer(settings=settings, embedder=FakeEmbeddingClient(), store=store)
    path = tmp_path / "slow.md"
    path.write_text("slow write", encoding="utf-8")

    with pytest.raises(CallTimeoutError):
        await indexer.index_document(path)

    assert coll.in_flight == 0
    assert ("insert", 0.1) in coll.calls
    await asyncio.sleep(0.4)
    assert coll.rows == []
