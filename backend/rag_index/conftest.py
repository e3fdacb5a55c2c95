"""
测试夹具: 内存版 Embedding 客户端与向量库，与真实实现方法签名一致。
"""
from __future__ import annotations

import asyncio
import hashlib
import math
import re

import pytest

from .config import IndexSettings
from .errors import ProviderError, StoreError
from .indexer import DocumentIndexer
from .models import IndexRecord, SearchResult
from .retriever import DocumentRetriever

_SOURCE_EXPR_RE = re.compile(r'^metadata\["_source"\] == "(.*)"$')


def fake_vector(text: str, dim: int) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i % len(digest)] + 1) / 256.0 for i in range(dim)]


class FakeEmbeddingClient:

    def __init__(self, dim: int = 8, fail_on: str | None = None, delay: float = 0.0):
        self.dim = dim
        self.fail_on = fail_on
        self.delay = delay
        self.calls: list[list[str]] = []

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise ProviderError("生成向量嵌入失败: quota exceeded")
        return [fake_vector(t, self.dim) for t in texts]

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]


class FakeVectorStore:

    def __init__(self, metric: str = "L2", delay: float = 0.0):
        self.metric = metric
        self.delay = delay
        self.rows: dict[str, dict] = {}
        self.ops: list[tuple[str, object]] = []
        self.fail_delete = False
        self.fail_insert_at: int | None = None
        self.insert_calls = 0
        self.collections = ["biz"]

    async def ensure_loaded(self) -> None:
        self.ops.append(("load", None))

    async def delete(self, filter_expr: str) -> int:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_delete:
            raise StoreError("Milvus delete 失败: collection not loaded")
        match = _SOURCE_EXPR_RE.match(filter_expr)
        assert match, filter_expr
        source = match.group(1).replace('\\"', '"').replace("\\\\", "\\")
        doomed = [k for k, v in self.rows.items() if v["metadata"]["_source"] == source]
        for k in doomed:
            del self.rows[k]
        self.ops.append(("delete", source))
        return len(doomed)

    async def insert(self, records: list[IndexRecord]) -> int:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.insert_calls += 1
        if self.fail_insert_at is not None and self.insert_calls >= self.fail_insert_at:
            raise StoreError("Milvus insert 失败: channel closed")
        for r in records:
            self.rows[r.id] = {
                "content": r.content,
                "vector": r.vector,
                "metadata": r.metadata.to_store(),
            }
        self.ops.append(("insert", len(records)))
        return len(records)

    async def search(self, query_vector: list[float], top_k: int) -> list[SearchResult]:
        scored = []
        for row_id, row in self.rows.items():
            dist = math.sqrt(sum((a - b) ** 2 for a, b in zip(query_vector, row["vector"])))
            scored.append((dist, row_id, row))
        scored.sort(key=lambda x: x[0])
        return [
            SearchResult(id=row_id, content=row["content"], score=dist, metadata=row["metadata"], metric=self.metric)
            for dist, row_id, row in scored[:top_k]
        ]

    async def list_collections(self) -> list[str]:
        return list(self.collections)

    def rows_for(self, source: str) -> dict[str, dict]:
        return {k: v for k, v in self.rows.items() if v["metadata"]["_source"] == source}


@pytest.fixture
def settings(tmp_path) -> IndexSettings:
    return IndexSettings(
        chunk_max_size=100,
        chunk_overlap=20,
        top_k=3,
        vector_dim=8,
        upload_dir=str(tmp_path),
        embedding_api_key="test-key",
        call_timeout_seconds=5.0,
    )


@pytest.fixture
def embedder() -> FakeEmbeddingClient:
    return FakeEmbeddingClient(dim=8)


@pytest.fixture
def store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def indexer(settings, embedder, store) -> DocumentIndexer:
    return DocumentIndexer(settings=settings, embedder=embedder, store=store)


@pytest.fixture
def retriever(settings, embedder, store) -> DocumentRetriever:
    return DocumentRetriever(settings=settings, embedder=embedder, store=store)
