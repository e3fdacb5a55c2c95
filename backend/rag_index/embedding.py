"""
Embedding 服务封装

- 通义千问 text-embedding-v4 (DashScope OpenAI 兼容接口)
- 可通过 RAG_EMBEDDING_BASE_URL / RAG_EMBEDDING_MODEL / RAG_EMBEDDING_API_KEY 覆盖
- 批量请求按 RAG_EMBEDDING_BATCH_SIZE 自动分批
- openai SDK 异常在此统一转换为 AuthError / ProviderError / CallTimeoutError
"""
from __future__ import annotations

import logging
from typing import Any

import openai
from openai import AsyncOpenAI

from .config import IndexSettings, get_settings
from .errors import AuthError, CallTimeoutError, EmptyInputError, ProviderError, with_timeout

logger = logging.getLogger("rag_index.embedding")


def _mask_key(key: str) -> str:
    if len(key) > 12:
        return f"{key[:8]}...{key[-4:]}"
    return "***"


class EmbeddingClient:
    """文本 → 稠密向量"""

    def __init__(self, settings: IndexSettings | None = None, client: AsyncOpenAI | None = None):
        self.settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client

        api_key = self.settings.embedding_api_key
        if not api_key or api_key == "your-api-key-here":
            raise AuthError("Embedding API Key 未配置，请设置 DASHSCOPE_API_KEY 或 RAG_EMBEDDING_API_KEY")

        logger.info(
            f"[RAG] Embedding 客户端初始化: model={self.settings.embedding_model}, "
            f"key={_mask_key(api_key)}"
        )
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.settings.embedding_base_url,
            timeout=self.settings.call_timeout_seconds,
        )
        return self._client

    async def _request(self, batch: list[str]) -> list[list[float]]:
        client = self._get_client()
        model = self.settings.embedding_model
        kwargs: dict[str, Any] = {"model": model, "input": batch}
        if "text-embedding-v" in model:
            kwargs["dimensions"] = self.settings.vector_dim

        try:
            resp = await with_timeout(
                client.embeddings.create(**kwargs),
                operation="embedding",
                seconds=self.settings.call_timeout_seconds,
            )
        except openai.APITimeoutError as e:
            raise CallTimeoutError("embedding", self.settings.call_timeout_seconds) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise AuthError(f"Embedding API Key 无效: {e}") from e
        except openai.OpenAIError as e:
            raise ProviderError(f"生成向量嵌入失败: {e}") from e

        data = getattr(resp, "data", None)
        if not data:
            raise ProviderError("Embedding API 返回空向量列表")
        if len(data) != len(batch):
            raise ProviderError(f"Embedding API 返回数量不一致: 请求 {len(batch)}, 返回 {len(data)}")

        vectors: list[list[float]] = []
        for item in sorted(data, key=lambda x: x.index):
            if not item.embedding:
                raise ProviderError("Embedding API 返回空向量")
            vectors.append([float(v) for v in item.embedding])
        return vectors

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """批量生成向量，顺序与输入一致；任一文本为空白即拒绝整批"""
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise EmptyInputError()

        batch_size = self.settings.embedding_batch_size
        vectors: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            batch = texts[start:start + batch_size]
            vectors.extend(await self._request(batch))
            logger.debug(f"[RAG] Embedding 批次完成: {start + len(batch)}/{len(texts)}")

        logger.info(
            f"[RAG] 批量生成向量完成: 数量={len(vectors)}, 维度={len(vectors[0]) if vectors else 0}"
        )
        return vectors

    async def embed(self, text: str) -> list[float]:
        """单条文本生成向量"""
        if not text or not text.strip():
            raise EmptyInputError()
        vectors = await self._request([text])
        logger.debug(f"[RAG] 生成向量: 内容长度={len(text)}, 维度={len(vectors[0])}")
        return vectors[0]


_embedding_client: EmbeddingClient | None = None


def get_embedding_client() -> EmbeddingClient:
    global _embedding_client
    if _embedding_client is None:
        _embedding_client = EmbeddingClient()
    return _embedding_client
