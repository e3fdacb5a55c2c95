"""
一键删除文档向量 collection。

⚠️ 高危操作，仅用于本地开发/测试环境 (例如修改向量维度后重建 collection)。
下次服务启动或写入时会按当前配置自动重建 collection 与索引。

使用方式:
    cd backend
    RAG_CLEAR_CONFIRM=yes python -m rag_index.clear_index
"""
from __future__ import annotations

import asyncio
import logging
import os

from dotenv import load_dotenv

from .errors import RagIndexError
from .vector_store import MilvusVectorStore

logger = logging.getLogger("rag_index.clear")


async def main() -> int:
    load_dotenv()
    confirm = os.getenv("RAG_CLEAR_CONFIRM", "").strip().lower()
    if confirm not in ("yes", "true", "i_know_what_i_am_doing"):
        logger.warning(
            "⚠️ 将要删除 Milvus 中的文档向量 collection。\n"
            "若确认要执行，请在环境变量中设置 RAG_CLEAR_CONFIRM=yes 后再运行:\n"
            "    RAG_CLEAR_CONFIRM=yes python -m rag_index.clear_index"
        )
        return 1

    store = MilvusVectorStore()
    name = store.settings.collection_name
    logger.info(f"[RAG] 连接 Milvus: {store.settings.milvus_host}:{store.settings.milvus_port}")
    try:
        dropped = await store.drop_collection()
    except RagIndexError as e:
        logger.error(f"[RAG] Milvus 清理失败: {e}")
        return 2

    if dropped:
        logger.info(f"[RAG] Milvus collection '{name}' 已删除")
    else:
        logger.info(f"[RAG] Milvus collection '{name}' 不存在，无需删除")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    raise SystemExit(asyncio.run(main()))
