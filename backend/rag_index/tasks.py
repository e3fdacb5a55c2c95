"""
目录索引异步任务 (Redis RQ)

整目录重建可能持续数分钟 (每个分片都要调用 Embedding)，
设置 RAG_USE_QUEUE=true 后由 Worker 消费，API 只负责入队:
- 服务重启时任务不丢失 (持久化在 Redis)
- 失败自动重试，最终失败进入 RQ failed 队列
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

from .config import get_settings

logger = logging.getLogger("rag_index.tasks")

QUEUE_NAME = "rag_index_tasks"
MAX_RETRIES = 3
RETRY_DELAY = 60  # 秒


def get_redis_connection() -> Redis:
    return Redis.from_url(get_settings().redis_url)


def index_directory_task(directory_path: Optional[str] = None) -> dict[str, Any]:
    """
    同步任务入口: RQ Worker 调用，内部用 asyncio.run 执行目录索引。
    """
    from .indexer import get_indexer

    try:
        result = asyncio.run(get_indexer().index_directory(directory_path))
    except Exception as e:
        logger.error(f"[RAG] 任务 index_directory({directory_path}) 执行失败: {e}")
        raise
    return result.model_dump(mode="json")


def enqueue_index_directory(directory_path: Optional[str] = None) -> str | None:
    """将目录索引任务入队，返回 job_id；Redis 不可用时返回 None"""
    try:
        queue = Queue(QUEUE_NAME, connection=get_redis_connection(), default_timeout=600)
        job = queue.enqueue(
            index_directory_task,
            directory_path,
            job_timeout="30m",
            retry=Retry(max=MAX_RETRIES, interval=RETRY_DELAY),
            failure_ttl=86400,
        )
        return job.id if job else None
    except RedisError as e:
        logger.warning(f"[RAG] 任务入队失败: {e}")
        return None
