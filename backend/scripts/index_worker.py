#!/usr/bin/env python
"""
目录索引 Worker

用法:
  cd backend && python -m scripts.index_worker

需先启动 Redis，并设置 RAG_USE_QUEUE=true 使 API 将任务入队。
"""
from dotenv import load_dotenv
from rq import Queue, Worker

from rag_index.tasks import QUEUE_NAME, get_redis_connection


def main():
    load_dotenv()
    conn = get_redis_connection()
    queue = Queue(QUEUE_NAME, connection=conn)

    print(f"[RAG Worker] 监听队列: {QUEUE_NAME} (Ctrl+C 退出)")
    worker = Worker([queue], connection=conn)
    worker.work()


if __name__ == "__main__":
    main()
