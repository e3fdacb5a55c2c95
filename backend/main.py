"""
文档索引服务后端
基于 FastAPI 构建的文档切块、向量化与检索服务
"""
import logging
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 必须先加载 .env，再导入依赖环境变量的模块
load_dotenv()

from rag_index.errors import RagIndexError
from rag_index.router import router as index_router
from rag_index.vector_store import get_vector_store

# 配置索引模块日志，确保 [RAG] 切块/向量化/写入过程输出到终端
_rag_log = logging.getLogger("rag_index")
_rag_log.setLevel(logging.INFO)
if not _rag_log.handlers:
    _h = logging.StreamHandler(sys.stdout)
    _h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    _rag_log.addHandler(_h)

logger = logging.getLogger("rag_index.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理: 启动时确保 Milvus collection 存在"""
    logger.info("🚀 文档索引服务启动中...")
    try:
        await get_vector_store().ensure_collection()
    except RagIndexError as e:
        # Milvus 未就绪时服务仍可启动，/api/index/health 会返回 503
        logger.error(f"[RAG] Milvus collection 初始化失败: {e}")
    yield
    logger.info("👋 文档索引服务已关闭")


app = FastAPI(
    title="文档索引服务 📚",
    description="""
文档 → 标题感知切块 → DashScope 向量化 → Milvus 存储，并提供 Top-K 相似度检索。

## 接口

- `POST /api/index/directory`：重建目录下所有 .txt / .md 文件的索引（可选 RQ 队列）
- `POST /api/index/document`：重建单个文件的索引（先删旧数据，再写入新分片）
- `POST /api/index/search`：Top-K 向量检索
- `GET /api/index/health`：Milvus 健康检查
    """,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(index_router, prefix="/api")


@app.get("/api/ping", tags=["debug"])
async def api_ping():
    return {"pong": True, "message": "backend ok"}


@app.get("/health", tags=["health"])
async def health_check():
    """健康检查"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=9900, reload=False)
