"""
索引流水线配置

所有参数来自环境变量 (可由 .env 提供)，非法值回退为默认值:
- 切块: RAG_CHUNK_MAX_SIZE / RAG_CHUNK_OVERLAP
- 检索: RAG_TOP_K
- Embedding: DASHSCOPE_API_KEY / RAG_EMBEDDING_* (DashScope OpenAI 兼容接口)
- Milvus: MILVUS_* 与 collection schema 相关的 RAG_* 参数
"""
from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_EMBEDDING_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
SUPPORTED_METRICS = ("L2", "IP", "COSINE")


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_extensions(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    exts = []
    for part in raw.split(","):
        part = part.strip().lower()
        if not part:
            continue
        exts.append(part if part.startswith(".") else f".{part}")
    return tuple(exts) or default


class IndexSettings(BaseModel):
    """索引 / 检索流水线的全部可调参数"""

    # 切块
    chunk_max_size: int = Field(800, description="每个分片的最大字符数")
    chunk_overlap: int = Field(100, description="相邻分片之间的重叠字符数")

    # 检索
    top_k: int = 3
    metric_type: str = "L2"
    search_nprobe: int = 10

    # 文件
    upload_dir: str = "./uploads"
    supported_extensions: tuple[str, ...] = (".txt", ".md")

    # Embedding
    embedding_api_key: Optional[str] = None
    embedding_base_url: str = DEFAULT_EMBEDDING_BASE_URL
    embedding_model: str = "text-embedding-v4"
    embedding_batch_size: int = 10

    # Milvus
    milvus_host: str = "localhost"
    milvus_port: int = 19530
    milvus_user: str = ""
    milvus_password: str = ""
    milvus_db_name: str = "default"
    milvus_timeout_ms: int = 10000
    collection_name: str = "biz"
    vector_dim: int = 1024
    id_max_length: int = 256
    content_max_length: int = 8192
    shard_num: int = 2
    index_nlist: int = 128
    insert_batch_size: int = 200

    # 每次 Embedding / Milvus 网络调用的超时 (秒)
    call_timeout_seconds: float = 30.0

    # 目录索引是否走 RQ 队列
    use_queue: bool = False
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _validate(self) -> "IndexSettings":
        if self.chunk_max_size <= 0:
            raise ValueError("chunk_max_size 必须为正数")
        if self.chunk_overlap < 0:
            raise ValueError("chunk_overlap 不能为负数")
        if self.top_k <= 0:
            raise ValueError("top_k 必须为正数")
        if self.vector_dim <= 0:
            raise ValueError("vector_dim 必须为正数")
        if self.embedding_batch_size <= 0 or self.insert_batch_size <= 0:
            raise ValueError("batch size 必须为正数")
        if self.call_timeout_seconds <= 0:
            raise ValueError("call_timeout_seconds 必须为正数")
        if self.metric_type.upper() not in SUPPORTED_METRICS:
            raise ValueError(f"不支持的距离度量: {self.metric_type}")
        return self

    @property
    def metric(self) -> str:
        return self.metric_type.upper()

    @property
    def redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @classmethod
    def from_env(cls) -> "IndexSettings":
        return cls(
            chunk_max_size=_env_int("RAG_CHUNK_MAX_SIZE", 800),
            chunk_overlap=_env_int("RAG_CHUNK_OVERLAP", 100),
            top_k=_env_int("RAG_TOP_K", 3),
            metric_type=_env_str("RAG_METRIC_TYPE", "L2"),
            search_nprobe=_env_int("RAG_SEARCH_NPROBE", 10),
            upload_dir=_env_str("RAG_UPLOAD_DIR", "./uploads"),
            supported_extensions=_env_extensions("RAG_SUPPORTED_EXTENSIONS", (".txt", ".md")),
            embedding_api_key=os.getenv("RAG_EMBEDDING_API_KEY") or os.getenv("DASHSCOPE_API_KEY") or None,
            embedding_base_url=_env_str("RAG_EMBEDDING_BASE_URL", DEFAULT_EMBEDDING_BASE_URL),
            embedding_model=_env_str("RAG_EMBEDDING_MODEL", "text-embedding-v4"),
            embedding_batch_size=max(1, _env_int("RAG_EMBEDDING_BATCH_SIZE", 10)),
            milvus_host=_env_str("MILVUS_HOST", "localhost"),
            milvus_port=_env_int("MILVUS_PORT", 19530),
            milvus_user=os.getenv("MILVUS_USER", ""),
            milvus_password=os.getenv("MILVUS_PASSWORD", ""),
            milvus_db_name=_env_str("MILVUS_DB_NAME", "default"),
            milvus_timeout_ms=_env_int("MILVUS_TIMEOUT_MS", 10000),
            collection_name=_env_str("MILVUS_COLLECTION", "biz"),
            vector_dim=_env_int("RAG_VECTOR_DIM", 1024),
            id_max_length=_env_int("RAG_ID_MAX_LENGTH", 256),
            content_max_length=_env_int("RAG_CONTENT_MAX_LENGTH", 8192),
            shard_num=_env_int("RAG_SHARD_NUM", 2),
            index_nlist=_env_int("RAG_INDEX_NLIST", 128),
            insert_batch_size=max(1, _env_int("RAG_INSERT_BATCH_SIZE", 200)),
            call_timeout_seconds=_env_float("RAG_CALL_TIMEOUT_SECONDS", 30.0),
            use_queue=_env_bool("RAG_USE_QUEUE", False),
            redis_host=_env_str("REDIS_HOST", "localhost"),
            redis_port=_env_int("REDIS_PORT", 6379),
            redis_db=_env_int("REDIS_DB", 0),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
        )


_settings: IndexSettings | None = None


def get_settings() -> IndexSettings:
    """进程级配置单例，首次调用时读取环境变量"""
    global _settings
    if _settings is None:
        _settings = IndexSettings.from_env()
    return _settings
