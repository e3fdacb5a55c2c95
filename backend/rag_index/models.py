"""
索引流水线 Pydantic 数据模型

包含写入 Milvus 的记录、检索结果、目录索引结果以及 HTTP 请求/响应体。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ---------------------------------------------------------------------------
# 写入
# ---------------------------------------------------------------------------

class ChunkMetadata(BaseModel):
    """写入 Milvus metadata JSON 字段的分片元数据"""
    source: str = Field(alias="_source")
    extension: str = Field("", alias="_extension")
    file_name: str = Field("", alias="_file_name")
    chunk_index: int
    total_chunks: int
    title: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_store(self) -> dict[str, Any]:
        """序列化为 Milvus JSON 字段，title 为空时不写入"""
        return self.model_dump(by_alias=True, exclude_none=True)


class IndexRecord(BaseModel):
    """一条待写入 Milvus 的向量记录"""
    id: str
    content: str
    vector: list[float]
    metadata: ChunkMetadata


class IndexedDocument(BaseModel):
    """单文件索引结果"""
    source: str
    chunk_count: int
    deleted_count: int = 0


class IndexingResult(BaseModel):
    """目录索引结果，单个文件失败不会中断整体流程"""
    success: bool = False
    directory_path: Optional[str] = None
    total_files: int = 0
    success_count: int = 0
    fail_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    failed_files: dict[str, str] = Field(default_factory=dict)

    @computed_field
    @property
    def duration_ms(self) -> int:
        if self.start_time is None or self.end_time is None:
            return 0
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def record_success(self) -> None:
        self.success_count += 1

    def record_failure(self, file_path: str, error: str) -> None:
        self.fail_count += 1
        self.failed_files[file_path] = error


# ---------------------------------------------------------------------------
# 检索
# ---------------------------------------------------------------------------

class SearchResult(BaseModel):
    """单条检索命中；score 的含义取决于 metric (L2 越小越相似, COSINE/IP 越大越相似)"""
    id: str
    content: str
    score: float
    metadata: Any = None
    metric: str = "L2"


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class IndexDirectoryRequest(BaseModel):
    directory_path: Optional[str] = Field(None, description="目录路径，为空时使用 RAG_UPLOAD_DIR")


class IndexDocumentRequest(BaseModel):
    path: str = Field(..., min_length=1, description="待索引文件路径")


class SearchRequest(BaseModel):
    query: str = Field(..., description="查询文本")
    top_k: Optional[int] = Field(None, ge=1, le=100, description="返回条数，为空时使用 RAG_TOP_K")


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResult]
    total: int


class QueuedJob(BaseModel):
    job_id: str
    status: str = "queued"
