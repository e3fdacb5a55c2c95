"""
索引 / 检索流水线的异常体系

- InputError: 调用方错误 (文件不存在、空查询、向量维度不匹配)，不应重试
- ProviderError: Embedding 服务失败，调用方可自行决定是否重试
- StoreError: Milvus 操作失败
- CallTimeoutError: 单次网络调用超时，与其他失败区分
- PartialIndexError: 文档只写入了一部分分片
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class RagIndexError(Exception):
    """所有流水线异常的基类"""


class InputError(RagIndexError):
    pass


class DocumentNotFoundError(InputError):
    def __init__(self, path: str):
        super().__init__(f"文件不存在: {path}")
        self.path = path


class DirectoryNotFoundError(InputError):
    def __init__(self, path: str):
        super().__init__(f"目录不存在或不是有效目录: {path}")
        self.path = path


class EmptyQueryError(InputError):
    def __init__(self) -> None:
        super().__init__("查询内容不能为空")


class DimensionMismatchError(InputError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"向量维度不匹配: 期望 {expected}, 实际 {actual}")
        self.expected = expected
        self.actual = actual


class ProviderError(RagIndexError):
    pass


class AuthError(ProviderError):
    pass


class EmptyInputError(ProviderError):
    def __init__(self) -> None:
        super().__init__("内容不能为空")


class StoreError(RagIndexError):
    pass


class CallTimeoutError(RagIndexError):
    def __init__(self, operation: str, seconds: float):
        super().__init__(f"{operation} 调用超时 ({seconds:g}s)")
        self.operation = operation
        self.seconds = seconds


class PartialIndexError(RagIndexError):
    def __init__(self, source: str, inserted: int, total: int, cause: Exception):
        super().__init__(
            f"文档部分索引: {source}, 已写入 {inserted}/{total} 个分片, 原因: {cause}"
        )
        self.source = source
        self.inserted = inserted
        self.total = total


async def with_timeout(awaitable: Awaitable[T], *, operation: str, seconds: float) -> T:
    """对单次网络调用施加超时，超时统一转换为 CallTimeoutError"""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise CallTimeoutError(operation, seconds) from e
