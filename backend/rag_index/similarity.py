"""
余弦相似度

独立于 Milvus 配置的距离度量 (默认 L2)，仅用于诊断或调用方自行重打分，
不参与检索排序。
"""
from __future__ import annotations

import math
from typing import Sequence

from .errors import DimensionMismatchError


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    计算两个等长向量的余弦相似度，结果落在 [-1, 1]。

    任一向量为零向量时返回 0.0。
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0

    score = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    # 浮点误差可能使结果略微越界
    return max(-1.0, min(1.0, score))
