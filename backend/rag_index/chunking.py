"""
标题感知切块引擎 (Heading-Aware Chunking)

切块分两级:

Section (章节):
  以 Markdown 标题行 (# ~ ######) 为界，标题行本身归属其后的章节正文。
  第一个标题之前的内容单独成为无标题章节；全文无标题时整篇即一个章节。

Chunk (分片):
  章节不超过 max_size 时整章成为一个分片；否则按空行切段落，
  贪心累积段落直到即将超长，再以上一分片末尾的重叠文本开启下一分片。

约定:
  - 段落永不强制截断: 单个段落本身超过 max_size 时整段保留 (语义完整优先于尺寸上限)
  - chunk_index 在整篇文档内全局递增，从 0 开始
  - 纯函数，无 I/O，相同输入必然得到相同输出
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .config import get_settings

logger = logging.getLogger("rag_index.chunking")

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$", re.MULTILINE)
_PARAGRAPH_BREAK_RE = re.compile(r"\n(?:[ \t\r]*\n)+")
_SENTENCE_ENDINGS = ("。", "？", "！")


@dataclass(frozen=True)
class Section:
    """切块过程中的临时章节，不落库"""
    title: Optional[str]
    content: str
    start_offset: int


@dataclass(frozen=True)
class Chunk:
    """文档分片"""
    content: str
    start_index: int
    end_index: int
    chunk_index: int
    title: Optional[str] = None


# ---------------------------------------------------------------------------
# 章节 / 段落
# ---------------------------------------------------------------------------

def split_by_headings(content: str) -> list[Section]:
    """按 Markdown 标题切分章节，章节正文去除首尾空白"""
    sections: list[Section] = []
    last_end = 0
    current_title: Optional[str] = None

    for match in _HEADING_RE.finditer(content):
        if last_end < match.start():
            body = content[last_end:match.start()].strip()
            if body:
                sections.append(Section(current_title, body, last_end))
        current_title = match.group(2).strip()
        last_end = match.start()

    if last_end < len(content):
        body = content[last_end:].strip()
        if body:
            sections.append(Section(current_title, body, last_end))

    if not sections:
        sections.append(Section(None, content, 0))
    return sections


def split_by_paragraphs(content: str) -> list[str]:
    """按空行 (连续一个或多个) 切分段落，丢弃空段落"""
    paragraphs = []
    for part in _PARAGRAPH_BREAK_RE.split(content):
        part = part.strip()
        if part:
            paragraphs.append(part)
    return paragraphs


def get_overlap_text(text: str, overlap_size: int) -> str:
    """
    从分片末尾截取重叠文本作为下一个分片的开头。

    若截取窗口的后半段出现句末标点 (。？！)，从最后一个标点之后开始，
    丢弃前面残缺的半句；否则直接使用窗口内容。
    """
    size = min(overlap_size, len(text))
    if size <= 0:
        return ""

    window = text[len(text) - size:]
    last_sentence_end = max(window.rfind(p) for p in _SENTENCE_ENDINGS)
    if last_sentence_end > size // 2:
        return window[last_sentence_end + 1:].strip()
    return window.strip()


# ---------------------------------------------------------------------------
# 核心: 切块
# ---------------------------------------------------------------------------

def _chunk_section(
    section: Section,
    start_chunk_index: int,
    max_size: int,
    overlap_size: int,
) -> list[Chunk]:
    content = section.content
    title = section.title

    if len(content) <= max_size:
        return [
            Chunk(
                content=content,
                start_index=section.start_offset,
                end_index=section.start_offset + len(content),
                chunk_index=start_chunk_index,
                title=title,
            )
        ]

    chunks: list[Chunk] = []
    buffer = ""
    buffer_start = section.start_offset
    chunk_index = start_chunk_index

    for paragraph in split_by_paragraphs(content):
        if buffer and len(buffer) + len(paragraph) > max_size:
            chunk_content = buffer.strip()
            chunks.append(
                Chunk(
                    content=chunk_content,
                    start_index=buffer_start,
                    end_index=buffer_start + len(chunk_content),
                    chunk_index=chunk_index,
                    title=title,
                )
            )
            chunk_index += 1

            overlap = get_overlap_text(chunk_content, overlap_size)
            buffer = overlap
            buffer_start = buffer_start + len(chunk_content) - len(overlap)

        buffer += paragraph + "\n\n"

    if buffer:
        chunk_content = buffer.strip()
        chunks.append(
            Chunk(
                content=chunk_content,
                start_index=buffer_start,
                end_index=buffer_start + len(chunk_content),
                chunk_index=chunk_index,
                title=title,
            )
        )

    return chunks


def chunk_document(
    content: str,
    source_ref: str,
    max_size: int | None = None,
    overlap: int | None = None,
) -> list[Chunk]:
    """
    将文档切分为有序分片。

    Args:
        content: 文档全文
        source_ref: 文档标识 (仅用于日志)
        max_size: 分片最大字符数，默认取 RAG_CHUNK_MAX_SIZE
        overlap: 相邻分片重叠字符数，默认取 RAG_CHUNK_OVERLAP

    Returns:
        chunk_index 从 0 连续递增的分片列表；空白文档返回空列表
    """
    if max_size is None or overlap is None:
        settings = get_settings()
        max_size = settings.chunk_max_size if max_size is None else max_size
        overlap = settings.chunk_overlap if overlap is None else overlap

    if not content or not content.strip():
        logger.warning(f"[RAG] 文档内容为空: {source_ref}")
        return []

    chunks: list[Chunk] = []
    for section in split_by_headings(content):
        chunks.extend(_chunk_section(section, len(chunks), max_size, overlap))

    logger.info(f"[RAG] 文档分片完成: {source_ref} -> {len(chunks)} 个分片")
    return chunks
