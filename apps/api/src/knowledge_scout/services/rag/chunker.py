from __future__ import annotations

import re

PAGE_BREAK = "\f"

_PAGE_BREAK_PATTERN = re.compile(r"\f+")


def chunk_text(text: str, *, chunk_size: int, chunk_overlap: int = 0) -> list[str]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise ValueError("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    chunks: list[str] = []
    cursor = 0
    text_length = len(text)

    while cursor < text_length:
        end = min(text_length, cursor + chunk_size)
        chunk = text[cursor:end].strip()
        if chunk:
            chunks.append(chunk)

        if end >= text_length:
            break
        cursor = end - chunk_overlap

    return chunks


def split_pages(text: str) -> list[str]:
    return [page.strip() for page in _PAGE_BREAK_PATTERN.split(text) if page.strip()]


def segment_pages(
    pages: list[str],
    *,
    chunk_size: int,
    chunk_overlap: int = 0,
) -> list[str]:
    """Turn raw page texts into non-empty segments.

    Explicit page breaks win. A source that produced a single unbroken page
    (or nothing usable after splitting) is cut into fixed-size chunks instead.
    """
    segments: list[str] = []
    for page in pages:
        segments.extend(split_pages(page))

    if len(segments) != 1:
        return segments
    return chunk_text(segments[0], chunk_size=chunk_size, chunk_overlap=chunk_overlap)
