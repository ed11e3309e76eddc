"""Format-aware text extraction for uploaded documents.

Every reader returns raw page texts; explicit page breaks inside a page are
marked with a form feed. ``segment_pages`` then turns them into the ordered,
non-empty segments that become chunks.
"""

from __future__ import annotations

import io
import logging
from typing import Callable

from docx import Document as DocxDocument
from docx.oxml.ns import qn
import pdfplumber

from knowledge_scout.errors import ExtractionFailed, UnsupportedFormat
from knowledge_scout.services.rag.chunker import PAGE_BREAK, segment_pages

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ("pdf", "docx", "txt")


def normalize_extension(extension: str) -> str:
    return extension.strip().lower().lstrip(".")


def _read_pdf(data: bytes) -> list[str]:
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        return [page.extract_text() or "" for page in pdf.pages]


def _docx_paragraph_text(paragraph) -> str:
    parts: list[str] = []
    if paragraph.paragraph_format.page_break_before:
        parts.append(PAGE_BREAK)

    for run in paragraph.runs:
        for child in run._r.iterchildren():
            if child.tag == qn("w:t"):
                parts.append(child.text or "")
            elif child.tag == qn("w:tab"):
                parts.append("\t")
            elif child.tag == qn("w:br"):
                parts.append(PAGE_BREAK if child.get(qn("w:type")) == "page" else "\n")
    return "".join(parts)


def _read_docx(data: bytes) -> list[str]:
    document = DocxDocument(io.BytesIO(data))
    return ["\n".join(_docx_paragraph_text(paragraph) for paragraph in document.paragraphs)]


def _read_txt(data: bytes) -> list[str]:
    return [data.decode("utf-8-sig", errors="replace")]


_READERS: dict[str, Callable[[bytes], list[str]]] = {
    "pdf": _read_pdf,
    "docx": _read_docx,
    "txt": _read_txt,
}


def extract(
    extension: str,
    data: bytes,
    *,
    chunk_size: int = 2000,
    chunk_overlap: int = 0,
) -> list[str]:
    normalized = normalize_extension(extension)
    reader = _READERS.get(normalized)
    if reader is None:
        raise UnsupportedFormat(
            f"unsupported file extension '{extension}' (supported: {', '.join(SUPPORTED_EXTENSIONS)})"
        )

    if not data.strip():
        return []

    try:
        pages = reader(data)
    except Exception as exc:
        # pdfminer and python-docx raise a wide range of parser errors
        raise ExtractionFailed(f"could not read .{normalized} file: {exc}") from exc

    segments = segment_pages(pages, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    logger.debug("extracted extension=%s pages=%s segments=%s", normalized, len(pages), len(segments))
    return segments
