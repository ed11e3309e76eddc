from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from knowledge_scout.errors import (
    EmbeddingFailed,
    ExtractionFailed,
    FileTooLarge,
    InvalidInput,
    UnsupportedFormat,
)
from knowledge_scout.services.rag.chunk_store import ChunkStore
from knowledge_scout.services.rag.document_registry import VISIBILITIES, DocumentRegistry
from knowledge_scout.services.rag.embedding_client import EmbeddingClient
from knowledge_scout.services.rag.extraction import (
    SUPPORTED_EXTENSIONS,
    extract,
    normalize_extension,
)
from knowledge_scout.services.rag.types import DocumentInfo, IndexingSummary
from knowledge_scout.storage import BlobStore

logger = logging.getLogger(__name__)


def validate_upload(
    *,
    filename: str | None,
    size: int,
    max_bytes: int,
    visibility: str | None,
) -> tuple[str, str]:
    """Return ``(extension, visibility)`` for an acceptable upload."""
    if not filename:
        raise InvalidInput("file is required")

    extension = normalize_extension(Path(filename).suffix)
    if extension not in SUPPORTED_EXTENSIONS:
        raise InvalidInput(
            f"unsupported file extension '{Path(filename).suffix or filename}' "
            f"(supported: {', '.join('.' + ext for ext in SUPPORTED_EXTENSIONS)})"
        )
    if size > max_bytes:
        raise FileTooLarge(f"file exceeds the {max_bytes} byte upload limit", max_bytes=max_bytes)

    resolved_visibility = (visibility or "private").strip().lower()
    if resolved_visibility not in VISIBILITIES:
        raise InvalidInput(f"visibility must be one of {', '.join(VISIBILITIES)}")
    return extension, resolved_visibility


class DocumentIndexer:
    def __init__(
        self,
        *,
        registry: DocumentRegistry,
        chunk_store: ChunkStore,
        embedding_client: EmbeddingClient,
        blob_store: BlobStore,
        chunk_size: int = 2000,
        chunk_overlap: int = 0,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._embedding_client = embedding_client
        self._blob_store = blob_store
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._max_upload_bytes = max_upload_bytes

    @property
    def max_upload_bytes(self) -> int:
        return self._max_upload_bytes

    async def upload(
        self,
        *,
        owner_id: str,
        filename: str | None,
        data: bytes,
        title: str | None = None,
        visibility: str | None = None,
    ) -> IndexingSummary:
        extension, resolved_visibility = validate_upload(
            filename=filename,
            size=len(data),
            max_bytes=self._max_upload_bytes,
            visibility=visibility,
        )
        filename = str(filename)

        blob = await asyncio.to_thread(self._blob_store.put, data, filename)
        document = await asyncio.to_thread(
            lambda: self._registry.create(
                owner_id=owner_id,
                title=(title or "").strip() or filename,
                original_name=filename,
                visibility=resolved_visibility,
                storage_url=blob.url,
                storage_resource_id=blob.resource_id,
            )
        )
        logger.info(
            "upload accepted doc_id=%s owner=%s extension=%s bytes=%s",
            document.id,
            owner_id,
            extension,
            len(data),
        )
        return await self.index(document, extension=extension, data=data)

    async def index(self, document: DocumentInfo, *, extension: str, data: bytes) -> IndexingSummary:
        try:
            segments = await asyncio.to_thread(
                extract,
                extension,
                data,
                chunk_size=self._chunk_size,
                chunk_overlap=self._chunk_overlap,
            )
        except (UnsupportedFormat, ExtractionFailed) as exc:
            await asyncio.to_thread(lambda: self._registry.mark_failed(document.id, error=exc.detail))
            logger.warning("extraction failed doc_id=%s error=%s", document.id, exc.detail)
            exc.extra["document_id"] = document.id
            raise

        if not segments:
            detail = "no extractable text found in upload"
            await asyncio.to_thread(lambda: self._registry.mark_failed(document.id, error=detail))
            logger.warning("extraction produced no segments doc_id=%s", document.id)
            raise ExtractionFailed(detail, document_id=document.id)

        embeddings = await self._embedding_client.embed_batch(segments)
        rows = [
            (page_number, text, embedding)
            for page_number, (text, embedding) in enumerate(zip(segments, embeddings), start=1)
        ]
        await asyncio.to_thread(self._chunk_store.replace_document_chunks, document.id, rows)

        failed_segments = sum(1 for embedding in embeddings if not embedding)
        indexed = await asyncio.to_thread(
            lambda: self._registry.mark_indexed(document.id, pages=len(segments))
        )
        logger.info(
            "document indexed doc_id=%s pages=%s failed_segments=%s",
            document.id,
            len(segments),
            failed_segments,
        )

        if failed_segments == len(segments):
            raise EmbeddingFailed(
                f"embedding failed for all {failed_segments} segments of document {document.id}; "
                "the document is stored and can be repaired by an index rebuild",
                document_id=document.id,
            )

        return IndexingSummary(
            document=indexed,
            pages_count=len(segments),
            failed_segments=failed_segments,
        )
