from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from knowledge_scout.dependencies import (
    get_document_indexer,
    get_optional_identity,
    get_registry,
    require_identity,
)
from knowledge_scout.errors import InvalidInput
from knowledge_scout.security import Identity
from knowledge_scout.services.rag.document_registry import DocumentRegistry
from knowledge_scout.services.rag.indexing import DocumentIndexer
from knowledge_scout.services.rag.types import DocumentInfo

router = APIRouter(prefix="/api/docs", tags=["docs"])


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def document_payload(document: DocumentInfo) -> dict[str, Any]:
    return {
        "id": document.id,
        "owner_id": document.owner_id,
        "title": document.title,
        "original_name": document.original_name,
        "visibility": document.visibility,
        "status": document.status,
        "pages": document.pages,
        "storage_url": document.storage_url,
        "error": document.error,
        "created_at": _to_iso(document.created_at),
        "updated_at": _to_iso(document.updated_at),
    }


@router.post("", status_code=201)
async def upload_document(
    identity: Annotated[Identity, Depends(require_identity)],
    indexer: Annotated[DocumentIndexer, Depends(get_document_indexer)],
    file: Annotated[UploadFile | None, File()] = None,
    title: Annotated[str | None, Form()] = None,
    visibility: Annotated[str | None, Form()] = None,
) -> dict[str, Any]:
    if file is None:
        raise InvalidInput("file is required")

    # read at most one byte past the limit
    data = await file.read(indexer.max_upload_bytes + 1)
    summary = await indexer.upload(
        owner_id=identity.user_id,
        filename=file.filename,
        data=data,
        title=title,
        visibility=visibility,
    )
    return {
        "documentId": summary.document.id,
        "pagesCount": summary.pages_count,
        "failedSegments": summary.failed_segments,
        "document": document_payload(summary.document),
    }


@router.get("")
def list_documents(
    identity: Annotated[Identity | None, Depends(get_optional_identity)],
    registry: Annotated[DocumentRegistry, Depends(get_registry)],
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    user_id = identity.user_id if identity is not None else None
    documents, total = registry.list_visible(user_id, limit=limit, offset=offset)

    end = offset + len(documents)
    return {
        "items": [document_payload(document) for document in documents],
        "total": total,
        "limit": limit,
        "offset": offset,
        "next_offset": end if end < total else None,
    }


@router.get("/{document_id}")
def get_document(
    document_id: str,
    identity: Annotated[Identity | None, Depends(get_optional_identity)],
    registry: Annotated[DocumentRegistry, Depends(get_registry)],
) -> dict[str, Any]:
    user_id = identity.user_id if identity is not None else None
    return document_payload(registry.require_accessible(document_id, user_id))
