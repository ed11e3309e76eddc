from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends

from knowledge_scout.dependencies import (
    get_chunk_store,
    get_index_meta_store,
    get_index_rebuilder,
    get_registry,
    require_admin,
)
from knowledge_scout.security import Identity
from knowledge_scout.services.rag.chunk_store import ChunkStore
from knowledge_scout.services.rag.document_registry import DocumentRegistry
from knowledge_scout.services.rag.index_meta import IndexMetaStore
from knowledge_scout.services.rag.rebuilder import IndexRebuilder

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/stats")
def stats(
    registry: Annotated[DocumentRegistry, Depends(get_registry)],
    chunk_store: Annotated[ChunkStore, Depends(get_chunk_store)],
    index_meta: Annotated[IndexMetaStore, Depends(get_index_meta_store)],
) -> dict[str, Any]:
    counts = registry.count_by_status()
    meta = index_meta.get()
    return {
        "total_docs": sum(counts.values()),
        "indexed_docs": counts["indexed"],
        "pending_docs": counts["pending"],
        "failed_docs": counts["failed"],
        "total_chunks": chunk_store.count(),
        "last_rebuild": meta.last_rebuild.isoformat() if meta.last_rebuild else None,
        "last_error": meta.last_error,
    }


@router.post("/rebuild", status_code=202)
def rebuild(
    background_tasks: BackgroundTasks,
    identity: Annotated[Identity, Depends(require_admin)],
    rebuilder: Annotated[IndexRebuilder, Depends(get_index_rebuilder)],
) -> dict[str, Any]:
    job_id = rebuilder.request_rebuild(requested_by=identity.user_id)
    background_tasks.add_task(rebuilder.run, job_id)
    return {"message": "index rebuild started", "job_id": job_id}


@router.get("/jobs/{job_id}")
def get_job(
    job_id: str,
    rebuilder: Annotated[IndexRebuilder, Depends(get_index_rebuilder)],
) -> dict[str, Any]:
    return rebuilder.get_job(job_id)
