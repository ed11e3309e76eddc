from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import re
import threading
from time import perf_counter
from typing import Any, Callable, TypedDict

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from knowledge_scout.errors import JobNotFound, RebuildInProgress, ScoutError
from knowledge_scout.models import JobRecord
from knowledge_scout.services.rag.chunk_store import ChunkStore
from knowledge_scout.services.rag.document_registry import DocumentRegistry
from knowledge_scout.services.rag.embedding_client import EmbeddingClient
from knowledge_scout.services.rag.index_meta import IndexMetaStore

logger = logging.getLogger(__name__)

REBUILD_JOB_TYPE = "index_rebuild"
ACTIVE_STATUSES = ("queued", "running")


class RebuildResult(TypedDict):
    documents: int
    chunks: int
    refreshed: int
    failed: int
    duration_ms: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _extract_numeric_suffix(value: str) -> int | None:
    match = re.search(r"(\d+)$", value)
    if match is None:
        return None
    return int(match.group(1))


def _next_job_id(session: Session) -> str:
    next_id = 1
    for existing_id in session.scalars(select(JobRecord.id)).all():
        parsed = _extract_numeric_suffix(str(existing_id))
        if parsed is None:
            continue
        next_id = max(next_id, parsed + 1)
    return str(next_id)


def job_detail(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "payload_json": job.payload_json,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "started_at": _to_iso(job.started_at),
        "finished_at": _to_iso(job.finished_at),
        "error": job.error,
        "result_json": job.result_json,
    }


class IndexRebuilder:
    """Re-embeds the stored chunk text of every indexed document.

    Only one rebuild may be queued or running at a time; the job row is the
    lease. A lease older than ``lease_seconds`` is treated as abandoned.
    """

    _lease_lock = threading.Lock()

    def __init__(
        self,
        *,
        engine: Engine,
        registry: DocumentRegistry,
        chunk_store: ChunkStore,
        index_meta: IndexMetaStore,
        embedding_client: EmbeddingClient,
        lease_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._chunk_store = chunk_store
        self._index_meta = index_meta
        self._embedding_client = embedding_client
        self._lease_seconds = lease_seconds
        self._clock = clock

    def request_rebuild(self, *, requested_by: str | None = None) -> str:
        now = self._clock()
        with self._lease_lock, Session(self._engine) as session:
            existing = session.scalar(
                select(JobRecord)
                .where(JobRecord.type == REBUILD_JOB_TYPE)
                .where(JobRecord.status.in_(ACTIVE_STATUSES))
                .order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
                .limit(1)
            )
            if existing is not None:
                if not self._is_abandoned(existing, now):
                    raise RebuildInProgress(existing.id)
                logger.warning("index rebuild lease expired job_id=%s status=%s", existing.id, existing.status)
                existing.status = "failed"
                existing.error = "lease expired before the rebuild finished"
                existing.finished_at = now
                existing.updated_at = now

            job = JobRecord(
                id=_next_job_id(session),
                type=REBUILD_JOB_TYPE,
                status="queued",
                payload_json={"requested_by": requested_by} if requested_by else None,
                attempts=0,
                max_attempts=1,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.commit()
            job_id = job.id

        logger.info("index rebuild queued job_id=%s requested_by=%s", job_id, requested_by)
        return job_id

    def get_job(self, job_id: str) -> dict[str, Any]:
        with Session(self._engine) as session:
            job = session.get(JobRecord, job_id)
            if job is None or job.type != REBUILD_JOB_TYPE:
                raise JobNotFound(f"job {job_id} not found")
            return job_detail(job)

    async def run(self, job_id: str) -> RebuildResult | None:
        await asyncio.to_thread(self._mark_running, job_id)
        start = perf_counter()

        try:
            result = await self._rebuild()
        except Exception as exc:
            # Runs as a background task: the job row and IndexMeta carry the failure.
            logger.exception("index rebuild failed job_id=%s", job_id)
            await asyncio.to_thread(self._mark_failed, job_id, str(exc))
            await asyncio.to_thread(
                lambda: self._index_meta.update(last_rebuild=self._clock(), last_error=str(exc))
            )
            return None

        result["duration_ms"] = int((perf_counter() - start) * 1000)
        await asyncio.to_thread(self._mark_succeeded, job_id, dict(result))
        logger.info("index rebuild finished job_id=%s result=%s", job_id, result)
        return result

    async def _rebuild(self) -> RebuildResult:
        document_ids = await asyncio.to_thread(self._registry.ids_with_status, "indexed")
        errors: list[str] = []
        total_chunks = 0
        refreshed = 0

        for document_id in document_ids:
            chunks = await asyncio.to_thread(self._chunk_store.list_document_chunks, document_id)
            for chunk in chunks:
                total_chunks += 1
                try:
                    embedding = await self._embedding_client.embed(chunk.text)
                except ScoutError as exc:
                    logger.warning(
                        "rebuild embedding failed doc_id=%s page=%s error=%s",
                        document_id,
                        chunk.page_number,
                        exc.detail,
                    )
                    errors.append(f"doc {document_id} page {chunk.page_number}: {exc.detail}")
                    continue

                await asyncio.to_thread(
                    self._chunk_store.update_embedding,
                    document_id,
                    chunk.page_number,
                    embedding,
                )
                refreshed += 1

        await asyncio.to_thread(
            lambda: self._index_meta.update(
                last_rebuild=self._clock(),
                last_error="; ".join(errors) or None,
                total_docs=len(document_ids),
                total_chunks=total_chunks,
            )
        )
        return {
            "documents": len(document_ids),
            "chunks": total_chunks,
            "refreshed": refreshed,
            "failed": len(errors),
            "duration_ms": 0,
        }

    def _is_abandoned(self, job: JobRecord, now: datetime) -> bool:
        reference = job.started_at or job.created_at
        if reference is None:
            return False
        return now - _as_utc(reference) > timedelta(seconds=self._lease_seconds)

    def _mark_running(self, job_id: str) -> None:
        self._update_job(
            job_id,
            status="running",
            started_at=self._clock(),
            finished_at=None,
            error=None,
            increment_attempts=True,
        )

    def _mark_succeeded(self, job_id: str, result_json: dict[str, Any]) -> None:
        self._update_job(
            job_id,
            status="succeeded",
            result_json=result_json,
            finished_at=self._clock(),
            error=None,
        )

    def _mark_failed(self, job_id: str, error_message: str) -> None:
        self._update_job(
            job_id,
            status="failed",
            finished_at=self._clock(),
            error=error_message,
        )

    def _update_job(self, job_id: str, *, increment_attempts: bool = False, **fields: Any) -> None:
        with Session(self._engine) as session:
            job = session.get(JobRecord, job_id)
            if job is None:
                raise JobNotFound(f"job {job_id} not found")
            for name, value in fields.items():
                setattr(job, name, value)
            if increment_attempts:
                job.attempts = (job.attempts or 0) + 1
            job.updated_at = self._clock()
            session.commit()
