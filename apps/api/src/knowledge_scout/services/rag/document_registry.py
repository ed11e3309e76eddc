from __future__ import annotations

from datetime import datetime, timezone
import uuid

from sqlalchemy import ColumnElement, Select, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from knowledge_scout.errors import DocumentNotFound, Forbidden
from knowledge_scout.models import DocumentRecord
from knowledge_scout.services.rag.types import DocumentInfo

VISIBILITIES = ("private", "public")
STATUSES = ("pending", "indexed", "failed")


def _to_info(record: DocumentRecord) -> DocumentInfo:
    return DocumentInfo(
        id=record.id,
        owner_id=record.owner_id,
        title=record.title,
        original_name=record.original_name,
        visibility=record.visibility,
        status=record.status,
        pages=record.pages,
        storage_url=record.storage_url,
        storage_resource_id=record.storage_resource_id,
        error=record.error,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def can_access(document: DocumentInfo, user_id: str | None) -> bool:
    if document.visibility == "public":
        return True
    return user_id is not None and document.owner_id == user_id


def _visible_to(user_id: str | None) -> ColumnElement[bool]:
    if user_id is None:
        return DocumentRecord.visibility == "public"
    return or_(DocumentRecord.visibility == "public", DocumentRecord.owner_id == user_id)


class DocumentRegistry:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def create(
        self,
        *,
        owner_id: str,
        title: str,
        original_name: str,
        visibility: str,
        storage_url: str,
        storage_resource_id: str,
    ) -> DocumentInfo:
        if visibility not in VISIBILITIES:
            raise ValueError(f"visibility must be one of {VISIBILITIES}")

        with Session(self._engine) as session:
            record = DocumentRecord(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                title=title,
                original_name=original_name,
                visibility=visibility,
                status="pending",
                pages=0,
                storage_url=storage_url,
                storage_resource_id=storage_resource_id,
            )
            session.add(record)
            session.commit()
            return _to_info(record)

    def get(self, document_id: str) -> DocumentInfo | None:
        with Session(self._engine) as session:
            record = session.get(DocumentRecord, document_id)
            return _to_info(record) if record is not None else None

    def get_many(self, document_ids: list[str]) -> dict[str, DocumentInfo]:
        if not document_ids:
            return {}
        with Session(self._engine) as session:
            records = session.scalars(
                select(DocumentRecord).where(DocumentRecord.id.in_(set(document_ids)))
            ).all()
            return {record.id: _to_info(record) for record in records}

    def require_accessible(self, document_id: str, user_id: str | None) -> DocumentInfo:
        document = self.get(document_id)
        if document is None:
            raise DocumentNotFound(f"document {document_id} not found")
        if not can_access(document, user_id):
            raise Forbidden(f"document {document_id} is private")
        return document

    def list_visible(
        self,
        user_id: str | None,
        *,
        limit: int,
        offset: int,
    ) -> tuple[list[DocumentInfo], int]:
        condition = _visible_to(user_id)
        with Session(self._engine) as session:
            total = session.scalar(select(func.count()).select_from(DocumentRecord).where(condition))
            records = session.scalars(
                select(DocumentRecord)
                .where(condition)
                .order_by(DocumentRecord.created_at.desc(), DocumentRecord.id.desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return [_to_info(record) for record in records], int(total or 0)

    def visible_ids_query(self, user_id: str | None, *, status: str = "indexed") -> Select[tuple[str]]:
        """Subquery of document ids ``user_id`` may read, for use in ``IN (...)`` clauses."""
        return select(DocumentRecord.id).where(_visible_to(user_id)).where(DocumentRecord.status == status)

    def ids_with_status(self, status: str) -> list[str]:
        with Session(self._engine) as session:
            return list(
                session.scalars(
                    select(DocumentRecord.id)
                    .where(DocumentRecord.status == status)
                    .order_by(DocumentRecord.created_at.asc(), DocumentRecord.id.asc())
                ).all()
            )

    def count_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        with Session(self._engine) as session:
            rows = session.execute(
                select(DocumentRecord.status, func.count()).group_by(DocumentRecord.status)
            ).all()
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    def mark_indexed(self, document_id: str, *, pages: int) -> DocumentInfo:
        return self._update(document_id, status="indexed", pages=pages, error=None)

    def mark_failed(self, document_id: str, *, error: str) -> DocumentInfo:
        return self._update(document_id, status="failed", error=error)

    def _update(self, document_id: str, **fields: object) -> DocumentInfo:
        with Session(self._engine) as session:
            record = session.get(DocumentRecord, document_id)
            if record is None:
                raise DocumentNotFound(f"document {document_id} not found")
            for name, value in fields.items():
                setattr(record, name, value)
            record.updated_at = datetime.now(timezone.utc)
            session.commit()
            return _to_info(record)
