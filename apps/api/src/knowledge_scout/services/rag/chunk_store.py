from __future__ import annotations

from array import array
from datetime import datetime, timezone
import uuid

from sqlalchemy import Select, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from knowledge_scout.models import ChunkRecord
from knowledge_scout.services.rag.types import StoredChunk


def _encode_embedding(values: list[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _to_stored(record: ChunkRecord) -> StoredChunk:
    embedding = _decode_embedding(record.embedding) if record.embedding_dim > 0 else []
    if len(embedding) != record.embedding_dim:
        embedding = []
    return StoredChunk(
        chunk_id=record.id,
        document_id=record.document_id,
        page_number=record.page_number,
        text=record.text,
        embedding=embedding,
    )


class ChunkStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def replace_document_chunks(
        self,
        document_id: str,
        segments: list[tuple[int, str, list[float]]],
    ) -> int:
        """Store ``(page_number, text, embedding)`` rows, replacing the document's old chunks."""
        with Session(self._engine) as session:
            session.execute(delete(ChunkRecord).where(ChunkRecord.document_id == document_id))
            session.add_all(
                ChunkRecord(
                    id=uuid.uuid4().hex,
                    document_id=document_id,
                    page_number=page_number,
                    text=text,
                    embedding=_encode_embedding(embedding),
                    embedding_dim=len(embedding),
                )
                for page_number, text, embedding in segments
            )
            session.commit()
        return len(segments)

    def update_embedding(self, document_id: str, page_number: int, embedding: list[float]) -> bool:
        with Session(self._engine) as session:
            record = session.scalar(
                select(ChunkRecord)
                .where(ChunkRecord.document_id == document_id)
                .where(ChunkRecord.page_number == page_number)
            )
            if record is None:
                return False
            record.embedding = _encode_embedding(embedding)
            record.embedding_dim = len(embedding)
            record.updated_at = datetime.now(timezone.utc)
            session.commit()
        return True

    def list_document_chunks(self, document_id: str) -> list[StoredChunk]:
        with Session(self._engine) as session:
            records = session.scalars(
                select(ChunkRecord)
                .where(ChunkRecord.document_id == document_id)
                .order_by(ChunkRecord.page_number)
            ).all()
            return [_to_stored(record) for record in records]

    def load_candidates(
        self,
        document_ids: list[str] | Select[tuple[str]],
        *,
        limit: int,
    ) -> list[StoredChunk]:
        """Chunks with a non-empty vector belonging to ``document_ids``, at most ``limit``.

        ``document_ids`` is either a list or a select of ids, so large visible
        sets stay inside the database instead of becoming bound parameters.
        """
        if limit <= 0 or (isinstance(document_ids, list) and not document_ids):
            return []

        with Session(self._engine) as session:
            records = session.scalars(
                select(ChunkRecord)
                .where(ChunkRecord.document_id.in_(document_ids))
                .where(ChunkRecord.embedding_dim > 0)
                .order_by(ChunkRecord.document_id, ChunkRecord.page_number)
                .limit(limit)
            ).all()
            chunks = [_to_stored(record) for record in records]
        return [chunk for chunk in chunks if chunk.embedding]

    def count(self, document_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(ChunkRecord)
        if document_id is not None:
            stmt = stmt.where(ChunkRecord.document_id == document_id)
        with Session(self._engine) as session:
            return int(session.scalar(stmt) or 0)
