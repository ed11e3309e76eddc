from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from knowledge_scout.models import IndexMetaRecord
from knowledge_scout.services.rag.types import IndexMeta

_SINGLETON_ID = 1


class IndexMetaStore(Protocol):
    def get(self) -> IndexMeta: ...

    def update(
        self,
        *,
        last_rebuild: datetime,
        last_error: str | None,
        total_docs: int | None = None,
        total_chunks: int | None = None,
    ) -> IndexMeta: ...


class SqlIndexMetaStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self) -> IndexMeta:
        with Session(self._engine) as session:
            record = session.get(IndexMetaRecord, _SINGLETON_ID)
            if record is None:
                return IndexMeta(last_rebuild=None, last_error=None, total_docs=0, total_chunks=0)
            return _to_meta(record)

    def update(
        self,
        *,
        last_rebuild: datetime,
        last_error: str | None,
        total_docs: int | None = None,
        total_chunks: int | None = None,
    ) -> IndexMeta:
        with Session(self._engine) as session:
            record = session.get(IndexMetaRecord, _SINGLETON_ID)
            if record is None:
                record = IndexMetaRecord(id=_SINGLETON_ID, total_docs=0, total_chunks=0)
                session.add(record)

            record.last_rebuild = last_rebuild
            record.last_error = last_error
            if total_docs is not None:
                record.total_docs = total_docs
            if total_chunks is not None:
                record.total_chunks = total_chunks
            session.commit()
            return _to_meta(record)


class InMemoryIndexMetaStore:
    def __init__(self) -> None:
        self._meta = IndexMeta(last_rebuild=None, last_error=None, total_docs=0, total_chunks=0)

    def get(self) -> IndexMeta:
        return self._meta

    def update(
        self,
        *,
        last_rebuild: datetime,
        last_error: str | None,
        total_docs: int | None = None,
        total_chunks: int | None = None,
    ) -> IndexMeta:
        self._meta = IndexMeta(
            last_rebuild=last_rebuild,
            last_error=last_error,
            total_docs=self._meta.total_docs if total_docs is None else total_docs,
            total_chunks=self._meta.total_chunks if total_chunks is None else total_chunks,
        )
        return self._meta


def _to_meta(record: IndexMetaRecord) -> IndexMeta:
    return IndexMeta(
        last_rebuild=record.last_rebuild,
        last_error=record.last_error,
        total_docs=record.total_docs,
        total_chunks=record.total_chunks,
    )
