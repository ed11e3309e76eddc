from array import array

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from knowledge_scout.errors import DocumentNotFound, Forbidden, InvalidInput
from knowledge_scout.models import ChunkRecord, DocumentRecord
from knowledge_scout.services.rag.chunk_store import ChunkStore
from knowledge_scout.services.rag.document_registry import DocumentRegistry
from knowledge_scout.services.rag.retrieval import RetrievalConfig, RetrievalEngine, cosine_similarity
from knowledge_scout.services.rag.types import AccessScope, DocumentInfo


@pytest.fixture
def registry(engine: Engine) -> DocumentRegistry:
    return DocumentRegistry(engine)


@pytest.fixture
def chunk_store(engine: Engine) -> ChunkStore:
    return ChunkStore(engine)


@pytest.fixture
def retrieval(registry: DocumentRegistry, chunk_store: ChunkStore) -> RetrievalEngine:
    return RetrievalEngine(registry=registry, chunk_store=chunk_store, config=RetrievalConfig())


def _add_document(
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    *,
    owner_id: str = "alice",
    visibility: str = "public",
    vectors: list[list[float]],
    pages: int | None = None,
    indexed: bool = True,
) -> DocumentInfo:
    document = registry.create(
        owner_id=owner_id,
        title=f"{owner_id}-{visibility}",
        original_name=f"{owner_id}.txt",
        visibility=visibility,
        storage_url="http://localhost:8000/uploads/doc.txt",
        storage_resource_id="doc.txt",
    )
    chunk_store.replace_document_chunks(
        document.id,
        [(page, f"page {page} text", vector) for page, vector in enumerate(vectors, start=1)],
    )
    if indexed:
        document = registry.mark_indexed(document.id, pages=len(vectors) if pages is None else pages)
    return document


def test_cosine_similarity_properties() -> None:
    a = [1.0, 2.0, 3.0]
    b = [-2.0, 0.5, 4.0]

    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert cosine_similarity(a, a) == pytest.approx(1.0)
    assert cosine_similarity(a, [-x for x in a]) == pytest.approx(-1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert -1.0 <= cosine_similarity(a, b) <= 1.0


def test_cosine_similarity_rejects_dimension_mismatch() -> None:
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 2.0])


def test_retrieve_applies_threshold_and_orders_by_score(
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    retrieval: RetrievalEngine,
) -> None:
    document = _add_document(registry, chunk_store, vectors=[[0.9, 0.1], [1.0, 0.0], [0.0, 1.0]])

    result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id=None), k=5)

    assert [(hit.document_id, hit.page_number) for hit in result.hits] == [
        (document.id, 2),
        (document.id, 1),
    ]
    assert result.hits[0].score == pytest.approx(1.0)
    assert result.candidate_count == 3


def test_retrieve_hides_private_documents_from_other_callers(
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    retrieval: RetrievalEngine,
) -> None:
    public = _add_document(registry, chunk_store, owner_id="alice", vectors=[[1.0, 0.0]])
    private = _add_document(
        registry, chunk_store, owner_id="alice", visibility="private", vectors=[[1.0, 0.0]]
    )

    def visible_docs(user_id: str | None) -> set[str]:
        result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id=user_id), k=10)
        return {hit.document_id for hit in result.hits}

    assert visible_docs(None) == {public.id}
    assert visible_docs("bob") == {public.id}
    assert visible_docs("alice") == {public.id, private.id}


def test_retrieve_drops_pages_beyond_document_page_count(
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    retrieval: RetrievalEngine,
) -> None:
    _add_document(registry, chunk_store, vectors=[[1.0, 0.0]] * 3, pages=2)

    result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id=None), k=5)

    assert [hit.page_number for hit in result.hits] == [1, 2]
    assert result.verified_count == 2


def test_retrieve_skips_unindexed_and_unusable_chunks(
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    retrieval: RetrievalEngine,
) -> None:
    _add_document(registry, chunk_store, vectors=[[1.0, 0.0]], indexed=False)
    document = _add_document(registry, chunk_store, vectors=[[], [1.0, 0.0, 0.0], [1.0, 0.0]])

    result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id=None), k=5)

    assert [(hit.document_id, hit.page_number) for hit in result.hits] == [(document.id, 3)]


def test_retrieve_truncates_to_k_after_verification(
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    retrieval: RetrievalEngine,
) -> None:
    _add_document(registry, chunk_store, vectors=[[1.0, 0.0]] * 5)

    result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id=None), k=2)

    assert [hit.page_number for hit in result.hits] == [1, 2]
    assert result.verified_count == 5


def test_retrieve_single_document_scope(
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    retrieval: RetrievalEngine,
) -> None:
    target = _add_document(registry, chunk_store, owner_id="alice", visibility="private", vectors=[[1.0, 0.0]])
    _add_document(registry, chunk_store, owner_id="carol", vectors=[[1.0, 0.0]])

    result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id="alice", document_id=target.id), k=5)
    assert {hit.document_id for hit in result.hits} == {target.id}

    with pytest.raises(Forbidden):
        retrieval.retrieve([1.0, 0.0], AccessScope(user_id="bob", document_id=target.id), k=5)

    with pytest.raises(DocumentNotFound):
        retrieval.retrieve([1.0, 0.0], AccessScope(user_id="alice", document_id="missing"), k=5)


def test_retrieve_rejects_invalid_arguments(retrieval: RetrievalEngine) -> None:
    with pytest.raises(InvalidInput):
        retrieval.retrieve([1.0], AccessScope(user_id=None), k=0)
    with pytest.raises(InvalidInput):
        retrieval.retrieve([], AccessScope(user_id=None), k=1)


def test_retrieve_with_no_documents_is_empty(retrieval: RetrievalEngine) -> None:
    result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id=None), k=3)

    assert result.hits == []
    assert result.has_evidence is False


def test_candidates_for_many_visible_documents_use_a_subquery(
    engine: Engine,
    registry: DocumentRegistry,
    chunk_store: ChunkStore,
    retrieval: RetrievalEngine,
) -> None:
    vector = array("f", [1.0, 0.0]).tobytes()
    with Session(engine) as session:
        for index in range(1200):
            document_id = f"doc-{index:04d}"
            session.add(
                DocumentRecord(
                    id=document_id,
                    owner_id="alice",
                    title=document_id,
                    original_name=f"{document_id}.txt",
                    visibility="public" if index % 2 == 0 else "private",
                    status="indexed",
                    pages=1,
                    storage_url=f"http://localhost:8000/uploads/{document_id}.txt",
                    storage_resource_id=f"{document_id}.txt",
                )
            )
            session.add(
                ChunkRecord(
                    id=f"chunk-{index:04d}",
                    document_id=document_id,
                    page_number=1,
                    text=f"{document_id} text",
                    embedding=vector,
                    embedding_dim=2,
                )
            )
        session.commit()

    candidates = chunk_store.load_candidates(registry.visible_ids_query(None), limit=5000)
    assert len(candidates) == 600
    assert all(int(chunk.document_id.split("-")[1]) % 2 == 0 for chunk in candidates)

    result = retrieval.retrieve([1.0, 0.0], AccessScope(user_id="alice"), k=3)
    assert result.candidate_count == 1200
    assert len(result.hits) == 3
