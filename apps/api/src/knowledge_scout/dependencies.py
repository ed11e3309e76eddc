"""FastAPI dependency providers.

Every collaborator is resolved through a provider here so tests can swap it
with ``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from knowledge_scout.config import get_settings
from knowledge_scout.db import get_engine
from knowledge_scout.errors import Forbidden, Unauthorized
from knowledge_scout.llm import LLMClient, build_llm_client
from knowledge_scout.security import Identity, IdentityVerifier, JwtIdentityVerifier
from knowledge_scout.services.rag.answer import AnswerComposer
from knowledge_scout.services.rag.chunk_store import ChunkStore
from knowledge_scout.services.rag.document_registry import DocumentRegistry
from knowledge_scout.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from knowledge_scout.services.rag.index_meta import IndexMetaStore, SqlIndexMetaStore
from knowledge_scout.services.rag.indexing import DocumentIndexer
from knowledge_scout.services.rag.query_cache import QueryCache, TTLQueryCache
from knowledge_scout.services.rag.rebuilder import IndexRebuilder
from knowledge_scout.services.rag.retrieval import RetrievalConfig, RetrievalEngine
from knowledge_scout.storage import BlobStore, LocalBlobStore

_bearer = HTTPBearer(auto_error=False)


def get_identity_verifier() -> IdentityVerifier:
    settings = get_settings()
    return JwtIdentityVerifier(settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


def get_optional_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
    verifier: Annotated[IdentityVerifier, Depends(get_identity_verifier)],
) -> Identity | None:
    if credentials is None or not credentials.credentials:
        return None
    return verifier.verify(credentials.credentials)


def require_identity(
    identity: Annotated[Identity | None, Depends(get_optional_identity)],
) -> Identity:
    if identity is None:
        raise Unauthorized("authentication required")
    return identity


def require_admin(identity: Annotated[Identity, Depends(require_identity)]) -> Identity:
    if not identity.is_admin:
        raise Forbidden("admin role required")
    return identity


def get_registry() -> DocumentRegistry:
    return DocumentRegistry(get_engine())


def get_chunk_store() -> ChunkStore:
    return ChunkStore(get_engine())


def get_index_meta_store() -> IndexMetaStore:
    return SqlIndexMetaStore(get_engine())


def get_blob_store() -> BlobStore:
    settings = get_settings()
    return LocalBlobStore(Path(settings.blob_dir), base_url=settings.blob_base_url)


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client(get_settings())


def get_llm_client() -> LLMClient:
    return build_llm_client(get_settings())


@lru_cache
def get_query_cache() -> QueryCache:
    settings = get_settings()
    return TTLQueryCache(
        ttl_seconds=settings.query_cache_ttl_seconds,
        max_entries=settings.query_cache_max_entries,
    )


def get_retrieval_engine(
    registry: Annotated[DocumentRegistry, Depends(get_registry)],
    chunk_store: Annotated[ChunkStore, Depends(get_chunk_store)],
) -> RetrievalEngine:
    settings = get_settings()
    return RetrievalEngine(
        registry=registry,
        chunk_store=chunk_store,
        config=RetrievalConfig(
            candidate_limit=settings.retrieval_candidate_limit,
            similarity_threshold=settings.retrieval_similarity_threshold,
            min_pool=settings.retrieval_min_pool,
        ),
    )


def get_answer_composer(
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
) -> AnswerComposer:
    return AnswerComposer(llm_client=llm_client, snippet_chars=get_settings().answer_snippet_chars)


def get_document_indexer(
    registry: Annotated[DocumentRegistry, Depends(get_registry)],
    chunk_store: Annotated[ChunkStore, Depends(get_chunk_store)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> DocumentIndexer:
    settings = get_settings()
    return DocumentIndexer(
        registry=registry,
        chunk_store=chunk_store,
        embedding_client=embedding_client,
        blob_store=blob_store,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        max_upload_bytes=settings.max_upload_bytes,
    )


def get_index_rebuilder(
    registry: Annotated[DocumentRegistry, Depends(get_registry)],
    chunk_store: Annotated[ChunkStore, Depends(get_chunk_store)],
    index_meta: Annotated[IndexMetaStore, Depends(get_index_meta_store)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> IndexRebuilder:
    return IndexRebuilder(
        engine=get_engine(),
        registry=registry,
        chunk_store=chunk_store,
        index_meta=index_meta,
        embedding_client=embedding_client,
        lease_seconds=get_settings().rebuild_lease_seconds,
    )
