import asyncio
import logging
from time import perf_counter
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from knowledge_scout.dependencies import (
    get_answer_composer,
    get_embedding_client,
    get_optional_identity,
    get_query_cache,
    get_registry,
    get_retrieval_engine,
)
from knowledge_scout.errors import InvalidInput
from knowledge_scout.security import Identity
from knowledge_scout.services.rag.answer import AnswerComposer
from knowledge_scout.services.rag.document_registry import DocumentRegistry
from knowledge_scout.services.rag.embedding_client import EmbeddingClient
from knowledge_scout.services.rag.query_cache import QueryCache, make_cache_key
from knowledge_scout.services.rag.retrieval import RetrievalEngine
from knowledge_scout.services.rag.types import AccessScope, Answer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ask"])


class AskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1)
    k: int = Field(default=5, ge=1, le=20)
    doc_id: str | None = Field(default=None, alias="docId")


def answer_payload(answer: Answer) -> dict[str, Any]:
    return {
        "text": answer.text,
        "confidence": answer.confidence,
        "sources": [
            {
                "docId": source.doc_id,
                "title": source.title,
                "page": source.page,
                "score": source.score,
                "snippet": source.snippet,
                "cited": source.cited,
            }
            for source in answer.sources
        ],
    }


@router.post("/ask")
async def ask(
    request: AskRequest,
    identity: Annotated[Identity | None, Depends(get_optional_identity)],
    registry: Annotated[DocumentRegistry, Depends(get_registry)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    retrieval: Annotated[RetrievalEngine, Depends(get_retrieval_engine)],
    composer: Annotated[AnswerComposer, Depends(get_answer_composer)],
    cache: Annotated[QueryCache, Depends(get_query_cache)],
) -> dict[str, Any]:
    start = perf_counter()
    query = request.query.strip()
    if not query:
        raise InvalidInput("query must not be empty")

    user_id = identity.user_id if identity is not None else None
    if request.doc_id is not None:
        await asyncio.to_thread(registry.require_accessible, request.doc_id, user_id)

    cache_key = make_cache_key(user_id, request.doc_id, query, request.k)
    cached = cache.get(cache_key)
    if cached is not None:
        logger.debug("ask cache hit user=%s doc_id=%s k=%s", user_id, request.doc_id, request.k)
        cached["cached"] = True
        return cached

    scope = AccessScope(user_id=user_id, document_id=request.doc_id)
    query_embedding = await embedding_client.embed(query)
    result = await asyncio.to_thread(retrieval.retrieve, query_embedding, scope, request.k)
    answer = await composer.compose(query, result.hits, scope.mode)

    payload: dict[str, Any] = {
        "query": query,
        "docId": request.doc_id,
        "cached": False,
        "answers": [answer_payload(answer)],
        "meta": {
            "vector_results": result.verified_count,
            "candidates": result.candidate_count,
            "model": answer.model,
            "used_fallback": answer.used_fallback,
            "elapsed_ms": int((perf_counter() - start) * 1000),
        },
    }
    cache.put(cache_key, payload)
    logger.info(
        "ask answered scope=%s k=%s hits=%s confidence=%s elapsed_ms=%s",
        scope.mode,
        request.k,
        len(result.hits),
        answer.confidence,
        payload["meta"]["elapsed_ms"],
    )
    return payload
