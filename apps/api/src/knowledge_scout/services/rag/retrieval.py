from __future__ import annotations

from dataclasses import dataclass
import logging
import math

from knowledge_scout.errors import InvalidInput
from knowledge_scout.services.rag.chunk_store import ChunkStore
from knowledge_scout.services.rag.document_registry import DocumentRegistry, can_access
from knowledge_scout.services.rag.types import AccessScope, RetrievalResult, ScoredChunk, StoredChunk

logger = logging.getLogger(__name__)

NORM_EPSILON = 1e-12


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"vector dimensions differ: {len(a)} != {len(b)}")

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = max(math.sqrt(sum(x * x for x in a)), NORM_EPSILON)
    norm_b = max(math.sqrt(sum(y * y for y in b)), NORM_EPSILON)
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


@dataclass(frozen=True)
class RetrievalConfig:
    candidate_limit: int = 2000
    similarity_threshold: float = 0.4
    min_pool: int = 20


class RetrievalEngine:
    def __init__(
        self,
        *,
        registry: DocumentRegistry,
        chunk_store: ChunkStore,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._config = config or RetrievalConfig()

    def retrieve(
        self,
        query_embedding: list[float],
        scope: AccessScope,
        k: int,
    ) -> RetrievalResult:
        if k < 1:
            raise InvalidInput("k must be >= 1")
        if not query_embedding:
            raise InvalidInput("query embedding must not be empty")

        candidates = self._load_candidates(scope)

        scored: list[tuple[float, StoredChunk]] = []
        for chunk in candidates:
            if len(chunk.embedding) != len(query_embedding):
                continue
            score = cosine_similarity(query_embedding, chunk.embedding)
            if score >= self._config.similarity_threshold:
                scored.append((score, chunk))

        scored.sort(key=lambda item: (-item[0], item[1].document_id, item[1].page_number))
        pool = scored[: max(k, self._config.min_pool)]
        verified = self._verify(pool, scope)

        logger.debug(
            "retrieval scope=%s candidates=%s above_threshold=%s verified=%s k=%s",
            scope.mode,
            len(candidates),
            len(scored),
            len(verified),
            k,
        )
        return RetrievalResult(
            hits=verified[:k],
            candidate_count=len(candidates),
            verified_count=len(verified),
        )

    def _load_candidates(self, scope: AccessScope) -> list[StoredChunk]:
        if scope.document_id is not None:
            target = self._registry.require_accessible(scope.document_id, scope.user_id)
            document_ids = [target.id] if target.status == "indexed" else []
        else:
            document_ids = self._registry.visible_ids_query(scope.user_id)

        return self._chunk_store.load_candidates(
            document_ids,
            limit=self._config.candidate_limit,
        )

    def _verify(
        self,
        pool: list[tuple[float, StoredChunk]],
        scope: AccessScope,
    ) -> list[ScoredChunk]:
        documents = self._registry.get_many([chunk.document_id for _, chunk in pool])

        verified: list[ScoredChunk] = []
        for score, chunk in pool:
            document = documents.get(chunk.document_id)
            if (
                document is None
                or not can_access(document, scope.user_id)
                or not 1 <= chunk.page_number <= document.pages
            ):
                logger.debug(
                    "retrieval dropped chunk_id=%s doc_id=%s page=%s",
                    chunk.chunk_id,
                    chunk.document_id,
                    chunk.page_number,
                )
                continue

            verified.append(
                ScoredChunk(
                    chunk_id=chunk.chunk_id,
                    document_id=chunk.document_id,
                    document_title=document.title,
                    page_number=chunk.page_number,
                    text=chunk.text,
                    score=score,
                )
            )
        return verified
