from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class DocumentInfo:
    id: str
    owner_id: str
    title: str
    original_name: str
    visibility: str
    status: str
    pages: int
    storage_url: str
    storage_resource_id: str
    error: str | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(frozen=True)
class StoredChunk:
    chunk_id: str
    document_id: str
    page_number: int
    text: str
    embedding: list[float]


@dataclass(frozen=True)
class AccessScope:
    """Who is asking and, optionally, which single document they target."""

    user_id: str | None
    document_id: str | None = None

    @property
    def mode(self) -> str:
        return "single" if self.document_id else "multi"


@dataclass(frozen=True)
class ScoredChunk:
    chunk_id: str
    document_id: str
    document_title: str
    page_number: int
    text: str
    score: float


@dataclass(frozen=True)
class RetrievalResult:
    hits: list[ScoredChunk]
    candidate_count: int
    verified_count: int

    @property
    def has_evidence(self) -> bool:
        return bool(self.hits)


@dataclass(frozen=True)
class AnswerSource:
    doc_id: str
    title: str
    page: int
    score: float
    snippet: str
    cited: bool


@dataclass(frozen=True)
class Answer:
    text: str
    confidence: float
    sources: list[AnswerSource] = field(default_factory=list)
    model: str | None = None
    used_fallback: bool = False


@dataclass(frozen=True)
class IndexingSummary:
    document: DocumentInfo
    pages_count: int
    failed_segments: int


@dataclass(frozen=True)
class IndexMeta:
    last_rebuild: datetime | None
    last_error: str | None
    total_docs: int
    total_chunks: int
