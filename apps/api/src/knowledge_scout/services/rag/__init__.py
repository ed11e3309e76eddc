from knowledge_scout.services.rag.answer import AnswerComposer
from knowledge_scout.services.rag.chunk_store import ChunkStore
from knowledge_scout.services.rag.document_registry import DocumentRegistry
from knowledge_scout.services.rag.indexing import DocumentIndexer
from knowledge_scout.services.rag.rebuilder import IndexRebuilder
from knowledge_scout.services.rag.retrieval import RetrievalConfig, RetrievalEngine
from knowledge_scout.services.rag.types import Answer, AccessScope, IndexingSummary, RetrievalResult

__all__ = [
    "AccessScope",
    "Answer",
    "AnswerComposer",
    "ChunkStore",
    "DocumentIndexer",
    "DocumentRegistry",
    "IndexRebuilder",
    "IndexingSummary",
    "RetrievalConfig",
    "RetrievalEngine",
    "RetrievalResult",
]
