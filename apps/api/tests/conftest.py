from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from knowledge_scout.config import get_settings
from knowledge_scout.db import create_schema, get_engine
from knowledge_scout.dependencies import get_embedding_client, get_llm_client, get_query_cache
from knowledge_scout.errors import EmbeddingFailed, InvalidInput, ScoutError
from knowledge_scout.llm import ChatResult
from knowledge_scout.main import app
from knowledge_scout.security import JwtIdentityVerifier

TEST_JWT_SECRET = "test-secret"
_ALPHABET = "abcdefghijklmnopqrstuvwxyz"


def letter_vector(text: str) -> list[float]:
    lowered = text.lower()
    return [float(lowered.count(letter)) for letter in _ALPHABET]


class FakeEmbeddingClient:
    """Letter-count vectors; texts listed in ``failing`` raise EmbeddingFailed."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: set[str] = set()

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if not text.strip():
            raise InvalidInput("text for embedding must be a non-empty string")
        if text in self.failing:
            raise EmbeddingFailed("embedding provider unavailable", attempts=5)
        return letter_vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            try:
                vectors.append(await self.embed(text))
            except ScoutError:
                vectors.append([])
        return vectors


class FakeLLMClient:
    def __init__(self) -> None:
        self.answer = "The answer is in the evidence [1]."
        self.error: Exception | None = None
        self.prompts: list[str] = []

    async def generate_answer(self, *, system: str, prompt: str) -> ChatResult:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return ChatResult(answer=self.answer, model="fake-model", used_fallback=False)


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_query_cache.cache_clear()
    yield
    app.dependency_overrides.clear()
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_query_cache.cache_clear()


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    sqlite_engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'store-tests.db'}")
    create_schema(sqlite_engine)
    yield sqlite_engine
    sqlite_engine.dispose()


@pytest.fixture
def embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def llm_client() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    embedding_client: FakeEmbeddingClient,
    llm_client: FakeLLMClient,
) -> Iterator[TestClient]:
    sqlite_db_path = tmp_path / "api-tests.db"
    monkeypatch.setenv("API_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("API_DB_ECHO", "false")
    monkeypatch.setenv("AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("BLOB_DIR", str(tmp_path / "blobs"))
    monkeypatch.setenv("LOG_LEVEL", "warning")

    app.dependency_overrides[get_embedding_client] = lambda: embedding_client
    app.dependency_overrides[get_llm_client] = lambda: llm_client

    engine = get_engine()
    create_schema(engine)

    with TestClient(app) as test_client:
        yield test_client

    engine.dispose()


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    verifier = JwtIdentityVerifier(TEST_JWT_SECRET)

    def make_headers(user_id: str, *, role: str | None = None) -> dict[str, str]:
        claims = {"role": role} if role else None
        return {"Authorization": f"Bearer {verifier.issue(user_id, claims=claims)}"}

    return make_headers
