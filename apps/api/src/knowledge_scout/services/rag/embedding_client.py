from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

import httpx

from knowledge_scout.config import Settings
from knowledge_scout.errors import EmbeddingFailed, InvalidInput, ScoutError
from knowledge_scout.retry import MalformedPayloadError, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class EmbeddingClient(Protocol):
    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


class _RetryingEmbeddingClient:
    """Shared request/retry plumbing; subclasses only know the wire format."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        expected_dim: int = 0,
        concurrency: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._expected_dim = expected_dim
        self._concurrency = max(1, concurrency)
        self._transport = transport
        self._sleep = sleep

    async def embed(self, text: str) -> list[float]:
        _require_text(text)
        async with self._client() as client:
            return await self._embed_with(client, text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        semaphore = asyncio.Semaphore(self._concurrency)

        async with self._client() as client:

            async def embed_one(index: int, text: str) -> list[float]:
                async with semaphore:
                    try:
                        _require_text(text)
                        return await self._embed_with(client, text)
                    except ScoutError as exc:
                        logger.warning(
                            "embedding skipped index=%s model=%s error=%s",
                            index,
                            self._model,
                            exc,
                        )
                        return []

            vectors = await asyncio.gather(
                *(embed_one(index, text) for index, text in enumerate(texts))
            )

        return list(vectors)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport)

    async def _embed_with(self, client: httpx.AsyncClient, text: str) -> list[float]:
        async def request() -> list[float]:
            response = await self._post(client, text)
            response.raise_for_status()
            try:
                payload = response.json()
            except ValueError as exc:
                raise MalformedPayloadError("Invalid embeddings payload: not JSON") from exc
            return self._validate_vector(self._parse_vector(payload))

        return await call_with_retry(
            request,
            policy=self._retry_policy,
            label=f"embedding model={self._model}",
            exhausted=EmbeddingFailed,
            sleep=self._sleep,
        )

    def _validate_vector(self, values: Any) -> list[float]:
        if not isinstance(values, list) or not values:
            raise MalformedPayloadError("Invalid embeddings payload: missing embedding vector")
        try:
            vector = [float(value) for value in values]
        except (TypeError, ValueError) as exc:
            raise MalformedPayloadError("Invalid embeddings payload: non-numeric values") from exc
        if self._expected_dim and len(vector) != self._expected_dim:
            raise MalformedPayloadError(
                f"Invalid embeddings payload: expected {self._expected_dim} dimensions, got {len(vector)}"
            )
        return vector

    async def _post(self, client: httpx.AsyncClient, text: str) -> httpx.Response:
        raise NotImplementedError

    def _parse_vector(self, payload: Any) -> Any:
        raise NotImplementedError


class OllamaEmbeddingClient(_RetryingEmbeddingClient):
    """OpenAI-compatible ``/embeddings`` endpoint (Ollama, vLLM, OpenAI)."""

    async def _post(self, client: httpx.AsyncClient, text: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
        return await client.post(
            f"{self._base_url}/embeddings",
            json={"model": self._model, "input": text},
            headers=headers,
        )

    def _parse_vector(self, payload: Any) -> Any:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or not data:
            raise MalformedPayloadError("Invalid embeddings payload: missing data")
        item = data[0]
        return item.get("embedding") if isinstance(item, dict) else None


class GeminiEmbeddingClient(_RetryingEmbeddingClient):
    """Gemini ``models/{model}:embedContent`` endpoint."""

    async def _post(self, client: httpx.AsyncClient, text: str) -> httpx.Response:
        return await client.post(
            f"{self._base_url}/models/{self._model}:embedContent",
            json={"content": {"parts": [{"text": text}]}},
            headers={"x-goog-api-key": self._api_key or ""},
        )

    def _parse_vector(self, payload: Any) -> Any:
        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        return embedding.get("values") if isinstance(embedding, dict) else None


def _require_text(text: Any) -> None:
    if not isinstance(text, str) or not text.strip():
        raise InvalidInput("text for embedding must be a non-empty string")


def build_embedding_client(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> EmbeddingClient:
    client_class: type[_RetryingEmbeddingClient]
    if settings.embed_provider == "gemini":
        client_class = GeminiEmbeddingClient
    elif settings.embed_provider in {"ollama", "openai"}:
        client_class = OllamaEmbeddingClient
    else:
        raise ValueError(f"Unsupported EMBED_PROVIDER: {settings.embed_provider}")

    return client_class(
        base_url=settings.embed_base_url,
        model=settings.embed_model,
        api_key=settings.embed_api_key,
        timeout_seconds=settings.embed_timeout_seconds,
        retry_policy=RetryPolicy(
            max_attempts=settings.embed_max_attempts,
            initial_delay_seconds=settings.embed_initial_delay_seconds,
            max_delay_seconds=settings.embed_max_delay_seconds,
        ),
        expected_dim=settings.embed_dim,
        concurrency=settings.embed_concurrency,
        transport=transport,
    )
