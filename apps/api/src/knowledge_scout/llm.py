from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Protocol

import httpx

from knowledge_scout.config import Settings
from knowledge_scout.errors import GenerationFailed, ProviderError
from knowledge_scout.retry import MalformedPayloadError, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class LLMClient(Protocol):
    async def generate_answer(self, *, system: str, prompt: str) -> ChatResult: ...


class _RetryingChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str = "",
        api_key: str | None = None,
        timeout_seconds: float = 120.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3, max_delay_seconds=5.0)
        self._transport = transport
        self._sleep = sleep

    async def generate_answer(self, *, system: str, prompt: str) -> ChatResult:
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds,
            transport=self._transport,
        ) as client:
            for model, used_fallback in self._model_candidates():
                try:
                    content = await call_with_retry(
                        lambda: self._chat_completion(client, model=model, system=system, prompt=prompt),
                        policy=self._retry_policy,
                        label=f"generation model={model}",
                        exhausted=GenerationFailed,
                        sleep=self._sleep,
                    )
                except ProviderError as exc:
                    if used_fallback or not self._has_fallback():
                        raise
                    logger.warning(
                        "generation falling back model=%s fallback=%s error=%s",
                        model,
                        self._fallback_model,
                        exc,
                    )
                    continue

                return ChatResult(answer=content, model=model, used_fallback=used_fallback)

        raise GenerationFailed("No model candidates configured", attempts=0)

    def _has_fallback(self) -> bool:
        return bool(self._fallback_model) and self._fallback_model != self._default_model

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._has_fallback():
            candidates.append((self._fallback_model, True))
        return candidates

    async def _chat_completion(
        self,
        client: httpx.AsyncClient,
        *,
        model: str,
        system: str,
        prompt: str,
    ) -> str:
        response = await self._post(client, model=model, system=system, prompt=prompt)
        response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedPayloadError("Invalid generation payload: not JSON") from exc

        content = self._parse_content(payload)
        if not isinstance(content, str) or not content.strip():
            raise MalformedPayloadError("Invalid generation payload: missing assistant content")
        return content.strip()

    async def _post(
        self,
        client: httpx.AsyncClient,
        *,
        model: str,
        system: str,
        prompt: str,
    ) -> httpx.Response:
        raise NotImplementedError

    def _parse_content(self, payload: Any) -> Any:
        raise NotImplementedError


class OllamaChatClient(_RetryingChatClient):
    """OpenAI-compatible ``/chat/completions`` endpoint."""

    async def _post(
        self,
        client: httpx.AsyncClient,
        *,
        model: str,
        system: str,
        prompt: str,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
        return await client.post(
            f"{self._base_url}/chat/completions",
            json={
                "model": model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                "temperature": 0,
            },
            headers=headers,
        )

    def _parse_content(self, payload: Any) -> Any:
        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list) or not choices:
            raise MalformedPayloadError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        return message.get("content") if isinstance(message, dict) else None


class GeminiChatClient(_RetryingChatClient):
    """Gemini ``models/{model}:generateContent`` endpoint."""

    async def _post(
        self,
        client: httpx.AsyncClient,
        *,
        model: str,
        system: str,
        prompt: str,
    ) -> httpx.Response:
        return await client.post(
            f"{self._base_url}/models/{model}:generateContent",
            json={
                "systemInstruction": {"parts": [{"text": system}]},
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": {"temperature": 0},
            },
            headers={"x-goog-api-key": self._api_key or ""},
        )

    def _parse_content(self, payload: Any) -> Any:
        candidates = payload.get("candidates") if isinstance(payload, dict) else None
        if not isinstance(candidates, list) or not candidates:
            raise MalformedPayloadError("Invalid generation payload: missing candidates")

        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return None
        return "".join(
            part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)
        )


def build_llm_client(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMClient:
    client_class: type[_RetryingChatClient]
    if settings.llm_provider == "gemini":
        client_class = GeminiChatClient
    elif settings.llm_provider in {"ollama", "openai"}:
        client_class = OllamaChatClient
    else:
        raise ValueError(f"Unsupported LLM_PROVIDER: {settings.llm_provider}")

    return client_class(
        base_url=settings.llm_base_url,
        default_model=settings.llm_model,
        fallback_model=settings.llm_fallback_model,
        api_key=settings.llm_api_key,
        timeout_seconds=settings.llm_timeout_seconds,
        retry_policy=RetryPolicy(
            max_attempts=settings.llm_max_attempts,
            initial_delay_seconds=settings.llm_initial_delay_seconds,
            max_delay_seconds=settings.llm_max_delay_seconds,
        ),
        transport=transport,
    )
