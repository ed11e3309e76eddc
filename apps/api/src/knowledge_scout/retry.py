from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from random import random
from typing import Awaitable, Callable, TypeVar

import httpx

from knowledge_scout.errors import PermanentProviderError, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MalformedPayloadError(ValueError):
    """Provider answered 2xx with a body that carries no usable result."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay_seconds: float = 0.3
    max_delay_seconds: float = 4.0
    jitter_ratio: float = 0.5


def backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    *,
    jitter: Callable[[], float] = random,
) -> float:
    """Exponential delay before retrying after ``attempt`` (1-based) failed."""
    base = min(policy.max_delay_seconds, policy.initial_delay_seconds * 2 ** (attempt - 1))
    return base + jitter() * policy.jitter_ratio * base


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, (httpx.TransportError, MalformedPayloadError))


def describe_error(exc: BaseException | None) -> str:
    if exc is None:
        return "<no error>"
    if isinstance(exc, httpx.HTTPStatusError):
        message = None
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                message = error.get("message")
            elif isinstance(error, str):
                message = error
        return f"HTTP {exc.response.status_code}: {message or exc.response.reason_phrase}"
    return str(exc) or exc.__class__.__name__


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str,
    exhausted: type[RetryExhausted] = RetryExhausted,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    jitter: Callable[[], float] = random,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except (httpx.HTTPError, MalformedPayloadError) as exc:
            if not is_transient(exc):
                status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
                logger.error("%s rejected status=%s error=%s", label, status, describe_error(exc))
                raise PermanentProviderError(
                    f"{label} rejected by provider: {describe_error(exc)}",
                    status=status,
                ) from exc

            last_error = exc
            logger.warning(
                "%s attempt failed attempt=%s/%s error=%s",
                label,
                attempt,
                policy.max_attempts,
                describe_error(exc),
            )
            if attempt >= policy.max_attempts:
                break

            delay = backoff_delay(attempt, policy, jitter=jitter)
            logger.debug("%s retrying in %.3fs", label, delay)
            await sleep(delay)

    raise exhausted(
        f"{label} failed after {policy.max_attempts} attempts: {describe_error(last_error)}",
        attempts=policy.max_attempts,
    ) from last_error
