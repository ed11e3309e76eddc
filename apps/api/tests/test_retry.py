import asyncio

import httpx
import pytest

from knowledge_scout.errors import PermanentProviderError, RetryExhausted
from knowledge_scout.retry import (
    MalformedPayloadError,
    RetryPolicy,
    backoff_delay,
    call_with_retry,
    is_transient,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://provider.local/v1/embeddings")
    response = httpx.Response(status_code, request=request, json={"error": {"message": "nope"}})
    return httpx.HTTPStatusError("request failed", request=request, response=response)


def test_backoff_delay_doubles_and_caps() -> None:
    policy = RetryPolicy(initial_delay_seconds=0.3, max_delay_seconds=4.0)

    delays = [backoff_delay(attempt, policy, jitter=lambda: 0.0) for attempt in range(1, 7)]

    assert delays == pytest.approx([0.3, 0.6, 1.2, 2.4, 4.0, 4.0])


def test_backoff_delay_adds_bounded_jitter() -> None:
    policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=4.0, jitter_ratio=0.5)

    assert backoff_delay(2, policy, jitter=lambda: 1.0) == pytest.approx(3.0)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_status_error(429), True),
        (_status_error(500), True),
        (_status_error(503), True),
        (_status_error(400), False),
        (_status_error(404), False),
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (MalformedPayloadError("missing data"), True),
    ],
)
def test_is_transient(exc: Exception, expected: bool) -> None:
    assert is_transient(exc) is expected


def test_call_with_retry_recovers_after_transient_failures() -> None:
    sleeps: list[float] = []
    outcomes: list[Exception | str] = [_status_error(503), httpx.ConnectError("refused"), "ok"]

    async def operation() -> str:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    result = asyncio.run(
        call_with_retry(
            operation,
            policy=RetryPolicy(max_attempts=5),
            label="test",
            sleep=fake_sleep,
            jitter=lambda: 0.0,
        )
    )

    assert result == "ok"
    assert sleeps == pytest.approx([0.3, 0.6])


def test_call_with_retry_does_not_retry_permanent_errors() -> None:
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise _status_error(401)

    async def fake_sleep(delay: float) -> None:
        raise AssertionError("permanent errors must not back off")

    with pytest.raises(PermanentProviderError) as exc_info:
        asyncio.run(call_with_retry(operation, policy=RetryPolicy(), label="test", sleep=fake_sleep))

    assert calls == 1
    assert exc_info.value.status == 401
    assert "nope" in exc_info.value.detail


def test_call_with_retry_reports_attempt_count_on_exhaustion() -> None:
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise _status_error(503)

    async def fake_sleep(delay: float) -> None:
        return None

    with pytest.raises(RetryExhausted) as exc_info:
        asyncio.run(
            call_with_retry(operation, policy=RetryPolicy(max_attempts=4), label="test", sleep=fake_sleep)
        )

    assert calls == 4
    assert exc_info.value.attempts == 4
    assert exc_info.value.to_payload()["attempts"] == 4
