"""Retry wrapper: allowlist classification, backoff schedule, error normalization."""

from __future__ import annotations

import asyncio
import logging

import pytest

from castor.errors import (
    APIError,
    CastError,
    GenerationProviderError,
    InvalidRequestError,
    RateLimitError,
    TransientAPIError,
)
from castor.retry import RetryPolicy, retry_async, should_retry

pytestmark = pytest.mark.unit


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Record backoff delays instead of sleeping."""
    recorded: list[float] = []

    async def fake_sleep(delay: float) -> None:
        recorded.append(delay)

    monkeypatch.setattr("castor.retry._sleep", fake_sleep)
    return recorded


def _flaky(failures: list[BaseException], result: str = "ok"):
    calls = {"n": 0}

    async def factory() -> str:
        calls["n"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return factory, calls


# =============================================================================
# Policy
# =============================================================================


def test_policy_defaults() -> None:
    policy = RetryPolicy()
    assert policy.max_retries == 3
    assert policy.retry_on == (TransientAPIError,)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


@pytest.mark.parametrize(
    "kwargs",
    [{"max_retries": -1}, {"backoff_base_s": -0.5}, {"retry_on": ("not-a-class",)}],
)
def test_policy_rejects_invalid_values(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_should_retry_never_retries_validation_or_cast() -> None:
    policy = RetryPolicy(retry_on=(Exception,))
    assert should_retry(InvalidRequestError("x"), policy) is False
    assert should_retry(CastError("x"), policy) is False
    assert should_retry(asyncio.CancelledError(), policy) is False
    assert should_retry(RuntimeError("x"), policy) is True


def test_should_retry_empty_allowlist_disables_retries() -> None:
    assert should_retry(TransientAPIError("x"), RetryPolicy(retry_on=())) is False


# =============================================================================
# retry_async
# =============================================================================


@pytest.mark.asyncio
async def test_retries_twice_then_succeeds_with_exponential_delays(
    sleeps: list[float],
) -> None:
    factory, calls = _flaky([TransientAPIError("blip"), RateLimitError("slow down")])

    result = await retry_async(factory, policy=RetryPolicy(max_retries=3))

    assert result == "ok"
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_retries_wrap_last_error(sleeps: list[float]) -> None:
    failures = [TransientAPIError(f"blip {i}") for i in range(4)]
    factory, calls = _flaky(failures)

    with pytest.raises(GenerationProviderError) as exc_info:
        await retry_async(factory, policy=RetryPolicy(max_retries=3))

    assert calls["n"] == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert str(exc_info.value) == "blip 3"
    assert isinstance(exc_info.value.original, TransientAPIError)
    assert exc_info.value.__cause__ is exc_info.value.original


@pytest.mark.asyncio
async def test_non_retryable_error_is_wrapped_without_delay(sleeps: list[float]) -> None:
    factory, calls = _flaky([APIError("forbidden", status_code=403)])

    with pytest.raises(GenerationProviderError) as exc_info:
        await retry_async(factory, policy=RetryPolicy())

    assert calls["n"] == 1
    assert sleeps == []
    assert exc_info.value.status_code == 403
    assert exc_info.value.__traceback__ is not None


@pytest.mark.asyncio
async def test_validation_errors_propagate_unwrapped(sleeps: list[float]) -> None:
    factory, _ = _flaky([InvalidRequestError("bad temperature", field="temperature")])

    with pytest.raises(InvalidRequestError):
        await retry_async(factory, policy=RetryPolicy())
    assert sleeps == []


@pytest.mark.asyncio
async def test_attempt_counter_resets_per_call(sleeps: list[float]) -> None:
    policy = RetryPolicy(max_retries=1)
    for _ in range(2):
        factory, calls = _flaky([TransientAPIError("blip")])
        assert await retry_async(factory, policy=policy) == "ok"
        assert calls["n"] == 2
    assert sleeps == [1.0, 1.0]


@pytest.mark.asyncio
async def test_verbose_prefixes_class_name_and_logs_backtrace(
    sleeps: list[float], caplog: pytest.LogCaptureFixture
) -> None:
    factory, _ = _flaky([ValueError("kaput")])

    with caplog.at_level(logging.DEBUG, logger="castor.retry"):
        with pytest.raises(GenerationProviderError) as exc_info:
            await retry_async(factory, policy=RetryPolicy(), verbose=True)

    assert str(exc_info.value) == "[ValueError] kaput"
    assert any("Backtrace" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_body_preferred_over_message_when_present(sleeps: list[float]) -> None:
    err = APIError("generic", body={"error": {"message": "model not found"}})
    factory, _ = _flaky([err])

    with pytest.raises(GenerationProviderError) as exc_info:
        await retry_async(factory, policy=RetryPolicy())

    assert "model not found" in str(exc_info.value)
