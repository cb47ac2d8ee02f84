"""Minimal async retry with explicit error contracts.

Design goals:
- Class-based allowlist, no substring matching on messages
- Pure exponential backoff (1s, 2s, 4s, ...) without jitter
- One normalized error type once the retry budget is spent
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import traceback
from typing import TYPE_CHECKING, TypeVar

from castor.errors import (
    CastError,
    CastorError,
    ConfigurationError,
    GenerationProviderError,
    InvalidRequestError,
    TransientAPIError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

_BACKTRACE_FRAMES = 10

# Indirection point so tests can record delays without sleeping.
_sleep = asyncio.sleep

_NEVER_RETRIED: tuple[type[BaseException], ...] = (
    InvalidRequestError,
    CastError,
    ConfigurationError,
)
_PASSTHROUGH: tuple[type[BaseException], ...] = (
    *_NEVER_RETRIED,
    GenerationProviderError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with pure exponential backoff."""

    max_retries: int = 3
    backoff_base_s: float = 1.0
    #: Exception classes eligible for retry. An empty tuple disables retries.
    retry_on: tuple[type[BaseException], ...] = (TransientAPIError,)

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_retries < 0:
            raise ValueError("RetryPolicy.max_retries must be >= 0")
        if self.backoff_base_s < 0:
            raise ValueError("RetryPolicy.backoff_base_s must be >= 0")
        for cls in self.retry_on:
            if not (isinstance(cls, type) and issubclass(cls, BaseException)):
                raise ValueError(
                    f"RetryPolicy.retry_on entries must be exception classes, got {cls!r}"
                )

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number *attempt* (1-based)."""
        return self.backoff_base_s * (2 ** (attempt - 1))


def should_retry(exc: BaseException, policy: RetryPolicy) -> bool:
    """Return True when *exc* is in the policy allowlist.

    Cancellation, validation, and cast failures are never retried: a
    malformed request will not become well-formed on a second attempt.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, _NEVER_RETRIED):
        return False
    if not policy.retry_on:
        return False
    return isinstance(exc, policy.retry_on)


def format_error_message(exc: BaseException, *, verbose: bool) -> str:
    """Build the user-facing message for a wrapped provider error."""
    body = getattr(exc, "body", None)
    if body:
        message = str(body)
    else:
        message = str(exc) or f"An unknown error occurred: {type(exc).__name__}"
    if verbose:
        return f"[{type(exc).__name__}] {message}"
    return message


def wrap_generation_error(
    exc: BaseException, *, verbose: bool = False
) -> GenerationProviderError:
    """Wrap *exc* into a GenerationProviderError carrying its traceback."""
    if verbose:
        logger.error("Error: %s: %s", type(exc).__name__, exc)
        frames = traceback.format_tb(exc.__traceback__)[:_BACKTRACE_FRAMES]
        logger.debug(
            "Backtrace:\n  %s", "\n  ".join(frame.strip() for frame in frames)
        )
    hint = exc.hint if isinstance(exc, CastorError) else None
    wrapped = GenerationProviderError(
        format_error_message(exc, verbose=verbose), original=exc, hint=hint
    )
    return wrapped.with_traceback(exc.__traceback__)


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    verbose: bool = False,
) -> T:
    """Run an async factory, retrying allowlisted failures.

    The attempt counter is local to this call. Validation and cast errors
    propagate unchanged; every other failure surfaces as a single
    GenerationProviderError once it is not retryable or retries run out.
    """
    retries = 0
    while True:
        try:
            return await factory()
        except _PASSTHROUGH:
            raise
        except Exception as exc:
            if should_retry(exc, policy) and retries < policy.max_retries:
                retries += 1
                logger.info(
                    "Retry attempt %d/%d after %s",
                    retries,
                    policy.max_retries,
                    type(exc).__name__,
                )
                await _sleep(policy.delay_for(retries))
                continue
            raise wrap_generation_error(exc, verbose=verbose) from exc
