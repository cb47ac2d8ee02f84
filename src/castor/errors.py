"""Exception hierarchy for Castor."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class InvalidRequestError(CastorError):
    """A request failed field-level validation before any network call.

    ``field`` is the dotted path of the offending field and ``constraint``
    the violated rule, so callers can report both without parsing text.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        constraint: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.field = field
        self.constraint = constraint


class CastError(CastorError):
    """Content, message, or tool payload has an unrecognized shape."""


class APIError(CastorError):
    """API call failed.

    Providers attach retry metadata so the retry wrapper can classify
    failures by exception class without substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        body: object | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.body = body


class TransientAPIError(APIError):
    """Timeouts, transport failures, and retryable HTTP statuses."""


class RateLimitError(TransientAPIError):
    """Rate limit exceeded (HTTP 429)."""


class GenerationProviderError(CastorError):
    """Normalized provider failure surfaced to callers.

    Raised once retries are exhausted or when a provider error is not
    retryable. The original exception is kept on ``original`` and as
    ``__cause__``; its traceback is carried over.
    """

    def __init__(
        self,
        message: str,
        *,
        original: BaseException | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.original = original

    @property
    def status_code(self) -> int | None:
        return getattr(self.original, "status_code", None)

    @property
    def provider(self) -> str | None:
        return getattr(self.original, "provider", None)


class StreamAbandonedError(GenerationProviderError):
    """A stream closed before the provider sent a terminal signal."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
