"""Token usage normalized across providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _ns_to_ms(nanoseconds: Any) -> int | None:
    if not isinstance(nanoseconds, (int, float)):
        return None
    return round(nanoseconds / 1_000_000)


def _tokens_per_second(tokens: Any, duration_ns: Any) -> float | None:
    if not isinstance(tokens, (int, float)) or not isinstance(duration_ns, (int, float)):
        return None
    if duration_ns <= 0:
        return None
    return round(tokens / (duration_ns / 1_000_000_000), 2)


def _sum_optional(a: int | None, b: int | None) -> int | None:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


def _details(usage: dict[str, Any], *keys: str) -> dict[str, Any]:
    return {key: usage[key] for key in keys if usage.get(key) is not None}


@dataclass(frozen=True)
class Usage:
    """Token counts for one generation.

    ``total_tokens`` is computed from input and output when the provider
    does not report it.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int | None = None
    cached_tokens: int | None = None
    reasoning_tokens: int | None = None
    audio_tokens: int | None = None
    cache_creation_tokens: int | None = None
    service_tier: str | None = None
    duration_ms: int | None = None
    provider_details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.total_tokens is None:
            object.__setattr__(
                self, "total_tokens", (self.input_tokens or 0) + (self.output_tokens or 0)
            )

    def __add__(self, other: Usage | None) -> Usage:
        # 0 lets sum() start from its default.
        if other is None or (isinstance(other, int) and other == 0):
            return self
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=(self.total_tokens or 0) + (other.total_tokens or 0),
            cached_tokens=_sum_optional(self.cached_tokens, other.cached_tokens),
            cache_creation_tokens=_sum_optional(
                self.cache_creation_tokens, other.cache_creation_tokens
            ),
            reasoning_tokens=_sum_optional(self.reasoning_tokens, other.reasoning_tokens),
            audio_tokens=_sum_optional(self.audio_tokens, other.audio_tokens),
        )

    __radd__ = __add__

    @classmethod
    def from_openai_chat(cls, usage: dict[str, Any] | None) -> Usage | None:
        if not usage:
            return None
        prompt_details = usage.get("prompt_tokens_details") or {}
        completion_details = usage.get("completion_tokens_details") or {}
        audio = [
            value
            for value in (
                prompt_details.get("audio_tokens"),
                completion_details.get("audio_tokens"),
            )
            if value is not None
        ]
        return cls(
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
            total_tokens=usage.get("total_tokens"),
            cached_tokens=prompt_details.get("cached_tokens"),
            reasoning_tokens=completion_details.get("reasoning_tokens"),
            audio_tokens=sum(audio) if sum(audio) > 0 else None,
            provider_details=_details(
                usage, "prompt_tokens_details", "completion_tokens_details"
            ),
        )

    @classmethod
    def from_openai_embedding(cls, usage: dict[str, Any] | None) -> Usage | None:
        if not usage:
            return None
        return cls(
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=0,
            total_tokens=usage.get("total_tokens"),
            provider_details={
                k: v for k, v in usage.items() if k not in ("prompt_tokens", "total_tokens")
            },
        )

    @classmethod
    def from_openai_responses(cls, usage: dict[str, Any] | None) -> Usage | None:
        if not usage:
            return None
        input_details = usage.get("input_tokens_details") or {}
        output_details = usage.get("output_tokens_details") or {}
        return cls(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            total_tokens=usage.get("total_tokens"),
            cached_tokens=input_details.get("cached_tokens"),
            reasoning_tokens=output_details.get("reasoning_tokens"),
            provider_details=_details(usage, "input_tokens_details", "output_tokens_details"),
        )

    @classmethod
    def from_anthropic(cls, usage: dict[str, Any] | None) -> Usage | None:
        if not usage:
            return None
        return cls(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            cached_tokens=usage.get("cache_read_input_tokens"),
            cache_creation_tokens=usage.get("cache_creation_input_tokens"),
            service_tier=usage.get("service_tier"),
            provider_details=_details(usage, "cache_creation", "server_tool_use"),
        )

    @classmethod
    def from_ollama(cls, usage: dict[str, Any] | None) -> Usage | None:
        """Build from Ollama's native counters (durations are nanoseconds)."""
        if not usage:
            return None
        details = {
            "load_duration_ms": _ns_to_ms(usage.get("load_duration")),
            "prompt_eval_duration_ms": _ns_to_ms(usage.get("prompt_eval_duration")),
            "eval_duration_ms": _ns_to_ms(usage.get("eval_duration")),
            "tokens_per_second": _tokens_per_second(
                usage.get("eval_count"), usage.get("eval_duration")
            ),
        }
        return cls(
            input_tokens=usage.get("prompt_eval_count") or 0,
            output_tokens=usage.get("eval_count") or 0,
            duration_ms=_ns_to_ms(usage.get("total_duration")),
            provider_details={k: v for k, v in details.items() if v is not None},
        )

    @classmethod
    def from_openrouter(cls, usage: dict[str, Any] | None) -> Usage | None:
        return cls.from_openai_chat(usage)

    @classmethod
    def from_provider_usage(cls, usage: Any) -> Usage | None:
        """Detect the provider from the key shape and normalize."""
        if not isinstance(usage, dict):
            return None
        if "total_duration" in usage or "eval_count" in usage:
            return cls.from_ollama(usage)
        if "cache_creation" in usage or "service_tier" in usage:
            return cls.from_anthropic(usage)
        if "input_tokens" in usage and "input_tokens_details" in usage:
            return cls.from_openai_responses(usage)
        if "completion_tokens" in usage:
            return cls.from_openai_chat(usage)
        if "prompt_tokens" in usage:
            return cls.from_openai_embedding(usage)
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in usage.items() if k in known})
