"""Ollama provider over its OpenAI-compatible ``/v1`` endpoint."""

from __future__ import annotations

from typing import Any, ClassVar, Literal, Union

from pydantic import Field, field_validator

from castor._model import WireModel
from castor.providers.base import ProviderCapabilities
from castor.providers.openai_chat import (
    ChatRequest,
    OpenAIChatProvider,
    parse_chat_completion,
    parse_embeddings,
)
from castor.response import EmbedResponse, PromptResponse
from castor.usage import Usage


class OllamaChatRequest(ChatRequest):
    """Chat request plus Ollama's ``format``, ``options``, ``keep_alive`` and ``raw``."""

    union_merge_messages: ClassVar[bool] = True

    format: Union[Literal["json"], dict[str, Any], None] = None
    options: dict[str, Any] | None = None
    keep_alive: str | int | None = None
    raw: bool = False


class OllamaEmbeddingRequest(WireModel):
    """Embedding request; a single string input is stored as a one-item list."""

    wire_required: ClassVar[frozenset[str]] = frozenset({"model", "input"})

    model: str = Field(min_length=1)
    input: list[str] = Field(min_length=1)
    truncate: bool = True
    options: dict[str, Any] | None = None
    keep_alive: str | None = None
    dimensions: int | None = Field(None, ge=1)

    @field_validator("input", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("input")
    @classmethod
    def _no_empty_strings(cls, value: list[str]) -> list[str]:
        for index, item in enumerate(value):
            if not item:
                raise ValueError(f"cannot contain empty strings at index {index}")
        return value


def _usage(usage: dict[str, Any] | None) -> Usage | None:
    # /v1 reports OpenAI-style counters; native durations appear on /api.
    if usage and ("eval_count" in usage or "total_duration" in usage):
        return Usage.from_ollama(usage)
    return Usage.from_openai_chat(usage)


class OllamaProvider(OpenAIChatProvider):
    """Local models via Ollama."""

    name = "ollama"
    request_class = OllamaChatRequest
    embed_request_class = OllamaEmbeddingRequest
    _capabilities = ProviderCapabilities(
        structured_outputs=True, embeddings=True, union_merge_messages=True
    )
    # Ollama repeats ``role`` on every chunk; the latest value wins.
    stream_overwrite_keys = frozenset({"role"})

    def parse_response(self, raw: dict[str, Any], request: WireModel) -> PromptResponse:
        return parse_chat_completion(raw, usage_parser=_usage)

    def parse_stream_usage(self, accumulator: Any) -> Usage | None:
        return _usage(accumulator.usage_raw)

    def parse_embed_response(self, raw: dict[str, Any]) -> EmbedResponse:
        return parse_embeddings(raw)
