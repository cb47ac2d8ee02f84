"""OpenRouter provider (OpenAI-compatible Chat Completions plus routing extensions)."""

from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import AliasChoices, Field, field_validator, model_validator

from castor._model import WireModel
from castor.providers.openai_chat import (
    ChatRequest,
    OpenAIChatProvider,
    ToolChoiceFunction,
    normalize_tool_choice as normalize_openai_tool_choice,
    parse_chat_completion,
)
from castor.providers.base import ProviderCapabilities
from castor.response import PromptResponse
from castor.schema import normalize_response_format, wants_json
from castor.usage import Usage

Quantization = Literal["int4", "int8", "fp4", "fp6", "fp8", "fp16", "bf16", "fp32", "unknown"]


class MaxPrice(WireModel):
    """Price ceilings (USD per million tokens, per image, per request)."""

    prompt: float | None = Field(
        None, ge=0, validation_alias=AliasChoices("prompt", "prompt_tokens")
    )
    completion: float | None = Field(
        None, ge=0, validation_alias=AliasChoices("completion", "completion_tokens")
    )
    image: float | None = Field(None, ge=0)
    audio: float | None = Field(None, ge=0)
    request: float | None = Field(None, ge=0)


class ProviderPreferences(WireModel):
    """Upstream provider routing preferences."""

    allow_fallbacks: bool | None = Field(
        None, validation_alias=AliasChoices("allow_fallbacks", "enable_fallbacks")
    )
    require_parameters: bool | None = None
    data_collection: Literal["deny", "allow"] | None = None
    zdr: bool | None = None
    order: list[str] = Field(default_factory=list)
    only: list[str] = Field(default_factory=list)
    ignore: list[str] = Field(default_factory=list)
    quantizations: list[Quantization] = Field(default_factory=list)
    sort: Literal["price", "throughput", "latency"] | None = None
    max_price: MaxPrice | None = None


class PdfConfig(WireModel):
    engine: Literal["mistral-ocr", "pdf-text", "native"] | None = None


class Plugin(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"id"})

    id: Literal["file-parser"]
    pdf: PdfConfig | None = None


def normalize_tool_choice(value: Any) -> Any:
    """OpenRouter spells forced tool use ``"any"``."""
    if value == "required":
        return "any"
    return normalize_openai_tool_choice(value)


class OpenRouterRequest(ChatRequest):
    """Chat request with OpenRouter routing, plugins and extra samplers.

    A JSON ``response_format`` sets ``provider.require_parameters`` so the
    request is only routed to upstreams that honour it.
    """

    union_merge_messages: ClassVar[bool] = True

    model: str = Field("openrouter/auto", min_length=1)
    tool_choice: Literal["none", "auto", "any"] | ToolChoiceFunction | None = None

    plugins: list[Plugin] | None = None
    provider: ProviderPreferences | None = None
    transforms: list[str] = Field(default_factory=list)
    models: list[str] = Field(default_factory=list)
    route: Literal["fallback"] = "fallback"

    top_k: int | None = Field(None, ge=0)
    min_p: float | None = Field(None, ge=0, le=1)
    top_a: float | None = Field(None, ge=0, le=1)
    repetition_penalty: float | None = Field(None, gt=0, le=2)

    @model_validator(mode="before")
    @classmethod
    def _require_parameters_for_json(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("response_format") is None:
            return data
        if not wants_json(normalize_response_format(data["response_format"])):
            return data
        data = dict(data)
        provider = data.get("provider") or {}
        if isinstance(provider, ProviderPreferences):
            provider = provider.model_copy(update={"require_parameters": True})
        else:
            provider = {**provider, "require_parameters": True}
        data["provider"] = provider
        return data

    @field_validator("tool_choice", mode="before")
    @classmethod
    def _normalize_tool_choice(cls, value: Any) -> Any:
        return normalize_tool_choice(value)


class OpenRouterProvider(OpenAIChatProvider):
    """OpenRouter via its OpenAI-compatible endpoint."""

    name = "openrouter"
    request_class = OpenRouterRequest
    embed_request_class = None
    default_model = "openrouter/auto"
    _capabilities = ProviderCapabilities(structured_outputs=True, union_merge_messages=True)
    # OpenRouter repeats ``role`` on every chunk; the latest value wins.
    stream_overwrite_keys = frozenset({"role"})

    def parse_response(self, raw: dict[str, Any], request: WireModel) -> PromptResponse:
        return parse_chat_completion(raw, usage_parser=Usage.from_openrouter)

    def parse_stream_usage(self, accumulator: Any) -> Usage | None:
        return Usage.from_openrouter(accumulator.usage_raw)
