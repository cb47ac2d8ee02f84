"""OpenAI Chat Completions provider."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar, Literal, Union

from pydantic import Field, field_validator, model_validator

from castor._model import WireModel
from castor.errors import CastError
from castor.messages import Action, Message
from castor.providers._stream import ChatStreamAccumulator
from castor.providers.base import BaseProvider, ProviderCapabilities
from castor.providers.clients import OPENAI_CHAT_KEYS, OpenAIClient
from castor.providers.openai_content import (
    MESSAGE_ROLES,
    TOOL_NAME_PATTERN,
    ChatMessage,
    ChatMessageBase,
    cast_messages,
    group_messages,
    instructions_to_messages,
)
from castor.response import EmbedResponse, PromptResponse
from castor.schema import normalize_response_format
from castor.usage import Usage

if TYPE_CHECKING:
    from castor.providers._stream import StreamAccumulator, StreamCallback

logger = logging.getLogger(__name__)

# =============================================================================
# Tools
# =============================================================================


class FunctionDefinition(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str = Field(pattern=TOOL_NAME_PATTERN)
    description: str | None = None
    parameters: dict[str, Any] | None = None
    strict: bool | None = None


class FunctionTool(WireModel):
    """``{"type": "function", "function": {name, description, parameters}}``."""

    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "function"})

    type: Literal["function"] = Field("function", frozen=True)
    function: FunctionDefinition


def normalize_tool(tool: Any) -> Any:
    """Wrap a generic ``{name, description, parameters}`` descriptor."""
    if isinstance(tool, WireModel) or not isinstance(tool, dict):
        return tool
    if tool.get("type") == "function" and isinstance(tool.get("function"), dict):
        return tool
    if "name" in tool:
        function = {
            "name": tool["name"],
            "description": tool.get("description"),
            "parameters": tool.get("parameters", tool.get("input_schema")),
        }
        if "strict" in tool:
            function["strict"] = tool["strict"]
        function = {k: v for k, v in function.items() if v is not None}
        return {"type": "function", "function": function}
    raise CastError(f"Cannot normalize tool definition with keys {sorted(tool)}")


class ToolChoiceFunctionName(WireModel):
    name: str


class ToolChoiceFunction(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "function"})

    type: Literal["function"] = Field("function", frozen=True)
    function: ToolChoiceFunctionName


def normalize_tool_choice(value: Any) -> Any:
    """``"auto"``/``"required"``/``"none"`` pass through; ``{name}`` is wrapped."""
    if isinstance(value, dict):
        if value.get("type") == "function" and isinstance(value.get("function"), dict):
            return value
        if "name" in value:
            return {"type": "function", "function": {"name": value["name"]}}
    return value


# =============================================================================
# Requests
# =============================================================================


class ChatRequest(WireModel):
    """Chat Completions request.

    ``instructions`` (string or list) becomes developer messages prepended
    to ``messages``. Turns are stored as given and consecutive same-role
    turns are grouped only in ``to_wire()``. Fields equal to the defaults
    below are omitted from the wire payload.
    """

    wire_required: ClassVar[frozenset[str]] = frozenset(
        {"model", "messages", "web_search_options"}
    )
    message_roles: ClassVar[dict[str, type[ChatMessageBase]]] = MESSAGE_ROLES
    #: ``messages=`` appends only turns not already present.
    union_merge_messages: ClassVar[bool] = False

    model: str = Field(min_length=1)
    messages: list[ChatMessage] = Field(min_length=1)

    frequency_penalty: float = Field(0, ge=-2, le=2)
    logprobs: bool = False
    modalities: list[Literal["text", "audio"]] = Field(default_factory=lambda: ["text"])
    n: int = Field(1, ge=1, le=128)
    parallel_tool_calls: bool = True
    presence_penalty: float = Field(0, ge=-2, le=2)
    service_tier: Literal["auto", "default", "flex", "scale", "priority"] = "auto"
    store: bool = False
    stream: bool = False
    temperature: float = Field(1, ge=0, le=2)
    top_p: float = Field(1, ge=0, le=1)

    audio: dict[str, Any] | None = None
    logit_bias: dict[str, int] | None = None
    max_completion_tokens: int | None = Field(None, ge=1)
    max_tokens: int | None = Field(None, ge=1)
    metadata: dict[str, str] | None = None
    prediction: dict[str, Any] | None = None
    prompt_cache_key: str | None = None
    reasoning_effort: Literal["minimal", "low", "medium", "high"] | None = None
    response_format: dict[str, Any] | None = None
    safety_identifier: str | None = None
    seed: int | None = None
    stop: str | list[str] | None = None
    stream_options: dict[str, Any] | None = None
    tool_choice: Literal["none", "auto", "required"] | ToolChoiceFunction | None = None
    tools: list[FunctionTool] | None = None
    top_logprobs: int | None = Field(None, ge=0, le=20)
    user: str | None = None
    verbosity: Literal["low", "medium", "high"] | None = None
    web_search_options: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _apply_instructions(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "message" in data and "messages" not in data:
            data["messages"] = data.pop("message")
        if "instructions" in data:
            instructions = instructions_to_messages(data.pop("instructions"))
            current = data.get("messages")
            if current is None:
                current = []
            elif not isinstance(current, (list, tuple)):
                current = [current]
            data["messages"] = [*instructions, *current]
        return data

    @field_validator("messages", mode="before")
    @classmethod
    def _cast_messages(cls, value: Any) -> Any:
        return cast_messages(value, cls.message_roles, group=False)

    @field_validator("tools", mode="before")
    @classmethod
    def _normalize_tools(cls, value: Any) -> Any:
        if value is None:
            return None
        return [normalize_tool(tool) for tool in value]

    @field_validator("tool_choice", mode="before")
    @classmethod
    def _normalize_tool_choice(cls, value: Any) -> Any:
        return normalize_tool_choice(value)

    @field_validator("response_format", mode="before")
    @classmethod
    def _normalize_response_format(cls, value: Any) -> Any:
        return normalize_response_format(value)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "instructions":
            super().__setattr__("messages", [*instructions_to_messages(value), *self.messages])
            return
        if name == "message":
            name = "messages"
        if name == "messages" and self.union_merge_messages:
            # Re-assigning the running conversation must not duplicate turns.
            current = list(self.messages)
            incoming = cast_messages(value, self.message_roles, group=False)
            value = [*current, *(m for m in incoming if m not in current)]
        super().__setattr__(name, value)

    def to_wire(self) -> dict[str, Any]:
        out = super().to_wire()
        out["messages"] = [m.to_wire() for m in group_messages(list(self.messages))]
        return out


class EmbeddingRequest(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"model", "input"})

    model: str = Field(min_length=1)
    input: Union[str, list[str], list[int], list[list[int]]]
    dimensions: int | None = Field(None, ge=1)
    encoding_format: Literal["float", "base64"] = "float"
    user: str | None = None

    @field_validator("input")
    @classmethod
    def _non_empty(cls, value: Any) -> Any:
        if not value:
            raise ValueError("input must not be empty")
        return value


# =============================================================================
# Response parsing
# =============================================================================


def parse_chat_message(raw_message: dict[str, Any]) -> Message:
    """Normalize a Chat Completions ``choices[].message`` into a Message."""
    actions = [
        Action.from_arguments(
            call.get("id"),
            (call.get("function") or {}).get("name") or "",
            (call.get("function") or {}).get("arguments"),
        )
        for call in raw_message.get("tool_calls") or []
    ]
    function_call = raw_message.get("function_call")
    if isinstance(function_call, dict) and function_call.get("name"):
        actions.append(
            Action.from_arguments(None, function_call["name"], function_call.get("arguments"))
        )
    metadata: dict[str, Any] = {}
    if raw_message.get("refusal"):
        metadata["refusal"] = raw_message["refusal"]
    if raw_message.get("annotations"):
        metadata["annotations"] = raw_message["annotations"]
    return Message(
        role="assistant",
        content=raw_message.get("content") or "",
        requested_actions=actions,
        metadata=metadata,
    )


def parse_chat_completion(
    raw: dict[str, Any], *, usage_parser: Any = Usage.from_openai_chat
) -> PromptResponse:
    choices = raw.get("choices") or []
    if not choices:
        raise CastError("Chat completion response has no choices")
    choice = choices[0]
    message = parse_chat_message(choice.get("message") or {})
    return PromptResponse(
        messages=[message],
        usage=usage_parser(raw.get("usage")),
        raw_response=raw,
        finish_reason=choice.get("finish_reason"),
        model=raw.get("model"),
        id=raw.get("id"),
    )


def parse_embeddings(
    raw: dict[str, Any], *, usage_parser: Any = Usage.from_openai_embedding
) -> EmbedResponse:
    items = sorted(raw.get("data") or [], key=lambda item: item.get("index", 0))
    return EmbedResponse(
        data=[item.get("embedding") for item in items],
        usage=usage_parser(raw.get("usage")),
        raw_response=raw,
        model=raw.get("model"),
    )


# =============================================================================
# Provider
# =============================================================================


class OpenAIChatProvider(BaseProvider):
    """OpenAI Chat Completions provider."""

    name = "openai"
    request_class = ChatRequest
    embed_request_class = EmbeddingRequest
    _capabilities = ProviderCapabilities(structured_outputs=True, embeddings=True)
    #: Stream keys replaced on every chunk instead of recorded once.
    stream_overwrite_keys: ClassVar[frozenset[str]] = frozenset()

    def create_client(self) -> OpenAIClient:
        return OpenAIClient(
            self.config.api_key,
            base_url=self.config.base_url,
            endpoint="chat",
            known_keys=OPENAI_CHAT_KEYS,
        )

    def parse_response(self, raw: dict[str, Any], request: WireModel) -> PromptResponse:
        return parse_chat_completion(raw)

    def stream_accumulator(
        self, request: WireModel, on_stream: StreamCallback | None
    ) -> StreamAccumulator:
        accumulator = ChatStreamAccumulator(
            on_stream=on_stream, overwrite=self.stream_overwrite_keys
        )
        accumulator.provider = self.name
        return accumulator

    def parse_stream_usage(self, accumulator: StreamAccumulator) -> Usage | None:
        return Usage.from_openai_chat(accumulator.usage_raw)

    def parse_embed_response(self, raw: dict[str, Any]) -> EmbedResponse:
        return parse_embeddings(raw)
