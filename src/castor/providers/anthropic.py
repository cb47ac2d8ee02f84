"""Anthropic Messages API provider."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar, Literal, Union

from pydantic import Field, field_validator, model_validator

from castor._model import WireModel
from castor.errors import APIError, CastError
from castor.messages import Action, Message
from castor.providers._stream import StreamAccumulator
from castor.providers.anthropic_content import (
    AnthropicMessage,
    TextBlock,
    block_text,
    cast_message,
    compress_system,
    group_messages,
    normalize_system,
)
from castor.providers.base import BaseProvider, ProviderCapabilities
from castor.providers.clients import AnthropicClient
from castor.response import PromptResponse
from castor.schema import normalize_response_format
from castor.usage import Usage

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.providers._stream import StreamCallback

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
#: Assistant lead-in that steers the model into emitting a JSON object.
JSON_PREFILL = "Here is the JSON requested:\n{"

# =============================================================================
# Tools
# =============================================================================


def normalize_tool(tool: Any) -> Any:
    """Accept ``parameters`` or ``input_schema``; emit ``input_schema``."""
    if not isinstance(tool, dict):
        return tool
    if tool.get("type") == "function" and isinstance(tool.get("function"), dict):
        tool = tool["function"]
    if "input_schema" in tool or "parameters" not in tool:
        return {k: v for k, v in tool.items() if k != "type" or v != "function"}
    out = {k: v for k, v in tool.items() if k not in ("parameters", "type", "strict")}
    out["input_schema"] = tool["parameters"]
    return out


def normalize_tool_choice(value: Any) -> Any:
    """``"required"`` -> any, ``"auto"`` -> auto, ``{name}`` -> tool."""
    if value is None:
        return None
    if isinstance(value, str):
        mapped = {"required": "any", "any": "any", "auto": "auto", "none": "none"}.get(value)
        if mapped is None:
            raise CastError(f"Unknown tool_choice: {value!r}")
        return {"type": mapped}
    if isinstance(value, dict):
        if value.get("type") in ("any", "auto", "none", "tool"):
            return value
        function = value.get("function")
        if isinstance(function, dict) and function.get("name"):
            return {"type": "tool", "name": function["name"]}
        if value.get("name"):
            return {"type": "tool", "name": value["name"]}
    return value


def normalize_mcp_server(server: Any) -> Any:
    """``{name, url, authorization}`` -> ``{type: "url", name, url, authorization_token}``."""
    if not isinstance(server, dict):
        return server
    if server.get("type") == "url" and "authorization" not in server:
        return server
    out = {"type": "url", "name": server.get("name"), "url": server.get("url")}
    token = server.get("authorization") or server.get("authorization_token")
    if token:
        out["authorization_token"] = token
    return {k: v for k, v in out.items() if v is not None}


# =============================================================================
# Request
# =============================================================================


class AnthropicRequest(WireModel):
    """Messages API request.

    ``max_tokens`` is always sent. System and developer turns found in
    ``messages`` are lifted into ``system``; consecutive same-role turns are
    merged. ``response_format`` is emulated: ``json_object`` appends an
    assistant prefill ending in ``{``.
    """

    wire_required: ClassVar[frozenset[str]] = frozenset({"model", "messages", "max_tokens"})

    model: str = Field(min_length=1)
    messages: list[AnthropicMessage] = Field(min_length=1)
    max_tokens: int = Field(DEFAULT_MAX_TOKENS, ge=1)

    system: Union[str, list[TextBlock], None] = None
    temperature: float | None = Field(None, ge=0, le=1)
    top_k: int | None = Field(None, ge=0)
    top_p: float | None = Field(None, ge=0, le=1)
    stop_sequences: list[str] = Field(default_factory=list)
    stream: bool = False

    tools: list[dict[str, Any]] | None = None
    tool_choice: dict[str, Any] | None = None
    thinking: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    context_management: dict[str, Any] | None = None
    container: str | dict[str, Any] | None = None
    service_tier: Literal["auto", "standard_only"] | None = None
    mcp_servers: list[dict[str, Any]] = Field(default_factory=list, max_length=20)

    response_format: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _split_system(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "message" in data and "messages" not in data:
            data["messages"] = data.pop("message")
        if "mcps" in data:
            data["mcp_servers"] = data.pop("mcps")
        if "instructions" in data:
            instructions = data.pop("instructions")
            if data.get("system") is None:
                if isinstance(instructions, (list, tuple)) and len(instructions) == 1:
                    instructions = instructions[0]
                data["system"] = instructions
        raw = data.get("messages")
        if raw is None:
            return data
        if not isinstance(raw, (list, tuple)):
            raw = [raw]
        system, messages = _cast_conversation(raw)
        if system:
            existing = normalize_system(data.get("system")) or []
            if isinstance(existing, str):
                existing = [TextBlock(text=existing)]
            data["system"] = [*existing, *system]
        data["messages"] = messages
        return data

    @field_validator("system", mode="before")
    @classmethod
    def _normalize_system(cls, value: Any) -> Any:
        return normalize_system(value)

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

    @field_validator("mcp_servers", mode="before")
    @classmethod
    def _normalize_mcp_servers(cls, value: Any) -> Any:
        if value is None:
            return []
        return [normalize_mcp_server(server) for server in value]

    @field_validator("response_format", mode="before")
    @classmethod
    def _emulated_formats(cls, value: Any) -> Any:
        fmt = normalize_response_format(value)
        if fmt is not None and fmt["type"] not in ("text", "json_object"):
            raise ValueError("only text and json_object response formats are supported")
        return fmt

    @property
    def json_prefill(self) -> bool:
        return bool(self.response_format) and self.response_format["type"] == "json_object"

    def __setattr__(self, name: str, value: Any) -> None:
        if name in ("messages", "message"):
            if not isinstance(value, (list, tuple)):
                value = [value]
            system, messages = _cast_conversation(value)
            if system:
                current = self.system or []
                if isinstance(current, str):
                    current = [TextBlock(text=current)]
                super().__setattr__("system", [*current, *system])
            name, value = "messages", messages
        super().__setattr__(name, value)

    def to_wire(self) -> dict[str, Any]:
        out = super().to_wire()
        out["max_tokens"] = self.max_tokens
        out.pop("response_format", None)
        if "system" in out:
            out["system"] = compress_system(out["system"])
        if self.json_prefill:
            prefill = {"role": "assistant", "content": JSON_PREFILL}
            out["messages"] = [*out["messages"], prefill]
        return out


def _cast_conversation(raw: Any) -> tuple[list[Any], list[AnthropicMessage]]:
    system: list[Any] = []
    messages: list[AnthropicMessage] = []
    for item in raw:
        kind, value = cast_message(item)
        if kind == "system":
            system.extend(value)
        else:
            messages.append(value)
    return system, group_messages(messages)


# =============================================================================
# Response parsing
# =============================================================================


def parse_message(raw: Mapping[str, Any], *, prefix: str = "") -> Message:
    """Normalize a Messages API response into a canonical Message."""
    blocks = [dict(block) for block in raw.get("content") or []]
    if prefix:
        first_text = next((block for block in blocks if block.get("type") == "text"), None)
        if first_text is None:
            blocks.insert(0, {"type": "text", "text": prefix})
        else:
            first_text["text"] = prefix + (first_text.get("text") or "")
    actions = [
        Action.from_arguments(block.get("id"), block.get("name") or "", block.get("input"))
        for block in blocks
        if block.get("type") == "tool_use"
    ]
    metadata: dict[str, Any] = {}
    thinking = [block["thinking"] for block in blocks if block.get("type") == "thinking"]
    if thinking:
        metadata["thinking"] = "\n\n".join(thinking)
    if raw.get("stop_sequence"):
        metadata["stop_sequence"] = raw["stop_sequence"]
    return Message(
        role="assistant",
        content=block_text(blocks),
        requested_actions=actions,
        metadata=metadata,
    )


def parse_response_payload(raw: dict[str, Any], *, prefix: str = "") -> PromptResponse:
    return PromptResponse(
        messages=[parse_message(raw, prefix=prefix)],
        usage=Usage.from_anthropic(raw.get("usage")),
        raw_response=raw,
        finish_reason=raw.get("stop_reason"),
        model=raw.get("model"),
        id=raw.get("id"),
    )


class AnthropicStreamAccumulator(StreamAccumulator):
    """Folds Messages API stream events into one message.

    ``tool_use`` input arrives as ``input_json_delta`` fragments and is
    parsed once the block stops.
    """

    provider = "anthropic"

    def __init__(self, *, on_stream: StreamCallback | None = None, prefix: str = "") -> None:
        super().__init__(on_stream=on_stream)
        self.prefix = prefix
        self.blocks: dict[int, dict[str, Any]] = {}
        self.json_buffers: dict[int, str] = {}
        self.thinking: list[str] = []

    async def feed(self, chunk: dict[str, Any]) -> None:
        self.chunks.append(chunk)
        event = chunk.get("type")
        if event == "message_start":
            message = chunk.get("message") or {}
            self.response_id = message.get("id")
            self.model = message.get("model")
            self.usage_raw = dict(message.get("usage") or {})
            if self.prefix:
                await self.append_text(self.prefix)
        elif event == "content_block_start":
            block = dict(chunk.get("content_block") or {})
            self.blocks[chunk.get("index", len(self.blocks))] = block
            if block.get("type") == "text" and block.get("text"):
                await self.append_text(block["text"])
        elif event == "content_block_delta":
            await self._apply_delta(chunk.get("index", 0), chunk.get("delta") or {})
        elif event == "content_block_stop":
            index = chunk.get("index", 0)
            block = self.blocks.get(index)
            if block is not None and block.get("type") == "tool_use":
                buffer = self.json_buffers.pop(index, "")
                if buffer:
                    # Parsed (softly) when the action is built.
                    block["input"] = buffer
        elif event == "message_delta":
            delta = chunk.get("delta") or {}
            if delta.get("stop_reason"):
                self.finish_reason = delta["stop_reason"]
            if chunk.get("usage"):
                usage = dict(self.usage_raw or {})
                usage.update({k: v for k, v in chunk["usage"].items() if v is not None})
                self.usage_raw = usage
        elif event == "message_stop":
            if self.thinking:
                self.message.metadata["thinking"] = "".join(self.thinking)
            await self.finalize()
        elif event == "error":
            error = chunk.get("error") or {}
            raise APIError(
                f"Anthropic stream error: {error.get('message') or error}",
                provider=self.provider,
                phase="generate",
                retryable=error.get("type") == "overloaded_error",
            )
        elif event != "ping":
            logger.debug("Ignoring Anthropic stream event %s", event)

    async def _apply_delta(self, index: int, delta: dict[str, Any]) -> None:
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            block = self.blocks.setdefault(index, {"type": "text", "text": ""})
            block["text"] = (block.get("text") or "") + delta.get("text", "")
            await self.append_text(delta.get("text", ""))
        elif delta_type == "input_json_delta":
            self.json_buffers[index] = self.json_buffers.get(index, "") + delta.get(
                "partial_json", ""
            )
        elif delta_type == "thinking_delta":
            self.thinking.append(delta.get("thinking", ""))
        elif delta_type == "signature_delta":
            pass
        else:
            logger.debug("Ignoring Anthropic delta type %s", delta_type)

    def build_actions(self) -> list[Action]:
        return [
            Action.from_arguments(block.get("id"), block.get("name") or "", block.get("input"))
            for _, block in sorted(self.blocks.items())
            if block.get("type") == "tool_use"
        ]


# =============================================================================
# Provider
# =============================================================================


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API provider."""

    name = "anthropic"
    request_class = AnthropicRequest
    _capabilities = ProviderCapabilities(structured_outputs=True)

    def create_client(self) -> AnthropicClient:
        return AnthropicClient(self.config.api_key, base_url=self.config.base_url)

    @staticmethod
    def _prefix(request: WireModel) -> str:
        return "{" if getattr(request, "json_prefill", False) else ""

    def parse_response(self, raw: dict[str, Any], request: WireModel) -> PromptResponse:
        return parse_response_payload(raw, prefix=self._prefix(request))

    def stream_accumulator(
        self, request: WireModel, on_stream: StreamCallback | None
    ) -> StreamAccumulator:
        return AnthropicStreamAccumulator(on_stream=on_stream, prefix=self._prefix(request))

    def parse_stream_usage(self, accumulator: StreamAccumulator) -> Usage | None:
        return Usage.from_anthropic(accumulator.usage_raw)
