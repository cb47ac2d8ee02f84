"""Anthropic Messages content blocks and messages.

Casting here is lenient: block ``type``s this module does not model pass
through untouched and are left for the API to validate.
"""

from __future__ import annotations

import json
import re
from typing import Any, ClassVar, Literal, Union

from pydantic import Field, field_validator

from castor._model import WireModel
from castor.errors import CastError
from castor.messages import Message

_DATA_URI = re.compile(r"\Adata:([^;,]+)(?:;base64)?,(.+)\Z", re.DOTALL)

CONTENT_KEYS: tuple[str, ...] = ("text", "image", "document")


def parse_data_uri(uri: str) -> dict[str, Any]:
    """``data:<media>;base64,<data>`` to a base64 source; falls back to a URL source."""
    match = _DATA_URI.match(uri)
    if match is None:
        return {"type": "url", "url": uri}
    return {"type": "base64", "media_type": match.group(1), "data": match.group(2)}


def normalize_source(source: Any) -> Any:
    if isinstance(source, str):
        if source.startswith("data:"):
            return parse_data_uri(source)
        return {"type": "url", "url": source}
    if isinstance(source, dict) and "type" not in source:
        if source.get("data") and source.get("media_type"):
            return {"type": "base64", **source}
    return source


# =============================================================================
# Content blocks
# =============================================================================


class TextBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "text"})

    type: Literal["text"] = Field("text", frozen=True)
    text: str
    cache_control: dict[str, Any] | None = None
    citations: list[dict[str, Any]] | None = None


class ImageBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "source"})

    type: Literal["image"] = Field("image", frozen=True)
    source: dict[str, Any]
    cache_control: dict[str, Any] | None = None

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> Any:
        return normalize_source(value)


class DocumentBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "source"})

    type: Literal["document"] = Field("document", frozen=True)
    source: dict[str, Any]
    title: str | None = None
    context: str | None = None
    citations: dict[str, Any] | None = None
    cache_control: dict[str, Any] | None = None

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> Any:
        return normalize_source(value)


class ToolUseBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "id", "name", "input"})

    type: Literal["tool_use"] = Field("tool_use", frozen=True)
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    cache_control: dict[str, Any] | None = None

    @field_validator("input", mode="before")
    @classmethod
    def _parse_input(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError as e:
                raise CastError(f"tool_use input is not valid JSON: {value!r}") from e
        return value


class ToolResultBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "tool_use_id"})

    type: Literal["tool_result"] = Field("tool_result", frozen=True)
    tool_use_id: str
    content: str | list[dict[str, Any]] | None = None
    is_error: bool = False
    cache_control: dict[str, Any] | None = None

    @field_validator("content", mode="before")
    @classmethod
    def _dump_content(cls, value: Any) -> Any:
        if value is None or isinstance(value, (str, list)):
            return value
        return json.dumps(value)


class ThinkingBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "thinking", "signature"})

    type: Literal["thinking"] = Field("thinking", frozen=True)
    thinking: str
    signature: str = ""


class RedactedThinkingBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "data"})

    type: Literal["redacted_thinking"] = Field("redacted_thinking", frozen=True)
    data: str


class SearchResultBlock(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "source", "title", "content"})

    type: Literal["search_result"] = Field("search_result", frozen=True)
    source: str
    title: str
    content: list[TextBlock] = Field(min_length=1)
    citations: dict[str, Any] | None = None
    cache_control: dict[str, Any] | None = None

    @field_validator("content", mode="before")
    @classmethod
    def _cast_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [TextBlock(text=value)]
        return value


BLOCK_TYPES: dict[str, type[WireModel]] = {
    "text": TextBlock,
    "image": ImageBlock,
    "document": DocumentBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
    "thinking": ThinkingBlock,
    "redacted_thinking": RedactedThinkingBlock,
    "search_result": SearchResultBlock,
}

ContentBlock = Union[
    TextBlock,
    ImageBlock,
    DocumentBlock,
    ToolUseBlock,
    ToolResultBlock,
    ThinkingBlock,
    RedactedThinkingBlock,
    SearchResultBlock,
    dict[str, Any],
]


def cast_block(raw: Any) -> Any:
    """Cast one content item, inferring ``type`` from its keys when absent."""
    if isinstance(raw, WireModel):
        return raw
    if isinstance(raw, str):
        return TextBlock(text=raw)
    if not isinstance(raw, dict):
        raise CastError(f"Cannot cast {type(raw).__name__} to an Anthropic content block")
    block_type = raw.get("type")
    if block_type is not None:
        block_cls = BLOCK_TYPES.get(block_type)
        # Unmodelled block types (server tool results, search results, ...)
        return block_cls(**raw) if block_cls is not None else dict(raw)
    if raw.get("text") is not None:
        return TextBlock(**raw)
    if raw.get("image") is not None:
        rest = {k: v for k, v in raw.items() if k != "image"}
        return ImageBlock(source=raw["image"], **rest)
    if raw.get("document") is not None:
        rest = {k: v for k, v in raw.items() if k != "document"}
        return DocumentBlock(source=raw["document"], **rest)
    if raw.get("tool_use_id"):
        return ToolResultBlock(**raw)
    if raw.get("id") and raw.get("name") and "input" in raw:
        return ToolUseBlock(**raw)
    return dict(raw)


def cast_blocks(content: Any) -> list[Any]:
    """Expand content shortcuts into a block list.

    A mapping carrying several of ``text``/``image``/``document`` becomes
    one block per key.
    """
    if content is None:
        return []
    if isinstance(content, str):
        return [TextBlock(text=content)]
    if isinstance(content, (list, tuple)):
        return [cast_block(item) for item in content]
    if isinstance(content, dict):
        found = [key for key in CONTENT_KEYS if key in content]
        if "type" not in content and len(found) > 1:
            return [cast_block({key: content[key]}) for key in found]
        return [cast_block(content)]
    return [cast_block(content)]


# =============================================================================
# Messages
# =============================================================================


class AnthropicMessage(WireModel):
    """One turn; a single text block serializes as a plain string."""

    wire_required: ClassVar[frozenset[str]] = frozenset({"role", "content"})

    role: Literal["user", "assistant"]
    content: list[ContentBlock] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _cast_content(cls, value: Any) -> Any:
        return cast_blocks(value)

    def to_wire(self) -> dict[str, Any]:
        out = super().to_wire()
        content = out.get("content")
        if (
            isinstance(content, list)
            and len(content) == 1
            and isinstance(content[0], dict)
            and content[0].get("type") == "text"
            and set(content[0]) == {"type", "text"}
        ):
            out["content"] = content[0]["text"]
        return out

    @property
    def tool_use_names(self) -> list[str]:
        return [block.name for block in self.content if isinstance(block, ToolUseBlock)]


def _tool_use_blocks(calls: list[Any]) -> list[ToolUseBlock]:
    blocks = []
    for call in calls:
        function = call.get("function") if isinstance(call.get("function"), dict) else call
        blocks.append(
            ToolUseBlock(
                id=call.get("id"),
                name=function.get("name"),
                input=function.get("input", function.get("arguments", function.get("params"))),
            )
        )
    return blocks


def cast_message(raw: Any) -> tuple[str, AnthropicMessage | list[Any]]:
    """Cast one input into ``("system", blocks)`` or ``("message", AnthropicMessage)``.

    Canonical tool results become user ``tool_result`` blocks and assistant
    tool calls become ``tool_use`` blocks.
    """
    if isinstance(raw, AnthropicMessage):
        return "message", raw
    if isinstance(raw, Message):
        raw = raw.to_common()
    if isinstance(raw, str):
        return "message", AnthropicMessage(role="user", content=raw)
    if not isinstance(raw, dict):
        raise CastError(f"Cannot cast {type(raw).__name__} to an Anthropic message")

    role = raw.get("role") or "user"
    if "content" in raw:
        content = raw["content"]
    elif "role" in raw:
        content = {k: v for k, v in raw.items() if k != "role"} or None
    else:
        content = raw

    if role in ("system", "developer"):
        return "system", cast_blocks(content)
    if role == "tool":
        block = ToolResultBlock(tool_use_id=raw.get("tool_call_id"), content=content)
        return "message", AnthropicMessage(role="user", content=[block])
    if role not in ("user", "assistant"):
        raise CastError(
            f"Unknown message role: {role!r}",
            hint="Anthropic accepts user and assistant turns; system goes in 'system'.",
        )
    if "tool_calls" in raw:
        content = raw.get("content")
        blocks = [*cast_blocks(content or None), *_tool_use_blocks(raw["tool_calls"] or [])]
        return "message", AnthropicMessage(role=role, content=blocks)
    return "message", AnthropicMessage(role=role, content=content)


def group_messages(messages: list[AnthropicMessage]) -> list[AnthropicMessage]:
    """Merge consecutive same-role turns into one turn with all their blocks."""
    grouped: list[AnthropicMessage] = []
    for message in messages:
        if grouped and grouped[-1].role == message.role:
            previous = grouped[-1]
            grouped[-1] = AnthropicMessage(
                role=previous.role, content=[*previous.content, *message.content]
            )
        else:
            grouped.append(message)
    return grouped


def normalize_system(system: Any) -> str | list[TextBlock] | None:
    """Strings stay strings; mappings and lists become text blocks."""
    if system is None or isinstance(system, str):
        return system
    items = system if isinstance(system, (list, tuple)) else [system]
    blocks = []
    for item in items:
        block = cast_block(item)
        if not isinstance(block, TextBlock):
            raise CastError("system blocks must be text blocks")
        blocks.append(block)
    return blocks


def compress_system(system: Any) -> Any:
    """A single plain text block collapses to its string."""
    if (
        isinstance(system, list)
        and len(system) == 1
        and isinstance(system[0], dict)
        and set(system[0]) == {"type", "text"}
    ):
        return system[0]["text"]
    return system


def block_text(blocks: list[dict[str, Any]]) -> str:
    return "".join(block.get("text") or "" for block in blocks if block.get("type") == "text")
