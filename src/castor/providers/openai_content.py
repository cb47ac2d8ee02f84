"""OpenAI Chat Completions content parts and messages.

Casting here is strict: an unknown part ``type`` or message ``role``
raises CastError instead of passing through.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import Field, field_validator, model_validator

from castor._model import WireModel
from castor.errors import CastError
from castor.messages import Message

TOOL_NAME_PATTERN = r"^[a-zA-Z0-9_-]{1,64}$"

# =============================================================================
# Content parts
# =============================================================================


class TextPart(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "text"})

    type: Literal["text"] = Field("text", frozen=True)
    text: str = Field(min_length=1)


class ImageURL(WireModel):
    url: str = Field(min_length=1)
    detail: Literal["auto", "low", "high"] = "auto"


class ImagePart(WireModel):
    """Image by URL or data URI; a bare string ``image_url`` is accepted."""

    wire_required: ClassVar[frozenset[str]] = frozenset({"type"})

    type: Literal["image_url"] = Field("image_url", frozen=True)
    image_url: ImageURL

    @field_validator("image_url", mode="before")
    @classmethod
    def _coerce_url(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"url": value}
        return value


class InputAudio(WireModel):
    data: str = Field(min_length=1)
    format: Literal["wav", "mp3"]


class AudioPart(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type"})

    type: Literal["input_audio"] = Field("input_audio", frozen=True)
    input_audio: InputAudio


class FileDetails(WireModel):
    file_data: str | None = None
    file_id: str | None = None
    filename: str | None = None

    @model_validator(mode="after")
    def _require_source(self) -> FileDetails:
        if not (self.file_data or self.file_id):
            raise ValueError("file requires file_data or file_id")
        return self


class FilePart(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type"})

    type: Literal["file"] = Field("file", frozen=True)
    file: FileDetails


class RefusalPart(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "refusal"})

    type: Literal["refusal"] = Field("refusal", frozen=True)
    refusal: str


ContentPart = Union[TextPart, ImagePart, AudioPart, FilePart, RefusalPart]

NonEmptyText = Annotated[str, Field(min_length=1)]
TextParts = Annotated[list[TextPart], Field(min_length=1)]
ContentParts = Annotated[list[ContentPart], Field(min_length=1)]

CONTENT_TYPES: dict[str, type[WireModel]] = {
    "text": TextPart,
    "image_url": ImagePart,
    "input_audio": AudioPart,
    "file": FilePart,
    "refusal": RefusalPart,
}


def _document_part(document: str) -> FilePart:
    if document.startswith("data:"):
        return FilePart(file={"file_data": document, "filename": "document.pdf"})
    return FilePart(file={"file_id": document})


def cast_content_part(raw: Any) -> WireModel:
    """Cast one raw content item into its typed part."""
    if isinstance(raw, tuple(CONTENT_TYPES.values())):
        return raw
    if isinstance(raw, str):
        return TextPart(text=raw)
    if not isinstance(raw, dict):
        raise CastError(f"Cannot cast {type(raw).__name__} to an OpenAI content part")

    part_type = raw.get("type")
    if part_type is None:
        if "text" in raw:
            return TextPart(text=raw["text"])
        if "image" in raw:
            return ImagePart(image_url={"url": raw["image"]})
        if "document" in raw:
            return _document_part(raw["document"])
        raise CastError(
            f"Cannot infer content part type from keys {sorted(raw)}",
            hint="Add a 'type' key, or use 'text', 'image', or 'document'.",
        )
    part_cls = CONTENT_TYPES.get(part_type)
    if part_cls is None:
        raise CastError(
            f"Unknown content part type: {part_type!r}",
            hint=f"Supported types: {', '.join(CONTENT_TYPES)}",
        )
    return part_cls(**raw)


def cast_content(raw: Any) -> str | list[WireModel] | None:
    """Cast message content: strings stay strings, everything else becomes parts."""
    if raw is None or isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return [cast_content_part(raw)]
    if isinstance(raw, (list, tuple)):
        return [cast_content_part(part) for part in raw]
    return [cast_content_part(raw)]


def serialize_content_part(part: WireModel | str) -> dict[str, Any]:
    """Inverse of cast_content_part; a bare string becomes a text part."""
    if isinstance(part, str):
        return {"type": "text", "text": part}
    return part.to_wire()


# =============================================================================
# Tool calls carried on assistant messages
# =============================================================================


class FunctionCall(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"name", "arguments"})

    name: str
    arguments: str = ""

    @field_validator("arguments", mode="before")
    @classmethod
    def _dump_arguments(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value


class ToolCallParam(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"id", "type", "function"})

    id: str
    type: Literal["function"] = Field("function", frozen=True)
    function: FunctionCall

    @model_validator(mode="before")
    @classmethod
    def _from_common(cls, data: Any) -> Any:
        # Canonical form: {"id", "name", "arguments"}
        if isinstance(data, dict) and "function" not in data and "name" in data:
            return {
                "id": data.get("id"),
                "function": {
                    "name": data["name"],
                    "arguments": data.get("arguments", data.get("params", "")),
                },
            }
        return data


# =============================================================================
# Messages
# =============================================================================


class ChatMessageBase(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"role"})

    role: str
    name: str | None = None

    @field_validator("content", mode="before", check_fields=False)
    @classmethod
    def _cast_content(cls, value: Any) -> Any:
        return cast_content(value)

    def to_wire(self) -> dict[str, Any]:
        out = super().to_wire()
        content = out.get("content")
        if isinstance(content, list):
            if len(content) == 1 and set(content[0]) == {"type", "text"} and (
                content[0]["type"] == "text"
            ):
                out["content"] = content[0]["text"]
        return out

    @property
    def parts(self) -> list[Any]:
        content = getattr(self, "content", None)
        if content is None:
            return []
        if isinstance(content, str):
            return [TextPart(text=content)] if content else []
        return list(content)


class DeveloperMessage(ChatMessageBase):
    role: Literal["developer"] = Field("developer", frozen=True)
    content: Union[NonEmptyText, TextParts]


class SystemMessage(ChatMessageBase):
    role: Literal["system"] = Field("system", frozen=True)
    content: Union[NonEmptyText, TextParts]


class UserMessage(ChatMessageBase):
    role: Literal["user"] = Field("user", frozen=True)
    content: Union[NonEmptyText, ContentParts]


class AssistantMessage(ChatMessageBase):
    """Assistant turn; content may be absent when tool calls are present."""

    role: Literal["assistant"] = Field("assistant", frozen=True)
    content: str | list[Union[TextPart, RefusalPart]] | None = None
    refusal: str | None = None
    tool_calls: list[ToolCallParam] | None = None
    function_call: FunctionCall | None = None
    audio: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _require_payload(self) -> AssistantMessage:
        if not (self.content or self.tool_calls or self.function_call or self.refusal):
            raise CastError(
                "Assistant message requires content, tool_calls, function_call, or refusal"
            )
        return self


class ToolMessage(ChatMessageBase):
    role: Literal["tool"] = Field("tool", frozen=True)
    content: Union[NonEmptyText, TextParts]
    tool_call_id: str


class FunctionMessage(ChatMessageBase):
    role: Literal["function"] = Field("function", frozen=True)
    content: str | None = None
    name: str


ChatMessage = Union[
    DeveloperMessage,
    SystemMessage,
    UserMessage,
    AssistantMessage,
    ToolMessage,
    FunctionMessage,
]

MESSAGE_ROLES: dict[str, type[ChatMessageBase]] = {
    "developer": DeveloperMessage,
    "system": SystemMessage,
    "user": UserMessage,
    "assistant": AssistantMessage,
    "tool": ToolMessage,
    "function": FunctionMessage,
}

COMMON_ROLES = {
    "developer": "system",
    "system": "system",
    "user": "user",
    "assistant": "assistant",
    "tool": "tool",
    "function": "tool",
}


def _content_from_keys(data: dict[str, Any]) -> Any:
    if "content" in data:
        return data["content"]
    text, image = data.get("text"), data.get("image")
    if text is not None and image is not None:
        return [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": image}},
        ]
    if image is not None:
        return [{"type": "image_url", "image_url": {"url": image}}]
    return text


def cast_message(
    raw: Any, roles: dict[str, type[ChatMessageBase]] = MESSAGE_ROLES
) -> ChatMessageBase:
    """Cast a string, mapping, canonical Message, or typed message."""
    if isinstance(raw, ChatMessageBase):
        return raw
    if isinstance(raw, Message):
        raw = raw.to_common()
    if isinstance(raw, str):
        return roles["user"](content=raw)
    if not isinstance(raw, dict):
        raise CastError(f"Cannot cast {type(raw).__name__} to an OpenAI message")

    role = raw.get("role") or "user"
    message_cls = roles.get(role)
    if message_cls is None:
        raise CastError(
            f"Unknown message role: {role!r}",
            hint=f"Supported roles: {', '.join(roles)}",
        )
    data = {k: v for k, v in raw.items() if k not in ("role", "text", "image")}
    content = _content_from_keys(raw)
    if content == "" and raw.get("tool_calls"):
        content = None
    if content is not None:
        data["content"] = content
    else:
        data.pop("content", None)
    return message_cls(**data)


def _merge_parts(first: ChatMessageBase, second: ChatMessageBase) -> list[Any]:
    return first.parts + second.parts


def group_messages(
    messages: list[ChatMessageBase],
) -> list[ChatMessageBase]:
    """Merge consecutive same-role messages; tool messages are never merged."""
    grouped: list[ChatMessageBase] = []
    for message in messages:
        previous = grouped[-1] if grouped else None
        if (
            previous is None
            or previous.role != message.role
            or message.role in ("tool", "function")
            or getattr(previous, "tool_calls", None)
            or getattr(message, "tool_calls", None)
        ):
            grouped.append(message)
            continue
        grouped[-1] = type(previous)(
            content=_merge_parts(previous, message),
            **({"name": previous.name} if previous.name else {}),
        )
    return grouped


def cast_messages(
    raw: Any,
    roles: dict[str, type[ChatMessageBase]] = MESSAGE_ROLES,
    *,
    group: bool = True,
) -> list[ChatMessageBase]:
    """Cast a message list (or a single string/mapping), grouping by default."""
    if raw is None:
        return []
    if isinstance(raw, (str, dict, Message, ChatMessageBase)):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise CastError(f"Cannot cast {type(raw).__name__} to a message list")
    messages = [cast_message(item, roles) for item in raw]
    return group_messages(messages) if group else messages


def instructions_to_messages(instructions: Any) -> list[DeveloperMessage]:
    """Translate ``instructions`` into prepended developer messages."""
    if instructions is None:
        return []
    items = [instructions] if isinstance(instructions, str) else list(instructions)
    if not items:
        return []
    if len(items) > 1:
        return [DeveloperMessage(content=[{"type": "text", "text": item} for item in items])]
    return [DeveloperMessage(content=items[0])]


def message_to_common(message: ChatMessageBase) -> Message:
    """Convert a typed OpenAI message back into the canonical form."""
    wire = message.to_wire()
    common: dict[str, Any] = {
        "role": COMMON_ROLES[message.role],
        "content": wire.get("content", ""),
    }
    for key in ("name", "tool_call_id"):
        if wire.get(key):
            common[key] = wire[key]
    if wire.get("tool_calls"):
        common["tool_calls"] = wire["tool_calls"]
    return Message.coerce(common)
