"""OpenAI Responses API provider."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Literal, Union

from pydantic import Field, field_validator, model_validator

from castor._model import WireModel
from castor.errors import APIError, CastError, InvalidRequestError
from castor.messages import Action, Message
from castor.providers._stream import StreamAccumulator
from castor.providers.base import BaseProvider, ProviderCapabilities
from castor.providers.clients import OpenAIClient
from castor.providers.openai_content import TOOL_NAME_PATTERN
from castor.response import PromptResponse
from castor.schema import normalize_response_format
from castor.usage import Usage

if TYPE_CHECKING:
    from castor.providers._stream import StreamCallback

logger = logging.getLogger(__name__)

# =============================================================================
# Input content parts
# =============================================================================


class InputText(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "text"})

    type: Literal["input_text"] = Field("input_text", frozen=True)
    text: str


class OutputText(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "text"})

    type: Literal["output_text"] = Field("output_text", frozen=True)
    text: str
    annotations: list[dict[str, Any]] | None = None


class InputImage(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type"})

    type: Literal["input_image"] = Field("input_image", frozen=True)
    image_url: str | None = None
    file_id: str | None = None
    detail: Literal["auto", "low", "high"] = "auto"

    @model_validator(mode="after")
    def _require_source(self) -> InputImage:
        if not (self.image_url or self.file_id):
            raise ValueError("input_image requires image_url or file_id")
        return self


class InputFile(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type"})

    type: Literal["input_file"] = Field("input_file", frozen=True)
    file_data: str | None = None
    file_id: str | None = None
    file_url: str | None = None
    filename: str | None = None


class Refusal(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "refusal"})

    type: Literal["refusal"] = Field("refusal", frozen=True)
    refusal: str


InputPart = Union[InputText, OutputText, InputImage, InputFile, Refusal]

PART_TYPES: dict[str, type[WireModel]] = {
    "input_text": InputText,
    "output_text": OutputText,
    "input_image": InputImage,
    "input_file": InputFile,
    "refusal": Refusal,
}


def _document(document: str) -> InputFile:
    if document.startswith("data:"):
        return InputFile(file_data=document, filename="document.pdf")
    return InputFile(file_url=document)


def cast_part(raw: Any, *, role: str = "user") -> WireModel:
    """Cast one content item; unknown part types raise CastError."""
    if isinstance(raw, tuple(PART_TYPES.values())):
        return raw
    text_cls = OutputText if role == "assistant" else InputText
    if isinstance(raw, str):
        return text_cls(text=raw)
    if not isinstance(raw, dict):
        raise CastError(f"Cannot cast {type(raw).__name__} to a Responses content part")
    part_type = raw.get("type")
    if part_type is None:
        if "image" in raw:
            return InputImage(image_url=raw["image"])
        if "document" in raw:
            return _document(raw["document"])
        if "text" in raw:
            return text_cls(text=raw["text"])
        raise CastError(f"Cannot infer content part type from keys {sorted(raw)}")
    if part_type == "text":
        return text_cls(text=raw.get("text", ""))
    if part_type == "image_url":
        url = raw.get("image_url")
        return InputImage(image_url=url.get("url") if isinstance(url, dict) else url)
    part_cls = PART_TYPES.get(part_type)
    if part_cls is None:
        raise CastError(
            f"Unknown content part type: {part_type!r}",
            hint=f"Supported types: {', '.join(PART_TYPES)}",
        )
    return part_cls(**raw)


# =============================================================================
# Input items
# =============================================================================


class InputMessage(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"role", "content"})

    role: Literal["user", "system", "developer", "assistant"]
    content: str | list[InputPart]
    type: Literal["message"] | None = None

    @model_validator(mode="before")
    @classmethod
    def _cast_content(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("content"), (list, dict)):
            data = dict(data)
            content = data["content"]
            items = content if isinstance(content, list) else [content]
            role = data.get("role", "user")
            data["content"] = [cast_part(item, role=role) for item in items]
        return data


class FunctionCallItem(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset(
        {"type", "call_id", "name", "arguments"}
    )

    type: Literal["function_call"] = Field("function_call", frozen=True)
    call_id: str
    name: str
    arguments: str = ""
    id: str | None = None
    status: str | None = None


class FunctionCallOutput(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "call_id", "output"})

    type: Literal["function_call_output"] = Field("function_call_output", frozen=True)
    call_id: str
    output: str

    @field_validator("output", mode="before")
    @classmethod
    def _dump_output(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value
        return json.dumps(value)


InputItem = Union[InputMessage, FunctionCallItem, FunctionCallOutput, dict[str, Any]]

_CONTENT_KEYS = ("text", "image", "document")


def _is_content_item(item: Any) -> bool:
    if isinstance(item, str):
        return True
    return isinstance(item, dict) and "role" not in item and "type" not in item and any(
        key in item for key in _CONTENT_KEYS
    )


def _items_from_role_message(data: dict[str, Any]) -> list[Any]:
    role = data.get("role") or "user"
    content = data.get("content", data.get("text"))
    if role == "tool":
        return [FunctionCallOutput(call_id=data.get("tool_call_id"), output=content or "")]
    if role not in ("user", "system", "developer", "assistant"):
        raise CastError(f"Unknown message role: {role!r}")
    items: list[Any] = []
    if content:
        items.append(InputMessage(role=role, content=content))
    for call in data.get("tool_calls") or []:
        function = call.get("function") if isinstance(call.get("function"), dict) else call
        arguments = function.get("arguments", "")
        items.append(
            FunctionCallItem(
                call_id=call.get("id") or call.get("call_id"),
                name=function.get("name"),
                arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
            )
        )
    return items


def normalize_item(item: Any) -> list[Any]:
    """Normalize one top-level input item (message, tool output, raw item)."""
    if isinstance(item, WireModel):
        return [item]
    if isinstance(item, Message):
        return _items_from_role_message(item.to_common())
    if isinstance(item, str):
        return [InputMessage(role="user", content=item)]
    if not isinstance(item, dict):
        raise CastError(f"Cannot cast {type(item).__name__} to a Responses input item")
    if "role" in item:
        return _items_from_role_message(item)
    item_type = item.get("type")
    if item_type == "function_call":
        return [FunctionCallItem(**item)]
    if item_type == "function_call_output":
        return [FunctionCallOutput(**item)]
    if item_type is not None and item_type not in PART_TYPES:
        # Other item kinds (reasoning, web_search_call, ...) travel verbatim.
        return [item]
    if set(item) == {"text"}:
        return [InputMessage(role="user", content=item["text"])]
    return [InputMessage(role="user", content=[cast_part(item)])]


def normalize_input(raw: Any) -> Any:
    """Normalize ``input``: strings stay strings, content lists become one user message."""
    if raw is None or isinstance(raw, str):
        return raw
    if isinstance(raw, (dict, Message, WireModel)):
        return normalize_item(raw)
    if not isinstance(raw, (list, tuple)):
        raise CastError(f"Cannot cast {type(raw).__name__} to Responses input")
    if len(raw) > 1 and all(_is_content_item(item) for item in raw):
        return [InputMessage(role="user", content=[cast_part(item) for item in raw])]
    items: list[Any] = []
    for item in raw:
        items.extend(normalize_item(item))
    return items


def simplify_input(wire_input: Any) -> Any:
    """Collapse a single plain text item to a bare string."""
    if not isinstance(wire_input, list) or len(wire_input) != 1:
        return wire_input
    only = wire_input[0]
    if isinstance(only, str):
        return only
    if isinstance(only, dict):
        if only.get("type") == "input_text" and set(only) == {"type", "text"}:
            return only["text"]
        if only.get("role") == "user" and isinstance(only.get("content"), str) and (
            set(only) == {"role", "content"}
        ):
            return only["content"]
    return wire_input


# =============================================================================
# Tools and formats
# =============================================================================


class ResponsesFunctionTool(WireModel):
    """Flat function tool: ``{"type": "function", name, description, parameters}``."""

    wire_required: ClassVar[frozenset[str]] = frozenset({"type", "name"})

    type: Literal["function"] = Field("function", frozen=True)
    name: str = Field(pattern=TOOL_NAME_PATTERN)
    description: str | None = None
    parameters: dict[str, Any] | None = None
    strict: bool | None = None


def normalize_tool(tool: Any) -> Any:
    if isinstance(tool, WireModel) or not isinstance(tool, dict):
        return tool
    if tool.get("type") == "function" and isinstance(tool.get("function"), dict):
        tool = tool["function"]
    elif tool.get("type") not in (None, "function"):
        # Built-in tools (web_search, file_search, mcp, ...) travel verbatim.
        return tool
    if "name" not in tool:
        raise CastError(f"Cannot normalize tool definition with keys {sorted(tool)}")
    return ResponsesFunctionTool(
        name=tool["name"],
        description=tool.get("description"),
        parameters=tool.get("parameters", tool.get("input_schema")),
        strict=tool.get("strict"),
    )


def normalize_tool_choice(value: Any) -> Any:
    if isinstance(value, dict):
        function = value.get("function")
        if isinstance(function, dict) and function.get("name"):
            return {"type": "function", "name": function["name"]}
        if value.get("name") and value.get("type") in (None, "function"):
            return {"type": "function", "name": value["name"]}
    return value


def text_config(response_format: Any) -> dict[str, Any] | None:
    """Translate a response_format into the Responses ``text.format`` block."""
    fmt = normalize_response_format(response_format)
    if fmt is None:
        return None
    if fmt["type"] == "json_schema":
        return {"format": {"type": "json_schema", **fmt["json_schema"]}}
    return {"format": {"type": fmt["type"]}}


# =============================================================================
# Request
# =============================================================================


class ResponsesRequest(WireModel):
    """Responses API request.

    ``messages`` is accepted as an alias of ``input``; a list of
    ``instructions`` is joined with newlines; ``response_format`` becomes
    ``text.format``.
    """

    wire_required: ClassVar[frozenset[str]] = frozenset({"model"})

    model: str = Field(min_length=1)
    input: str | list[InputItem] | None = None
    instructions: str | None = None

    service_tier: Literal["auto", "default", "flex", "scale", "priority"] = "auto"
    store: bool = True
    temperature: float = Field(1.0, ge=0, le=2)
    top_p: float = Field(1.0, ge=0, le=1)
    truncation: Literal["auto", "disabled"] = "disabled"
    parallel_tool_calls: bool = True
    background: bool = False
    include: list[str] = Field(default_factory=list)
    stream: bool = False

    conversation: str | dict[str, Any] | None = None
    previous_response_id: str | None = None
    max_output_tokens: int | None = Field(None, ge=1)
    max_tool_calls: int | None = Field(None, ge=1)
    metadata: dict[str, str] | None = None
    prompt_cache_key: str | None = None
    reasoning: dict[str, Any] | None = None
    safety_identifier: str | None = None
    text: dict[str, Any] | None = None
    tool_choice: Union[Literal["none", "auto", "required"], dict[str, Any], None] = None
    tools: list[Union[ResponsesFunctionTool, dict[str, Any]]] | None = None
    top_logprobs: int | None = Field(None, ge=0, le=20)
    user: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _map_common_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for alias in ("messages", "message"):
            if alias in data and "input" not in data:
                data["input"] = data.pop(alias)
        if isinstance(data.get("instructions"), (list, tuple)):
            data["instructions"] = "\n".join(data["instructions"])
        if "response_format" in data:
            response_format = data.pop("response_format")
            if response_format is not None:
                data["text"] = text_config(response_format)
        return data

    @field_validator("input", mode="before")
    @classmethod
    def _normalize_input(cls, value: Any) -> Any:
        return normalize_input(value)

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

    @model_validator(mode="after")
    def _exclusive_conversation(self) -> ResponsesRequest:
        if self.conversation is not None and self.previous_response_id is not None:
            raise InvalidRequestError(
                "conversation and previous_response_id are mutually exclusive",
                field="previous_response_id",
                constraint="mutually exclusive with conversation",
            )
        return self

    @property
    def response_format(self) -> dict[str, Any] | None:
        fmt = (self.text or {}).get("format")
        return fmt if isinstance(fmt, dict) else None

    def __setattr__(self, name: str, value: Any) -> None:
        if name in ("messages", "message"):
            name = "input"
        elif name == "response_format":
            name, value = "text", text_config(value)
        super().__setattr__(name, value)

    def to_wire(self) -> dict[str, Any]:
        out = super().to_wire()
        if "input" in out:
            out["input"] = simplify_input(out["input"])
        return out


# =============================================================================
# Response parsing
# =============================================================================


def parse_output(output: list[dict[str, Any]]) -> Message:
    """Fold Responses ``output`` items into one assistant Message."""
    texts: list[str] = []
    reasoning: list[str] = []
    actions: list[Action] = []
    refusal: str | None = None
    for item in output or []:
        item_type = item.get("type")
        if item_type == "message":
            for part in item.get("content") or []:
                if part.get("type") == "output_text":
                    texts.append(part.get("text") or "")
                elif part.get("type") == "refusal":
                    refusal = part.get("refusal")
        elif item_type == "function_call":
            actions.append(
                Action.from_arguments(
                    item.get("call_id"), item.get("name") or "", item.get("arguments")
                )
            )
        elif item_type == "reasoning":
            for summary in item.get("summary") or []:
                if summary.get("text"):
                    reasoning.append(summary["text"])
    metadata: dict[str, Any] = {}
    if reasoning:
        metadata["reasoning"] = "\n\n".join(reasoning)
    if refusal:
        metadata["refusal"] = refusal
    return Message(
        role="assistant", content="".join(texts), requested_actions=actions, metadata=metadata
    )


def _finish_reason(raw: dict[str, Any], message: Message) -> str | None:
    status = raw.get("status")
    if status == "incomplete":
        details = raw.get("incomplete_details") or {}
        return details.get("reason") or "incomplete"
    if status == "completed" or status is None:
        return "tool_calls" if message.requested_actions else "stop"
    return status


def parse_response_payload(raw: dict[str, Any]) -> PromptResponse:
    message = parse_output(raw.get("output") or [])
    return PromptResponse(
        messages=[message],
        usage=Usage.from_openai_responses(raw.get("usage")),
        raw_response=raw,
        finish_reason=_finish_reason(raw, message),
        model=raw.get("model"),
        id=raw.get("id"),
    )


class ResponsesStreamAccumulator(StreamAccumulator):
    """Folds Responses API server-sent events into one message."""

    provider = "openai_responses"

    def __init__(self, *, on_stream: StreamCallback | None = None) -> None:
        super().__init__(on_stream=on_stream)
        self.pending_calls: dict[str, dict[str, Any]] = {}
        self.completed_calls: list[dict[str, Any]] = []

    async def feed(self, chunk: dict[str, Any]) -> None:
        self.chunks.append(chunk)
        event = chunk.get("type")
        if event in ("response.created", "response.in_progress"):
            response = chunk.get("response") or {}
            self.response_id = self.response_id or response.get("id")
            self.model = self.model or response.get("model")
        elif event == "response.output_item.added":
            item = chunk.get("item") or {}
            if item.get("type") == "function_call":
                self.pending_calls[item.get("id") or item.get("call_id")] = dict(
                    item, arguments=item.get("arguments") or ""
                )
        elif event == "response.output_text.delta":
            await self.append_text(chunk.get("delta") or "")
        elif event == "response.output_text.done":
            # Recover text when deltas were missed; no second callback.
            if not self.message.content and chunk.get("text"):
                self.message.content = chunk["text"]
                self.message.raw_content = chunk["text"]
        elif event == "response.function_call_arguments.delta":
            call = self.pending_calls.get(chunk.get("item_id"))
            if call is not None:
                call["arguments"] += chunk.get("delta") or ""
        elif event == "response.output_item.done":
            item = chunk.get("item") or {}
            if item.get("type") == "function_call":
                self.pending_calls.pop(item.get("id") or item.get("call_id"), None)
                self.completed_calls.append(item)
        elif event in ("response.completed", "response.incomplete"):
            response = chunk.get("response") or {}
            self.usage_raw = response.get("usage")
            self.finish_reason = _finish_reason(response, self._preview())
            await self.finalize()
        elif event in ("response.failed", "error"):
            error = (chunk.get("response") or {}).get("error") or chunk
            raise APIError(
                f"Responses stream failed: {error.get('message') or error}",
                provider=self.provider,
                phase="generate",
            )
        else:
            logger.debug("Ignoring Responses stream event %s", event)

    def _preview(self) -> Message:
        return Message(role="assistant", requested_actions=self.build_actions())

    def build_actions(self) -> list[Action]:
        calls = [*self.completed_calls, *self.pending_calls.values()]
        return [
            Action.from_arguments(
                call.get("call_id"), call.get("name") or "", call.get("arguments")
            )
            for call in calls
        ]


class OpenAIResponsesProvider(BaseProvider):
    """OpenAI Responses API provider."""

    name = "openai_responses"
    request_class = ResponsesRequest
    _capabilities = ProviderCapabilities(structured_outputs=True)

    def create_client(self) -> OpenAIClient:
        return OpenAIClient(
            self.config.api_key, base_url=self.config.base_url, endpoint="responses"
        )

    def response_format_of(self, request: WireModel) -> dict[str, Any] | None:
        return getattr(request, "response_format", None)

    def parse_response(self, raw: dict[str, Any], request: WireModel) -> PromptResponse:
        return parse_response_payload(raw)

    def stream_accumulator(
        self, request: WireModel, on_stream: StreamCallback | None
    ) -> StreamAccumulator:
        return ResponsesStreamAccumulator(on_stream=on_stream)

    def parse_stream_usage(self, accumulator: StreamAccumulator) -> Usage | None:
        return Usage.from_openai_responses(accumulator.usage_raw)
