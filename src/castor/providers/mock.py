"""Deterministic offline provider.

Replies with the last user turn translated to pig latin, in the Anthropic
Messages shape, so the full build/serialize/parse/stream cycle runs with no
network. A forced ``tool_choice`` produces a ``tool_use`` block instead.
"""

from __future__ import annotations

import hashlib
import re
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import ConfigDict, Field, field_validator

from castor._model import WireModel
from castor.messages import Message
from castor.providers.anthropic import AnthropicStreamAccumulator, parse_response_payload
from castor.providers.base import BaseProvider, ProviderCapabilities
from castor.providers.tool_choice import ToolChoiceState
from castor.response import EmbedResponse, PromptResponse
from castor.schema import normalize_response_format
from castor.usage import Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.providers._stream import StreamAccumulator, StreamCallback

_WORD = re.compile(r"\b")
_LEADING_CONSONANTS = re.compile(r"^([^aeiouAEIOU]+)(.*)$", re.DOTALL)


def to_pig_latin(text: str) -> str:
    if not text:
        return ""
    out = []
    for word in _WORD.split(text):
        if not re.search(r"\w", word):
            out.append(word)
        elif word[0] in "aeiouAEIOU":
            out.append(f"{word}way")
        else:
            match = _LEADING_CONSONANTS.match(word)
            consonants, rest = match.group(1), match.group(2)
            if not rest:
                out.append(f"{word}ay")
            elif word[0].isupper():
                out.append(f"{rest[0].upper()}{rest[1:]}{consonants.lower()}ay")
            else:
                out.append(f"{rest}{consonants}ay")
    return "".join(out)


def _mock_id(seed: str) -> str:
    return "mock-" + hashlib.sha256(seed.encode()).hexdigest()[:16]


def _tool_name(tool: dict[str, Any]) -> str | None:
    function = tool.get("function")
    if isinstance(function, dict):
        return function.get("name")
    return tool.get("name")


class MockRequest(WireModel):
    """Permissive request: unknown parameters are kept and echoed in the payload."""

    model_config = ConfigDict(extra="allow")

    wire_required: ClassVar[frozenset[str]] = frozenset({"model", "messages"})

    model: str = "mock-model"
    messages: list[dict[str, Any]] = Field(default_factory=list)
    instructions: str | None = None
    stream: bool = False
    tools: list[dict[str, Any]] | None = None
    tool_choice: Any = None
    response_format: dict[str, Any] | None = None

    @field_validator("messages", mode="before")
    @classmethod
    def _to_common(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            value = [value]
        return [Message.coerce(item).to_common() for item in value]

    @field_validator("instructions", mode="before")
    @classmethod
    def _join_instructions(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return " ".join(value)
        return value

    @field_validator("response_format", mode="before")
    @classmethod
    def _normalize_response_format(cls, value: Any) -> Any:
        return normalize_response_format(value)


class MockEmbeddingRequest(WireModel):
    wire_required: ClassVar[frozenset[str]] = frozenset({"model", "input"})

    model: str = "mock-embedding-model"
    input: str | list[str]
    dimensions: int = Field(1536, ge=1)


def _last_text(payload: dict[str, Any]) -> str:
    messages = payload.get("messages") or []
    content = messages[-1].get("content") if messages else None
    if isinstance(content, list):
        content = " ".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    parts = [payload.get("instructions"), content]
    return " ".join(str(part) for part in parts if part)


def _forced_tool(payload: dict[str, Any]) -> str | None:
    tools = payload.get("tools") or []
    messages = payload.get("messages") or []
    if not tools or (messages and messages[-1].get("role") == "tool"):
        return None
    state = ToolChoiceState.from_value(payload.get("tool_choice"))
    if state.kind == "specific":
        return state.name
    if state.kind == "any":
        return _tool_name(tools[0])
    return None


class MockClient:
    """In-process transport producing Anthropic-shaped responses and events."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []

    def respond(self, payload: dict[str, Any]) -> dict[str, Any]:
        source = _last_text(payload)
        tool = _forced_tool(payload)
        if tool is not None:
            call_id = _mock_id(tool + source)
            content = [{"type": "tool_use", "id": call_id, "name": tool, "input": {}}]
            stop_reason = "tool_use"
            output = ""
        else:
            output = to_pig_latin(source)
            content = [{"type": "text", "text": output}]
            stop_reason = "end_turn"
        return {
            "id": _mock_id(source),
            "type": "message",
            "role": "assistant",
            "content": content,
            "model": payload.get("model") or "mock-model",
            "stop_reason": stop_reason,
            "usage": {"input_tokens": len(source), "output_tokens": len(output)},
        }

    async def create(
        self, payload: dict[str, Any], *, stream: bool
    ) -> dict[str, Any] | AsyncIterator[dict[str, Any]]:
        self.requests.append(payload)
        response = self.respond(payload)
        if stream:
            return self._events(response)
        return response

    async def _events(self, response: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        start = {k: v for k, v in response.items() if k not in ("content", "stop_reason")}
        yield {"type": "message_start", "message": {**start, "content": []}}
        for index, block in enumerate(response["content"]):
            if block["type"] == "text":
                yield {
                    "type": "content_block_start",
                    "index": index,
                    "content_block": {"type": "text", "text": ""},
                }
                for i, word in enumerate(block["text"].split(" ")):
                    text = word if i == 0 else f" {word}"
                    yield {
                        "type": "content_block_delta",
                        "index": index,
                        "delta": {"type": "text_delta", "text": text},
                    }
            else:
                yield {"type": "content_block_start", "index": index, "content_block": block}
            yield {"type": "content_block_stop", "index": index}
        yield {
            "type": "message_delta",
            "delta": {"stop_reason": response["stop_reason"]},
            "usage": {"output_tokens": response["usage"]["output_tokens"]},
        }
        yield {"type": "message_stop"}

    async def embed(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(payload)
        inputs = payload["input"] if isinstance(payload["input"], list) else [payload["input"]]
        dimensions = payload.get("dimensions", 1536)
        data = []
        for index, text in enumerate(inputs):
            digest = hashlib.sha256(text.encode()).digest()
            vector = [digest[i % len(digest)] / 255 for i in range(dimensions)]
            data.append({"object": "embedding", "index": index, "embedding": vector})
        tokens = sum(len(text) for text in inputs)
        return {
            "object": "list",
            "data": data,
            "model": payload.get("model") or "mock-embedding-model",
            "usage": {"prompt_tokens": tokens, "total_tokens": tokens},
        }


class MockProvider(BaseProvider):
    """Offline provider backed by MockClient."""

    name = "mock"
    request_class = MockRequest
    embed_request_class = MockEmbeddingRequest
    default_model = "mock-model"
    _capabilities = ProviderCapabilities(structured_outputs=True, embeddings=True)

    def create_client(self) -> MockClient:
        return MockClient()

    def parse_response(self, raw: dict[str, Any], request: WireModel) -> PromptResponse:
        return parse_response_payload(raw)

    def stream_accumulator(
        self, request: WireModel, on_stream: StreamCallback | None
    ) -> StreamAccumulator:
        accumulator = AnthropicStreamAccumulator(on_stream=on_stream)
        accumulator.provider = self.name
        return accumulator

    def parse_stream_usage(self, accumulator: StreamAccumulator) -> Usage | None:
        return Usage.from_anthropic(accumulator.usage_raw)

    def parse_embed_response(self, raw: dict[str, Any]) -> EmbedResponse:
        return EmbedResponse(
            data=[item["embedding"] for item in raw["data"]],
            usage=Usage.from_openai_embedding(raw.get("usage")),
            raw_response=raw,
            model=raw.get("model"),
        )
