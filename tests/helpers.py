"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off client classes as coverage expands.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any


async def _aiter(chunks: list[Any]) -> AsyncIterator[dict[str, Any]]:
    for chunk in chunks:
        if isinstance(chunk, BaseException):
            raise chunk
        yield chunk


@dataclass
class ScriptedClient:
    """Client double returning a scripted sequence of results/exceptions.

    Each ``create`` pops the next item: an exception is raised, a list is
    served as a chunk stream (an exception inside it is raised mid-stream),
    and a mapping is returned as the response.
    Payloads are recorded for assertions.
    """

    script: list[Any] = field(default_factory=list)
    payloads: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False

    async def create(self, payload: dict[str, Any], *, stream: bool) -> Any:
        self.payloads.append(payload)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, list):
            assert stream, "scripted a chunk stream for a non-streaming call"
            return _aiter(item)
        return item

    async def embed(self, payload: dict[str, Any]) -> Any:
        return await self.create(payload, stream=False)

    async def aclose(self) -> None:
        self.closed = True

    @property
    def last_payload(self) -> dict[str, Any]:
        return self.payloads[-1]


def chat_completion(
    content: str | None = "ok",
    *,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str = "stop",
    usage: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """A minimal Chat Completions response mapping."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": usage or {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    }


def tool_call(call_id: str, name: str, arguments: str = "{}") -> dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


def anthropic_message(
    text: str = "ok", *, stop_reason: str = "end_turn", blocks: list[Any] | None = None
) -> dict[str, Any]:
    """A minimal Messages API response mapping."""
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": "claude-sonnet-4-5",
        "content": blocks if blocks is not None else [{"type": "text", "text": text}],
        "stop_reason": stop_reason,
        "usage": {"input_tokens": 4, "output_tokens": 2},
    }
