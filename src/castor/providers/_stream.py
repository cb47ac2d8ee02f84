"""Streaming delta merge engine.

Chunks are merged strictly in arrival order into one in-flight assistant
message plus a tool-call map keyed by ``index``. The stream callback is
invoked as ``callback(message, delta_text, is_final)``: once per text delta
with ``is_final=False`` and exactly once with ``(message, None, True)`` when
the provider signals the end of the turn.
"""

from __future__ import annotations

from copy import deepcopy
import inspect
import logging
from typing import TYPE_CHECKING, Any

from castor.errors import StreamAbandonedError
from castor.messages import Action, Message

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Collection

    StreamCallback = Callable[[Message, str | None, bool], Awaitable[None] | None]

logger = logging.getLogger(__name__)

#: Keys recorded the first time they appear and never concatenated.
SET_ONCE_KEYS: frozenset[str] = frozenset({"id", "call_id", "name", "type", "index", "role"})


def merge_indexed(current: list[Any], delta: list[Any], **options: Any) -> list[Any]:
    """Merge list deltas: mappings with ``index`` merge by index, others append."""
    for item in delta:
        if isinstance(item, dict) and "index" in item:
            existing = next(
                (
                    entry
                    for entry in current
                    if isinstance(entry, dict) and entry.get("index") == item["index"]
                ),
                None,
            )
            if existing is not None:
                hash_merge_delta(existing, item, **options)
                continue
        current.append(deepcopy(item))
    return current


def hash_merge_delta(
    target: dict[str, Any],
    delta: dict[str, Any],
    *,
    set_once: Collection[str] = SET_ONCE_KEYS,
    overwrite: Collection[str] = (),
) -> dict[str, Any]:
    """Merge one streamed *delta* into *target* in place.

    Strings concatenate, mappings merge recursively, lists merge by
    ``index``. Keys in *set_once* keep their first non-null value; keys in
    *overwrite* take the latest non-null value. ``None`` never erases a value
    that is already set.
    """
    for key, value in delta.items():
        current = target.get(key)
        if value is None:
            target.setdefault(key, None)
        elif key in overwrite:
            target[key] = deepcopy(value)
        elif key in set_once and current is not None:
            continue
        elif isinstance(value, str) and isinstance(current, str):
            target[key] = current + value
        elif isinstance(value, dict) and isinstance(current, dict):
            hash_merge_delta(current, value, set_once=set_once, overwrite=overwrite)
        elif isinstance(value, list) and isinstance(current, list):
            merge_indexed(current, value, set_once=set_once, overwrite=overwrite)
        else:
            target[key] = deepcopy(value)
    return target


async def emit(
    callback: StreamCallback | None, message: Message, delta: str | None, is_final: bool
) -> None:
    """Invoke a sync or async stream callback."""
    if callback is None:
        return
    result = callback(message, delta, is_final)
    if inspect.isawaitable(result):
        await result


class StreamAccumulator:
    """Base accumulator: one in-flight message, finalized exactly once."""

    provider = "unknown"

    def __init__(self, *, on_stream: StreamCallback | None = None) -> None:
        self.on_stream = on_stream
        self.message = Message(role="assistant", content="")
        self.finished = False
        self.finish_reason: str | None = None
        self.usage_raw: dict[str, Any] | None = None
        self.response_id: str | None = None
        self.model: str | None = None
        self.chunks: list[Any] = []
        #: True once a text delta has been handed to ``on_stream``.
        self.emitted = False

    async def feed(self, chunk: dict[str, Any]) -> None:
        raise NotImplementedError

    async def append_text(self, text: str) -> None:
        if not text:
            return
        current = self.message.content if isinstance(self.message.content, str) else ""
        self.message.content = current + text
        self.message.raw_content = self.message.content
        self.emitted = True
        await emit(self.on_stream, self.message, text, False)

    def build_actions(self) -> list[Action]:
        return []

    async def finalize(self) -> Message:
        """Flush tool calls and fire the final callback (idempotent)."""
        if self.finished:
            return self.message
        self.finished = True
        self.message.requested_actions = self.build_actions()
        await emit(self.on_stream, self.message, None, True)
        return self.message

    def ensure_finished(self) -> Message:
        """Return the message, raising when the stream never terminated."""
        if not self.finished:
            raise StreamAbandonedError(
                f"{self.provider} stream ended before a terminal signal",
                hint="The transport closed the stream early; retry the generation.",
            )
        return self.message


class ChatStreamAccumulator(StreamAccumulator):
    """Merges OpenAI Chat Completions style ``choices[].delta`` chunks."""

    provider = "openai"

    def __init__(
        self,
        *,
        on_stream: StreamCallback | None = None,
        overwrite: Collection[str] = (),
    ) -> None:
        super().__init__(on_stream=on_stream)
        self.overwrite = frozenset(overwrite)
        self.set_once = SET_ONCE_KEYS - self.overwrite
        self.wire: dict[str, Any] = {}

    async def feed(self, chunk: dict[str, Any]) -> None:
        self.chunks.append(chunk)
        self.response_id = self.response_id or chunk.get("id")
        self.model = self.model or chunk.get("model")
        if chunk.get("usage"):
            self.usage_raw = chunk["usage"]

        for choice in chunk.get("choices") or []:
            if choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}
            if delta:
                hash_merge_delta(
                    self.wire, delta, set_once=self.set_once, overwrite=self.overwrite
                )
                content = delta.get("content")
                if isinstance(content, str):
                    await self.append_text(content)
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
                await self.finalize()

    def build_actions(self) -> list[Action]:
        calls = sorted(
            (call for call in self.wire.get("tool_calls") or [] if isinstance(call, dict)),
            key=lambda call: call.get("index", 0),
        )
        actions: list[Action] = []
        for call in calls:
            function = call.get("function") or {}
            actions.append(
                Action.from_arguments(
                    call.get("id"), function.get("name") or "", function.get("arguments")
                )
            )
        return actions
