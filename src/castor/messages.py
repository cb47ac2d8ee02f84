"""Canonical, provider-agnostic message model."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any

from castor.errors import CastError

logger = logging.getLogger(__name__)

ROLES: tuple[str, ...] = ("system", "developer", "user", "assistant", "tool")

_JSON_CONTENT_TYPE = re.compile(r"json", re.IGNORECASE)


@dataclass(frozen=True)
class Action:
    """A tool invocation requested by the model.

    ``params`` holds the parsed argument object, or ``None`` when the raw
    ``arguments`` string is not valid JSON.
    """

    id: str | None
    name: str
    params: Any = None
    arguments: str | None = None

    @classmethod
    def from_arguments(
        cls, id: str | None, name: str, arguments: str | dict[str, Any] | None
    ) -> Action:
        """Build an Action, parsing a JSON argument string when given one."""
        if isinstance(arguments, dict):
            return cls(id=id, name=name, params=arguments, arguments=json.dumps(arguments))
        if not arguments:
            return cls(id=id, name=name, params={}, arguments=arguments)
        try:
            params = json.loads(arguments)
        except ValueError:
            logger.debug("Tool call %s has non-JSON arguments", name)
            params = None
        return cls(id=id, name=name, params=params, arguments=arguments)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "params": self.params}


def _infer_content_type(content: Any) -> str:
    if isinstance(content, list):
        if content and all(isinstance(part, dict) and "type" in part for part in content):
            return "multipart/mixed"
        return "array"
    return "text/plain"


@dataclass
class Message:
    """One conversational turn in canonical form.

    ``content`` is a string or an ordered list of content blocks.
    ``raw_content`` keeps whatever the provider sent before any
    structured-output parsing.
    """

    role: str = "user"
    content: Any = ""
    raw_content: Any = None
    content_type: str | None = None
    charset: str = "UTF-8"
    name: str | None = None
    tool_call_id: str | None = None
    action_id: str | None = None
    action_name: str | None = None
    requested_actions: list[Action] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role is None:
            self.role = "user"
        if self.role not in ROLES:
            raise CastError(
                f"Unknown message role: {self.role!r}",
                hint=f"Expected one of {', '.join(ROLES)}",
            )
        if self.raw_content is None:
            self.raw_content = self.content
        if self.content_type is None:
            self.content_type = _infer_content_type(self.content)
        elif _JSON_CONTENT_TYPE.search(self.content_type):
            self.parse_structured()

    @property
    def action_requested(self) -> bool:
        return bool(self.requested_actions)

    @property
    def text(self) -> str:
        """Concatenated text of the content, whatever its shape."""
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.raw_content, str):
            return self.raw_content
        if isinstance(self.content, list):
            return "".join(
                part.get("text", "")
                for part in self.content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
        return ""

    def parse_structured(self, content_type: str = "application/json") -> Any:
        """Mark the content as JSON and parse it in place.

        Parse failures are soft: ``content`` stays the raw string and no
        exception is raised. Check ``isinstance(content, (dict, list))``
        rather than trusting ``content_type``.
        """
        self.content_type = content_type
        if not isinstance(self.content, str):
            return self.content
        self.raw_content = self.content
        try:
            self.content = json.loads(self.content)
        except ValueError:
            logger.debug("Structured output is not valid JSON; keeping raw text")
        return self.content

    def to_common(self) -> dict[str, Any]:
        """Return the canonical dict form used as the conversion pivot."""
        out: dict[str, Any] = {"role": self.role, "content": self.raw_content}
        if self.name:
            out["name"] = self.name
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        if self.requested_actions:
            out["tool_calls"] = [
                {
                    "id": action.id,
                    "name": action.name,
                    "arguments": action.arguments
                    if action.arguments is not None
                    else json.dumps(action.params or {}),
                }
                for action in self.requested_actions
            ]
        return out

    @classmethod
    def coerce(cls, value: Any) -> Message:
        """Build a Message from a string, mapping, or Message."""
        if isinstance(value, Message):
            return value
        if isinstance(value, str):
            return cls(role="user", content=value)
        if isinstance(value, dict):
            data = dict(value)
            calls = data.get("tool_calls") or data.get("requested_actions") or []
            actions = [
                call if isinstance(call, Action) else _action_from_common(call)
                for call in calls
            ]
            known = {
                key: data[key]
                for key in (
                    "role",
                    "content",
                    "content_type",
                    "name",
                    "tool_call_id",
                    "action_id",
                    "action_name",
                    "metadata",
                )
                if key in data
            }
            if "content" not in known and "text" in data:
                known["content"] = data["text"]
            return cls(requested_actions=actions, **known)
        raise CastError(f"Cannot build a message from {type(value).__name__}")


def _action_from_common(call: Any) -> Action:
    if not isinstance(call, dict):
        raise CastError(f"Invalid tool call: {call!r}")
    function = call.get("function") if isinstance(call.get("function"), dict) else call
    arguments = function.get("arguments", function.get("input", function.get("params")))
    return Action.from_arguments(call.get("id"), function.get("name", ""), arguments)
