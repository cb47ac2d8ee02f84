"""Forced tool_choice tracking across turns.

A caller who pins ``tool_choice`` to "required" or to one named tool would
otherwise force the same call on every continuation. Once the forced tool
has been invoked, the choice is cleared.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal

ToolChoiceKind = Literal["unset", "any", "specific", "unforced"]

_FORCES_ANY = frozenset({"required", "any"})


@dataclass(frozen=True)
class ToolChoiceState:
    """Normalized view of a tool_choice value in any provider's shape."""

    kind: ToolChoiceKind
    name: str | None = None

    @classmethod
    def from_value(cls, value: Any) -> ToolChoiceState:
        """Classify canonical and provider-native tool_choice shapes.

        Recognized: ``"required"``/``"any"``, ``{"type": "any"}``,
        ``{"name": ...}``, ``{"type": "tool", "name": ...}`` and
        ``{"type": "function", "function": {"name": ...}}``.
        """
        if value is None:
            return cls("unset")
        if isinstance(value, str):
            return cls("any") if value in _FORCES_ANY else cls("unforced")
        if isinstance(value, dict):
            choice_type = value.get("type")
            if choice_type in _FORCES_ANY:
                return cls("any")
            function = value.get("function")
            if isinstance(function, dict) and function.get("name"):
                return cls("specific", function["name"])
            if value.get("name") and choice_type in (None, "tool", "function"):
                return cls("specific", value["name"])
        return cls("unforced")

    def should_clear(self, used_names: Iterable[str]) -> bool:
        used = set(used_names)
        if self.kind == "any":
            return bool(used)
        if self.kind == "specific":
            return self.name in used
        return False


def should_clear_tool_choice(tool_choice: Any, used_names: Iterable[str]) -> bool:
    """Return True when *tool_choice* forced a tool that was just invoked."""
    return ToolChoiceState.from_value(tool_choice).should_clear(used_names)
