"""Generation results returned to callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from castor.messages import Action, Message
    from castor.usage import Usage


@dataclass
class PromptResponse:
    """Result of a prompt generation.

    ``messages`` is the full conversation including the generated turn(s);
    ``raw_response`` is the provider payload, kept for introspection.
    """

    messages: list[Message] = field(default_factory=list)
    usage: Usage | None = None
    raw_response: Any = None
    raw_request: dict[str, Any] | None = None
    finish_reason: str | None = None
    model: str | None = None
    id: str | None = None

    @property
    def message(self) -> Message | None:
        """The last generated message."""
        return self.messages[-1] if self.messages else None

    @property
    def text(self) -> str:
        return self.message.text if self.message is not None else ""

    @property
    def requested_actions(self) -> list[Action]:
        return list(self.message.requested_actions) if self.message is not None else []


@dataclass
class EmbedResponse:
    """Result of an embedding call; usage reports input tokens only."""

    data: list[list[float]] = field(default_factory=list)
    usage: Usage | None = None
    raw_response: Any = None
    model: str | None = None
