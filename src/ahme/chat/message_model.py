"""Conversation turns and the in-flight assistant message."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal

ChatRole = Literal["system", "user", "assistant"]
_ROLES: tuple[str, ...] = ("system", "user", "assistant")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ConversationTurn:
    """One entry of a session's append-only history."""

    role: ChatRole
    content: str
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unsupported chat role '{self.role}'")

    def to_message(self) -> Dict[str, str]:
        """Return the ``{role, content}`` mapping sent to the inference service."""

        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class StreamingMessage:
    """Assistant text being received; ``content`` only ever grows.

    ``is_streaming`` turns false exactly once, whether the stream completes,
    is aborted or fails.
    """

    content: str = ""
    is_streaming: bool = True
    role: ChatRole = "assistant"

    def append(self, fragment: str) -> str:
        """Append ``fragment`` and return the accumulated content."""

        if not self.is_streaming:
            raise RuntimeError("Cannot append to a finished message")
        if fragment:
            self.content += fragment
        return self.content

    def finish(self) -> None:
        self.is_streaming = False

    def to_turn(self) -> ConversationTurn:
        return ConversationTurn(role=self.role, content=self.content)


__all__ = ["ChatRole", "ConversationTurn", "StreamingMessage"]
