"""Turn lifecycle state for a panel session.

A :class:`TurnOutcome` is created when a send is accepted and reaches
exactly one terminal status. Cancellation is its own status and never
carries an error message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from ...ai.search import SearchOutcome


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TurnStatus(Enum):
    """Status of a turn.

    Values:
        RUNNING: Attachments, search or the stream are in progress.
        COMPLETED: The assistant answer arrived in full.
        FAILED: The request failed; partial text may be kept.
        CANCELED: The user stopped the turn.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(slots=True)
class TurnOutcome:
    """What happened to one send.

    Attributes:
        turn_id: Identifier shared with the turn's events.
        prompt: The literal question.
        status: Current lifecycle status.
        response_text: Assistant text received (partial unless COMPLETED).
        error: Display-ready failure reason, FAILED only.
        status_code: HTTP status behind a failure, when there was one.
        search: Search augmentation outcome, if search ran.
    """

    turn_id: str
    prompt: str
    status: TurnStatus = TurnStatus.RUNNING
    response_text: str = ""
    error: str | None = None
    status_code: int | None = None
    search: SearchOutcome | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status == TurnStatus.RUNNING

    @property
    def is_finished(self) -> bool:
        return not self.is_running

    def mark_completed(self, response_text: str) -> None:
        self.status = TurnStatus.COMPLETED
        self.response_text = response_text
        self.completed_at = _utcnow()

    def mark_failed(self, error: str, *, partial_text: str = "", status_code: int | None = None) -> None:
        self.status = TurnStatus.FAILED
        self.error = error
        self.response_text = partial_text
        self.status_code = status_code
        self.completed_at = _utcnow()

    def mark_canceled(self, *, partial_text: str = "") -> None:
        self.status = TurnStatus.CANCELED
        self.response_text = partial_text
        self.completed_at = _utcnow()


__all__ = ["TurnOutcome", "TurnStatus"]
