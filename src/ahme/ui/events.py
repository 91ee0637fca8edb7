"""Event bus connecting the AI panel domain to whatever UI renders it.

Domain services (chat sessions, attachment trays, the insertion transaction)
publish the dataclasses defined here; views subscribe to the ones they draw.
Every session-scoped event carries its ``session_id`` so a view bound to one
session can ignore traffic from another.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Generic, TypeVar
from weakref import WeakMethod

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events published on the :class:`EventBus`."""


# Stream chunks arrive per token; publishing them is not logged.
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# AI Turn Events
# =============================================================================


@dataclass(slots=True)
class AITurnStarted(Event):
    """A send was accepted and the request is being prepared.

    Attributes:
        session_id: Panel session that owns the turn.
        turn_id: Identifier of this turn (``turn-xxxxxxxx``).
        prompt: The literal user question.
        attachment_count: READY attachments that will be included.
    """

    session_id: str
    turn_id: str
    prompt: str
    attachment_count: int = 0


@dataclass(slots=True)
class AITurnStreamChunk(Event):
    """Incremental assistant text.

    Attributes:
        content: The newly appended text.
        accumulated: The full assistant message so far.
    """

    session_id: str
    turn_id: str
    content: str
    accumulated: str


_QUIET_EVENT_TYPES.add(AITurnStreamChunk)


@dataclass(slots=True)
class AITurnCompleted(Event):
    """The stream reached its completion flag (or ended cleanly)."""

    session_id: str
    turn_id: str
    response_text: str


@dataclass(slots=True)
class AITurnFailed(Event):
    """The turn ended in failure.

    Attributes:
        error: Display-ready failure reason.
        partial_text: Content accumulated before the failure, kept visible.
        status_code: HTTP status when the failure came from a response.
    """

    session_id: str
    turn_id: str
    error: str
    partial_text: str = ""
    status_code: int | None = None


@dataclass(slots=True)
class AITurnCanceled(Event):
    """The user stopped the turn. Views must not render this as an error."""

    session_id: str
    turn_id: str
    partial_text: str = ""


@dataclass(slots=True)
class SearchResolved(Event):
    """Web search augmentation finished, either with results or a skip.

    Attributes:
        skipped: True when no augmentation will be injected.
        reason: Why the search was skipped, if it was.
        result_count: Number of results that will be injected.
    """

    session_id: str
    turn_id: str
    skipped: bool
    reason: str | None = None
    result_count: int = 0


# =============================================================================
# Attachment Events
# =============================================================================


@dataclass(slots=True)
class AttachmentAdded(Event):
    """A file passed local checks and is being processed.

    Attributes:
        kind: ``"image"`` or ``"document"``.
    """

    session_id: str
    attachment_id: str
    name: str
    kind: str


@dataclass(slots=True)
class AttachmentUpdated(Event):
    """An attachment finished processing.

    Attributes:
        status: ``"ready"`` or ``"error"``.
        error: Failure reason when ``status`` is ``"error"``.
    """

    session_id: str
    attachment_id: str
    status: str
    error: str | None = None
    truncated: bool = False


@dataclass(slots=True)
class AttachmentRemoved(Event):
    """An attachment was discarded by the user or after a successful send."""

    session_id: str
    attachment_id: str


@dataclass(slots=True)
class AttachmentRejected(Event):
    """A file was refused before any upload (size, type, binary content)."""

    session_id: str
    name: str
    reason: str
    code: str


# =============================================================================
# Insertion Events
# =============================================================================


@dataclass(slots=True)
class InsertionPending(Event):
    """Generated text was spliced in and awaits a decision.

    Attributes:
        range: The inserted span as ``(start_line, start_col, end_line, end_col)``.
        actions: The decisions the view must offer, in display order.
    """

    range: tuple[int, int, int, int]
    actions: tuple[str, ...] = ("accept", "discard")


@dataclass(slots=True)
class InsertionAccepted(Event):
    """The pending insertion became permanent."""

    range: tuple[int, int, int, int]


@dataclass(slots=True)
class InsertionDiscarded(Event):
    """The pending insertion was reverted.

    Attributes:
        implicit: True when a newer insertion replaced this one.
    """

    range: tuple[int, int, int, int]
    implicit: bool = False


# =============================================================================
# Session & Notice Events
# =============================================================================


@dataclass(slots=True)
class ActiveSessionChanged(Event):
    """The focused panel session changed."""

    session_id: str
    previous_id: str | None = None


@dataclass(slots=True)
class NoticePosted(Event):
    """A non-error notice for the chat panel (e.g. "search skipped: timeout")."""

    message: str
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class EventBus(Generic[E]):
    """Synchronous publish/subscribe bus.

    Bound methods are held weakly so a discarded view unsubscribes itself;
    plain functions and lambdas are held strongly. A handler that raises is
    logged and the remaining handlers still run. Not thread-safe: publish
    from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for exact instances of ``event_type``."""

        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed %s to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                logger.debug("Unsubscribed %s from %s", _handler_name(handler), event_type.__name__)
                return

    def publish(self, event: E) -> None:
        """Deliver ``event`` to its handlers in registration order."""

        event_type = type(event)
        handlers = self._handlers.get(event_type)
        quiet = event_type in _QUIET_EVENT_TYPES
        if not handlers:
            if not quiet:
                logger.debug("No handlers for %s", event_type.__name__)
            return
        if not quiet:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead: list[int] = []
        for index, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead.append(index)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised while handling %s", _handler_name(handler), event_type.__name__
                )
        for index in reversed(dead):
            if index < len(handlers) and handlers[index].resolve() is None:
                handlers.pop(index)

    def clear(self) -> None:
        """Drop every registration."""

        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return registrations for ``event_type``, or across all types."""

        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: Any, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "AITurnStarted",
    "AITurnStreamChunk",
    "AITurnCompleted",
    "AITurnFailed",
    "AITurnCanceled",
    "SearchResolved",
    "AttachmentAdded",
    "AttachmentUpdated",
    "AttachmentRemoved",
    "AttachmentRejected",
    "InsertionPending",
    "InsertionAccepted",
    "InsertionDiscarded",
    "ActiveSessionChanged",
    "NoticePosted",
]
