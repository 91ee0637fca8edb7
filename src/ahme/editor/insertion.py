"""Reversible "insert generated text, then accept or discard" transaction.

At most one insertion is pending per transaction. Inserting again while one
is pending first discards the earlier one, so the document only ever carries
a single highlighted span awaiting a decision.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..documents.ranges import InsertedRange, TextPosition
from ..ui.events import EventBus, InsertionAccepted, InsertionDiscarded, InsertionPending
from .document_model import HostDocument

LOGGER = logging.getLogger(__name__)

INSERTION_ACTIONS: tuple[str, ...] = ("accept", "discard")


class InsertionState(enum.Enum):
    NONE = "none"
    INSERTED = "inserted"
    ACCEPTED = "accepted"
    DISCARDED = "discarded"


@dataclass(slots=True)
class _PendingInsertion:
    document: HostDocument
    range: InsertedRange
    replaced_text: str


class InsertionTransaction:
    """Domain service for the accept/discard insertion affordance.

    The accept/discard controls are exposed as :attr:`actions` plus
    :class:`InsertionPending` events; rendering them is left to the view.
    """

    def __init__(
        self,
        document_provider: Callable[[], HostDocument | None],
        event_bus: EventBus | None = None,
    ) -> None:
        """Initialize the transaction.

        Args:
            document_provider: Returns the active host document, or None
                when no document is open.
            event_bus: Optional bus receiving insertion events.
        """
        self._document_provider = document_provider
        self._bus = event_bus
        self._pending: _PendingInsertion | None = None
        self._state = InsertionState.NONE

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> InsertionState:
        return self._state

    @property
    def pending_range(self) -> Optional[InsertedRange]:
        return self._pending.range if self._pending else None

    @property
    def actions(self) -> tuple[str, ...]:
        """Decisions currently on offer; empty unless an insertion is pending."""

        return INSERTION_ACTIONS if self._pending else ()

    # ------------------------------------------------------------------
    # Transaction operations
    # ------------------------------------------------------------------

    def insert(self, text: str) -> InsertedRange | None:
        """Splice ``text`` at the selection (or caret) and mark it pending.

        Args:
            text: Generated text to insert.

        Returns:
            The span now occupied by ``text``, or None when no document is
            available.

        Emits:
            InsertionDiscarded (implicit) for a replaced pending insertion,
            then InsertionPending.
        """
        document = self._document_provider()
        if document is None or not document.is_attached:
            LOGGER.debug("InsertionTransaction.insert: no document available")
            return None

        selection = document.get_selection()
        if selection is not None and not selection.is_caret:
            target = selection
        else:
            target = InsertedRange.caret(document.get_cursor_position())

        pending = self._pending
        if pending is not None:
            self._discard_pending(implicit=True)
            if pending.document is document and pending.document.is_attached:
                target = _remap_after_discard(target, pending)

        replaced_text = document.text_in_range(target) if not target.is_caret else ""

        document.splice_text(target, text)
        inserted = InsertedRange.from_insertion(target.start, text)
        document.mark_range(inserted)

        self._pending = _PendingInsertion(
            document=document,
            range=inserted,
            replaced_text=replaced_text,
        )
        self._state = InsertionState.INSERTED
        LOGGER.debug(
            "InsertionTransaction.insert: range=%s replaced=%d chars",
            inserted.to_tuple(),
            len(replaced_text),
        )
        self._publish(InsertionPending(range=inserted.to_tuple(), actions=INSERTION_ACTIONS))
        return inserted

    def accept(self) -> bool:
        """Keep the pending text and drop the highlight.

        Returns:
            True if an insertion was pending.
        """
        pending = self._pending
        if pending is None:
            return False
        if pending.document.is_attached:
            pending.document.clear_mark()
        self._pending = None
        self._state = InsertionState.ACCEPTED
        LOGGER.debug("InsertionTransaction.accept: range=%s", pending.range.to_tuple())
        self._publish(InsertionAccepted(range=pending.range.to_tuple()))
        return True

    def discard(self) -> bool:
        """Remove the pending text, restoring whatever it replaced.

        Returns:
            True if an insertion was pending.
        """
        if self._pending is None:
            return False
        self._discard_pending(implicit=False)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _discard_pending(self, *, implicit: bool) -> None:
        pending = self._pending
        assert pending is not None
        document = pending.document
        if document.is_attached:
            if pending.replaced_text:
                document.splice_text(pending.range, pending.replaced_text)
            else:
                document.delete_range(pending.range)
            document.clear_mark()
        else:
            LOGGER.debug("InsertionTransaction: document detached, dropping pending insertion")
        self._pending = None
        self._state = InsertionState.DISCARDED
        self._publish(InsertionDiscarded(range=pending.range.to_tuple(), implicit=implicit))

    def _publish(self, event: InsertionPending | InsertionAccepted | InsertionDiscarded) -> None:
        if self._bus is not None:
            self._bus.publish(event)


def _remap_after_discard(target: InsertedRange, pending: _PendingInsertion) -> InsertedRange:
    """Translate ``target`` from before a discard to the restored document.

    Positions inside the discarded span collapse onto its start.
    """

    restored_end = InsertedRange.from_insertion(pending.range.start, pending.replaced_text).end
    start = _remap_position(target.start, pending.range, restored_end)
    end = _remap_position(target.end, pending.range, restored_end)
    return InsertedRange(start.line, start.column, end.line, end.column)


def _remap_position(position: TextPosition, removed: InsertedRange, restored_end: TextPosition) -> TextPosition:
    if position <= removed.start:
        return position
    if position < removed.end:
        return removed.start
    if position.line == removed.end_line:
        return TextPosition(restored_end.line, restored_end.column + position.column - removed.end_col)
    return TextPosition(position.line + restored_end.line - removed.end_line, position.column)


__all__ = ["INSERTION_ACTIONS", "InsertionState", "InsertionTransaction"]
