"""Attachment tray domain service.

Tracks the attachments queued for a session's next send. Each file starts
processing the moment it is added, without waiting for earlier files, and
its state is keyed by attachment id so completions can arrive in any order.
"""

from __future__ import annotations

import asyncio
import logging

from ...ai.attachments import Attachment, AttachmentIngestor, RawAttachment
from ...ai.errors import InputRejected
from ..events import AttachmentAdded, AttachmentRejected, AttachmentRemoved, AttachmentUpdated, EventBus

LOGGER = logging.getLogger(__name__)


class AttachmentTray:
    """Per-session attachment state.

    Events Emitted:
        - AttachmentAdded: A file passed local checks and started processing
        - AttachmentUpdated: Processing finished (READY or ERROR)
        - AttachmentRemoved: An attachment was dropped
        - AttachmentRejected: A file failed local checks
    """

    def __init__(self, session_id: str, ingestor: AttachmentIngestor, event_bus: EventBus) -> None:
        self._session_id = session_id
        self._ingestor = ingestor
        self._bus = event_bus
        self._attachments: dict[str, Attachment] = {}
        self._tasks: dict[str, asyncio.Task[Attachment]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def attachments(self) -> list[Attachment]:
        return list(self._attachments.values())

    def get(self, attachment_id: str) -> Attachment | None:
        return self._attachments.get(attachment_id)

    def ready(self) -> list[Attachment]:
        return [item for item in self._attachments.values() if item.is_ready]

    @property
    def has_pending(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def __len__(self) -> int:
        return len(self._attachments)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, raw: RawAttachment) -> Attachment | None:
        """Queue ``raw`` and start processing it.

        Must be called from a running event loop.

        Returns:
            The PROCESSING attachment, or None if local checks rejected it.
        """
        try:
            attachment = self._ingestor.create(raw)
        except InputRejected as exc:
            LOGGER.info("AttachmentTray: rejected %s: %s", raw.name, exc.message)
            self._bus.publish(
                AttachmentRejected(session_id=self._session_id, name=raw.name, reason=exc.message, code=exc.code)
            )
            return None

        attachment_id = attachment.attachment_id
        self._attachments[attachment_id] = attachment
        self._bus.publish(
            AttachmentAdded(
                session_id=self._session_id,
                attachment_id=attachment_id,
                name=attachment.name,
                kind=attachment.kind.value,
            )
        )
        self._tasks[attachment_id] = asyncio.ensure_future(self._process(attachment, raw))
        LOGGER.debug("AttachmentTray: processing %s as %s", raw.name, attachment_id)
        return attachment

    def remove(self, attachment_id: str) -> bool:
        """Drop an attachment, cancelling its processing if still running."""

        attachment = self._attachments.pop(attachment_id, None)
        if attachment is None:
            return False
        task = self._tasks.pop(attachment_id, None)
        if task is not None and not task.done():
            task.cancel()
        self._bus.publish(AttachmentRemoved(session_id=self._session_id, attachment_id=attachment_id))
        return True

    def clear(self) -> None:
        for attachment_id in list(self._attachments):
            self.remove(attachment_id)

    async def wait_ready(self) -> list[Attachment]:
        """Wait for in-flight processing, then return the READY attachments.

        Cancelling the caller does not cancel the processing tasks.
        """
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.wait(pending)
        return self.ready()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _process(self, attachment: Attachment, raw: RawAttachment) -> Attachment:
        result = await self._ingestor.process(attachment, raw)
        if self._attachments.get(attachment.attachment_id) is not attachment:
            return result
        self._bus.publish(
            AttachmentUpdated(
                session_id=self._session_id,
                attachment_id=attachment.attachment_id,
                status=attachment.status.value,
                error=attachment.error,
                truncated=bool(getattr(attachment, "truncated", False)),
            )
        )
        return result


__all__ = ["AttachmentTray"]
