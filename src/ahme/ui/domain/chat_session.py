"""Chat panel session domain service.

A :class:`ChatSession` owns one conversation: its history, its attachment
tray, the assistant message being streamed and the handle used to cancel
it. :class:`ChatSessionManager` keeps several sessions and tracks which one
is active.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, TypeVar

from ...ai.attachments import AttachmentIngestor
from ...ai.client import InferenceClient
from ...ai.errors import ErrorCode, InputRejected
from ...ai.prompt_assembler import assemble_prompt
from ...ai.search import SearchAugmenter, SearchOutcome
from ...ai.streaming import StreamingResponseConsumer, StreamResult, StreamState
from ...chat.message_model import ConversationTurn, StreamingMessage
from ...services.settings import Settings, effective_system_prompt
from ..events import (
    ActiveSessionChanged,
    AITurnCanceled,
    AITurnCompleted,
    AITurnFailed,
    AITurnStarted,
    AITurnStreamChunk,
    EventBus,
    NoticePosted,
    SearchResolved,
)
from ..models.turn_models import TurnOutcome, TurnStatus
from .attachment_tray import AttachmentTray

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class _TurnCanceled(Exception):
    """Internal signal: the user cancelled before streaming started."""


class ChatSession:
    """One panel conversation.

    Events Emitted:
        - AITurnStarted: A send was accepted
        - SearchResolved / NoticePosted: Search finished or was skipped
        - AITurnStreamChunk: For each piece of assistant text
        - AITurnCompleted: The answer arrived in full
        - AITurnFailed: The request failed (history and attachments kept)
        - AITurnCanceled: The user stopped the turn
    """

    def __init__(
        self,
        session_id: str,
        client: InferenceClient,
        ingestor: AttachmentIngestor,
        augmenter: SearchAugmenter,
        event_bus: EventBus,
        settings: Settings,
    ) -> None:
        self._session_id = session_id
        self._client = client
        self._augmenter = augmenter
        self._bus = event_bus
        self._settings = settings
        self._history: list[ConversationTurn] = []
        self._tray = AttachmentTray(session_id, ingestor, event_bus)
        self._message: StreamingMessage | None = None
        self._current_turn: TurnOutcome | None = None
        self._consumer: StreamingResponseConsumer | None = None
        self._phase_task: asyncio.Future[Any] | None = None
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def history(self) -> list[ConversationTurn]:
        return list(self._history)

    @property
    def attachments(self) -> AttachmentTray:
        return self._tray

    @property
    def current_message(self) -> StreamingMessage | None:
        return self._message

    @property
    def current_turn(self) -> TurnOutcome | None:
        return self._current_turn

    def is_running(self) -> bool:
        return self._current_turn is not None and self._current_turn.is_running

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    async def send(
        self,
        question: str,
        *,
        document_text: str = "",
        search_enabled: bool | None = None,
    ) -> TurnOutcome:
        """Run one turn: attachments, search, assembly and streaming.

        Args:
            question: The user's question, stored in history verbatim.
            document_text: Current content of the host document.
            search_enabled: Override for :attr:`Settings.search_enabled`.

        Returns:
            The finished :class:`TurnOutcome`.

        Raises:
            InputRejected: Empty question, no model selected, or a turn is
                already running in this session.
        """
        if not question or not question.strip():
            raise InputRejected("Question is empty", code=ErrorCode.EMPTY_QUESTION)
        if self.is_running():
            raise InputRejected("A response is already being generated", code=ErrorCode.TURN_IN_PROGRESS)
        if not self._client.settings.model:
            raise InputRejected("No model selected", code=ErrorCode.NO_MODEL)

        turn = TurnOutcome(turn_id=f"turn-{uuid.uuid4().hex[:8]}", prompt=question)
        self._current_turn = turn
        self._cancel_requested = False
        self._consumer = None
        self._message = None
        enabled = self._settings.search_enabled if search_enabled is None else search_enabled
        sent_ids = [item.attachment_id for item in self._tray.attachments]

        LOGGER.debug(
            "ChatSession.send: session=%s turn_id=%s question_length=%d",
            self._session_id,
            turn.turn_id,
            len(question),
        )
        self._bus.publish(
            AITurnStarted(
                session_id=self._session_id,
                turn_id=turn.turn_id,
                prompt=question,
                attachment_count=len(self._tray),
            )
        )

        try:
            attachments = await self._run_phase(self._tray.wait_ready)
            sent_ids.extend(item.attachment_id for item in attachments if item.attachment_id not in sent_ids)
            search = await self._run_phase(lambda: self._augmenter.augment(question, enabled=enabled))
            turn.search = search
            self._report_search(turn, search, enabled)

            prompt = assemble_prompt(
                effective_system_prompt(self._settings),
                self._history,
                question,
                attachments=attachments,
                search=search,
                document_text=document_text,
                context_budget=self._settings.image_context_budget,
            )
            if self._cancel_requested:
                raise _TurnCanceled()

            self._message = StreamingMessage()
            self._consumer = self._client.open_stream(prompt, on_update=self._handle_chunk)
            result = await self._consumer.run()
        except _TurnCanceled:
            result = StreamResult(state=StreamState.ABORTED)
        except asyncio.CancelledError:
            self._finish_canceled(turn)
            raise
        except Exception as exc:
            LOGGER.warning("ChatSession: turn failed, turn_id=%s, error=%s", turn.turn_id, exc)
            self._finish_failed(turn, StreamResult(state=StreamState.FAILED, error=str(exc)))
            raise
        finally:
            self._consumer = None
            self._phase_task = None

        if result.completed:
            self._finish_completed(turn, question, result, sent_ids)
        elif result.aborted:
            self._record_history(question, result.content)
            self._finish_canceled(turn)
        else:
            self._record_history(question, result.content)
            self._finish_failed(turn, result)
        return turn

    def cancel(self) -> bool:
        """Stop whatever phase of the current turn is running.

        Returns:
            True if a turn was running.
        """
        if not self.is_running():
            return False
        self._cancel_requested = True
        if self._consumer is not None:
            self._consumer.cancel()
        elif self._phase_task is not None and not self._phase_task.done():
            self._phase_task.cancel()
        LOGGER.debug("ChatSession.cancel: session=%s", self._session_id)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_phase(self, factory: Callable[[], Awaitable[T]]) -> T:
        if self._cancel_requested:
            raise _TurnCanceled()
        task = asyncio.ensure_future(factory())
        self._phase_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_requested:
                raise _TurnCanceled() from None
            raise
        finally:
            self._phase_task = None

    def _handle_chunk(self, delta: str, accumulated: str) -> None:
        turn = self._current_turn
        if self._message is None or turn is None:
            return
        self._message.append(delta)
        self._bus.publish(
            AITurnStreamChunk(
                session_id=self._session_id,
                turn_id=turn.turn_id,
                content=delta,
                accumulated=accumulated,
            )
        )

    def _report_search(self, turn: TurnOutcome, search: SearchOutcome, enabled: bool) -> None:
        self._bus.publish(
            SearchResolved(
                session_id=self._session_id,
                turn_id=turn.turn_id,
                skipped=search.skipped,
                reason=search.reason,
                result_count=len(search.results),
            )
        )
        if enabled and search.skipped:
            self._bus.publish(
                NoticePosted(
                    message=f"Web search skipped: {search.reason}",
                    session_id=self._session_id,
                    metadata={"turn_id": turn.turn_id},
                )
            )

    def _record_history(self, question: str, assistant_text: str) -> None:
        self._history.append(ConversationTurn(role="user", content=question))
        if assistant_text:
            self._history.append(ConversationTurn(role="assistant", content=assistant_text))

    def _close_message(self) -> str:
        if self._message is None:
            return ""
        self._message.finish()
        return self._message.content

    def _finish_completed(self, turn: TurnOutcome, question: str, result: StreamResult, sent_ids: list[str]) -> None:
        self._close_message()
        self._history.append(ConversationTurn(role="user", content=question))
        self._history.append(ConversationTurn(role="assistant", content=result.content))
        for attachment_id in sent_ids:
            self._tray.remove(attachment_id)
        turn.mark_completed(result.content)
        LOGGER.debug("ChatSession: turn completed, turn_id=%s, chars=%d", turn.turn_id, len(result.content))
        self._bus.publish(
            AITurnCompleted(session_id=self._session_id, turn_id=turn.turn_id, response_text=result.content)
        )

    def _finish_failed(self, turn: TurnOutcome, result: StreamResult) -> None:
        partial = self._close_message() or result.content
        error = result.error or "Request failed"
        turn.mark_failed(error, partial_text=partial, status_code=result.status_code)
        LOGGER.warning("ChatSession: turn failed, turn_id=%s, error=%s", turn.turn_id, error)
        self._bus.publish(
            AITurnFailed(
                session_id=self._session_id,
                turn_id=turn.turn_id,
                error=error,
                partial_text=partial,
                status_code=result.status_code,
            )
        )

    def _finish_canceled(self, turn: TurnOutcome) -> None:
        if turn.status is not TurnStatus.RUNNING:
            return
        partial = self._close_message()
        turn.mark_canceled(partial_text=partial)
        LOGGER.debug("ChatSession: turn canceled, turn_id=%s", turn.turn_id)
        self._bus.publish(AITurnCanceled(session_id=self._session_id, turn_id=turn.turn_id, partial_text=partial))


SessionFactory = Callable[[str], ChatSession]


class ChatSessionManager:
    """Creates, switches and closes panel sessions."""

    def __init__(self, session_factory: SessionFactory, event_bus: EventBus) -> None:
        """Initialize the manager.

        Args:
            session_factory: Builds a session for a new session id.
            event_bus: The event bus for publishing events.
        """
        self._factory = session_factory
        self._bus = event_bus
        self._sessions: dict[str, ChatSession] = {}
        self._active_id: str | None = None

    @property
    def active_session(self) -> ChatSession | None:
        if self._active_id is None:
            return None
        return self._sessions.get(self._active_id)

    @property
    def sessions(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> ChatSession | None:
        return self._sessions.get(session_id)

    def create_session(self, *, activate: bool = True) -> ChatSession:
        session_id = uuid.uuid4().hex
        session = self._factory(session_id)
        self._sessions[session_id] = session
        LOGGER.debug("ChatSessionManager: created session %s", session_id)
        if activate:
            self.switch_to(session_id)
        return session

    def switch_to(self, session_id: str) -> ChatSession:
        """Make ``session_id`` active.

        The previously active session has its in-flight turn cancelled and
        its queued attachments cleared.

        Raises:
            KeyError: Unknown session id.
        """
        session = self._sessions[session_id]
        previous_id = self._active_id
        if previous_id == session_id:
            return session
        previous = self._sessions.get(previous_id) if previous_id else None
        if previous is not None:
            previous.cancel()
            previous.attachments.clear()
        self._active_id = session_id
        self._bus.publish(ActiveSessionChanged(session_id=session_id, previous_id=previous_id))
        return session

    def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.cancel()
        session.attachments.clear()
        if self._active_id == session_id:
            self._active_id = None
            if self._sessions:
                self.switch_to(next(iter(self._sessions)))
        LOGGER.debug("ChatSessionManager: closed session %s", session_id)
        return True


__all__ = ["ChatSession", "ChatSessionManager", "SessionFactory", "TurnOutcome", "TurnStatus"]
