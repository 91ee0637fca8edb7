"""Incremental consumption of a chat completion stream.

The inference service answers with newline-delimited JSON fragments, either
the native shape (``{"message": {"content": ...}, "done": ...}``) or the
OpenAI shape (``{"choices": [{"delta": {"content": ...}}]}``), optionally
prefixed with ``data:`` when relayed as server-sent events.
:class:`StreamingResponseConsumer` turns that byte stream into one growing
string and exactly one terminal :class:`StreamState`.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Mapping, Optional, Sequence

import httpx

from .errors import ErrorCode, RemoteFailure, StreamInterrupted, truncate_for_display

LOGGER = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE_SENTINEL = "[DONE]"

UpdateCallback = Callable[[str, str], None]
FragmentExtractor = Callable[[Mapping[str, Any]], Optional[str]]
ResponseOpener = Callable[[], AsyncContextManager[httpx.Response]]


class StreamState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED})


@dataclass(slots=True)
class StreamResult:
    """Terminal outcome of one stream.

    ``error`` is only set for FAILED; an ABORTED stream carries no message.
    """

    state: StreamState
    content: str = ""
    error: str | None = None
    status_code: int | None = None

    @property
    def completed(self) -> bool:
        return self.state is StreamState.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.state is StreamState.ABORTED

    @property
    def failed(self) -> bool:
        return self.state is StreamState.FAILED


# ----------------------------------------------------------------------
# Fragment extraction
# ----------------------------------------------------------------------


def extract_native_content(fragment: Mapping[str, Any]) -> str | None:
    message = fragment.get("message")
    if isinstance(message, Mapping):
        content = message.get("content")
        if isinstance(content, str) and content:
            return content
    return None


def extract_openai_delta(fragment: Mapping[str, Any]) -> str | None:
    choices = fragment.get("choices")
    if not isinstance(choices, Sequence) or isinstance(choices, (str, bytes)) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, Mapping):
        return None
    delta = first.get("delta")
    if isinstance(delta, Mapping):
        content = delta.get("content")
        if isinstance(content, str) and content:
            return content
    return None


DEFAULT_EXTRACTORS: tuple[FragmentExtractor, ...] = (extract_native_content, extract_openai_delta)


def extract_content(
    fragment: Mapping[str, Any],
    extractors: Sequence[FragmentExtractor] = DEFAULT_EXTRACTORS,
) -> str | None:
    """Return the first non-empty text any extractor finds in ``fragment``."""

    for extractor in extractors:
        content = extractor(fragment)
        if content:
            return content
    return None


# ----------------------------------------------------------------------
# Line framing
# ----------------------------------------------------------------------


class NDJSONLineSplitter:
    """Split decoded text into lines, holding back an incomplete last line.

    A fragment split across two network chunks is therefore parsed once,
    whole, rather than dropped as two unparseable halves.
    """

    __slots__ = ("_buffer",)

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")
        return [line for line in complete if line.strip()]

    def flush(self) -> list[str]:
        tail, self._buffer = self._buffer, ""
        return [tail] if tail.strip() else []


_DONE = object()


def parse_fragment(line: str) -> Mapping[str, Any] | object | None:
    """Decode one line into a fragment mapping.

    Returns the ``_DONE`` sentinel for an SSE ``[DONE]`` marker and ``None``
    for anything that is not a JSON object.
    """

    text = line.strip()
    if text.startswith(SSE_DATA_PREFIX):
        text = text[len(SSE_DATA_PREFIX) :].strip()
    if not text:
        return None
    if text == SSE_DONE_SENTINEL:
        return _DONE
    try:
        decoded = json.loads(text)
    except ValueError:
        return None
    return decoded if isinstance(decoded, Mapping) else None


def error_from_response(status_code: int, body: bytes, *, display_limit: int = 200) -> RemoteFailure:
    """Build the failure for a non-2xx response received before any chunk."""

    text = body.decode("utf-8", errors="replace").strip()
    message = text
    try:
        decoded = json.loads(text) if text else None
    except ValueError:
        decoded = None
    if isinstance(decoded, Mapping) and decoded.get("error"):
        message = str(decoded["error"])
    if 400 <= status_code < 500:
        return RemoteFailure(message or f"HTTP {status_code}", status_code=status_code, display_limit=display_limit)
    prefix = f"Inference service unavailable (HTTP {status_code})"
    return RemoteFailure(
        f"{prefix}: {message}" if message else prefix,
        code=ErrorCode.SERVICE_UNAVAILABLE,
        status_code=status_code,
        display_limit=display_limit,
    )


# ----------------------------------------------------------------------
# Consumer
# ----------------------------------------------------------------------


class StreamingResponseConsumer:
    """Reads one streamed response and aggregates its text.

    Each instance runs at most once. :meth:`cancel` may be called at any time,
    including from inside ``on_update``; the transport is closed and the
    stream ends ABORTED.
    """

    def __init__(
        self,
        open_response: ResponseOpener,
        *,
        on_update: UpdateCallback | None = None,
        extractors: Sequence[FragmentExtractor] = DEFAULT_EXTRACTORS,
        display_limit: int = 200,
    ) -> None:
        self._open_response = open_response
        self._on_update = on_update
        self._extractors = tuple(extractors)
        self._display_limit = display_limit
        self._state = StreamState.IDLE
        self._content = ""
        self._result: StreamResult | None = None
        self._cancel_requested = False
        self._task: asyncio.Task[StreamResult] | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def content(self) -> str:
        return self._content

    @property
    def result(self) -> StreamResult | None:
        return self._result

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def run(self) -> StreamResult:
        """Consume the stream until it reaches a terminal state."""

        if self._result is not None:
            return self._result
        if self._task is not None:
            raise RuntimeError("StreamingResponseConsumer.run() is already in progress")
        if self._cancel_requested:
            return self._finish(StreamState.ABORTED)

        self._task = asyncio.ensure_future(self._consume())
        try:
            return await self._task
        except asyncio.CancelledError:
            self._finish(StreamState.ABORTED)
            if self._cancel_requested:
                LOGGER.debug("Stream aborted after %d chars", len(self._content))
                return self._result  # type: ignore[return-value]
            raise

    def cancel(self) -> None:
        """Abort the stream; a no-op once a terminal state was reached."""

        if self._result is not None or self._cancel_requested:
            return
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _consume(self) -> StreamResult:
        self._state = StreamState.SENDING
        try:
            async with self._open_response() as response:
                if not response.is_success:
                    body = await response.aread()
                    failure = error_from_response(response.status_code, body, display_limit=self._display_limit)
                    LOGGER.warning("Chat request failed with HTTP %s", response.status_code)
                    return self._fail(failure)

                self._state = StreamState.STREAMING
                decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
                splitter = NDJSONLineSplitter()
                try:
                    async for chunk in response.aiter_bytes():
                        for line in splitter.feed(decoder.decode(chunk)):
                            if self._handle_line(line):
                                return self._result  # type: ignore[return-value]
                    for line in splitter.feed(decoder.decode(b"", final=True)) + splitter.flush():
                        if self._handle_line(line):
                            return self._result  # type: ignore[return-value]
                except httpx.HTTPError as exc:
                    LOGGER.warning("Stream interrupted after %d chars: %s", len(self._content), exc)
                    return self._fail(
                        StreamInterrupted(f"Connection lost while streaming: {exc}", display_limit=self._display_limit)
                    )
        except httpx.HTTPError as exc:
            LOGGER.warning("Chat request could not be sent: %s", exc)
            return self._fail(
                RemoteFailure(
                    f"Could not reach the inference service: {exc}",
                    code=ErrorCode.SERVICE_UNAVAILABLE,
                    display_limit=self._display_limit,
                )
            )
        return self._finish(StreamState.COMPLETED)

    def _handle_line(self, line: str) -> bool:
        """Apply one line; returns True once the stream reached a terminal state."""

        if self._cancel_requested:
            raise asyncio.CancelledError()
        fragment = parse_fragment(line)
        if fragment is None:
            return False
        if fragment is _DONE:
            self._finish(StreamState.COMPLETED)
            return True
        if not isinstance(fragment, Mapping):
            return False

        error = fragment.get("error")
        if error:
            message = error.get("message") if isinstance(error, Mapping) else error
            self._fail(RemoteFailure(str(message), display_limit=self._display_limit))
            return True

        delta = extract_content(fragment, self._extractors)
        if delta:
            self._content += delta
            if self._on_update is not None:
                self._on_update(delta, self._content)
                if self._cancel_requested:
                    raise asyncio.CancelledError()
        if fragment.get("done"):
            self._finish(StreamState.COMPLETED)
            return True
        return False

    def _fail(self, failure: RemoteFailure) -> StreamResult:
        return self._finish(StreamState.FAILED, error=failure.display_message, status_code=failure.status_code)

    def _finish(self, state: StreamState, *, error: str | None = None, status_code: int | None = None) -> StreamResult:
        if self._result is None:
            self._state = state
            self._result = StreamResult(state=state, content=self._content, error=error, status_code=status_code)
        return self._result


__all__ = [
    "DEFAULT_EXTRACTORS",
    "FragmentExtractor",
    "NDJSONLineSplitter",
    "StreamResult",
    "StreamState",
    "StreamingResponseConsumer",
    "UpdateCallback",
    "error_from_response",
    "extract_content",
    "extract_native_content",
    "extract_openai_delta",
    "parse_fragment",
]
