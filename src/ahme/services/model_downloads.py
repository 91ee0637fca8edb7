"""Model download progress shared by every view that shows it.

:class:`ModelDownloadTracker` is an owned state container: views subscribe to
it, and every change goes through :meth:`ModelDownloadTracker.update`, so all
subscribers see each change. :func:`pull_model` drives a tracker from the
inference service's ``/api/pull`` progress stream.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Mapping

import httpx

from ..ai.errors import RemoteFailure, truncate_for_display
from ..ai.streaming import NDJSONLineSplitter, parse_fragment

if TYPE_CHECKING:  # pragma: no cover
    from ..ai.client import InferenceClient

LOGGER = logging.getLogger(__name__)

CANCELLED_PROGRESS = "cancelled"

DownloadListener = Callable[["DownloadState"], None]


@dataclass(slots=True, frozen=True)
class DownloadState:
    """Snapshot of the current (or last) model download."""

    is_downloading: bool = False
    model_name: str = ""
    progress: str = ""
    percent: int = 0
    error: str | None = None
    success: bool = False

    @property
    def is_visible(self) -> bool:
        return self.is_downloading or self.success or self.error is not None


class ModelDownloadTracker:
    """Holds one :class:`DownloadState` and notifies subscribers on change."""

    def __init__(self) -> None:
        self._state = DownloadState()
        self._listeners: list[DownloadListener] = []

    @property
    def state(self) -> DownloadState:
        return self._state

    def subscribe(self, listener: DownloadListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""

        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: DownloadListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def update(self, **patch: Any) -> DownloadState:
        """Apply ``patch`` to the state and notify every subscriber."""

        self._state = replace(self._state, **patch)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                LOGGER.exception("Download listener %r failed", listener)
        return self._state

    def reset(self) -> DownloadState:
        return self.update(is_downloading=False, model_name="", progress="", percent=0, error=None, success=False)


def _percent(record: Mapping[str, Any]) -> int | None:
    completed = record.get("completed")
    total = record.get("total")
    if not isinstance(completed, (int, float)) or not isinstance(total, (int, float)) or total <= 0:
        return None
    return max(0, min(100, round(completed / total * 100)))


async def pull_model(client: InferenceClient, name: str, tracker: ModelDownloadTracker) -> DownloadState:
    """Download ``name`` through the inference service, reporting into ``tracker``.

    Cancelling the calling task ends the download with a "cancelled"
    progress and no error; the cancellation still propagates.
    """

    model_name = (name or "").strip()
    if not model_name:
        raise ValueError("A model name is required")
    if tracker.state.is_downloading:
        raise RuntimeError(f"Download of '{tracker.state.model_name}' is already in progress")

    tracker.update(is_downloading=True, model_name=model_name, progress="starting download", percent=0, error=None, success=False)
    limit = client.settings.error_display_limit
    try:
        async with client.http.stream("POST", client.pull_url, json={"name": model_name, "stream": True}) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise RemoteFailure(
                    truncate_for_display(body or f"HTTP {response.status_code}", limit),
                    status_code=response.status_code,
                    display_limit=limit,
                )
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            splitter = NDJSONLineSplitter()
            async for chunk in response.aiter_bytes():
                for line in splitter.feed(decoder.decode(chunk)):
                    _apply_record(tracker, line)
            for line in splitter.feed(decoder.decode(b"", final=True)) + splitter.flush():
                _apply_record(tracker, line)
    except asyncio.CancelledError:
        LOGGER.info("Download of %s cancelled", model_name)
        tracker.update(is_downloading=False, progress=CANCELLED_PROGRESS, percent=0, error=None, success=False)
        raise
    except RemoteFailure as exc:
        LOGGER.warning("Download of %s failed: %s", model_name, exc.message)
        return tracker.update(is_downloading=False, error=exc.display_message, success=False)
    except httpx.HTTPError as exc:
        LOGGER.warning("Download of %s failed: %s", model_name, exc)
        return tracker.update(is_downloading=False, error=truncate_for_display(str(exc), limit), success=False)

    if tracker.state.error is not None:
        return tracker.update(is_downloading=False, success=False)
    LOGGER.info("Downloaded model %s", model_name)
    return tracker.update(is_downloading=False, progress="download complete", percent=100, success=True)


def _apply_record(tracker: ModelDownloadTracker, line: str) -> None:
    record = parse_fragment(line)
    if not isinstance(record, Mapping):
        return
    if record.get("error"):
        tracker.update(error=str(record["error"]))
        return
    patch: dict[str, Any] = {}
    status = record.get("status")
    if status:
        patch["progress"] = str(status)
    percent = _percent(record)
    if percent is not None:
        patch["percent"] = percent
    if status == "success":
        patch["success"] = True
    if patch:
        tracker.update(**patch)


__all__ = ["CANCELLED_PROGRESS", "DownloadListener", "DownloadState", "ModelDownloadTracker", "pull_model"]
