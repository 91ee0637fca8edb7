"""Error taxonomy for the AI conversation pipeline.

Errors fall into two families. :class:`InputRejected` is resolved locally and
never reaches a remote service. :class:`RemoteFailure` covers non-2xx
responses and unreachable endpoints. Search timeouts are not errors (they
become skip outcomes) and user cancellation is reported through dedicated
states, never through an exception message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

DEFAULT_DISPLAY_LIMIT = 200


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Machine-readable codes carried by pipeline errors."""

    # Input errors
    FILE_TOO_LARGE = "file_too_large"
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    BINARY_FILE = "binary_file"
    UNREADABLE_IMAGE = "unreadable_image"
    EMPTY_QUESTION = "empty_question"
    TURN_IN_PROGRESS = "turn_in_progress"
    NO_MODEL = "no_model"

    # Remote errors
    REMOTE_ERROR = "remote_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    PARSE_FAILED = "parse_failed"
    STREAM_INTERRUPTED = "stream_interrupted"


def truncate_for_display(text: str, limit: int = DEFAULT_DISPLAY_LIMIT) -> str:
    """Clip ``text`` to ``limit`` characters, marking the cut with an ellipsis."""

    cleaned = (text or "").strip()
    if limit <= 0 or len(cleaned) <= limit:
        return cleaned
    return cleaned[:limit].rstrip() + "…"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class AHMEError(Exception):
    """Base exception for pipeline failures.

    Attributes:
        message: Human-readable description shown to the user.
        code: Machine-readable error identifier.
        details: Additional structured information for logs.
    """

    message: str
    code: str = ErrorCode.REMOTE_ERROR
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    def __str__(self) -> str:
        return self.message


# -----------------------------------------------------------------------------
# Input Errors
# -----------------------------------------------------------------------------

@dataclass
class InputRejected(AHMEError):
    """Input refused before any remote call (oversize, bad type, empty query)."""

    code: str = ErrorCode.UNSUPPORTED_FILE_TYPE

    severity: ClassVar[str] = "warning"


# -----------------------------------------------------------------------------
# Remote Errors
# -----------------------------------------------------------------------------

@dataclass
class RemoteFailure(AHMEError):
    """A collaborator answered with a non-2xx status or could not be reached.

    Never retried automatically. ``display_message`` is what the chat panel
    shows: 4xx text is surfaced as-is, anything else is clipped.
    """

    status_code: int | None = None
    display_limit: int = DEFAULT_DISPLAY_LIMIT

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    @property
    def display_message(self) -> str:
        if self.is_client_error:
            return self.message
        return truncate_for_display(self.message, self.display_limit)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.status_code is not None:
            payload["status"] = self.status_code
        return payload


@dataclass
class AttachmentParseError(RemoteFailure):
    """The extraction service could not turn an attachment into text."""

    code: str = ErrorCode.PARSE_FAILED


@dataclass
class StreamInterrupted(RemoteFailure):
    """The transport dropped after the response had started streaming."""

    code: str = ErrorCode.STREAM_INTERRUPTED


__all__ = [
    "AHMEError",
    "AttachmentParseError",
    "DEFAULT_DISPLAY_LIMIT",
    "ErrorCode",
    "InputRejected",
    "RemoteFailure",
    "StreamInterrupted",
    "truncate_for_display",
]
