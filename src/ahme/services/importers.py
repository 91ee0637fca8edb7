"""Document parsers that turn attached files into plain text.

Two implementations share one contract: :class:`RemoteDocumentParser` uploads
to the attachment-parse endpoint, :class:`LocalDocumentParser` does the same
work in-process with ``pypdf``.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Protocol

import httpx
from pypdf import PdfReader

from ..ai.errors import AttachmentParseError, ErrorCode, InputRejected, truncate_for_display

_LOGGER = logging.getLogger(__name__)

TEXT_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".txt", ".md", ".csv", ".json", ".log",
        ".xml", ".yaml", ".yml", ".toml", ".ini",
        ".js", ".ts", ".tsx", ".jsx", ".py", ".rs",
        ".html", ".css", ".scss", ".sh", ".bash",
    }
)
PDF_EXTENSION = ".pdf"
DOCUMENT_EXTENSIONS: frozenset[str] = TEXT_EXTENSIONS | {PDF_EXTENSION}
DEFAULT_MAX_TEXT_CHARS = 100_000


def extension_of(name: str) -> str:
    """Return the lower-cased extension of ``name`` including the dot, or ``""``."""

    return PurePath(name).suffix.lower()


def supported_extensions() -> tuple[str, ...]:
    return tuple(sorted(DOCUMENT_EXTENSIONS))


def looks_binary(data: bytes) -> bool:
    return b"\0" in data


@dataclass(slots=True)
class ParseResult:
    """Text extracted from an attachment."""

    text: str
    truncated: bool = False
    filename: str | None = None
    size: int | None = None


class DocumentParser(Protocol):
    """Anything that can turn raw attachment bytes into text."""

    async def parse(self, name: str, data: bytes) -> ParseResult:
        ...


def unsupported_type_error(extension: str) -> InputRejected:
    supported = ", ".join(supported_extensions())
    return InputRejected(
        f"Unsupported file type: {extension}. Supported: {supported}",
        code=ErrorCode.UNSUPPORTED_FILE_TYPE,
        details={"extension": extension, "supported": list(supported_extensions())},
    )


def binary_file_error(name: str) -> InputRejected:
    return InputRejected(
        f"'{name}' looks like a binary file. Attach a text file or a PDF instead.",
        code=ErrorCode.BINARY_FILE,
    )


class LocalDocumentParser:
    """Extract text without a parse service.

    Text formats are decoded as UTF-8 with replacement characters, PDFs go
    through ``pypdf``. Output longer than ``max_text_chars`` is cut and
    flagged as truncated.
    """

    def __init__(self, *, max_text_chars: int = DEFAULT_MAX_TEXT_CHARS, reader_cls: type | None = None) -> None:
        self._max_text_chars = max_text_chars
        self._reader_cls = reader_cls or PdfReader

    async def parse(self, name: str, data: bytes) -> ParseResult:
        return await asyncio.to_thread(self.parse_sync, name, data)

    def parse_sync(self, name: str, data: bytes) -> ParseResult:
        extension = extension_of(name)
        if extension == PDF_EXTENSION:
            text = self._extract_pdf(name, data)
        elif extension in TEXT_EXTENSIONS:
            text = data.decode("utf-8", errors="replace")
        elif extension == "":
            if looks_binary(data):
                raise binary_file_error(name)
            text = data.decode("utf-8", errors="replace")
        else:
            raise unsupported_type_error(extension)

        truncated = len(text) > self._max_text_chars
        if truncated:
            text = text[: self._max_text_chars]
            _LOGGER.debug("Truncated %s to %d chars", name, self._max_text_chars)
        return ParseResult(text=text, truncated=truncated, filename=name, size=len(data))

    def _extract_pdf(self, name: str, data: bytes) -> str:
        try:
            reader = self._reader_cls(io.BytesIO(data))
        except Exception as exc:
            raise AttachmentParseError(f"Failed to read PDF '{name}': {exc}") from exc

        chunks: list[str] = []
        for index, page in enumerate(getattr(reader, "pages", [])):
            try:
                chunk = str(page.extract_text() or "")
            except Exception as exc:
                _LOGGER.debug("Failed to extract page %s of %s: %s", index, name, exc)
                continue
            chunk = chunk.strip()
            if chunk:
                chunks.append(chunk)
        return "\n\n".join(chunks)


class RemoteDocumentParser:
    """Upload attachments to the parse endpoint as ``multipart/form-data``.

    The endpoint answers ``{filename, text, size, truncated}`` on success and
    ``{error, supported?}`` otherwise. Requests are never retried.
    """

    def __init__(self, parse_url: str, client: httpx.AsyncClient, *, display_limit: int = 200) -> None:
        self._parse_url = parse_url
        self._client = client
        self._display_limit = display_limit

    async def parse(self, name: str, data: bytes) -> ParseResult:
        try:
            response = await self._client.post(self._parse_url, files={"file": (name, data)})
        except httpx.HTTPError as exc:
            raise AttachmentParseError(
                f"Could not reach the parse service: {exc}",
                display_limit=self._display_limit,
            ) from exc

        payload = _json_or_none(response)
        if response.is_success:
            if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
                raise AttachmentParseError(
                    "Parse service returned an unexpected response",
                    status_code=response.status_code,
                    display_limit=self._display_limit,
                )
            return ParseResult(
                text=payload["text"],
                truncated=bool(payload.get("truncated", False)),
                filename=payload.get("filename") or name,
                size=payload.get("size"),
            )

        server_error = payload.get("error") if isinstance(payload, dict) else None
        message = str(server_error or response.text or f"HTTP {response.status_code}")
        code = ErrorCode.PARSE_FAILED
        if response.status_code == 413:
            code = ErrorCode.FILE_TOO_LARGE
        elif response.status_code == 400:
            code = ErrorCode.UNSUPPORTED_FILE_TYPE
            supported = payload.get("supported") if isinstance(payload, dict) else None
            if supported:
                message = f"{message} (supported: {', '.join(map(str, supported))})"
        else:
            message = truncate_for_display(message, self._display_limit)
        _LOGGER.debug("Parse of %s failed with HTTP %s", name, response.status_code)
        raise AttachmentParseError(
            message,
            code=code,
            status_code=response.status_code,
            display_limit=self._display_limit,
        )


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


__all__ = [
    "DOCUMENT_EXTENSIONS",
    "DocumentParser",
    "LocalDocumentParser",
    "ParseResult",
    "RemoteDocumentParser",
    "TEXT_EXTENSIONS",
    "binary_file_error",
    "extension_of",
    "looks_binary",
    "supported_extensions",
    "unsupported_type_error",
]
