"""Attachment ingestion: classify, validate and normalise files for a turn.

Every file becomes either a :class:`TextAttachment` or an
:class:`ImageAttachment`. Local checks (size, type, binary content) raise
:class:`InputRejected` before anything touches the network; failures during
processing leave the attachment in the ERROR state instead of raising, so
one bad file never aborts the others.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import mimetypes
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence, Union

from ..services.importers import (
    DOCUMENT_EXTENSIONS,
    DocumentParser,
    binary_file_error,
    extension_of,
    looks_binary,
    unsupported_type_error,
)
from .errors import AHMEError, ErrorCode, InputRejected
from .images import DEFAULT_JPEG_QUALITY, DEFAULT_MAX_EDGE, process_image

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS: frozenset[str] = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"})
DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024


class AttachmentKind(enum.Enum):
    IMAGE = "image"
    DOCUMENT = "document"


class AttachmentStatus(enum.Enum):
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


def new_attachment_id() -> str:
    return f"att-{uuid.uuid4().hex[:8]}"


def classify_attachment(name: str, media_type: str | None = None) -> AttachmentKind:
    """Decide whether a file is treated as an image or a document.

    An ``image/*`` media type wins regardless of extension; otherwise the
    extension decides, case-insensitively.
    """

    if media_type and media_type.lower().startswith("image/"):
        return AttachmentKind.IMAGE
    if extension_of(name) in IMAGE_EXTENSIONS:
        return AttachmentKind.IMAGE
    return AttachmentKind.DOCUMENT


@dataclass(slots=True)
class RawAttachment:
    """A file as handed over by the drop target or file dialog."""

    name: str
    data: bytes
    media_type: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Path | str) -> RawAttachment:
        target = Path(path)
        media_type, _ = mimetypes.guess_type(target.name)
        return cls(name=target.name, data=target.read_bytes(), media_type=media_type)


@dataclass(slots=True)
class _AttachmentBase:
    attachment_id: str
    name: str
    size_bytes: int = 0
    status: AttachmentStatus = AttachmentStatus.PROCESSING
    error: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status is AttachmentStatus.READY

    def mark_error(self, message: str) -> None:
        self.status = AttachmentStatus.ERROR
        self.error = message


@dataclass(slots=True)
class TextAttachment(_AttachmentBase):
    """Document attachment carrying extracted text."""

    extracted_text: str = ""
    truncated: bool = False

    @property
    def kind(self) -> AttachmentKind:
        return AttachmentKind.DOCUMENT

    def mark_ready(self, text: str, *, truncated: bool = False) -> None:
        self.extracted_text = text
        self.truncated = truncated
        self.status = AttachmentStatus.READY
        self.error = None


@dataclass(slots=True)
class ImageAttachment(_AttachmentBase):
    """Image attachment re-encoded as JPEG.

    ``encoded_payload`` is bare base64 for the request body;
    ``preview_payload`` is the ``data:`` URL used for thumbnails.
    """

    encoded_payload: str = ""
    preview_payload: str = ""
    width: int = 0
    height: int = 0

    @property
    def kind(self) -> AttachmentKind:
        return AttachmentKind.IMAGE

    def mark_ready(self, encoded: str, preview: str, *, width: int, height: int) -> None:
        self.encoded_payload = encoded
        self.preview_payload = preview
        self.width = width
        self.height = height
        self.status = AttachmentStatus.READY
        self.error = None


Attachment = Union[TextAttachment, ImageAttachment]


@dataclass(slots=True)
class IngestBatch:
    """Result of :meth:`AttachmentIngestor.ingest_many`."""

    attachments: list[Attachment] = field(default_factory=list)
    rejected: list[tuple[str, InputRejected]] = field(default_factory=list)

    @property
    def ready(self) -> list[Attachment]:
        return [item for item in self.attachments if item.is_ready]


class AttachmentIngestor:
    """Turns raw files into attachments ready for prompt assembly."""

    def __init__(
        self,
        parser: DocumentParser,
        *,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        image_max_edge: int = DEFAULT_MAX_EDGE,
        image_quality: int = DEFAULT_JPEG_QUALITY,
    ) -> None:
        self._parser = parser
        self._max_upload_bytes = max_upload_bytes
        self._image_max_edge = image_max_edge
        self._image_quality = image_quality

    # ------------------------------------------------------------------
    # Local validation
    # ------------------------------------------------------------------

    def precheck(self, raw: RawAttachment) -> AttachmentKind:
        """Validate ``raw`` without any network access.

        Returns:
            The attachment kind.

        Raises:
            InputRejected: the file is too large, has an unsupported
                extension, or has no extension and contains NUL bytes.
        """
        if raw.size_bytes > self._max_upload_bytes:
            limit_mb = self._max_upload_bytes / (1024 * 1024)
            raise InputRejected(
                f"'{raw.name}' is too large (limit {limit_mb:g} MB)",
                code=ErrorCode.FILE_TOO_LARGE,
                details={"size": raw.size_bytes, "limit": self._max_upload_bytes},
            )
        kind = classify_attachment(raw.name, raw.media_type)
        if kind is AttachmentKind.IMAGE:
            return kind
        extension = extension_of(raw.name)
        if extension == "":
            if looks_binary(raw.data):
                raise binary_file_error(raw.name)
        elif extension not in DOCUMENT_EXTENSIONS:
            raise unsupported_type_error(extension)
        return kind

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def create(self, raw: RawAttachment, attachment_id: str | None = None) -> Attachment:
        """Run :meth:`precheck` and return a PROCESSING attachment for ``raw``."""

        kind = self.precheck(raw)
        identifier = attachment_id or new_attachment_id()
        if kind is AttachmentKind.IMAGE:
            return ImageAttachment(attachment_id=identifier, name=raw.name, size_bytes=raw.size_bytes)
        return TextAttachment(attachment_id=identifier, name=raw.name, size_bytes=raw.size_bytes)

    async def process(self, attachment: Attachment, raw: RawAttachment) -> Attachment:
        """Fill in ``attachment`` from ``raw``; failures land in ERROR state."""

        try:
            if isinstance(attachment, ImageAttachment):
                processed = await asyncio.to_thread(
                    process_image,
                    raw.data,
                    name=raw.name,
                    max_edge=self._image_max_edge,
                    quality=self._image_quality,
                )
                attachment.mark_ready(
                    processed.encoded_payload,
                    processed.preview_payload,
                    width=processed.width,
                    height=processed.height,
                )
            else:
                result = await self._parser.parse(raw.name, raw.data)
                attachment.mark_ready(result.text, truncated=result.truncated)
        except AHMEError as exc:
            message = getattr(exc, "display_message", exc.message)
            attachment.mark_error(message)
            LOGGER.warning("Attachment %s (%s) failed: %s", attachment.attachment_id, raw.name, message)
        except Exception as exc:
            attachment.mark_error(f"Could not process '{raw.name}': {exc}")
            LOGGER.exception("Attachment %s (%s) failed unexpectedly", attachment.attachment_id, raw.name)
        else:
            LOGGER.debug("Attachment %s (%s) ready", attachment.attachment_id, raw.name)
        return attachment

    async def ingest(self, raw: RawAttachment, attachment_id: str | None = None) -> Attachment:
        """Validate and process a single file.

        Raises:
            InputRejected: from :meth:`precheck`; nothing is uploaded.
        """
        attachment = self.create(raw, attachment_id)
        return await self.process(attachment, raw)

    async def ingest_many(self, raws: Sequence[RawAttachment]) -> IngestBatch:
        """Process several files concurrently.

        Rejected files are reported in :attr:`IngestBatch.rejected`; the rest
        are returned in input order, READY or ERROR.
        """
        batch = IngestBatch()
        pending: list[tuple[Attachment, RawAttachment]] = []
        for raw in raws:
            try:
                pending.append((self.create(raw), raw))
            except InputRejected as exc:
                LOGGER.info("Rejected attachment %s: %s", raw.name, exc.message)
                batch.rejected.append((raw.name, exc))
        if pending:
            await asyncio.gather(
                *(self.process(attachment, raw) for attachment, raw in pending),
                return_exceptions=True,
            )
        batch.attachments.extend(attachment for attachment, _ in pending)
        return batch


__all__ = [
    "Attachment",
    "AttachmentIngestor",
    "AttachmentKind",
    "AttachmentStatus",
    "IMAGE_EXTENSIONS",
    "ImageAttachment",
    "IngestBatch",
    "RawAttachment",
    "TextAttachment",
    "classify_attachment",
    "new_attachment_id",
]
