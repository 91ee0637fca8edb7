"""Image normalisation for vision requests."""

from __future__ import annotations

import base64
import io
import logging
import re
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ErrorCode, InputRejected

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_EDGE = 1024
DEFAULT_JPEG_QUALITY = 85
JPEG_DATA_URL_PREFIX = "data:image/jpeg;base64,"

_DATA_URL_PREFIX = re.compile(r"^data:[^;,]*;base64,")


@dataclass(slots=True, frozen=True)
class ProcessedImage:
    """A re-encoded JPEG, ready for the request body and for preview."""

    encoded_payload: str
    width: int
    height: int
    size_bytes: int

    @property
    def preview_payload(self) -> str:
        return JPEG_DATA_URL_PREFIX + self.encoded_payload


def process_image(
    data: bytes,
    *,
    name: str = "image",
    max_edge: int = DEFAULT_MAX_EDGE,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> ProcessedImage:
    """Decode ``data``, apply EXIF orientation, downscale and re-encode as JPEG.

    The longer edge ends up at most ``max_edge`` pixels; smaller images keep
    their size. Raises :class:`InputRejected` when the bytes are not an image.
    """

    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            image = ImageOps.exif_transpose(source)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise InputRejected(
            f"Could not read image '{name}'",
            code=ErrorCode.UNREADABLE_IMAGE,
            details={"reason": str(exc)},
        ) from exc

    if image.mode != "RGB":
        image = image.convert("RGB")
    original_size = image.size
    image.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    encoded = buffer.getvalue()
    LOGGER.debug(
        "Processed image %s: %sx%s -> %sx%s (%d bytes)",
        name,
        original_size[0],
        original_size[1],
        image.width,
        image.height,
        len(encoded),
    )
    return ProcessedImage(
        encoded_payload=base64.b64encode(encoded).decode("ascii"),
        width=image.width,
        height=image.height,
        size_bytes=len(encoded),
    )


def strip_data_url_prefix(payload: str) -> str:
    """Return the bare base64 body of ``payload``; bare input is returned unchanged."""

    return _DATA_URL_PREFIX.sub("", payload, count=1)


__all__ = [
    "DEFAULT_JPEG_QUALITY",
    "DEFAULT_MAX_EDGE",
    "JPEG_DATA_URL_PREFIX",
    "ProcessedImage",
    "process_image",
    "strip_data_url_prefix",
]
