"""Shared test helpers and stub classes.

Import from here instead of duplicating these helpers in individual test files.
"""

from __future__ import annotations

import asyncio
import io
import json
from typing import Any, Iterable

import httpx
from PIL import Image

from ahme.services.settings import Settings


def make_settings(**overrides: Any) -> Settings:
    """Settings with a model selected and no retry backoff."""

    values: dict[str, Any] = {"model": "test-model", "retry_min_seconds": 0.0, "retry_max_seconds": 0.0}
    values.update(overrides)
    return Settings(**values)


def ndjson(*records: Any) -> bytes:
    return b"".join(json.dumps(record, ensure_ascii=False).encode("utf-8") + b"\n" for record in records)


def image_bytes(width: int, height: int, *, fmt: str = "PNG", mode: str = "RGB", color: Any = (200, 40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


class ChunkedStream(httpx.AsyncByteStream):
    """Response body that yields ``chunks`` and then optionally stalls or fails.

    ``hang=True`` keeps the body open after the last chunk until the reader
    goes away, which is how a slow model looks to the client.
    """

    def __init__(self, chunks: Iterable[bytes], *, hang: bool = False, error: Exception | None = None) -> None:
        self._chunks = list(chunks)
        self._hang = hang
        self._error = error
        self.yielded = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            self.yielded += 1
            yield chunk
            await asyncio.sleep(0)
        if self._error is not None:
            raise self._error
        if self._hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def mock_client(handler: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
