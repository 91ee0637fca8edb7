"""Optional, time-boxed web search used to augment a user turn.

Search never fails a send: every problem (disabled, no key, blank query,
timeout, HTTP error, malformed body) becomes a skipped :class:`SearchOutcome`.
Only cancellation of the enclosing send propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

LOGGER = logging.getLogger(__name__)

MAX_RESULTS = 3
SNIPPET_LIMIT = 200
DEFAULT_TIMEOUT = 3.0


@dataclass(slots=True, frozen=True)
class SearchResult:
    title: str
    url: str
    content_snippet: str

    def as_row(self) -> tuple[str, str, str]:
        return (self.title, self.url, self.content_snippet)


@dataclass(slots=True)
class SearchOutcome:
    """What the assembler receives: results plus an optional summary answer."""

    results: list[SearchResult] = field(default_factory=list)
    answer: str | None = None
    skipped: bool = False
    reason: str | None = None

    @classmethod
    def skip(cls, reason: str) -> SearchOutcome:
        return cls(skipped=True, reason=reason)

    @property
    def has_content(self) -> bool:
        return not self.skipped and (bool(self.results) or bool(self.answer))


class SearchAugmenter:
    """Calls a Tavily-compatible search endpoint under a fixed deadline."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        search_url: str,
        api_key: str | None,
        timeout: float = DEFAULT_TIMEOUT,
        max_results: int = MAX_RESULTS,
    ) -> None:
        self._client = client
        self._search_url = search_url
        self._api_key = api_key
        self._timeout = timeout
        self._max_results = max(0, min(max_results, MAX_RESULTS))

    async def augment(self, query: str, *, enabled: bool) -> SearchOutcome:
        """Search for ``query`` when enabled.

        Returns:
            A populated outcome, or a skipped one with a reason.

        Raises:
            asyncio.CancelledError: the enclosing send was cancelled.
        """
        if not enabled:
            return SearchOutcome.skip("search disabled")
        if not self._api_key:
            return SearchOutcome.skip("search API key is not configured")
        cleaned = (query or "").strip()
        if not cleaned:
            return SearchOutcome.skip("search query is empty")

        body = {
            "api_key": self._api_key,
            "query": cleaned,
            "search_depth": "basic",
            "max_results": self._max_results,
            "include_answer": True,
        }
        LOGGER.debug("Searching for %r", cleaned[:80])
        try:
            response = await asyncio.wait_for(
                self._client.post(self._search_url, json=body),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            LOGGER.info("Search timed out after %.1fs; skipping", self._timeout)
            return SearchOutcome.skip(f"timeout ({self._timeout:g}s)")
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.info("Search request failed: %s", exc)
            return SearchOutcome.skip(f"search request failed: {exc}")

        if not response.is_success:
            LOGGER.info("Search returned HTTP %s; skipping", response.status_code)
            return SearchOutcome.skip(f"search API error: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            return SearchOutcome.skip(f"invalid search response: {exc}")
        if not isinstance(payload, Mapping):
            return SearchOutcome.skip("invalid search response")
        return self._parse_payload(payload)

    def _parse_payload(self, payload: Mapping[str, Any]) -> SearchOutcome:
        if payload.get("skipped"):
            return SearchOutcome.skip(str(payload.get("reason") or "skipped by search service"))

        entries = payload.get("results")
        if entries is None:
            entries = []
        elif not isinstance(entries, list):
            LOGGER.info("Search results field is %s, not a list; skipping", type(entries).__name__)
            return SearchOutcome.skip("invalid search response")

        results: list[SearchResult] = []
        for entry in entries[: self._max_results]:
            if not isinstance(entry, Mapping):
                continue
            results.append(
                SearchResult(
                    title=str(entry.get("title") or ""),
                    url=str(entry.get("url") or ""),
                    content_snippet=str(entry.get("content") or "")[:SNIPPET_LIMIT],
                )
            )
        answer = payload.get("answer")
        outcome = SearchOutcome(results=results, answer=str(answer) if answer else None)
        LOGGER.debug("Search returned %d result(s), answer=%s", len(results), bool(outcome.answer))
        return outcome


__all__ = ["MAX_RESULTS", "SNIPPET_LIMIT", "SearchAugmenter", "SearchOutcome", "SearchResult"]
