"""Tests for the web search augmenter."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from helpers import mock_client

from ahme.ai.search import SNIPPET_LIMIT, SearchAugmenter

SEARCH_URL = "http://search.test/api/search"


def _augmenter(http: httpx.AsyncClient, **kwargs) -> SearchAugmenter:
    kwargs.setdefault("api_key", "tvly-key")
    return SearchAugmenter(http, search_url=SEARCH_URL, **kwargs)


def _payload(count: int, **extra) -> dict:
    results = [{"title": f"T{i}", "url": f"https://r{i}.test", "content": f"snippet {i}"} for i in range(count)]
    return {"results": results, **extra}


class TestSkips:
    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self) -> None:
        calls: list[httpx.Request] = []

        async with mock_client(lambda request: calls.append(request) or httpx.Response(200, json={})) as http:
            outcome = await _augmenter(http).augment("weather", enabled=False)

        assert outcome.skipped
        assert calls == []

    @pytest.mark.asyncio
    async def test_missing_key(self) -> None:
        async with mock_client(lambda request: httpx.Response(200, json={})) as http:
            outcome = await _augmenter(http, api_key=None).augment("weather", enabled=True)

        assert outcome.skipped
        assert "key" in (outcome.reason or "")

    @pytest.mark.asyncio
    async def test_blank_query(self) -> None:
        async with mock_client(lambda request: httpx.Response(200, json={})) as http:
            outcome = await _augmenter(http).augment("   ", enabled=True)

        assert outcome.skipped

    @pytest.mark.asyncio
    async def test_timeout_becomes_skip(self) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200, json=_payload(1))

        async with mock_client(slow) as http:
            outcome = await _augmenter(http, timeout=0.05).augment("slow query", enabled=True)

        assert outcome.skipped
        assert outcome.reason == "timeout (0.05s)"
        assert not outcome.has_content

    @pytest.mark.asyncio
    async def test_http_error_becomes_skip(self) -> None:
        async with mock_client(lambda request: httpx.Response(502, text="bad gateway")) as http:
            outcome = await _augmenter(http).augment("q", enabled=True)

        assert outcome.skipped
        assert outcome.reason == "search API error: 502"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_skip(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with mock_client(handler) as http:
            outcome = await _augmenter(http).augment("q", enabled=True)

        assert outcome.skipped

    @pytest.mark.asyncio
    async def test_invalid_json_becomes_skip(self) -> None:
        async with mock_client(lambda request: httpx.Response(200, text="<html>")) as http:
            outcome = await _augmenter(http).augment("q", enabled=True)

        assert outcome.skipped

    @pytest.mark.asyncio
    @pytest.mark.parametrize("results", [5, "not a list", {"title": "x"}])
    async def test_malformed_results_become_skip(self, results) -> None:
        async with mock_client(lambda request: httpx.Response(200, json={"results": results})) as http:
            outcome = await _augmenter(http).augment("q", enabled=True)

        assert outcome.skipped
        assert outcome.reason == "invalid search response"

    @pytest.mark.asyncio
    async def test_missing_results_is_empty_outcome(self) -> None:
        async with mock_client(lambda request: httpx.Response(200, json={"answer": "Sunny"})) as http:
            outcome = await _augmenter(http).augment("q", enabled=True)

        assert not outcome.skipped
        assert outcome.results == []
        assert outcome.answer == "Sunny"

    @pytest.mark.asyncio
    async def test_invalid_search_url_becomes_skip(self) -> None:
        async with mock_client(lambda request: httpx.Response(200, json={})) as http:
            augmenter = SearchAugmenter(http, search_url="http://search.test:notaport/api", api_key="tvly-test")
            outcome = await augmenter.augment("q", enabled=True)

        assert outcome.skipped
        assert outcome.reason.startswith("search request failed")

    @pytest.mark.asyncio
    async def test_service_reported_skip(self) -> None:
        async with mock_client(lambda request: httpx.Response(200, json={"skipped": True, "reason": "quota"})) as http:
            outcome = await _augmenter(http).augment("q", enabled=True)

        assert outcome.skipped
        assert outcome.reason == "quota"


class TestResults:
    @pytest.mark.asyncio
    async def test_request_body_and_result_cap(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=_payload(5, answer="It is sunny."))

        async with mock_client(handler) as http:
            outcome = await _augmenter(http).augment("  weather today  ", enabled=True)

        assert seen[0]["query"] == "weather today"
        assert seen[0]["max_results"] == 3
        assert seen[0]["include_answer"] is True
        assert [result.title for result in outcome.results] == ["T0", "T1", "T2"]
        assert outcome.answer == "It is sunny."
        assert outcome.has_content

    @pytest.mark.asyncio
    async def test_snippets_are_capped(self) -> None:
        body = {"results": [{"title": "Long", "url": "https://long.test", "content": "y" * 1000}]}

        async with mock_client(lambda request: httpx.Response(200, json=body)) as http:
            outcome = await _augmenter(http).augment("q", enabled=True)

        assert len(outcome.results[0].content_snippet) == SNIPPET_LIMIT

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        started = asyncio.Event()

        async def slow(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200, json={})

        async with mock_client(slow) as http:
            task = asyncio.ensure_future(_augmenter(http, timeout=30).augment("q", enabled=True))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
