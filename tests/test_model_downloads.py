"""Tests for the shared model download tracker."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from helpers import ChunkedStream, make_settings, mock_client, ndjson

from ahme.ai.client import InferenceClient
from ahme.services.model_downloads import CANCELLED_PROGRESS, DownloadState, ModelDownloadTracker, pull_model


class TestTracker:
    def test_every_subscriber_sees_each_change(self) -> None:
        tracker = ModelDownloadTracker()
        first: list[DownloadState] = []
        second: list[DownloadState] = []
        tracker.subscribe(first.append)
        tracker.subscribe(second.append)

        tracker.update(is_downloading=True, model_name="gemma3:12b")
        tracker.update(percent=40)

        assert [state.percent for state in first] == [0, 40]
        assert first == second
        assert tracker.state.is_visible

    def test_unsubscribe_callable(self) -> None:
        tracker = ModelDownloadTracker()
        seen: list[DownloadState] = []
        unsubscribe = tracker.subscribe(seen.append)

        unsubscribe()
        tracker.update(progress="x")

        assert seen == []

    def test_failing_listener_does_not_block_others(self) -> None:
        tracker = ModelDownloadTracker()
        seen: list[DownloadState] = []

        def broken(state: DownloadState) -> None:
            raise RuntimeError("view gone")

        tracker.subscribe(broken)
        tracker.subscribe(seen.append)
        tracker.update(progress="pulling")

        assert len(seen) == 1

    def test_reset_hides_panel(self) -> None:
        tracker = ModelDownloadTracker()
        tracker.update(error="boom")

        assert not tracker.reset().is_visible


class TestPullModel:
    @pytest.mark.asyncio
    async def test_progress_records_drive_state(self) -> None:
        bodies: list[dict] = []
        records = [
            {"status": "pulling manifest"},
            {"status": "downloading", "completed": 50, "total": 200},
            {"status": "downloading", "completed": 200, "total": 200},
            {"status": "success"},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, content=ndjson(*records))

        tracker = ModelDownloadTracker()
        seen: list[DownloadState] = []
        tracker.subscribe(seen.append)

        async with mock_client(handler) as http:
            final = await pull_model(InferenceClient(make_settings(), client=http), "gemma3:12b", tracker)

        assert bodies == [{"name": "gemma3:12b", "stream": True}]
        assert final.success and not final.is_downloading
        assert final.percent == 100
        assert 25 in [state.percent for state in seen]
        assert seen[0].progress == "starting download"

    @pytest.mark.asyncio
    async def test_error_record_fails_download(self) -> None:
        body = ndjson({"status": "pulling manifest"}, {"error": "pull model manifest: file does not exist"})
        tracker = ModelDownloadTracker()

        async with mock_client(lambda request: httpx.Response(200, content=body)) as http:
            final = await pull_model(InferenceClient(make_settings(), client=http), "nope:1b", tracker)

        assert final.error == "pull model manifest: file does not exist"
        assert not final.success
        assert not final.is_downloading

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        tracker = ModelDownloadTracker()

        async with mock_client(lambda request: httpx.Response(500, text="disk full")) as http:
            final = await pull_model(InferenceClient(make_settings(), client=http), "m", tracker)

        assert final.error == "disk full"

    @pytest.mark.asyncio
    async def test_cancel_reports_cancelled_without_error(self) -> None:
        stream = ChunkedStream([ndjson({"status": "downloading", "completed": 1, "total": 10})], hang=True)
        tracker = ModelDownloadTracker()

        async with mock_client(lambda request: httpx.Response(200, stream=stream)) as http:
            task = asyncio.ensure_future(pull_model(InferenceClient(make_settings(), client=http), "m", tracker))
            while tracker.state.percent != 10:
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert tracker.state.progress == CANCELLED_PROGRESS
        assert tracker.state.error is None
        assert not tracker.state.is_downloading

    @pytest.mark.asyncio
    async def test_rejects_concurrent_download(self) -> None:
        tracker = ModelDownloadTracker()
        tracker.update(is_downloading=True, model_name="busy")

        with pytest.raises(RuntimeError):
            await pull_model(InferenceClient(make_settings(), client=httpx.AsyncClient()), "other", tracker)
