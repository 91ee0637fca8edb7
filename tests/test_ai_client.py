"""Tests for the inference service client."""

from __future__ import annotations

import json

import httpx
import pytest

from helpers import make_settings, mock_client, ndjson

from ahme.ai.client import InferenceClient, choose_default_model
from ahme.ai.errors import RemoteFailure
from ahme.ai.prompt_assembler import AssembledPrompt
from ahme.ai.streaming import StreamState


def _prompt(images: list[str] | None = None) -> AssembledPrompt:
    return AssembledPrompt(
        messages=[
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "earlier"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "now"},
        ],
        images=list(images or []),
    )


class TestChooseDefaultModel:
    def test_prefers_gemma_variant(self) -> None:
        assert choose_default_model(["llama3:8b", "gemma3:12b-it-q4"], "llama3:8b") == "gemma3:12b-it-q4"

    def test_keeps_current_when_installed(self) -> None:
        assert choose_default_model(["llama3:8b", "qwen2.5:7b"], "qwen2.5:7b") == "qwen2.5:7b"

    def test_falls_back_to_first(self) -> None:
        assert choose_default_model(["llama3:8b", "qwen2.5:7b"], "gone:1b") == "llama3:8b"

    def test_empty_listing(self) -> None:
        assert choose_default_model([], None) is None


class TestBuildPayload:
    def test_images_attach_to_last_user_message(self) -> None:
        client = InferenceClient(make_settings(), client=httpx.AsyncClient())
        payload = client.build_payload(_prompt(["QUJD"]))

        assert payload["model"] == "test-model"
        assert payload["stream"] is True
        assert "images" not in payload["messages"][1]
        assert payload["messages"][-1]["images"] == ["QUJD"]

    def test_requires_model(self) -> None:
        client = InferenceClient(make_settings(model=""), client=httpx.AsyncClient())
        with pytest.raises(ValueError):
            client.build_payload(_prompt())


class TestStreamChat:
    @pytest.mark.asyncio
    async def test_ollama_backend_posts_to_api_chat(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=ndjson({"message": {"content": "ok"}, "done": True}))

        async with mock_client(handler) as http:
            client = InferenceClient(make_settings(base_url="http://ollama.test/"), client=http)
            result = await client.stream_chat(_prompt())

        assert result.state is StreamState.COMPLETED
        assert result.content == "ok"
        assert str(seen[0].url) == "http://ollama.test/api/chat"
        assert "authorization" not in seen[0].headers
        assert json.loads(seen[0].content)["stream"] is True

    @pytest.mark.asyncio
    async def test_openai_backend_uses_bearer_and_completions_path(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = 'data: {"choices": [{"delta": {"content": "hey"}}]}\n\ndata: [DONE]\n'
            return httpx.Response(200, content=body.encode("utf-8"))

        settings = make_settings(base_url="http://webui.test/api", backend="openai", api_key="sk-secret")
        async with mock_client(handler) as http:
            result = await InferenceClient(settings, client=http).stream_chat(_prompt())

        assert result.content == "hey"
        assert str(seen[0].url) == "http://webui.test/api/chat/completions"
        assert seen[0].headers["authorization"] == "Bearer sk-secret"

    @pytest.mark.asyncio
    async def test_chat_is_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500, json={"error": "boom"})

        async with mock_client(handler) as http:
            result = await InferenceClient(make_settings(), client=http).stream_chat(_prompt())

        assert result.state is StreamState.FAILED
        assert calls == 1


class TestComplete:
    @pytest.mark.asyncio
    async def test_native_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"message": {"role": "assistant", "content": "full answer"}, "done": True})

        async with mock_client(handler) as http:
            text = await InferenceClient(make_settings(), client=http).complete(_prompt())

        assert text == "full answer"

    @pytest.mark.asyncio
    async def test_openai_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "from gateway"}}]})

        async with mock_client(handler) as http:
            text = await InferenceClient(make_settings(backend="openai"), client=http).complete(_prompt())

        assert text == "from gateway"

    @pytest.mark.asyncio
    async def test_error_status_raises_remote_failure(self) -> None:
        async with mock_client(lambda request: httpx.Response(400, json={"error": "bad request"})) as http:
            with pytest.raises(RemoteFailure) as excinfo:
                await InferenceClient(make_settings(), client=http).complete(_prompt())

        assert excinfo.value.status_code == 400
        assert excinfo.value.display_message == "bad request"


class TestListModels:
    @pytest.mark.asyncio
    async def test_ollama_tags(self) -> None:
        async with mock_client(
            lambda request: httpx.Response(200, json={"models": [{"name": "gemma3:12b"}, {"name": "llama3:8b"}]})
        ) as http:
            models = await InferenceClient(make_settings(), client=http).list_models()

        assert models == ["gemma3:12b", "llama3:8b"]

    @pytest.mark.asyncio
    async def test_openai_models(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"data": [{"id": "gpt-x"}]})

        async with mock_client(handler) as http:
            models = await InferenceClient(make_settings(backend="openai", base_url="http://gw.test"), client=http).list_models()

        assert models == ["gpt-x"]
        assert seen == ["http://gw.test/models"]

    @pytest.mark.asyncio
    async def test_retries_connection_errors(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"models": [{"name": "m1"}]})

        async with mock_client(handler) as http:
            models = await InferenceClient(make_settings(model_list_attempts=3), client=http).list_models()

        assert models == ["m1"]
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_attempts(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            raise httpx.ConnectError("refused", request=request)

        async with mock_client(handler) as http:
            with pytest.raises(httpx.ConnectError):
                await InferenceClient(make_settings(model_list_attempts=2), client=http).list_models()

        assert attempts == 2

    @pytest.mark.asyncio
    async def test_cached_until_refresh(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"models": [{"name": f"m{calls}"}]})

        async with mock_client(handler) as http:
            client = InferenceClient(make_settings(), client=http)
            assert await client.list_models() == ["m1"]
            assert await client.list_models() == ["m1"]
            assert await client.list_models(force_refresh=True) == ["m2"]

    @pytest.mark.asyncio
    async def test_refresh_default_model_selects_preferred(self) -> None:
        async with mock_client(
            lambda request: httpx.Response(200, json={"models": [{"name": "llama3:8b"}, {"name": "gemma3:12b"}]})
        ) as http:
            client = InferenceClient(make_settings(model=""), client=http)
            chosen = await client.refresh_default_model()

        assert chosen == "gemma3:12b"
        assert client.settings.model == "gemma3:12b"
