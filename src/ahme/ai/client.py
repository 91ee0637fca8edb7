"""HTTP client for the inference service.

Two wire dialects are supported. ``ollama`` talks to the native API
(``/api/chat``, ``/api/tags``); ``openai`` talks to an OpenAI-compatible
gateway such as Open WebUI (``/chat/completions``, ``/models``) with bearer
authentication. Streaming is handled by :class:`StreamingResponseConsumer`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..services.settings import Settings
from .errors import ErrorCode, RemoteFailure
from .prompt_assembler import AssembledPrompt
from .streaming import StreamingResponseConsumer, StreamResult, UpdateCallback, error_from_response, extract_content

LOGGER = logging.getLogger(__name__)

_PAYLOAD_PREVIEW_CHARS = 300


def choose_default_model(models: Sequence[str], current: str | None = None, preferred: str = "gemma3:12b") -> str | None:
    """Pick the model to select after listing.

    A name containing ``preferred`` wins, then ``current`` if it is still
    installed, then the first listed model.
    """

    if not models:
        return current or None
    for name in models:
        if preferred and preferred in name:
            return name
    if current and current in models:
        return current
    return models[0]


class InferenceClient:
    """Async client for chat, completion and model listing.

    Chat requests are never retried; only :meth:`list_models` retries
    transient connection failures.
    """

    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout, connect=10.0))
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    @property
    def chat_url(self) -> str:
        if self._settings.backend == "openai":
            return f"{self._settings.base_url}/chat/completions"
        return f"{self._settings.base_url}/api/chat"

    @property
    def models_url(self) -> str:
        if self._settings.backend == "openai":
            return f"{self._settings.base_url}/models"
        return f"{self._settings.base_url}/api/tags"

    @property
    def pull_url(self) -> str:
        return f"{self._settings.base_url}/api/pull"

    def set_model(self, model: str) -> None:
        self._settings.model = model

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def build_payload(self, prompt: AssembledPrompt, *, stream: bool = True) -> Dict[str, Any]:
        """Return the JSON body for a chat request.

        Images travel on the last user message as bare base64 strings.
        """

        if not self._settings.model:
            raise ValueError("No model selected")
        return {
            "model": self._settings.model,
            "messages": prompt.to_payload_messages(),
            "stream": stream,
        }

    def open_stream(self, prompt: AssembledPrompt, *, on_update: UpdateCallback | None = None) -> StreamingResponseConsumer:
        """Return a consumer for a streamed chat request; nothing is sent until it runs."""

        payload = self.build_payload(prompt, stream=True)
        message_count = len(payload["messages"])
        LOGGER.debug(
            "Starting streamed chat via %s with %s message(s) and %s image(s)",
            payload["model"],
            message_count,
            len(prompt.images),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        return StreamingResponseConsumer(
            lambda: self._client.stream("POST", self.chat_url, json=payload, headers=self._headers()),
            on_update=on_update,
            display_limit=self._settings.error_display_limit,
        )

    async def stream_chat(self, prompt: AssembledPrompt, *, on_update: UpdateCallback | None = None) -> StreamResult:
        """Stream a chat request to its terminal state."""

        return await self.open_stream(prompt, on_update=on_update).run()

    async def complete(self, prompt: AssembledPrompt) -> str:
        """Send a non-streaming chat request and return the assistant text.

        Raises:
            RemoteFailure: non-2xx status, unreachable service or a body
                without assistant text.
        """

        payload = self.build_payload(prompt, stream=False)
        try:
            response = await self._client.post(self.chat_url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise RemoteFailure(
                f"Could not reach the inference service: {exc}",
                code=ErrorCode.SERVICE_UNAVAILABLE,
                display_limit=self._settings.error_display_limit,
            ) from exc
        if not response.is_success:
            raise error_from_response(response.status_code, response.content, display_limit=self._settings.error_display_limit)
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteFailure("Inference service returned invalid JSON", status_code=response.status_code) from exc
        text = _completion_text(data)
        if text is None:
            raise RemoteFailure("Inference service returned no message", status_code=response.status_code)
        return text

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return installed model names."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.get(self.models_url, headers=self._headers())
            if not response.is_success:
                raise RemoteFailure(
                    f"Model listing failed ({response.status_code})",
                    status_code=response.status_code,
                    display_limit=self._settings.error_display_limit,
                )
            models = _model_names(response.json())
            LOGGER.debug("Found %d model(s): %s", len(models), ", ".join(models))
            self._models_cache = models
            return list(models)

    async def refresh_default_model(self) -> str | None:
        """List models and select the default one on the settings."""

        models = await self.list_models(force_refresh=True)
        chosen = choose_default_model(models, self._settings.model, self._settings.preferred_model)
        if chosen:
            self.set_model(chosen)
        return chosen

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.backend == "openai" and self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        return headers

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.model_list_attempts)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        preview = []
        for message in payload.get("messages", []):
            content = str(message.get("content", ""))
            entry = {"role": message.get("role"), "content": content[:_PAYLOAD_PREVIEW_CHARS]}
            if message.get("images"):
                entry["images"] = [f"<{len(image)} base64 chars>" for image in message["images"]]
            preview.append(entry)
        LOGGER.debug("Chat payload: %s", json.dumps({"model": payload.get("model"), "messages": preview}, ensure_ascii=False))


def _completion_text(data: Any) -> str | None:
    if not isinstance(data, Mapping):
        return None
    content = extract_content(data)
    if content is not None:
        return content
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        message = choices[0].get("message")
        if isinstance(message, Mapping) and isinstance(message.get("content"), str):
            return message["content"]
    message = data.get("message")
    if isinstance(message, Mapping) and isinstance(message.get("content"), str):
        return message["content"]
    return None


def _model_names(data: Any) -> List[str]:
    if not isinstance(data, Mapping):
        return []
    if isinstance(data.get("models"), list):
        return [str(item["name"]) for item in data["models"] if isinstance(item, Mapping) and item.get("name")]
    if isinstance(data.get("data"), list):
        return [str(item["id"]) for item in data["data"] if isinstance(item, Mapping) and item.get("id")]
    return []


__all__ = ["InferenceClient", "choose_default_model"]
