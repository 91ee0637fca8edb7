"""Runtime settings for the AI side panel.

Preferences are assembled from defaults, runtime overrides (CLI flags) and
``AHME_*`` environment variables. Nothing here is written to disk.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Literal, Mapping

__all__ = [
    "BACKEND_CHOICES",
    "DEFAULT_SYSTEM_PROMPT",
    "Settings",
    "effective_system_prompt",
    "load_settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are the AI assistant built into the AHME editor. Answer clearly and politely, "
    "and ground your answers in the document and attachments the user provides."
)
BACKEND_CHOICES: tuple[str, ...] = ("ollama", "openai")
InferenceBackend = Literal["ollama", "openai"]

_ENV_OVERRIDES: Mapping[str, str] = {
    "AHME_BASE_URL": "base_url",
    "AHME_BACKEND": "backend",
    "AHME_API_KEY": "api_key",
    "AHME_MODEL": "model",
    "AHME_PARSE_URL": "parse_url",
    "AHME_SEARCH_URL": "search_url",
    "AHME_SEARCH_API_KEY": "search_api_key",
    "TAVILY_API_KEY": "search_api_key",
    "AHME_SYSTEM_PROMPT": "custom_system_prompt",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "AHME_SEARCH_ENABLED": "search_enabled",
    "AHME_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "AHME_REQUEST_TIMEOUT": "request_timeout",
    "AHME_SEARCH_TIMEOUT": "search_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "AHME_MAX_UPLOAD_BYTES": "max_upload_bytes",
    "AHME_MAX_TEXT_CHARS": "max_text_chars",
    "AHME_IMAGE_MAX_EDGE": "image_max_edge",
    "AHME_IMAGE_CONTEXT_BUDGET": "image_context_budget",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """Configuration consumed by the inference, parse and search collaborators."""

    base_url: str = "http://localhost:11434"
    backend: InferenceBackend = "ollama"
    api_key: str = ""
    model: str = ""
    preferred_model: str = "gemma3:12b"
    request_timeout: float = 120.0
    model_list_attempts: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    parse_url: str | None = None
    max_upload_bytes: int = 50 * 1024 * 1024
    max_text_chars: int = 100_000
    search_url: str = "https://api.tavily.com/search"
    search_api_key: str = ""
    search_enabled: bool = False
    search_timeout: float = 3.0
    search_max_results: int = 3
    image_max_edge: int = 1024
    image_quality: int = 85
    image_context_budget: int = 1_000
    error_display_limit: int = 200
    custom_system_prompt: str = ""
    debug_logging: bool = False

    def __post_init__(self) -> None:
        if self.backend not in BACKEND_CHOICES:
            raise ValueError(f"Unknown inference backend '{self.backend}'; expected one of {BACKEND_CHOICES}")
        self.base_url = self.base_url.rstrip("/")


def load_settings(
    overrides: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    base: Settings | None = None,
) -> Settings:
    """Build settings from defaults, runtime ``overrides`` and the environment.

    Environment variables win over runtime overrides, mirroring how a
    deployment pins a server address regardless of CLI defaults.
    """

    settings = base or Settings()
    if overrides:
        settings = _apply_overrides(settings, overrides, source="runtime")
    env = os.environ if environ is None else environ
    return _apply_env_overrides(settings, env)


def effective_system_prompt(settings: Settings) -> str:
    """Return the user's custom system prompt when non-blank, else the default."""

    custom = settings.custom_system_prompt
    if custom and custom.strip():
        return custom
    return DEFAULT_SYSTEM_PROMPT


def redact_secret(value: str | None, *, visible: int = 4) -> str:
    """Mask a credential for logs, keeping a short suffix for identification."""

    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def _apply_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    allowed = {item.name for item in fields(Settings)}
    filtered: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in allowed or value is None:
            continue
        filtered[key] = value
    if filtered:
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
        settings = replace(settings, **filtered)
    return settings


def _apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and field_name not in overrides:
            overrides[field_name] = value
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip().lower() in _TRUE_VALUES
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
    if overrides:
        settings = _apply_overrides(settings, overrides, source="environment")
    return settings
