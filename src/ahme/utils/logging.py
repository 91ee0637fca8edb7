"""Logging setup for AHME: rotating file log, console echo, secret masking."""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

__all__ = ["setup_logging", "get_log_path", "SecretRedactingFilter", "level_from_env"]

_DEFAULT_LOG_DIR = Path.home() / ".ahme" / "logs"
_LOG_FILE_NAME = "ahme.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "PIL")
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"),
    re.compile(r"""(["']?api_key["']?\s*[:=]\s*["']?)[^"',\s}]+"""),
)
_CONFIGURED = False
_LOG_PATH: Path | None = None


class SecretRedactingFilter(logging.Filter):
    """Mask bearer tokens and ``api_key`` values before a record is emitted.

    Search requests carry the provider key in the JSON body and inference
    requests may carry it in the Authorization header; both end up in debug
    payload dumps.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in _SECRET_PATTERNS:
            redacted = pattern.sub(r"\1***", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    level: int | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the rotating file handler (and console echo) on the root logger.

    ``level`` defaults to ``AHME_LOG_LEVEL`` when set, INFO otherwise. Calling
    this twice is a no-op unless ``force`` is true.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    effective_level = level if level is not None else level_from_env()
    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    redactor = SecretRedactingFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(effective_level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)

    logging.basicConfig(level=effective_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_libraries(effective_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def level_from_env(default: int = logging.INFO) -> int:
    """Resolve ``AHME_LOG_LEVEL`` (name or number) into a logging level."""

    raw = (os.environ.get("AHME_LOG_LEVEL") or "").strip()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    resolved = logging.getLevelName(raw.upper())
    return resolved if isinstance(resolved, int) else default


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging`."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("AHME_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _quiet_libraries(root_level: int) -> None:
    # httpx logs every request line at INFO; keep those out of the chat log.
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
