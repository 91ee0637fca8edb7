"""Command line runner for the AHME AI pipeline.

Runs one turn headlessly: attach files, optionally search the web, stream the
answer to stdout and, on request, insert it into a document and accept or
discard the insertion.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Sequence

import httpx

from .ai.attachments import AttachmentIngestor, RawAttachment
from .ai.client import InferenceClient
from .ai.errors import AHMEError
from .ai.search import SearchAugmenter
from .editor.document_model import TextDocument
from .editor.insertion import InsertionTransaction
from .services.importers import DocumentParser, LocalDocumentParser, RemoteDocumentParser
from .services.model_downloads import DownloadState, ModelDownloadTracker, pull_model
from .services.settings import BACKEND_CHOICES, Settings, load_settings, redact_secret
from .ui.domain.chat_session import ChatSession, ChatSessionManager, SessionFactory, TurnStatus
from .ui.events import (
    AITurnStreamChunk,
    AttachmentRejected,
    AttachmentUpdated,
    EventBus,
    InsertionPending,
    NoticePosted,
)
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELED = 130


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file logging; echo to the console only when debugging."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), logging_utils.get_log_path())


def build_parser(settings: Settings, http: httpx.AsyncClient) -> DocumentParser:
    if settings.parse_url:
        return RemoteDocumentParser(settings.parse_url, http, display_limit=settings.error_display_limit)
    return LocalDocumentParser(max_text_chars=settings.max_text_chars)


def build_session_factory(
    settings: Settings,
    client: InferenceClient,
    event_bus: EventBus,
) -> SessionFactory:
    """Return a factory wiring new sessions to shared collaborators."""

    ingestor = AttachmentIngestor(
        build_parser(settings, client.http),
        max_upload_bytes=settings.max_upload_bytes,
        image_max_edge=settings.image_max_edge,
        image_quality=settings.image_quality,
    )
    augmenter = SearchAugmenter(
        client.http,
        search_url=settings.search_url,
        api_key=settings.search_api_key,
        timeout=settings.search_timeout,
        max_results=settings.search_max_results,
    )

    def _factory(session_id: str) -> ChatSession:
        return ChatSession(session_id, client, ingestor, augmenter, event_bus, settings)

    return _factory


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``ahme`` console script."""

    args = _parse_cli_args(argv)
    configure_logging(args.debug)
    settings = load_settings(_cli_overrides(args))
    if settings.debug_logging and not args.debug:
        configure_logging(True, force=True)

    if args.dump_settings:
        _dump_settings(settings)
        return EXIT_OK
    if not (args.list_models or args.pull or args.question):
        print("A question is required unless --list-models or --pull is given.", file=sys.stderr)
        return EXIT_USAGE

    try:
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return EXIT_CANCELED


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    timeout = httpx.Timeout(settings.request_timeout, connect=10.0)
    async with httpx.AsyncClient(timeout=timeout) as http:
        client = InferenceClient(settings, client=http)
        if args.list_models:
            return await _list_models(client)
        if args.pull:
            return await _pull(client, args.pull)
        return await _ask(args, settings, client)


async def _list_models(client: InferenceClient) -> int:
    try:
        models = await client.list_models()
    except (AHMEError, httpx.HTTPError) as exc:
        print(f"Could not list models: {exc}", file=sys.stderr)
        return EXIT_FAILED
    for name in models:
        print(name)
    return EXIT_OK


async def _pull(client: InferenceClient, name: str) -> int:
    tracker = ModelDownloadTracker()

    def _render(state: DownloadState) -> None:
        if state.is_downloading:
            print(f"\r{state.progress} {state.percent}%".ljust(60), end="", file=sys.stderr, flush=True)

    tracker.subscribe(_render)
    final = await pull_model(client, name, tracker)
    print(file=sys.stderr)
    if final.error:
        print(f"Download failed: {final.error}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Downloaded {final.model_name}", file=sys.stderr)
    return EXIT_OK


async def _ask(args: argparse.Namespace, settings: Settings, client: InferenceClient) -> int:
    if not settings.model:
        try:
            chosen = await client.refresh_default_model()
        except (AHMEError, httpx.HTTPError) as exc:
            print(f"Could not list models: {exc}", file=sys.stderr)
            return EXIT_FAILED
        if not chosen:
            print("No installed models found; pass --model or pull one with --pull.", file=sys.stderr)
            return EXIT_FAILED
        _LOGGER.info("Using model %s", chosen)

    bus = EventBus()
    _subscribe_console(bus)
    manager = ChatSessionManager(build_session_factory(settings, client, bus), bus)
    session = manager.create_session()

    document = TextDocument()
    if args.document:
        document = TextDocument(text=Path(args.document).read_text(encoding="utf-8"))
        document.move_cursor_to_end()

    for path in args.attach:
        session.attachments.add(RawAttachment.from_path(path))

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    try:
        outcome = await session.send(args.question, document_text=document.text, search_enabled=args.search)
    except AHMEError as exc:
        print(f"\n{exc.message}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
    print()

    if outcome.status is TurnStatus.CANCELED:
        print("(stopped)", file=sys.stderr)
        return EXIT_CANCELED
    if outcome.status is TurnStatus.FAILED:
        print(f"Error: {outcome.error}", file=sys.stderr)
        return EXIT_FAILED

    if args.insert:
        transaction = InsertionTransaction(lambda: document, bus)
        if transaction.insert(outcome.response_text) is None:
            print("No document to insert into.", file=sys.stderr)
            return EXIT_FAILED
        if args.decision == "discard":
            transaction.discard()
        else:
            transaction.accept()
        if args.output:
            Path(args.output).write_text(document.text, encoding="utf-8")
    return EXIT_OK


def _subscribe_console(bus: EventBus) -> None:
    bus.subscribe(AITurnStreamChunk, lambda event: print(event.content, end="", flush=True))
    bus.subscribe(NoticePosted, lambda event: print(f"[notice] {event.message}", file=sys.stderr))
    bus.subscribe(
        AttachmentRejected,
        lambda event: print(f"[attachment] {event.name}: {event.reason}", file=sys.stderr),
    )

    def _attachment_updated(event: AttachmentUpdated) -> None:
        if event.error:
            print(f"[attachment] {event.attachment_id}: {event.error}", file=sys.stderr)

    def _insertion_pending(event: InsertionPending) -> None:
        print(f"[insert] range={event.range} actions={'/'.join(event.actions)}", file=sys.stderr)

    bus.subscribe(AttachmentUpdated, _attachment_updated)
    bus.subscribe(InsertionPending, _insertion_pending)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ahme",
        add_help=True,
        description="Ask the AHME assistant a question about a document and stream the answer.",
    )
    parser.add_argument("question", nargs="?", help="The question to ask.")
    parser.add_argument("--model", help="Model to use; defaults to the preferred installed model.")
    parser.add_argument("--base-url", help="Inference service base URL.")
    parser.add_argument("--backend", choices=BACKEND_CHOICES, help="Inference service dialect.")
    parser.add_argument("--parse-url", help="Attachment parse endpoint; parse locally when omitted.")
    parser.add_argument("--document", metavar="PATH", help="Document used as context and insertion target.")
    parser.add_argument(
        "--attach",
        metavar="PATH",
        action="append",
        default=[],
        help="Attach a file or image to the question (repeatable).",
    )
    parser.add_argument("--search", action="store_true", default=None, help="Augment the question with web search.")
    parser.add_argument("--insert", action="store_true", help="Insert the answer at the end of --document.")
    decision = parser.add_mutually_exclusive_group()
    decision.add_argument("--accept", dest="decision", action="store_const", const="accept", help="Keep the insertion (default).")
    decision.add_argument("--discard", dest="decision", action="store_const", const="discard", help="Revert the insertion.")
    parser.add_argument("--output", metavar="PATH", help="Write the resulting document after --insert.")
    parser.add_argument("--list-models", action="store_true", help="List installed models and exit.")
    parser.add_argument("--pull", metavar="MODEL", help="Download a model and exit.")
    parser.add_argument("--dump-settings", action="store_true", help="Print the effective settings (secrets redacted) and exit.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on the console.")
    return parser.parse_args(argv)


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "model": args.model,
        "base_url": args.base_url,
        "backend": args.backend,
        "parse_url": args.parse_url,
        "debug_logging": True if args.debug else None,
    }


def _dump_settings(settings: Settings) -> None:
    payload = asdict(settings)
    for key in ("api_key", "search_api_key"):
        payload[key] = redact_secret(payload.get(key))
    log_path = logging_utils.get_log_path()
    payload["log_path"] = str(log_path) if log_path else None
    json.dump(payload, sys.stdout, indent=2, sort_keys=True)
    sys.stdout.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    raise SystemExit(main())
