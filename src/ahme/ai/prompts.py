"""Prompt text used when assembling a user turn.

The section headers double as stable markers for tests and for anyone
reading a logged prompt, so change them with care.
"""

from __future__ import annotations

from typing import Sequence

ELISION_MARKER = "…(truncated)"

TASK_PREAMBLE = (
    "Answer the user's question below. Use the attachments and the document "
    "context that follow when they are relevant."
)

IMAGE_PRIORITY_INSTRUCTION = (
    "One or more images are attached. Analyze the images first and base your "
    "answer primarily on what they show; treat the document context as secondary."
)

QUESTION_HEADER = "--- User Question ---"
SEARCH_HEADER = "--- Web Search Results ---"
ATTACHMENTS_HEADER = "--- Attachments ---"
DOCUMENT_CONTEXT_HEADER = "--- Document Context ---"


def attachment_section(name: str, text: str, *, truncated: bool = False) -> str:
    """Render one text attachment as a labeled section."""

    label = f"[Attachment: {name}]"
    if truncated:
        label += " (truncated)"
    return f"{label}\n{text}"


def search_section(results: Sequence[tuple[str, str, str]], answer: str | None) -> str:
    """Render search findings; ``results`` holds ``(title, url, snippet)`` rows."""

    lines: list[str] = [SEARCH_HEADER]
    if answer:
        lines.append(f"Summary: {answer}")
    for index, (title, url, snippet) in enumerate(results, start=1):
        lines.append(f"{index}. {title} ({url})")
        if snippet:
            lines.append(f"   {snippet}")
    return "\n".join(lines)


__all__ = [
    "ATTACHMENTS_HEADER",
    "DOCUMENT_CONTEXT_HEADER",
    "ELISION_MARKER",
    "IMAGE_PRIORITY_INSTRUCTION",
    "QUESTION_HEADER",
    "SEARCH_HEADER",
    "TASK_PREAMBLE",
    "attachment_section",
    "search_section",
]
