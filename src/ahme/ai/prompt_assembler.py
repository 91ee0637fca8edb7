"""Build the message list for one inference request.

:func:`assemble_prompt` is pure: the same inputs always produce the same
messages, and nothing outside the returned value is touched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from ..chat.message_model import ConversationTurn
from . import prompts
from .attachments import Attachment, ImageAttachment, TextAttachment
from .images import strip_data_url_prefix
from .search import SearchOutcome

DEFAULT_CONTEXT_BUDGET = 1_000


@dataclass(slots=True)
class AssembledPrompt:
    """Messages in request order plus bare base64 image payloads."""

    messages: list[dict[str, str]] = field(default_factory=list)
    images: list[str] = field(default_factory=list)

    @property
    def user_content(self) -> str:
        return self.messages[-1]["content"] if self.messages else ""

    def to_payload_messages(self) -> list[dict[str, Any]]:
        """Return messages with images attached to the last user message."""

        payload: list[dict[str, Any]] = [dict(message) for message in self.messages]
        if self.images:
            for message in reversed(payload):
                if message["role"] == "user":
                    message["images"] = list(self.images)
                    break
        return payload


def truncate_context(text: str, budget: int = DEFAULT_CONTEXT_BUDGET) -> str:
    """Keep the first ``budget`` characters of ``text`` and mark the cut."""

    if len(text) <= budget:
        return text
    return text[:budget] + "\n" + prompts.ELISION_MARKER


def assemble_prompt(
    system_prompt: str,
    history: Sequence[ConversationTurn],
    question: str,
    *,
    attachments: Iterable[Attachment] = (),
    search: SearchOutcome | None = None,
    document_text: str = "",
    context_budget: int = DEFAULT_CONTEXT_BUDGET,
) -> AssembledPrompt:
    """Assemble the request for ``question``.

    The system prompt comes first, prior turns follow unchanged, and the new
    user turn is built from, in order: the task preamble, the image-priority
    instruction (only when images are attached), the question, search
    findings, one labeled section per text attachment, and the document
    context. With images attached the document context is cut to
    ``context_budget`` characters. Attachments that are not READY are ignored.
    """

    ready = [item for item in attachments if item.is_ready]
    texts = [item for item in ready if isinstance(item, TextAttachment)]
    images = [strip_data_url_prefix(item.encoded_payload) for item in ready if isinstance(item, ImageAttachment)]

    messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
    messages.extend(turn.to_message() for turn in history)

    sections: list[str] = [prompts.TASK_PREAMBLE]
    if images:
        sections.append(prompts.IMAGE_PRIORITY_INSTRUCTION)
    sections.append(f"{prompts.QUESTION_HEADER}\n{question}")
    if search is not None and search.has_content:
        sections.append(prompts.search_section([result.as_row() for result in search.results], search.answer))
    if texts:
        blocks = [prompts.attachment_section(item.name, item.extracted_text, truncated=item.truncated) for item in texts]
        sections.append(prompts.ATTACHMENTS_HEADER + "\n" + "\n\n".join(blocks))
    context = truncate_context(document_text, context_budget) if images else document_text
    sections.append(f"{prompts.DOCUMENT_CONTEXT_HEADER}\n{context}")

    messages.append({"role": "user", "content": "\n\n".join(sections)})
    return AssembledPrompt(messages=messages, images=images)


__all__ = ["AssembledPrompt", "DEFAULT_CONTEXT_BUDGET", "assemble_prompt", "truncate_context"]
