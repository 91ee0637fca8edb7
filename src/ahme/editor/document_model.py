"""Host document contract and an in-memory implementation of it."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..documents.ranges import InsertedRange, TextPosition


def _hash_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@runtime_checkable
class HostDocument(Protocol):
    """Editing surface the insertion transaction writes to.

    Positions are 1-based line/column pairs. Only the insertion transaction
    mutates the document through this protocol.
    """

    @property
    def is_attached(self) -> bool: ...

    def get_selection(self) -> Optional[InsertedRange]: ...

    def get_cursor_position(self) -> TextPosition: ...

    def splice_text(self, target: InsertedRange, text: str) -> None: ...

    def delete_range(self, target: InsertedRange) -> None: ...

    def mark_range(self, target: InsertedRange) -> None: ...

    def clear_mark(self) -> None: ...

    def text_in_range(self, target: InsertedRange) -> str: ...


@dataclass(slots=True)
class TextDocument:
    """Plain-text document held in memory.

    Used by the command line runner and by tests. Splicing moves the caret to
    the end of the new text and clears the selection, the way an editor
    widget behaves after a programmatic replace.
    """

    text: str = ""
    document_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    version_id: int = 1
    content_hash: str = field(default_factory=str)
    _cursor: TextPosition = field(default_factory=lambda: TextPosition(1, 1))
    _selection: Optional[InsertedRange] = None
    _mark: Optional[InsertedRange] = None
    _attached: bool = True

    def __post_init__(self) -> None:
        if not self.content_hash:
            self.content_hash = _hash_text(self.text)

    # ------------------------------------------------------------------
    # HostDocument protocol
    # ------------------------------------------------------------------
    @property
    def is_attached(self) -> bool:
        return self._attached

    def get_selection(self) -> Optional[InsertedRange]:
        selection = self._selection
        if selection is None or selection.is_caret:
            return None
        return selection

    def get_cursor_position(self) -> TextPosition:
        return self._cursor

    def splice_text(self, target: InsertedRange, text: str) -> None:
        start = self._offset(target.start)
        end = self._offset(target.end)
        self._replace_text(self.text[:start] + text + self.text[end:])
        self._cursor = InsertedRange.from_insertion(target.start, text).end
        self._selection = None

    def delete_range(self, target: InsertedRange) -> None:
        self.splice_text(target, "")

    def mark_range(self, target: InsertedRange) -> None:
        self._offset(target.start)
        self._offset(target.end)
        self._mark = target

    def clear_mark(self) -> None:
        self._mark = None

    def text_in_range(self, target: InsertedRange) -> str:
        return self.text[self._offset(target.start) : self._offset(target.end)]

    # ------------------------------------------------------------------
    # Caret and selection control
    # ------------------------------------------------------------------
    @property
    def marked_range(self) -> Optional[InsertedRange]:
        return self._mark

    @property
    def line_count(self) -> int:
        return self.text.count("\n") + 1

    def set_cursor(self, line: int, column: int) -> None:
        position = TextPosition(line, column)
        self._offset(position)
        self._cursor = position
        self._selection = None

    def select(self, start_line: int, start_col: int, end_line: int, end_col: int) -> None:
        """Select a span; the caret moves to its end."""

        selection = InsertedRange(start_line, start_col, end_line, end_col)
        self._offset(selection.start)
        self._offset(selection.end)
        self._selection = selection
        self._cursor = selection.end

    def move_cursor_to_end(self) -> None:
        lines = self.text.split("\n")
        self.set_cursor(len(lines), len(lines[-1]) + 1)

    def detach(self) -> None:
        """Simulate the document tab closing."""

        self._attached = False
        self._mark = None

    def snapshot(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "text": self.text,
            "cursor": self._cursor.to_tuple(),
            "selection": self._selection.to_tuple() if self._selection else None,
            "document_id": self.document_id,
            "version_id": self.version_id,
            "content_hash": self.content_hash,
        }
        if self._mark is not None:
            payload["marked_range"] = self._mark.to_tuple()
        return payload

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _replace_text(self, new_text: str) -> None:
        self.text = new_text
        self.version_id += 1
        self.content_hash = _hash_text(new_text)

    def _offset(self, position: TextPosition) -> int:
        lines = self.text.split("\n")
        if position.line > len(lines):
            raise ValueError(f"Line {position.line} is past the end of the document ({len(lines)} lines)")
        line_text = lines[position.line - 1]
        if position.column > len(line_text) + 1:
            raise ValueError(
                f"Column {position.column} is past the end of line {position.line} ({len(line_text)} chars)"
            )
        return sum(len(line) + 1 for line in lines[: position.line - 1]) + position.column - 1


__all__ = ["HostDocument", "TextDocument"]
