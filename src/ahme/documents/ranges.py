"""Line/column positions and spans inside a host document.

Lines and columns are 1-based. Column 1 sits before the first character of
a line, so a caret at the end of ``"abc"`` is column 4.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Iterator


@dataclass(slots=True, frozen=True, order=True)
class TextPosition:
    """A caret location."""

    line: int
    column: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "line", _coerce_coordinate(self.line, "line"))
        object.__setattr__(self, "column", _coerce_coordinate(self.column, "column"))

    def to_tuple(self) -> tuple[int, int]:
        return (self.line, self.column)


@dataclass(slots=True, frozen=True)
class InsertedRange(Sequence[int]):
    """Span occupied by text, as ``(start_line, start_col, end_line, end_col)``.

    The end position is exclusive: it is the caret location immediately after
    the last inserted character.
    """

    start_line: int
    start_col: int
    end_line: int
    end_col: int

    def __post_init__(self) -> None:
        start = TextPosition(self.start_line, self.start_col)
        end = TextPosition(self.end_line, self.end_col)
        if end < start:
            start, end = end, start
        object.__setattr__(self, "start_line", start.line)
        object.__setattr__(self, "start_col", start.column)
        object.__setattr__(self, "end_line", end.line)
        object.__setattr__(self, "end_col", end.column)

    def __len__(self) -> int:
        return 4

    def __getitem__(self, index: int | slice) -> int | tuple[int, ...]:
        return self.to_tuple()[index]

    def __iter__(self) -> Iterator[int]:
        return iter(self.to_tuple())

    @property
    def start(self) -> TextPosition:
        return TextPosition(self.start_line, self.start_col)

    @property
    def end(self) -> TextPosition:
        return TextPosition(self.end_line, self.end_col)

    @property
    def is_caret(self) -> bool:
        """Return ``True`` when the span is empty."""

        return self.start_line == self.end_line and self.start_col == self.end_col

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def to_tuple(self) -> tuple[int, int, int, int]:
        return (self.start_line, self.start_col, self.end_line, self.end_col)

    def to_dict(self) -> dict[str, int]:
        return {
            "start_line": self.start_line,
            "start_col": self.start_col,
            "end_line": self.end_line,
            "end_col": self.end_col,
        }

    @classmethod
    def caret(cls, position: TextPosition) -> InsertedRange:
        """Return an empty span at ``position``."""

        return cls(position.line, position.column, position.line, position.column)

    @classmethod
    def from_insertion(cls, start: TextPosition, text: str) -> InsertedRange:
        """Compute the span ``text`` occupies once inserted at ``start``.

        Single-line text ends ``len(text)`` columns further along the same
        line. Multi-line text ends on ``start.line + lines - 1`` right after
        the final line's characters.
        """

        lines = text.split("\n")
        if len(lines) == 1:
            return cls(start.line, start.column, start.line, start.column + len(text))
        return cls(start.line, start.column, start.line + len(lines) - 1, len(lines[-1]) + 1)

    @classmethod
    def from_value(cls, value: Any) -> InsertedRange:
        """Coerce a range, mapping or 4-item sequence into :class:`InsertedRange`."""

        if isinstance(value, InsertedRange):
            return value
        if isinstance(value, Mapping):
            try:
                return cls(value["start_line"], value["start_col"], value["end_line"], value["end_col"])
            except KeyError as exc:
                raise ValueError(f"InsertedRange mapping is missing {exc.args[0]!r}") from exc
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            items = list(value)
            if len(items) != 4:
                raise ValueError("InsertedRange sequences must have exactly four entries")
            return cls(*items)
        raise TypeError("Unsupported InsertedRange input")


def _coerce_coordinate(value: Any, label: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if number < 1:
        raise ValueError(f"{label} is 1-based; got {number}")
    return number


__all__ = ["InsertedRange", "TextPosition"]
