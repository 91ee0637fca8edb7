"""Tests for the in-memory host document."""

from __future__ import annotations

import pytest

from ahme.documents.ranges import InsertedRange, TextPosition
from ahme.editor.document_model import HostDocument, TextDocument


def test_text_document_satisfies_host_protocol(sample_document_text: str) -> None:
    assert isinstance(TextDocument(sample_document_text), HostDocument)


def test_splice_at_caret_moves_cursor(sample_document_text: str) -> None:
    document = TextDocument(sample_document_text)
    document.set_cursor(2, 7)

    document.splice_text(InsertedRange.caret(document.get_cursor_position()), "XX")

    assert document.text == "first line\nsecondXX line\nthird line"
    assert document.get_cursor_position() == TextPosition(2, 9)


def test_splice_replaces_selection(sample_document_text: str) -> None:
    document = TextDocument(sample_document_text)
    document.select(1, 1, 2, 7)

    selection = document.get_selection()
    assert selection is not None
    assert document.text_in_range(selection) == "first line\nsecond"

    document.splice_text(selection, "new")

    assert document.text == "new line\nthird line"
    assert document.get_selection() is None


def test_version_and_hash_track_edits() -> None:
    document = TextDocument("abc")
    before = (document.version_id, document.content_hash)

    document.delete_range(InsertedRange(1, 1, 1, 2))

    assert document.text == "bc"
    assert document.version_id == before[0] + 1
    assert document.content_hash != before[1]


def test_caret_selection_is_reported_as_none() -> None:
    document = TextDocument("abc")
    document.select(1, 2, 1, 2)
    assert document.get_selection() is None


def test_positions_past_the_end_are_rejected() -> None:
    document = TextDocument("ab\ncd")
    with pytest.raises(ValueError):
        document.set_cursor(3, 1)
    with pytest.raises(ValueError):
        document.set_cursor(1, 4)


def test_move_cursor_to_end() -> None:
    document = TextDocument("one\ntwo words")
    document.move_cursor_to_end()
    assert document.get_cursor_position() == TextPosition(2, 10)


def test_mark_and_detach() -> None:
    document = TextDocument("abc")
    document.mark_range(InsertedRange(1, 1, 1, 3))
    assert document.snapshot()["marked_range"] == (1, 1, 1, 3)

    document.detach()

    assert not document.is_attached
    assert document.marked_range is None
