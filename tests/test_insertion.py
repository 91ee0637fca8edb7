"""Tests for the accept/discard insertion transaction."""

from __future__ import annotations

from ahme.documents.ranges import InsertedRange
from ahme.editor.document_model import TextDocument
from ahme.editor.insertion import InsertionState, InsertionTransaction
from ahme.ui.events import InsertionAccepted, InsertionDiscarded, InsertionPending


def _transaction(document: TextDocument | None, bus=None) -> InsertionTransaction:
    return InsertionTransaction(lambda: document, bus)


class TestInsert:
    def test_insert_at_caret_marks_range(self, sample_document_text: str, event_bus) -> None:
        document = TextDocument(sample_document_text)
        document.set_cursor(2, 1)
        transaction = _transaction(document, event_bus)

        inserted = transaction.insert("NEW\n")

        assert inserted == InsertedRange(2, 1, 3, 1)
        assert document.text == "first line\nNEW\nsecond line\nthird line"
        assert document.marked_range == inserted
        assert transaction.state is InsertionState.INSERTED
        assert transaction.actions == ("accept", "discard")
        [event] = event_bus.of_type(InsertionPending)
        assert event.range == (2, 1, 3, 1)
        assert event.actions == ("accept", "discard")

    def test_insert_without_document_is_noop(self, event_bus) -> None:
        transaction = _transaction(None, event_bus)

        assert transaction.insert("text") is None
        assert transaction.state is InsertionState.NONE
        assert event_bus.published == []

    def test_insert_into_detached_document_is_noop(self) -> None:
        document = TextDocument("abc")
        document.detach()

        assert _transaction(document).insert("x") is None
        assert document.text == "abc"


class TestAccept:
    def test_accept_keeps_text_and_clears_mark(self, sample_document_text: str, event_bus) -> None:
        document = TextDocument(sample_document_text)
        document.move_cursor_to_end()
        transaction = _transaction(document, event_bus)
        transaction.insert("\nfourth line")

        assert transaction.accept() is True

        assert document.text.endswith("third line\nfourth line")
        assert document.marked_range is None
        assert transaction.state is InsertionState.ACCEPTED
        assert transaction.actions == ()
        assert len(event_bus.of_type(InsertionAccepted)) == 1

    def test_accept_without_pending(self) -> None:
        assert _transaction(TextDocument("abc")).accept() is False


class TestDiscard:
    def test_discard_restores_original_bytes(self, sample_document_text: str, event_bus) -> None:
        document = TextDocument(sample_document_text)
        document.set_cursor(1, 6)
        transaction = _transaction(document, event_bus)
        transaction.insert(" inserted\ntext ")

        assert transaction.discard() is True

        assert document.text == sample_document_text
        assert document.marked_range is None
        assert transaction.state is InsertionState.DISCARDED
        [event] = event_bus.of_type(InsertionDiscarded)
        assert event.implicit is False

    def test_discard_restores_replaced_selection(self, sample_document_text: str) -> None:
        document = TextDocument(sample_document_text)
        document.select(2, 1, 2, 7)
        transaction = _transaction(document)

        transaction.insert("replacement\ntwo lines")
        assert "replacement\ntwo lines line" in document.text

        transaction.discard()

        assert document.text == sample_document_text

    def test_discard_after_detach_only_clears_state(self) -> None:
        document = TextDocument("abc")
        transaction = _transaction(document)
        transaction.insert("X")
        document.detach()

        assert transaction.discard() is True
        assert document.text == "Xabc"
        assert transaction.pending_range is None

    def test_discard_without_pending(self) -> None:
        assert _transaction(TextDocument("abc")).discard() is False


def test_second_insert_discards_first(event_bus) -> None:
    document = TextDocument("start")
    document.move_cursor_to_end()
    transaction = _transaction(document, event_bus)

    transaction.insert(" one")
    transaction.insert(" two")

    assert document.text == "start two"
    assert transaction.pending_range == InsertedRange(1, 6, 1, 10)
    [discarded] = event_bus.of_type(InsertionDiscarded)
    assert discarded.implicit is True
    assert discarded.range == (1, 6, 1, 10)
    assert len(event_bus.of_type(InsertionPending)) == 2


def test_second_insert_targets_selection_made_after_first() -> None:
    document = TextDocument("hello world")
    document.move_cursor_to_end()
    transaction = _transaction(document)
    transaction.insert(" AI")

    document.select(1, 1, 1, 6)
    inserted = transaction.insert("X")

    assert document.text == "X world"
    assert inserted == InsertedRange(1, 1, 1, 2)

    transaction.discard()
    assert document.text == "hello world"


def test_second_insert_caret_after_first_is_shifted() -> None:
    document = TextDocument("a\nb")
    document.set_cursor(1, 2)
    transaction = _transaction(document)
    transaction.insert("\nNEW")
    assert document.text == "a\nNEW\nb"

    document.set_cursor(3, 2)
    inserted = transaction.insert("!")

    assert document.text == "a\nb!"
    assert inserted == InsertedRange(2, 2, 2, 3)


def test_second_insert_selection_inside_pending_collapses_to_its_start() -> None:
    document = TextDocument("abc")
    document.set_cursor(1, 2)
    transaction = _transaction(document)
    transaction.insert("XYZ")

    document.select(1, 3, 1, 4)
    transaction.insert("-")

    assert document.text == "a-bc"
