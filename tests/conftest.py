"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from ahme.ui.events import Event, EventBus


class RecordingBus(EventBus):
    """Event bus that also remembers every published event."""

    __slots__ = ("published",)

    def __init__(self) -> None:
        super().__init__()
        self.published: list[Event] = []

    def publish(self, event: Event) -> None:
        self.published.append(event)
        super().publish(event)

    def of_type(self, event_type: type) -> list:
        return [event for event in self.published if isinstance(event, event_type)]


@pytest.fixture
def event_bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def sample_document_text() -> str:
    return "first line\nsecond line\nthird line"
