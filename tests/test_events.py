"""Tests for the in-process event bus."""

from __future__ import annotations

from booknook.events import BOOK_IMPORTED, LIBRARY_RESET, EventBus


class TestEventBus:
    def test_publish_to_topic(self):
        bus = EventBus()
        received: list[dict] = []
        bus.subscribe(BOOK_IMPORTED, received.append)
        bus.publish(BOOK_IMPORTED, {"book_id": "b1"})
        bus.publish(LIBRARY_RESET)
        assert received == [{"book_id": "b1", "topic": BOOK_IMPORTED}]

    def test_wildcard(self):
        bus = EventBus()
        received: list[dict] = []
        bus.subscribe("*", received.append)
        bus.publish(BOOK_IMPORTED, {"book_id": "b1"})
        bus.publish(LIBRARY_RESET)
        assert [e["topic"] for e in received] == [BOOK_IMPORTED, LIBRARY_RESET]

    def test_unsubscribe(self):
        bus = EventBus()
        received: list[dict] = []
        unsubscribe = bus.subscribe(LIBRARY_RESET, received.append)
        unsubscribe()
        unsubscribe()
        bus.publish(LIBRARY_RESET)
        assert received == []

    def test_event_not_mutated(self):
        bus = EventBus()
        bus.subscribe(BOOK_IMPORTED, lambda e: None)
        payload = {"book_id": "b1"}
        bus.publish(BOOK_IMPORTED, payload)
        assert payload == {"book_id": "b1"}

    def test_failing_handler_does_not_block_others(self, caplog):
        bus = EventBus()
        received: list[dict] = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(LIBRARY_RESET, broken)
        bus.subscribe(LIBRARY_RESET, received.append)
        bus.publish(LIBRARY_RESET)

        assert len(received) == 1
        assert "handler bug" in caplog.text
