"""In-process publish/subscribe channel for state changes."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

log = logging.getLogger(__name__)

Event = dict[str, Any]
Handler = Callable[[Event], None]

SYNC_STATUS = "sync.status"
SYNC_REMOTE_CHANGED = "sync.remote_changed"
BOOK_IMPORTED = "library.book_imported"
LIBRARY_RESET = "library.reset"


class EventBus:
    """Topic-routed event bus. Subscribe to ``"*"`` to receive every topic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that removes it again."""
        with self._lock:
            self._subscribers[topic].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers.get(topic, []):
                    self._subscribers[topic].remove(handler)

        return _unsubscribe

    def publish(self, topic: str, event: Event | None = None) -> None:
        event = dict(event or {})
        event.setdefault("topic", topic)
        handlers: list[Handler] = []
        with self._lock:
            handlers.extend(self._subscribers.get(topic, []))
            handlers.extend(self._subscribers.get("*", []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                log.error("EventBus handler failed for topic '%s': %s", topic, exc)
