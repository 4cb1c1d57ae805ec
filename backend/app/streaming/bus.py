"""In-process event bus carrying committed ledger events to listeners."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


class EventBus:
    """Synchronous publish point for ledger-committed events.

    Listeners are called in registration order, once per event, in the order
    events were committed. A listener that raises is logged and skipped; the
    remaining listeners still see the event.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, stream_id: str, events: Sequence[Any]) -> None:
        # Snapshot so listeners may deregister while being notified
        listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(stream_id, event)
                except Exception:
                    logger.exception("Event listener failed on %s for %s", type(event).__name__, stream_id)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
