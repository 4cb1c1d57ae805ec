"""Per-session fan-out of price events to a client's delivery queue."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from .bus import EventBus
from .models import PriceDelivery
from .prices import PriceUpdated
from .subscriptions import SubscriptionLedger

logger = logging.getLogger(__name__)


class FanOutDispatcher:
    """Delivers price updates for one client session.

    A bus listener filters ``PriceUpdated`` events against the session's
    subscriptions, looked up in the subscription ledger on every event so
    subscription changes apply from the next event on. Matching updates go to
    a bounded queue; when it is full the oldest entry is dropped (last value
    wins). ``stream()`` drains the queue until ``cancel()`` is called or the
    consumer stops iterating.
    """

    def __init__(
        self,
        session_id: str,
        bus: EventBus,
        subscriptions: SubscriptionLedger,
        max_queue: int = 256,
        idle_interval: float = 0.1,
    ) -> None:
        if max_queue < 1:
            raise ValueError(f"max_queue must be at least 1, got {max_queue}")
        self.session_id = session_id
        self._bus = bus
        self._subscriptions = subscriptions
        self._idle_interval = idle_interval
        self._queue: deque[PriceDelivery] = deque(maxlen=max_queue)
        self._cancelled = asyncio.Event()
        self._unsubscribe: Callable[[], None] | None = None
        self.delivered = 0
        self.dropped = 0

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def symbols(self) -> frozenset[str]:
        return self._subscriptions.symbols_for_session(self.session_id)

    def open(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._bus.subscribe(self._on_event)
            logger.info("Price stream opened for session %s", self.session_id)

    def cancel(self) -> None:
        self._cancelled.set()

    def close(self) -> None:
        """Deregister from the bus and discard undelivered updates."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.info(
                "Price stream ended for session %s (delivered=%d, dropped=%d, discarded=%d)",
                self.session_id,
                self.delivered,
                self.dropped,
                len(self._queue),
            )
        self._queue.clear()

    def _on_event(self, stream_id: str, event: Any) -> None:
        if not isinstance(event, PriceUpdated):
            return
        if self.session_id not in self._subscriptions.sessions_for(event.symbol):
            return
        if len(self._queue) == self._queue.maxlen:
            self.dropped += 1
        self._queue.append(
            PriceDelivery(
                symbol=event.symbol,
                price=event.price,
                display_price=event.display_price,
                change=event.change,
                timestamp=event.timestamp,
            )
        )

    async def stream(
        self,
        should_stop: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[PriceDelivery]:
        """Yield queued deliveries until cancelled. Always deregisters on exit.

        ``should_stop`` is awaited each time the queue stays empty for
        ``idle_interval``; a true result ends the stream even when no updates
        arrive.
        """
        self.open()
        try:
            while not self._cancelled.is_set():
                if self._queue:
                    delivery = self._queue.popleft()
                    self.delivered += 1
                    yield delivery
                    continue
                try:
                    await asyncio.wait_for(self._cancelled.wait(), timeout=self._idle_interval)
                except asyncio.TimeoutError:
                    pass
                if should_stop is not None and await should_stop():
                    logger.info("Price stream for session %s stopped while idle", self.session_id)
                    break
        finally:
            self.close()
