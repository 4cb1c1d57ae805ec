"""Subscription API and the service context that wires the engine together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from .bus import EventBus
from .config import StreamingConfig
from .dispatcher import FanOutDispatcher
from .errors import IngestionStartFailure, ValidationError
from .ingestion import IngestionController
from .interface import PriceSource
from .models import PriceDelivery, normalize_symbol
from .prices import PriceLedger
from .subscriptions import SubscriptionLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubscriptionResult:
    accepted: bool
    symbol: str
    message: str

    def to_dict(self) -> dict:
        return {"accepted": self.accepted, "symbol": self.symbol, "message": self.message}


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Consistency between subscriptions and ingestion.

    ``missing``: symbols with subscribers but no ingestion session.
    ``extra``: ingestion sessions for symbols nobody subscribes to.
    """

    active_symbols: list[str]
    tracking: list[str]
    missing: list[str] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.missing and not self.extra

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "active_symbols": self.active_symbols,
            "ingestion_status": {
                "tracking": self.tracking,
                "missing": self.missing,
                "extra": self.extra,
            },
        }


class StreamingService:
    """Service context: one per process, passed to whatever needs the engine.

    Owns the event bus, both ledgers, the ingestion controller and the open
    client streams.
    """

    def __init__(
        self,
        source: PriceSource,
        config: StreamingConfig | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.config = config or StreamingConfig()
        self.bus = bus or EventBus()
        self.subscriptions = SubscriptionLedger(bus=self.bus)
        self.prices = PriceLedger(
            bus=self.bus,
            compute_change=self.config.compute_change,
            history_limit=self.config.history_limit,
        )
        self.ingestion = IngestionController(
            source=source,
            prices=self.prices,
            subscriptions=self.subscriptions,
            config=self.config,
        )
        self._streams: dict[str, set[FanOutDispatcher]] = {}

    # --- Subscription API ---

    async def subscribe(self, session_id: str, symbol: str) -> SubscriptionResult:
        """Subscribe a session to a symbol, starting ingestion on the first subscriber.

        Re-subscribing is accepted and changes nothing. If ingestion cannot be
        started the subscription is rolled back and the result is not accepted.
        """
        try:
            symbol = normalize_symbol(symbol)
        except ValidationError as e:
            logger.info("Rejected subscribe from %s: %s", session_id, e)
            return SubscriptionResult(accepted=False, symbol=(symbol or "").strip().upper(), message=str(e))

        result = await self.subscriptions.subscribe(symbol, session_id)
        if not result.success:
            return SubscriptionResult(accepted=False, symbol=symbol, message=f"Failed to subscribe: {result.error}")
        added = bool(result.new_events)

        try:
            await self.ingestion.ensure_started(symbol)
        except IngestionStartFailure as e:
            logger.error("Ingestion start failed for %s: %s", symbol, e)
            if added:
                await self.subscriptions.unsubscribe(symbol, session_id)
            return SubscriptionResult(
                accepted=False,
                symbol=symbol,
                message=f"Ticker {symbol} is not valid or not available. Please check the ticker symbol.",
            )

        if not added:
            return SubscriptionResult(accepted=True, symbol=symbol, message=f"Already subscribed to {symbol}")
        return SubscriptionResult(accepted=True, symbol=symbol, message=f"Successfully subscribed to {symbol}")

    async def unsubscribe(self, session_id: str, symbol: str) -> SubscriptionResult:
        """Unsubscribe a session. Accepted even if it was never subscribed."""
        try:
            symbol = normalize_symbol(symbol)
        except ValidationError as e:
            return SubscriptionResult(accepted=False, symbol=(symbol or "").strip().upper(), message=str(e))

        result = await self.subscriptions.unsubscribe(symbol, session_id)
        if not result.success:
            return SubscriptionResult(accepted=False, symbol=symbol, message=f"Failed to unsubscribe: {result.error}")
        if not result.new_events:
            return SubscriptionResult(accepted=True, symbol=symbol, message=f"Not subscribed to {symbol}")

        if result.new_state is None:
            await self.ingestion.stop(symbol)
        return SubscriptionResult(accepted=True, symbol=symbol, message=f"Successfully unsubscribed from {symbol}")

    async def disconnect_session(self, session_id: str) -> list[str]:
        """Drop every subscription a session holds and end its streams."""
        symbols = sorted(self.subscriptions.symbols_for_session(session_id))
        for symbol in symbols:
            await self.unsubscribe(session_id, symbol)
        for dispatcher in self._streams.pop(session_id, set()):
            dispatcher.cancel()
        logger.info("Session %s disconnected from %d symbols", session_id, len(symbols))
        return symbols

    def health_check(self) -> HealthReport:
        active = self.subscriptions.active_symbols_with_counts()
        tracking = set(self.ingestion.tracked_symbols())
        return HealthReport(
            active_symbols=sorted(active),
            tracking=sorted(tracking),
            missing=sorted(set(active) - tracking),
            extra=sorted(tracking - set(active)),
        )

    def stream_info(self) -> list[dict]:
        return [
            {
                "symbol": symbol,
                "subscriber_count": count,
                "is_active": self.ingestion.has_active(symbol),
            }
            for symbol, count in sorted(self.subscriptions.active_symbols_with_counts().items())
        ]

    def price_summary(self) -> dict[str, dict]:
        symbols = sorted(self.subscriptions.active_symbols_with_counts())
        return self.prices.summary(symbols, self.config.exchange)

    # --- Streaming ---

    def open_stream(self, session_id: str) -> FanOutDispatcher:
        """Create a dispatcher for a session. Iterate ``dispatcher.stream()`` to receive updates."""
        dispatcher = FanOutDispatcher(
            session_id=session_id,
            bus=self.bus,
            subscriptions=self.subscriptions,
            max_queue=self.config.queue_size,
            idle_interval=self.config.idle_interval,
        )
        self._streams.setdefault(session_id, set()).add(dispatcher)
        return dispatcher

    async def stream_updates(
        self,
        session_id: str,
        should_stop: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[PriceDelivery]:
        """Price updates for a session's subscriptions, until the caller stops iterating.

        ``should_stop`` is polled while no updates are pending, so an idle
        stream still notices a consumer that went away.
        """
        dispatcher = self.open_stream(session_id)
        try:
            async for delivery in dispatcher.stream(should_stop=should_stop):
                yield delivery
        finally:
            dispatcher.close()
            streams = self._streams.get(session_id)
            if streams is not None:
                streams.discard(dispatcher)
                if not streams:
                    self._streams.pop(session_id, None)

    def open_stream_count(self) -> int:
        return sum(len(streams) for streams in self._streams.values())

    # --- Lifecycle ---

    async def start(self) -> list[str]:
        """Start ingestion for every subscribed symbol that has none.

        Symbols whose source cannot be opened are logged and skipped; they stay
        listed as missing in the health report.
        """
        started = []
        for symbol in self.health_check().missing:
            try:
                if await self.ingestion.ensure_started(symbol) is not None:
                    started.append(symbol)
            except IngestionStartFailure as e:
                logger.error("Could not start ingestion for %s: %s", symbol, e)
        logger.info("Streaming service started, %d ingestion sessions resumed", len(started))
        return started

    async def shutdown(self) -> None:
        logger.info("Streaming service shutting down")
        for streams in self._streams.values():
            for dispatcher in streams:
                dispatcher.cancel()
        self._streams.clear()
        await self.ingestion.shutdown()
        await self.ingestion.source.aclose()
        # Let cancelled dispatcher loops observe the cancellation
        await asyncio.sleep(0)
        logger.info("Streaming service stopped")
