"""Event-sourced price ledger, one stream per (symbol, exchange) feed."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal

from .bus import EventBus
from .errors import AlreadyDisconnectedError, UnknownCommandError
from .ledger import CommandHandler, CommandResult, InMemoryEventStore
from .models import PriceHistoryEntry, stream_id_for

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100
SUMMARY_HISTORY = 10
HIGH_ALERT_CHANGE = Decimal(10)

ZERO = Decimal(0)


# --- Commands ---


@dataclass(frozen=True, slots=True)
class EstablishConnection:
    symbol: str
    exchange: str


@dataclass(frozen=True, slots=True)
class UpdatePrice:
    symbol: str
    exchange: str
    price: Decimal
    display_price: str
    volume: Decimal | None = None


@dataclass(frozen=True, slots=True)
class LoseConnection:
    symbol: str
    exchange: str
    reason: str | None = None


PriceCommand = EstablishConnection | UpdatePrice | LoseConnection


# --- Events ---


@dataclass(frozen=True, slots=True)
class ConnectionEstablished:
    symbol: str
    exchange: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class PriceUpdated:
    symbol: str
    exchange: str
    price: Decimal
    display_price: str
    change: Decimal
    timestamp: float
    volume: Decimal | None = None


@dataclass(frozen=True, slots=True)
class ConnectionLost:
    symbol: str
    exchange: str
    timestamp: float
    reason: str | None = None


PriceEvent = ConnectionEstablished | PriceUpdated | ConnectionLost


@dataclass(frozen=True, slots=True)
class PriceState:
    """Observed state of one feed."""

    symbol: str
    exchange: str
    is_connected: bool
    connection_count: int = 0
    total_updates: int = 0
    current_price: Decimal | None = None
    previous_price: Decimal | None = None
    display_price: str | None = None
    change: Decimal | None = None
    last_update: float | None = None
    price_history: tuple[PriceHistoryEntry, ...] = ()


def initial_state() -> PriceState | None:
    return None


class PriceDecider:
    """Decides which events a price command produces.

    With ``compute_change`` on, ``PriceUpdated.change`` is the difference from
    the previous price; otherwise it is always zero.
    """

    def __init__(self, compute_change: bool = False) -> None:
        self.compute_change = compute_change

    def __call__(self, command: PriceCommand, state: PriceState | None) -> list[PriceEvent]:
        timestamp = time.time()

        if isinstance(command, EstablishConnection):
            return [ConnectionEstablished(symbol=command.symbol, exchange=command.exchange, timestamp=timestamp)]

        if isinstance(command, UpdatePrice):
            events: list[PriceEvent] = []
            if state is None or not state.is_connected:
                # An early price implies a live feed
                events.append(
                    ConnectionEstablished(symbol=command.symbol, exchange=command.exchange, timestamp=timestamp)
                )
            events.append(
                PriceUpdated(
                    symbol=command.symbol,
                    exchange=command.exchange,
                    price=command.price,
                    display_price=command.display_price,
                    change=self._change(command.price, state),
                    timestamp=timestamp,
                    volume=command.volume,
                )
            )
            return events

        if isinstance(command, LoseConnection):
            if state is None or not state.is_connected:
                raise AlreadyDisconnectedError(f"Connection for {command.symbol} is already lost")
            return [
                ConnectionLost(
                    symbol=command.symbol,
                    exchange=command.exchange,
                    timestamp=timestamp,
                    reason=command.reason,
                )
            ]

        raise UnknownCommandError(f"Unknown price command: {type(command).__name__}")

    def _change(self, price: Decimal, state: PriceState | None) -> Decimal:
        if not self.compute_change or state is None or state.current_price is None:
            return ZERO
        return price - state.current_price


def make_evolve(history_limit: int = DEFAULT_HISTORY_LIMIT):
    """Build the evolution function for a given price history bound."""
    if history_limit < 1:
        raise ValueError(f"history_limit must be at least 1, got {history_limit}")

    def evolve(state: PriceState | None, event: PriceEvent) -> PriceState | None:
        if isinstance(event, ConnectionEstablished):
            if state is None:
                return PriceState(
                    symbol=event.symbol,
                    exchange=event.exchange,
                    is_connected=True,
                    connection_count=1,
                )
            return replace(state, is_connected=True, connection_count=state.connection_count + 1)

        if isinstance(event, PriceUpdated):
            if state is None:
                return state
            entry = PriceHistoryEntry(
                price=event.price,
                timestamp=event.timestamp,
                change=event.change,
                volume=event.volume,
            )
            return replace(
                state,
                previous_price=state.current_price,
                current_price=event.price,
                display_price=event.display_price,
                change=event.change,
                last_update=event.timestamp,
                price_history=(state.price_history + (entry,))[-history_limit:],
                total_updates=state.total_updates + 1,
            )

        if isinstance(event, ConnectionLost):
            if state is None:
                return state
            return replace(state, is_connected=False)

        return state

    return evolve


evolve = make_evolve()


class PriceLedger:
    """Price aggregates keyed by ``SYMBOL_EXCHANGE`` stream ids."""

    def __init__(
        self,
        bus: EventBus | None = None,
        compute_change: bool = False,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._store: InMemoryEventStore[PriceEvent] = InMemoryEventStore()
        self._decider = PriceDecider(compute_change=compute_change)
        self._handler: CommandHandler[PriceState | None, PriceEvent] = CommandHandler(
            store=self._store,
            decide=self._decider,
            evolve=make_evolve(history_limit),
            initial_state=initial_state,
            bus=bus,
        )

    @property
    def compute_change(self) -> bool:
        return self._decider.compute_change

    async def establish_connection(self, symbol: str, exchange: str) -> CommandResult:
        return await self._handler.handle(
            stream_id_for(symbol, exchange), EstablishConnection(symbol=symbol, exchange=exchange)
        )

    async def update_price(
        self,
        symbol: str,
        exchange: str,
        price: Decimal,
        volume: Decimal | None = None,
        display_price: str | None = None,
    ) -> CommandResult:
        command = UpdatePrice(
            symbol=symbol,
            exchange=exchange,
            price=price,
            display_price=display_price if display_price is not None else str(price),
            volume=volume,
        )
        result = await self._handler.handle(stream_id_for(symbol, exchange), command)
        if result.success:
            logger.debug("Price ledger updated for %s: %r -> %s", symbol, command.display_price, price)
        return result

    async def lose_connection(self, symbol: str, exchange: str, reason: str | None = None) -> CommandResult:
        return await self._handler.handle(
            stream_id_for(symbol, exchange), LoseConnection(symbol=symbol, exchange=exchange, reason=reason)
        )

    def current_state(self, symbol: str, exchange: str) -> PriceState | None:
        state, _ = self._handler.current(stream_id_for(symbol, exchange))
        return state

    def replay(self, symbol: str, exchange: str) -> PriceState | None:
        return self._handler.replay(stream_id_for(symbol, exchange))

    def events(self, symbol: str, exchange: str) -> list[PriceEvent]:
        return [recorded.event for recorded in self._store.read_stream(stream_id_for(symbol, exchange))]

    # --- Reporting ---

    def summary(self, symbols: list[str], exchange: str) -> dict[str, dict]:
        """Latest price, change and recent history per known symbol."""
        summary: dict[str, dict] = {}
        for symbol in symbols:
            state = self.current_state(symbol, exchange)
            if state is None:
                continue
            summary[symbol] = {
                "current_price": state.display_price,
                "change": float(state.change) if state.change is not None else None,
                "last_update": state.last_update,
                "total_updates": state.total_updates,
                "is_connected": state.is_connected,
                "price_history": [
                    {"price": float(entry.price), "timestamp": entry.timestamp, "change": float(entry.change)}
                    for entry in state.price_history[-SUMMARY_HISTORY:]
                ],
            }
        return summary

    def check_alerts(self, symbols: list[str], exchange: str, threshold: float = 5) -> list[dict]:
        """Symbols whose last change reached ``threshold`` in absolute terms."""
        alerts = []
        limit = Decimal(str(threshold))
        for symbol in symbols:
            state = self.current_state(symbol, exchange)
            if state is None or state.change is None:
                continue
            magnitude = abs(state.change)
            if magnitude >= limit:
                alerts.append(
                    {
                        "symbol": symbol,
                        "price": state.display_price,
                        "change": float(state.change),
                        "severity": "HIGH" if magnitude >= HIGH_ALERT_CHANGE else "MEDIUM",
                        "timestamp": state.last_update,
                    }
                )
        return alerts

    def statistics(self, symbols: list[str], exchange: str) -> dict:
        stats = {
            "total_symbols": len(symbols),
            "active_connections": 0,
            "total_updates": 0,
            "avg_price_change": 0.0,
            "last_update": 0.0,
        }
        total_change = ZERO
        for symbol in symbols:
            state = self.current_state(symbol, exchange)
            if state is None:
                continue
            if state.is_connected:
                stats["active_connections"] += 1
            stats["total_updates"] += state.total_updates
            if state.change:
                total_change += abs(state.change)
            if state.last_update and state.last_update > stats["last_update"]:
                stats["last_update"] = state.last_update
        if stats["active_connections"]:
            stats["avg_price_change"] = float(total_change / stats["active_connections"])
        return stats
