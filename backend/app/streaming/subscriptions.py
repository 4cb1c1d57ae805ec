"""Event-sourced subscription ledger: who is watching each symbol."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from .bus import EventBus
from .errors import UnknownCommandError
from .ledger import CommandHandler, CommandResult, InMemoryEventStore

logger = logging.getLogger(__name__)


# --- Commands ---


@dataclass(frozen=True, slots=True)
class SubscribeTicker:
    session_id: str
    symbol: str


@dataclass(frozen=True, slots=True)
class UnsubscribeTicker:
    session_id: str
    symbol: str


SubscriptionCommand = SubscribeTicker | UnsubscribeTicker


# --- Events ---


@dataclass(frozen=True, slots=True)
class TickerSubscribed:
    session_id: str
    symbol: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class TickerUnsubscribed:
    session_id: str
    symbol: str
    timestamp: float


SubscriptionEvent = TickerSubscribed | TickerUnsubscribed


@dataclass(frozen=True, slots=True)
class SubscriptionState:
    """Sessions subscribed to one symbol. Never empty: no subscribers means ``None``."""

    symbol: str
    subscribers: frozenset[str]
    created_at: float
    last_activity: float

    @property
    def subscriber_count(self) -> int:
        return len(self.subscribers)


def initial_state() -> SubscriptionState | None:
    return None


def decide(command: SubscriptionCommand, state: SubscriptionState | None) -> list[SubscriptionEvent]:
    """Turn a command into events. Re-subscribing and stray unsubscribes produce none."""
    timestamp = time.time()

    if isinstance(command, SubscribeTicker):
        if state is not None and command.session_id in state.subscribers:
            return []
        return [TickerSubscribed(session_id=command.session_id, symbol=command.symbol, timestamp=timestamp)]

    if isinstance(command, UnsubscribeTicker):
        if state is None or command.session_id not in state.subscribers:
            logger.debug("Session %s not subscribed to %s, ignoring unsubscribe", command.session_id, command.symbol)
            return []
        return [TickerUnsubscribed(session_id=command.session_id, symbol=command.symbol, timestamp=timestamp)]

    raise UnknownCommandError(f"Unknown subscription command: {type(command).__name__}")


def evolve(state: SubscriptionState | None, event: SubscriptionEvent) -> SubscriptionState | None:
    if isinstance(event, TickerSubscribed):
        subscribers = (state.subscribers if state else frozenset()) | {event.session_id}
        return SubscriptionState(
            symbol=event.symbol,
            subscribers=subscribers,
            created_at=state.created_at if state else event.timestamp,
            last_activity=event.timestamp,
        )

    if isinstance(event, TickerUnsubscribed):
        if state is None:
            return None
        remaining = state.subscribers - {event.session_id}
        if not remaining:
            return None
        return SubscriptionState(
            symbol=state.symbol,
            subscribers=remaining,
            created_at=state.created_at,
            last_activity=event.timestamp,
        )

    return state


class SubscriptionLedger:
    """Subscription aggregates, one stream per symbol.

    Writes for one symbol are serialized; different symbols are independent.
    """

    def __init__(self, bus: EventBus | None = None) -> None:
        self._store: InMemoryEventStore[SubscriptionEvent] = InMemoryEventStore()
        self._handler: CommandHandler[SubscriptionState | None, SubscriptionEvent] = CommandHandler(
            store=self._store,
            decide=decide,
            evolve=evolve,
            initial_state=initial_state,
            bus=bus,
        )

    async def subscribe(self, symbol: str, session_id: str) -> CommandResult:
        result = await self._handler.handle(symbol, SubscribeTicker(session_id=session_id, symbol=symbol))
        if result.new_events:
            logger.info(
                "Session %s subscribed to %s. Total subscribers: %d",
                session_id,
                symbol,
                result.new_state.subscriber_count,
            )
        return result

    async def unsubscribe(self, symbol: str, session_id: str) -> CommandResult:
        result = await self._handler.handle(symbol, UnsubscribeTicker(session_id=session_id, symbol=symbol))
        if result.new_events:
            remaining = result.new_state.subscriber_count if result.new_state else 0
            logger.info("Session %s unsubscribed from %s. Remaining subscribers: %d", session_id, symbol, remaining)
        return result

    def state(self, symbol: str) -> SubscriptionState | None:
        state, _ = self._handler.current(symbol)
        return state

    def replay(self, symbol: str) -> SubscriptionState | None:
        return self._handler.replay(symbol)

    def events(self, symbol: str) -> list[SubscriptionEvent]:
        return [recorded.event for recorded in self._store.read_stream(symbol)]

    def active_symbols_with_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for symbol in self._store.stream_ids():
            state = self.state(symbol)
            if state is not None:
                counts[symbol] = state.subscriber_count
        return counts

    def sessions_for(self, symbol: str) -> frozenset[str]:
        state = self.state(symbol)
        return state.subscribers if state else frozenset()

    def symbols_for_session(self, session_id: str) -> frozenset[str]:
        """Every symbol the session is currently subscribed to, derived from the ledger."""
        return frozenset(
            symbol for symbol in self._store.stream_ids() if session_id in self.sessions_for(symbol)
        )

    def has_subscribers(self, symbol: str) -> bool:
        return self.state(symbol) is not None

    def subscriber_count(self, symbol: str) -> int:
        state = self.state(symbol)
        return state.subscriber_count if state else 0
