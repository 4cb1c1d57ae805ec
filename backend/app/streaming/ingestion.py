"""Per-symbol ingestion lifecycle: start, watch, restart and stop price sources.

Each symbol with subscribers owns exactly one ``IngestionSession``: an open
``SourceHandle`` plus a background watch task that waits for price changes and
records them on the price ledger. The controller only writes to the price
ledger; fan-out happens through the event bus.

State machine per symbol::

    IDLE -> STARTING -> ACTIVE <-> RESTARTING -> IDLE

Start and stop for a symbol run under that symbol's lock, and both re-check
the subscription ledger once they hold it, so concurrent subscribe and
unsubscribe calls converge on "a session exists iff the symbol has
subscribers".
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from .config import StreamingConfig
from .errors import IngestionStartFailure, SourceCrashError
from .interface import PriceSource, SourceHandle
from .models import PriceSample
from .prices import PriceLedger
from .retry import RetryExhausted, RetryPolicy, retry_async
from .subscriptions import SubscriptionLedger

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    RESTARTING = "restarting"


@dataclass
class IngestionSession:
    """One live price source handle and the task watching it."""

    symbol: str
    state: IngestionState = IngestionState.STARTING
    handle: SourceHandle | None = None
    task: asyncio.Task | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    last_sample: PriceSample | None = None
    updates: int = 0
    restarts: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "state": self.state.value,
            "updates": self.updates,
            "restarts": self.restarts,
            "last_price": self.last_sample.display if self.last_sample else None,
            "started_at": self.started_at,
        }


class IngestionController:
    """Owns at most one ingestion session per symbol.

    Per-symbol locks are kept for the life of the controller, one small entry
    for every symbol ever started.
    """

    def __init__(
        self,
        source: PriceSource,
        prices: PriceLedger,
        subscriptions: SubscriptionLedger,
        config: StreamingConfig | None = None,
    ) -> None:
        self._source = source
        self._prices = prices
        self._subscriptions = subscriptions
        self._config = config or StreamingConfig()
        self._sessions: dict[str, IngestionSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def source(self) -> PriceSource:
        return self._source

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = self._locks[symbol] = asyncio.Lock()
        return lock

    def _policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self._config.start_retries, delay=self._config.retry_delay)

    # --- Public API ---

    async def ensure_started(self, symbol: str) -> IngestionSession | None:
        """Start ingestion for ``symbol`` unless a healthy session already exists.

        Returns the live session, or None if the symbol lost its subscribers
        while waiting for the lock. Raises IngestionStartFailure when the source
        could not be validated within the retry policy.
        """
        async with self._lock_for(symbol):
            existing = self._sessions.get(symbol)
            if existing is not None and self._is_healthy(existing):
                logger.info("%s ingestion already %s, reusing", symbol, existing.state.value)
                return existing
            if existing is not None:
                logger.info("%s ingestion exists but is unhealthy, recreating", symbol)
                self._sessions.pop(symbol, None)
                await self._teardown(existing, reason="recreated")

            if not self._subscriptions.has_subscribers(symbol):
                logger.info("%s has no subscribers, not starting ingestion", symbol)
                return None

            session = IngestionSession(symbol=symbol)
            self._sessions[symbol] = session
            try:
                session.handle = await retry_async(
                    lambda: self._source.open(symbol),
                    self._policy(),
                    label=f"Start {symbol}",
                )
            except RetryExhausted as e:
                self._sessions.pop(symbol, None)
                raise IngestionStartFailure(symbol, e.attempts, e.last_error) from e
            except BaseException:
                self._sessions.pop(symbol, None)
                raise

            session.state = IngestionState.ACTIVE
            session.task = asyncio.create_task(self._watch(session), name=f"ingest-{symbol}")
            logger.info("%s ingestion active", symbol)
            return session

    async def stop(self, symbol: str, force: bool = False) -> bool:
        """Tear down ingestion for ``symbol``.

        Unless ``force`` is set, a symbol that has regained subscribers is left
        running. Returns True if a session was torn down.
        """
        async with self._lock_for(symbol):
            if not force and self._subscriptions.has_subscribers(symbol):
                logger.info("%s still has subscribers, keeping ingestion", symbol)
                return False
            session = self._sessions.pop(symbol, None)
            if session is None:
                logger.debug("%s has no ingestion session, nothing to stop", symbol)
                return False
            await self._teardown(session)
            logger.info("%s ingestion stopped", symbol)
            return True

    async def restart(self, symbol: str) -> IngestionSession | None:
        """Tear down and start a fresh session for ``symbol``."""
        logger.info("Restarting %s ingestion", symbol)
        await self.stop(symbol, force=True)
        return await self.ensure_started(symbol)

    async def shutdown(self) -> None:
        symbols = list(self._sessions)
        logger.info("Stopping %d ingestion sessions", len(symbols))
        await asyncio.gather(*(self.stop(symbol, force=True) for symbol in symbols), return_exceptions=True)

    def tracked_symbols(self) -> list[str]:
        return sorted(self._sessions)

    def session(self, symbol: str) -> IngestionSession | None:
        return self._sessions.get(symbol)

    def session_state(self, symbol: str) -> IngestionState:
        """Lifecycle state of a symbol's session, IDLE when none exists."""
        session = self._sessions.get(symbol)
        return session.state if session is not None else IngestionState.IDLE

    def has_active(self, symbol: str) -> bool:
        session = self._sessions.get(symbol)
        return session is not None and self._is_healthy(session)

    def status(self) -> dict[str, dict]:
        return {symbol: session.to_dict() for symbol, session in sorted(self._sessions.items())}

    def current_prices(self) -> dict[str, str]:
        """Last observed display price per symbol."""
        return {
            symbol: session.last_sample.display
            for symbol, session in self._sessions.items()
            if session.last_sample is not None
        }

    # --- Internals ---

    def _is_healthy(self, session: IngestionSession) -> bool:
        if session.state is IngestionState.STARTING:
            return True
        if session.state is IngestionState.RESTARTING:
            return session.task is not None and not session.task.done()
        if session.state is IngestionState.ACTIVE:
            return (
                session.task is not None
                and not session.task.done()
                and session.handle is not None
                and self._source.is_usable(session.handle)
            )
        return False

    async def _teardown(self, session: IngestionSession, reason: str = "unsubscribed") -> None:
        """Cancel the watch task, close the handle, record the disconnect."""
        session.cancel.set()
        session.state = IngestionState.IDLE
        task = session.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=self._config.stop_grace)
            if not done:
                logger.warning("Watcher for %s did not stop within %.1fs", session.symbol, self._config.stop_grace)
        await self._close_handle(session)
        await self._record_connection_lost(session.symbol, reason)

    async def _close_handle(self, session: IngestionSession) -> None:
        handle, session.handle = session.handle, None
        if handle is None:
            return
        try:
            await self._source.close(handle)
        except Exception as e:
            logger.error("Error closing %s source handle: %s", session.symbol, e)

    async def _record_connection_lost(self, symbol: str, reason: str) -> None:
        state = self._prices.current_state(symbol, self._config.exchange)
        if state is not None and state.is_connected:
            await self._prices.lose_connection(symbol, self._config.exchange, reason=reason)

    async def _pause(self, session: IngestionSession, delay: float) -> None:
        """Sleep for ``delay`` or until the session is cancelled."""
        try:
            await asyncio.wait_for(session.cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _watch(self, session: IngestionSession) -> None:
        symbol = session.symbol
        logger.info("Watcher for %s started", symbol)
        try:
            while not session.cancel.is_set():
                if session.handle is None or not self._source.is_usable(session.handle):
                    await self._record_connection_lost(symbol, "source closed")
                    if not await self._restart(session):
                        break
                    continue

                try:
                    changed = await self._source.wait_for_change(
                        session.handle, session.last_sample, self._config.wait_timeout
                    )
                    if not changed:
                        continue
                    sample = await self._source.read_current_price(session.handle)
                    if sample is None:
                        logger.debug("No current price extracted for %s", symbol)
                        continue
                    await self._record_price(session, sample)
                except SourceCrashError as e:
                    logger.warning("Price source for %s crashed: %s", symbol, e)
                    await self._record_connection_lost(symbol, str(e))
                    if not await self._restart(session):
                        break
                except Exception as e:
                    logger.warning("%s watcher error: %s", symbol, e)
                    await self._pause(session, self._config.read_error_pause)
        finally:
            logger.info("Watcher for %s stopped", symbol)
            if not session.cancel.is_set() and self._sessions.get(symbol) is session:
                # Exited on its own: nobody else will clean this session up
                self._sessions.pop(symbol, None)
                session.state = IngestionState.IDLE
                await self._close_handle(session)

    async def _record_price(self, session: IngestionSession, sample: PriceSample) -> None:
        session.last_sample = sample
        result = await self._prices.update_price(
            session.symbol,
            self._config.exchange,
            sample.price,
            display_price=sample.display,
        )
        if result.success:
            session.updates += 1
        else:
            logger.warning("Price ledger rejected update for %s: %s", session.symbol, result.error)

    async def _restart(self, session: IngestionSession) -> bool:
        """Replace a dead handle while subscribers remain. False means stop watching."""
        symbol = session.symbol

        def abandoned() -> bool:
            return session.cancel.is_set() or not self._subscriptions.has_subscribers(symbol)

        if abandoned():
            logger.info("Source for %s closed and no subscribers remain, stopping watcher", symbol)
            return False

        logger.info("Source for %s closed but subscribers remain, restarting", symbol)
        session.state = IngestionState.RESTARTING
        session.restarts += 1
        await self._close_handle(session)

        while not abandoned():
            try:
                handle = await retry_async(
                    lambda: self._source.open(symbol),
                    self._policy(),
                    give_up=abandoned,
                    label=f"Restart {symbol}",
                )
            except RetryExhausted:
                if abandoned():
                    break
                logger.warning("Restart of %s failed, retrying in %.1fs", symbol, self._config.restart_delay)
                await self._pause(session, self._config.restart_delay)
                continue

            if session.cancel.is_set():
                await self._source.close(handle)
                break
            session.handle = handle
            session.state = IngestionState.ACTIVE
            logger.info("Successfully restarted source for %s", symbol)
            return True

        session.state = IngestionState.IDLE
        return False
