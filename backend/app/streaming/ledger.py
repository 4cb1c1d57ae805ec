"""In-memory event store and per-stream command handling.

Both ledgers are event-sourced: the store keeps each stream's ordered event
history, and current state is obtained by folding an ``evolve`` function over
that history from an initial state. Commands go through ``CommandHandler``,
which serializes writes per stream id, appends the decided events, and then
publishes them to the event bus in commit order.

Known limit: nothing is ever evicted. Every stream keeps its full history
for the life of the process (a 1 Hz feed adds about 86k ``PriceUpdated``
events per symbol per day), and the per-stream lock and state cache entries
stay once created. Long-running deployments need snapshotting or a durable
store behind ``InMemoryEventStore``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .bus import EventBus
from .errors import ConcurrencyError, StreamingError, UnknownCommandError

logger = logging.getLogger(__name__)

S = TypeVar("S")
E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class RecordedEvent(Generic[E]):
    """An event as stored, with its positions in the stream and in the store."""

    stream_id: str
    stream_position: int
    global_position: int
    event: E


@dataclass(frozen=True, slots=True)
class CommandResult(Generic[S, E]):
    """Outcome of one command. Domain rejections come back here, not as raises."""

    success: bool
    new_state: S | None = None
    new_events: tuple[E, ...] = ()
    next_expected_version: int = 0
    error: str | None = None


class InMemoryEventStore(Generic[E]):
    """Append-only event streams keyed by stream id."""

    def __init__(self) -> None:
        self._streams: dict[str, list[RecordedEvent[E]]] = {}
        self._global_position = 0

    def read_stream(self, stream_id: str) -> list[RecordedEvent[E]]:
        """All recorded events of a stream, oldest first. Empty if unknown."""
        return list(self._streams.get(stream_id, ()))

    def stream_version(self, stream_id: str) -> int:
        return len(self._streams.get(stream_id, ()))

    def stream_ids(self) -> list[str]:
        return list(self._streams)

    def append(self, stream_id: str, events: Sequence[E], expected_version: int) -> int:
        """Append events atomically. Returns the stream's next expected version.

        Raises ConcurrencyError if the stream has moved past ``expected_version``.
        """
        stream = self._streams.setdefault(stream_id, [])
        if len(stream) != expected_version:
            raise ConcurrencyError(
                f"Stream {stream_id} is at version {len(stream)}, expected {expected_version}"
            )
        for event in events:
            self._global_position += 1
            stream.append(
                RecordedEvent(
                    stream_id=stream_id,
                    stream_position=len(stream) + 1,
                    global_position=self._global_position,
                    event=event,
                )
            )
        return len(stream)

    def aggregate_stream(
        self,
        stream_id: str,
        evolve: Callable[[S, E], S],
        initial_state: Callable[[], S],
    ) -> tuple[S, int]:
        """Replay a stream from the initial state. Returns (state, version)."""
        state = initial_state()
        stream = self._streams.get(stream_id, ())
        for recorded in stream:
            state = evolve(state, recorded.event)
        return state, len(stream)


class CommandHandler(Generic[S, E]):
    """Applies commands to event-sourced aggregates, one writer per stream id.

    ``decide(command, state)`` returns the events a command produces (possibly
    none) or raises a ``StreamingError`` to reject it. Rejections are returned
    as unsuccessful ``CommandResult`` objects. ``UnknownCommandError`` is a
    programming error and propagates.
    """

    def __init__(
        self,
        store: InMemoryEventStore[E],
        decide: Callable[[Any, S], Iterable[E]],
        evolve: Callable[[S, E], S],
        initial_state: Callable[[], S],
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._decide = decide
        self._evolve = evolve
        self._initial_state = initial_state
        self._bus = bus
        self._locks: dict[str, asyncio.Lock] = {}
        # stream_id -> (state, version); replayed from the store on miss
        self._states: dict[str, tuple[S, int]] = {}

    @property
    def store(self) -> InMemoryEventStore[E]:
        return self._store

    def _lock_for(self, stream_id: str) -> asyncio.Lock:
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = self._locks[stream_id] = asyncio.Lock()
        return lock

    def current(self, stream_id: str) -> tuple[S, int]:
        """Current (state, version) of a stream without issuing a command."""
        version = self._store.stream_version(stream_id)
        cached = self._states.get(stream_id)
        if cached is not None and cached[1] == version:
            return cached
        state, version = self._store.aggregate_stream(stream_id, self._evolve, self._initial_state)
        self._states[stream_id] = (state, version)
        return state, version

    def replay(self, stream_id: str) -> S:
        """Rebuild a stream's state from its full event history."""
        state, _ = self._store.aggregate_stream(stream_id, self._evolve, self._initial_state)
        return state

    async def handle(self, stream_id: str, command: Any) -> CommandResult[S, E]:
        async with self._lock_for(stream_id):
            state, version = self.current(stream_id)
            try:
                events = tuple(self._decide(command, state))
            except UnknownCommandError:
                raise
            except StreamingError as e:
                logger.warning("Command %s rejected for %s: %s", type(command).__name__, stream_id, e)
                return CommandResult(
                    success=False,
                    new_state=state,
                    next_expected_version=version,
                    error=str(e),
                )

            if not events:
                return CommandResult(success=True, new_state=state, next_expected_version=version)

            for event in events:
                state = self._evolve(state, event)
            try:
                next_version = self._store.append(stream_id, events, expected_version=version)
            except ConcurrencyError as e:
                logger.error("Append conflict on %s: %s", stream_id, e)
                self._states.pop(stream_id, None)
                return CommandResult(success=False, next_expected_version=version, error=str(e))
            self._states[stream_id] = (state, next_version)

        if self._bus is not None:
            self._bus.publish(stream_id, events)

        return CommandResult(
            success=True,
            new_state=state,
            new_events=events,
            next_expected_version=next_version,
        )
