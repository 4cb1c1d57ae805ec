"""Abstract interface for price sources."""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import PriceSample


class SourceHandle:
    """One open connection to a price source for a single symbol.

    Concrete sources subclass this to carry whatever they need (a page, a
    client, a simulator slot). The ingestion controller never looks inside.
    """

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        self.closed = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.symbol} closed={self.closed}>"


class PriceSource(ABC):
    """Contract for external price providers.

    A source only answers questions about handles it opened. Ownership of a
    handle belongs to whoever opened it, and only that owner may use or close it.

    Lifecycle per symbol:
        handle = await source.open("BTCUSD")       # raises SymbolNotFoundError
        sample = await source.read_current_price(handle)
        changed = await source.wait_for_change(handle, sample, timeout=30)
        ...
        await source.close(handle)
    """

    @abstractmethod
    async def open(self, ticker: str) -> SourceHandle:
        """Open and validate a handle serving real data for ``ticker``.

        Raises SymbolNotFoundError if the symbol does not resolve, or another
        exception for transient connection problems.
        """

    @abstractmethod
    async def read_current_price(self, handle: SourceHandle) -> PriceSample | None:
        """Current price, or None if none is available right now.

        Raises TransientReadError on a failed extraction and SourceCrashError
        if the handle is no longer usable.
        """

    @abstractmethod
    async def wait_for_change(
        self,
        handle: SourceHandle,
        last_sample: PriceSample | None,
        timeout: float,
    ) -> bool:
        """Wait until the displayed price differs from ``last_sample``.

        Returns True on a change, False when ``timeout`` elapsed without one.
        Raises SourceCrashError if the handle becomes unusable.
        """

    @abstractmethod
    async def close(self, handle: SourceHandle) -> None:
        """Release a handle. Safe to call more than once."""

    def is_usable(self, handle: SourceHandle) -> bool:
        """Whether the handle can still serve prices."""
        return not handle.closed

    async def aclose(self) -> None:
        """Release source-wide resources. Default: nothing to release."""
