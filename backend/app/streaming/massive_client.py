"""Massive (Polygon.io) API client exposed as a PriceSource."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .errors import SourceCrashError, SymbolNotFoundError, TransientReadError
from .interface import PriceSource, SourceHandle
from .models import PriceSample, format_price

logger = logging.getLogger(__name__)


class MassiveHandle(SourceHandle):
    """Handle for one ticker polled through the snapshot endpoint."""

    def __init__(self, symbol: str, api_ticker: str) -> None:
        super().__init__(symbol)
        self.api_ticker = api_ticker
        self.latest: PriceSample | None = None
        self.fetched_at: float = 0.0


class MassivePriceSource(PriceSource):
    """PriceSource backed by the Massive (Polygon.io) REST API.

    Polls the single-ticker snapshot endpoint and reports the last trade
    price. Crypto symbols are queried as ``X:<SYMBOL>``.

    Rate limits:
      - Free tier: 5 req/min -> poll every 15s (default)
      - Paid tiers: higher limits -> poll every 1-5s
    """

    def __init__(
        self,
        api_key: str,
        market_type: str = "stocks",
        poll_interval: float = 15.0,
    ) -> None:
        self._api_key = api_key
        self._market_type = market_type.lower()
        self._interval = poll_interval
        self._client: Any = None  # Lazy import to avoid hard dependency at import time

    def _ensure_client(self) -> Any:
        if self._client is None:
            from massive import RESTClient

            self._client = RESTClient(api_key=self._api_key)
        return self._client

    def _api_ticker(self, symbol: str) -> str:
        return f"X:{symbol}" if self._market_type == "crypto" else symbol

    async def open(self, ticker: str) -> SourceHandle:
        self._ensure_client()
        handle = MassiveHandle(ticker, self._api_ticker(ticker))
        sample = await self._poll(handle)
        if sample is None:
            raise SymbolNotFoundError(f"Ticker {ticker} not found on Massive")
        logger.info("Massive: opened %s at %s", ticker, sample.display)
        return handle

    async def read_current_price(self, handle: SourceHandle) -> PriceSample | None:
        self._check(handle)
        if handle.latest is not None and time.monotonic() - handle.fetched_at < self._interval:
            return handle.latest
        return await self._poll(handle)

    async def wait_for_change(
        self,
        handle: SourceHandle,
        last_sample: PriceSample | None,
        timeout: float,
    ) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            self._check(handle)
            sample = await self._poll(handle)
            if sample is not None and (last_sample is None or sample.display != last_sample.display):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self._interval, remaining))

    async def close(self, handle: SourceHandle) -> None:
        if not handle.closed:
            handle.closed = True
            logger.info("Massive: closed %s", handle.symbol)

    async def aclose(self) -> None:
        self._client = None

    # --- Internal ---

    def _check(self, handle: SourceHandle) -> None:
        if handle.closed or self._client is None:
            raise SourceCrashError(f"Massive handle for {handle.symbol} is closed")

    async def _poll(self, handle: MassiveHandle) -> PriceSample | None:
        """Fetch one snapshot and convert it. None if it carries no trade."""
        try:
            # The Massive RESTClient is synchronous, run it in a thread
            snap = await asyncio.to_thread(self._fetch_snapshot, handle.api_ticker)
        except Exception as e:
            raise TransientReadError(f"Massive snapshot for {handle.symbol} failed: {e}") from e

        try:
            price = float(snap.last_trade.price)
            # Massive timestamps are Unix milliseconds
            timestamp = snap.last_trade.timestamp / 1000.0
        except (AttributeError, TypeError) as e:
            logger.warning("Skipping snapshot for %s: %s", handle.symbol, e)
            return None

        sample = PriceSample.from_display(handle.symbol, format_price(price), timestamp=timestamp)
        handle.latest = sample
        handle.fetched_at = time.monotonic()
        return sample

    def _fetch_snapshot(self, api_ticker: str) -> Any:
        """Synchronous call to the Massive REST API. Runs in a thread."""
        from massive.rest.models import SnapshotMarketType

        market = SnapshotMarketType.CRYPTO if self._market_type == "crypto" else SnapshotMarketType.STOCKS
        return self._client.get_snapshot_ticker(market_type=market, ticker=api_ticker)
