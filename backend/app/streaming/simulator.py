"""GBM-based price simulator exposed as a PriceSource."""

from __future__ import annotations

import asyncio
import logging
import math
import random

import numpy as np

from .errors import SourceCrashError, SymbolNotFoundError
from .interface import PriceSource, SourceHandle
from .models import PriceSample, format_price
from .seed_prices import DEFAULT_PARAMS, SEED_PRICES, SYMBOL_PARAMS

logger = logging.getLogger(__name__)


class GBMSimulator:
    """Geometric Brownian Motion random walk for a set of symbols.

        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    ``dt`` is the step length as a fraction of a year of continuous trading.
    """

    SECONDS_PER_YEAR = 365 * 24 * 3600
    DEFAULT_DT = 0.5 / SECONDS_PER_YEAR

    def __init__(
        self,
        symbols: list[str],
        dt: float = DEFAULT_DT,
        event_probability: float = 0.001,
    ) -> None:
        self._dt = dt
        self._event_prob = event_probability
        self._symbols: list[str] = []
        self._prices: dict[str, float] = {}
        self._params: dict[str, dict[str, float]] = {}
        for symbol in symbols:
            self.add_symbol(symbol)

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    def step(self) -> dict[str, float]:
        """Advance every symbol by one time step. Returns {symbol: new_price}."""
        n = len(self._symbols)
        if n == 0:
            return {}

        z = np.random.standard_normal(n)
        sigma = np.array([self._params[s]["sigma"] for s in self._symbols])
        mu = np.array([self._params[s]["mu"] for s in self._symbols])
        growth = np.exp((mu - 0.5 * sigma**2) * self._dt + sigma * math.sqrt(self._dt) * z)

        result: dict[str, float] = {}
        for i, symbol in enumerate(self._symbols):
            price = self._prices[symbol] * float(growth[i])
            # Occasional 2-5% jump
            if random.random() < self._event_prob:
                price *= 1 + random.uniform(0.02, 0.05) * random.choice([-1, 1])
            self._prices[symbol] = price
            result[symbol] = round(price, 2)
        return result

    def add_symbol(self, symbol: str) -> None:
        if symbol in self._prices:
            return
        self._symbols.append(symbol)
        self._prices[symbol] = SEED_PRICES.get(symbol, random.uniform(50.0, 300.0))
        self._params[symbol] = SYMBOL_PARAMS.get(symbol, dict(DEFAULT_PARAMS))

    def remove_symbol(self, symbol: str) -> None:
        if symbol not in self._prices:
            return
        self._symbols.remove(symbol)
        del self._prices[symbol]
        del self._params[symbol]

    def get_price(self, symbol: str) -> float | None:
        return self._prices.get(symbol)


class SimulatedHandle(SourceHandle):
    pass


class SimulatorPriceSource(PriceSource):
    """PriceSource backed by the GBM simulator.

    A background task steps the simulation every ``update_interval`` seconds
    while at least one handle is open. Symbols listed in ``unavailable`` do
    not resolve, mimicking a quote page that reports "not found".
    """

    def __init__(
        self,
        update_interval: float = 0.5,
        poll_interval: float = 1.0,
        event_probability: float = 0.001,
        unavailable: set[str] | None = None,
    ) -> None:
        self._interval = update_interval
        self._poll_interval = poll_interval
        self._sim = GBMSimulator(symbols=[], event_probability=event_probability)
        self._unavailable = set(unavailable or ())
        self._handles: set[SimulatedHandle] = set()
        self._task: asyncio.Task | None = None

    async def open(self, ticker: str) -> SourceHandle:
        if ticker in self._unavailable:
            raise SymbolNotFoundError(f"Ticker {ticker} not found")
        self._sim.add_symbol(ticker)
        handle = SimulatedHandle(ticker)
        self._handles.add(handle)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_loop(), name="simulator-loop")
            logger.info("Simulator loop started")
        logger.info("Simulator: opened %s", ticker)
        return handle

    async def read_current_price(self, handle: SourceHandle) -> PriceSample | None:
        self._check(handle)
        display = self._display(handle.symbol)
        if display is None:
            return None
        return PriceSample.from_display(handle.symbol, display)

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
            display = self._display(handle.symbol)
            if display is not None and (last_sample is None or display != last_sample.display):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def close(self, handle: SourceHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self._handles.discard(handle)
        if not any(h.symbol == handle.symbol for h in self._handles):
            self._sim.remove_symbol(handle.symbol)
        logger.info("Simulator: closed %s", handle.symbol)
        if not self._handles:
            await self._stop_loop()

    async def aclose(self) -> None:
        for handle in list(self._handles):
            await self.close(handle)
        await self._stop_loop()

    def _check(self, handle: SourceHandle) -> None:
        if handle.closed:
            raise SourceCrashError(f"Simulator handle for {handle.symbol} is closed")

    def _display(self, symbol: str) -> str | None:
        price = self._sim.get_price(symbol)
        return format_price(price) if price is not None else None

    async def _stop_loop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Simulator loop stopped")
        self._task = None

    async def _run_loop(self) -> None:
        while True:
            try:
                self._sim.step()
            except Exception:
                logger.exception("Simulator step failed")
            await asyncio.sleep(self._interval)
