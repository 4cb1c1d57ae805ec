"""Fixtures for streaming engine tests.

``FakePriceSource`` is a scripted PriceSource: tests set prices, make opens
fail, or crash handles, and the ingestion controller reacts as it would to a
real provider.
"""

import asyncio

import pytest
import pytest_asyncio

from app.streaming.config import StreamingConfig
from app.streaming.errors import SourceCrashError, SymbolNotFoundError, TransientReadError
from app.streaming.interface import PriceSource, SourceHandle
from app.streaming.models import PriceSample
from app.streaming.service import StreamingService


class FakeHandle(SourceHandle):
    pass


class FakePriceSource(PriceSource):
    def __init__(self, not_found: set[str] | None = None) -> None:
        self.not_found = set(not_found or ())
        self.prices: dict[str, str] = {}
        self.fail_opens = 0
        self.read_errors = 0
        self.open_delay = 0.0
        self.open_calls: list[str] = []
        self.closed: list[str] = []
        self.handles: list[FakeHandle] = []

    async def open(self, ticker: str) -> SourceHandle:
        self.open_calls.append(ticker)
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if ticker in self.not_found:
            raise SymbolNotFoundError(f"Ticker {ticker} not found")
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise ConnectionError("navigation timeout")
        handle = FakeHandle(ticker)
        self.handles.append(handle)
        return handle

    async def read_current_price(self, handle: SourceHandle) -> PriceSample | None:
        if handle.closed:
            raise SourceCrashError(f"{handle.symbol} closed")
        if self.read_errors > 0:
            self.read_errors -= 1
            raise TransientReadError("price element missing")
        display = self.prices.get(handle.symbol)
        return PriceSample.from_display(handle.symbol, display) if display else None

    async def wait_for_change(self, handle, last_sample, timeout) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if handle.closed:
                raise SourceCrashError(f"{handle.symbol} closed")
            display = self.prices.get(handle.symbol)
            if display and (last_sample is None or display != last_sample.display):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.005)

    async def close(self, handle: SourceHandle) -> None:
        if not handle.closed:
            handle.closed = True
            self.closed.append(handle.symbol)

    def live_handles(self, symbol: str) -> list[FakeHandle]:
        return [h for h in self.handles if h.symbol == symbol and not h.closed]

    def crash(self, symbol: str) -> None:
        """Make every live handle for ``symbol`` unusable without a close()."""
        for handle in self.live_handles(symbol):
            handle.closed = True


@pytest.fixture
def fast_config():
    """Config with tiny delays so lifecycle tests run in milliseconds."""
    return StreamingConfig(
        retry_delay=0.01,
        wait_timeout=0.1,
        poll_interval=0.01,
        restart_delay=0.02,
        stop_grace=0.5,
        read_error_pause=0.01,
        idle_interval=0.01,
    )


@pytest.fixture
def source():
    return FakePriceSource(not_found={"XXXXX"})


@pytest_asyncio.fixture
async def service(source, fast_config):
    svc = StreamingService(source=source, config=fast_config)
    yield svc
    await svc.shutdown()
