"""Tests for the ingestion controller lifecycle."""

import asyncio
from decimal import Decimal

import pytest

from app.streaming.errors import IngestionStartFailure
from app.streaming.ingestion import IngestionSession, IngestionState
from app.streaming.prices import ConnectionEstablished, ConnectionLost, PriceUpdated


@pytest.mark.asyncio
class TestIngestionStart:
    """Tests for ensure_started."""

    async def test_start_opens_source(self, service, source):
        """Test that a subscribed symbol gets an active session with a watch task."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")

        assert session.state is IngestionState.ACTIVE
        assert session.task is not None and not session.task.done()
        assert source.open_calls == ["BTCUSD"]
        assert service.ingestion.tracked_symbols() == ["BTCUSD"]
        assert service.ingestion.has_active("BTCUSD")

    async def test_no_subscribers_does_not_start(self, service, source):
        """Test that ensure_started is a no-op for a symbol nobody subscribes to."""
        assert await service.ingestion.ensure_started("BTCUSD") is None
        assert source.open_calls == []
        assert service.ingestion.tracked_symbols() == []

    async def test_concurrent_starts_open_once(self, service, source):
        """Test that concurrent starts for a symbol share a single session."""
        source.open_delay = 0.05
        await service.subscriptions.subscribe("BTCUSD", "s1")
        await service.subscriptions.subscribe("BTCUSD", "s2")

        first, second = await asyncio.gather(
            service.ingestion.ensure_started("BTCUSD"),
            service.ingestion.ensure_started("BTCUSD"),
        )

        assert first is second
        assert source.open_calls == ["BTCUSD"]

    async def test_transient_open_failure_retried(self, service, source):
        """Test that an open failing twice succeeds on the third attempt."""
        source.fail_opens = 2
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")

        assert session.state is IngestionState.ACTIVE
        assert source.open_calls == ["BTCUSD"] * 3

    async def test_start_failure_after_three_attempts(self, service, source):
        """Test that an unknown symbol raises IngestionStartFailure after three attempts."""
        await service.subscriptions.subscribe("XXXXX", "s1")

        with pytest.raises(IngestionStartFailure) as exc_info:
            await service.ingestion.ensure_started("XXXXX")

        assert exc_info.value.symbol == "XXXXX"
        assert exc_info.value.attempts == 3
        assert source.open_calls == ["XXXXX"] * 3
        assert service.ingestion.tracked_symbols() == []

    async def test_unhealthy_session_is_recreated(self, service, source):
        """Test that a session with no running watcher is replaced."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        stale = IngestionSession(symbol="BTCUSD", state=IngestionState.ACTIVE)
        service.ingestion._sessions["BTCUSD"] = stale

        session = await service.ingestion.ensure_started("BTCUSD")

        assert session is not stale
        assert stale.cancel.is_set()
        assert session.state is IngestionState.ACTIVE


@pytest.mark.asyncio
class TestIngestionWatch:
    """Tests for the watch loop."""

    async def test_price_changes_reach_ledger(self, service, source, wait_until):
        """Test that displayed prices are parsed and recorded on the price ledger."""
        source.prices["BTCUSD"] = "115,730.65"
        await service.subscriptions.subscribe("BTCUSD", "s1")
        await service.ingestion.ensure_started("BTCUSD")

        assert await wait_until(lambda: service.prices.current_state("BTCUSD", "BINANCE") is not None)
        state = service.prices.current_state("BTCUSD", "BINANCE")
        assert state.current_price == Decimal("115730.65")
        assert state.display_price == "115,730.65"

        source.prices["BTCUSD"] = "115,731.00"
        assert await wait_until(lambda: service.prices.current_state("BTCUSD", "BINANCE").total_updates == 2)
        assert service.ingestion.current_prices() == {"BTCUSD": "115,731.00"}

    async def test_unchanged_price_not_recorded_twice(self, service, source):
        """Test that the same displayed price is recorded once."""
        source.prices["BTCUSD"] = "100.00"
        await service.subscriptions.subscribe("BTCUSD", "s1")
        await service.ingestion.ensure_started("BTCUSD")

        await asyncio.sleep(0.2)

        events = service.prices.events("BTCUSD", "BINANCE")
        assert [type(e) for e in events] == [ConnectionEstablished, PriceUpdated]

    async def test_transient_read_errors_are_skipped(self, service, source, wait_until):
        """Test that failed extractions pause and retry without ending the session."""
        source.read_errors = 2
        source.prices["BTCUSD"] = "100.00"
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")

        assert await wait_until(lambda: session.updates == 1)
        assert session.restarts == 0
        assert source.open_calls == ["BTCUSD"]

    async def test_crash_with_subscribers_restarts(self, service, source, wait_until):
        """Test that a crashed source is reopened while subscribers remain."""
        source.prices["BTCUSD"] = "100.00"
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")
        assert await wait_until(lambda: session.updates == 1)

        source.crash("BTCUSD")

        assert await wait_until(lambda: len(source.open_calls) == 2 and session.state is IngestionState.ACTIVE)
        assert session.restarts == 1
        assert service.ingestion.session("BTCUSD") is session
        assert any(isinstance(e, ConnectionLost) for e in service.prices.events("BTCUSD", "BINANCE"))

        source.prices["BTCUSD"] = "101.00"
        assert await wait_until(lambda: session.updates == 2)
        state = service.prices.current_state("BTCUSD", "BINANCE")
        assert state.is_connected
        assert state.connection_count == 2

    async def test_restart_keeps_retrying(self, service, source, wait_until):
        """Test that a restart outlasting one retry round eventually succeeds."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")

        source.fail_opens = 5
        source.crash("BTCUSD")

        assert await wait_until(lambda: session.state is IngestionState.ACTIVE and len(source.live_handles("BTCUSD")) == 1)
        assert len(source.open_calls) == 7

    async def test_restarting_session_is_reused(self, service, source, wait_until):
        """Test that a start request during a restart joins the restarting session."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")

        source.fail_opens = 10_000
        source.crash("BTCUSD")
        assert await wait_until(lambda: session.state is IngestionState.RESTARTING)

        await service.subscriptions.subscribe("BTCUSD", "s2")
        assert await service.ingestion.ensure_started("BTCUSD") is session

    async def test_crash_without_subscribers_stops(self, service, source, wait_until):
        """Test that a crashed source with no subscribers left is not restarted."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")
        await service.subscriptions.unsubscribe("BTCUSD", "s1")

        source.crash("BTCUSD")

        assert await wait_until(lambda: session.task.done())
        assert service.ingestion.tracked_symbols() == []
        assert source.open_calls == ["BTCUSD"]


@pytest.mark.asyncio
class TestIngestionStop:
    """Tests for stop and shutdown."""

    async def test_stop_closes_handle_and_records_loss(self, service, source, wait_until):
        """Test that stopping cancels the watcher, closes the handle and records ConnectionLost."""
        source.prices["BTCUSD"] = "100.00"
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")
        assert await wait_until(lambda: session.updates == 1)

        await service.subscriptions.unsubscribe("BTCUSD", "s1")
        assert await service.ingestion.stop("BTCUSD")

        assert session.task.done()
        assert session.state is IngestionState.IDLE
        assert source.closed == ["BTCUSD"]
        last = service.prices.events("BTCUSD", "BINANCE")[-1]
        assert isinstance(last, ConnectionLost)
        assert last.reason == "unsubscribed"
        assert not service.prices.current_state("BTCUSD", "BINANCE").is_connected

    async def test_stop_skipped_while_subscribed(self, service, source):
        """Test that a non-forced stop leaves a still-subscribed symbol running."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        await service.ingestion.ensure_started("BTCUSD")

        assert not await service.ingestion.stop("BTCUSD")
        assert service.ingestion.has_active("BTCUSD")

    async def test_stop_unknown_symbol(self, service):
        """Test that stopping a symbol with no session reports nothing stopped."""
        assert not await service.ingestion.stop("ETHUSD")

    async def test_stop_during_restart(self, service, source, wait_until):
        """Test that a stop interrupts an endless restart."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")
        source.fail_opens = 10_000
        source.crash("BTCUSD")
        assert await wait_until(lambda: session.state is IngestionState.RESTARTING)

        await service.subscriptions.unsubscribe("BTCUSD", "s1")
        await service.ingestion.stop("BTCUSD")

        assert await wait_until(lambda: session.task.done())
        assert service.ingestion.tracked_symbols() == []

    async def test_restart(self, service, source):
        """Test that restart replaces the session with a fresh one."""
        await service.subscriptions.subscribe("BTCUSD", "s1")
        old = await service.ingestion.ensure_started("BTCUSD")

        new = await service.ingestion.restart("BTCUSD")

        assert new is not old
        assert old.task.done()
        assert source.closed == ["BTCUSD"]
        assert len(source.live_handles("BTCUSD")) == 1

    async def test_shutdown_stops_everything(self, service, source):
        """Test that shutdown tears down every session regardless of subscribers."""
        for symbol in ("BTCUSD", "ETHUSD"):
            await service.subscriptions.subscribe(symbol, "s1")
            await service.ingestion.ensure_started(symbol)

        await service.ingestion.shutdown()

        assert service.ingestion.tracked_symbols() == []
        assert sorted(source.closed) == ["BTCUSD", "ETHUSD"]

    async def test_status(self, service, source, wait_until):
        """Test the per-symbol status report."""
        source.prices["BTCUSD"] = "100.00"
        await service.subscriptions.subscribe("BTCUSD", "s1")
        session = await service.ingestion.ensure_started("BTCUSD")
        assert await wait_until(lambda: session.updates == 1)

        status = service.ingestion.status()["BTCUSD"]
        assert status["state"] == "active"
        assert status["updates"] == 1
        assert status["last_price"] == "100.00"

    async def test_session_state_follows_lifecycle(self, service, source, wait_until):
        """Test session_state across start, restart and stop."""
        assert service.ingestion.session_state("BTCUSD") is IngestionState.IDLE

        await service.subscriptions.subscribe("BTCUSD", "s1")
        await service.ingestion.ensure_started("BTCUSD")
        assert service.ingestion.session_state("BTCUSD") is IngestionState.ACTIVE

        source.fail_opens = 10_000
        source.crash("BTCUSD")
        assert await wait_until(lambda: service.ingestion.session_state("BTCUSD") is IngestionState.RESTARTING)

        await service.ingestion.stop("BTCUSD", force=True)
        assert service.ingestion.session_state("BTCUSD") is IngestionState.IDLE
