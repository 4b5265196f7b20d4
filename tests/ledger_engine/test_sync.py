"""
Sync Coordinator Tests.

============================================================
PURPOSE
============================================================
Tests for paginated loads, incremental sync and background loops.

TEST CATEGORIES:
- Pagination termination and the max_total_trades cap
- Watermark handling
- Single-flight protection
- Backoff, timeouts and error propagation
- Cancellation and background loops

============================================================
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ledger_engine.backoff import BackoffController
from ledger_engine.cache import LedgerCache
from ledger_engine.clock import MockClock
from ledger_engine.config import BackoffConfig, CacheConfig, SyncConfig, TimeoutConfig
from ledger_engine.errors import UpstreamError, create_network_error, create_rate_limit_error
from ledger_engine.sources.base import TradeHistorySource, TradePage, parse_trade_entries
from ledger_engine.sources.synthetic import SyntheticTradeSource
from ledger_engine.storage import InMemoryKeyValueStore
from ledger_engine.sync import SyncCoordinator, SyncKind
from ledger_engine.types import OrderSide, TradeRecord


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================
# TEST SOURCES
# ============================================================

def make_trades(count: int):
    return [
        TradeRecord(
            id=f"T{i}",
            pair="XBTUSD",
            side=OrderSide.BUY if i % 2 else OrderSide.SELL,
            price=Decimal("100") + i,
            volume=Decimal("1"),
            cost=Decimal("100") + i,
            fee=Decimal("0.1"),
            timestamp=NOW - timedelta(minutes=count - i),
        )
        for i in range(count)
    ]


class ListTradeSource(TradeHistorySource):
    """Serves a fixed trade list in pages, optionally raising queued errors first."""

    def __init__(self, trades, page_size=5, errors=None):
        self.trades = trades
        self.page_size = page_size
        self.errors = list(errors or [])
        self.calls = []

    @property
    def source_id(self) -> str:
        return "list"

    async def fetch_trades(self, trade_type, start, end, offset):
        self.calls.append((start, end, offset))
        if self.errors:
            raise self.errors.pop(0)
        window = [t for t in self.trades if start <= t.timestamp <= end]
        page = window[offset:offset + self.page_size]
        return TradePage(trades=page, next_offset=offset + len(page), raw_count=len(page))


class NewestFirstSource(ListTradeSource):
    """Serves the window newest first, like Kraken TradesHistory."""

    async def fetch_trades(self, trade_type, start, end, offset):
        self.calls.append((start, end, offset))
        window = sorted(
            (t for t in self.trades if start <= t.timestamp <= end),
            key=lambda t: t.timestamp,
            reverse=True,
        )
        page = window[offset:offset + self.page_size]
        return TradePage(trades=page, next_offset=offset + len(page), raw_count=len(page))


class GatedSource(ListTradeSource):
    """Blocks inside fetch_trades until released."""

    def __init__(self, trades, **kwargs):
        super().__init__(trades, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_trades(self, trade_type, start, end, offset):
        self.entered.set()
        await self.release.wait()
        return await super().fetch_trades(trade_type, start, end, offset)


class SlowSource(ListTradeSource):
    """Never answers within the request timeout."""

    async def fetch_trades(self, trade_type, start, end, offset):
        await asyncio.sleep(5)
        return TradePage()


class FailingSource(ListTradeSource):
    """Every call fails with a non-retryable error."""

    async def fetch_trades(self, trade_type, start, end, offset):
        self.calls.append(offset)
        raise UpstreamError("EGeneral:Invalid arguments")


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Clock frozen at NOW."""
    return MockClock(NOW)


@pytest.fixture
def cache(clock):
    """Empty cache on an in-memory store."""
    return LedgerCache(InMemoryKeyValueStore(clock=clock), CacheConfig(key_prefix="test-sync"), clock=clock)


@pytest.fixture
def sync_config():
    """Small pages and a low cap."""
    return SyncConfig(
        batch_size=5,
        max_total_trades=20,
        sync_interval_seconds=0.01,
        full_sync_interval_seconds=100.0,
        enable_background_sync=False,
    )


def build(source, cache, sync_config, clock, timeout=1.0):
    return SyncCoordinator(
        source,
        cache,
        config=sync_config,
        timeouts=TimeoutConfig(request_timeout_seconds=timeout),
        backoff=BackoffController(BackoffConfig(initial_delay_seconds=1.0, max_delay_seconds=10.0), clock=clock),
        clock=clock,
    )


# ============================================================
# PAGINATION TESTS
# ============================================================

class TestPagination:
    """Tests for page loop termination."""

    @pytest.mark.asyncio
    async def test_short_page_terminates(self, cache, sync_config, clock):
        """13 trades at batch size 5 take exactly 3 calls."""
        source = ListTradeSource(make_trades(13))
        coordinator = build(source, cache, sync_config, clock)

        result = await coordinator.full_load()

        assert result.success
        assert len(source.calls) == 3
        assert [offset for _, _, offset in source.calls] == [0, 5, 10]
        assert result.pages == 3
        assert result.trades_fetched == 13
        assert result.stored == 13
        assert await cache.count() == 13

    @pytest.mark.asyncio
    async def test_empty_page_terminates(self, cache, sync_config, clock):
        """A full final page is followed by one empty page."""
        source = ListTradeSource(make_trades(10))
        result = await build(source, cache, sync_config, clock).full_load()
        assert len(source.calls) == 3
        assert result.trades_fetched == 10

    @pytest.mark.asyncio
    async def test_unbounded_source_stops_at_cap(self, cache, sync_config, clock):
        """A source that always returns full pages stops at max_total_trades."""
        source = SyntheticTradeSource(page_size=5, seed=7)
        coordinator = build(source, cache, sync_config, clock)

        result = await coordinator.full_load()

        assert result.trades_fetched == 20
        assert result.truncated is True
        assert result.success
        assert source.calls == 4
        assert await cache.count() == 20

    @pytest.mark.asyncio
    async def test_cap_truncates_last_page(self, cache, clock):
        """The cap is never exceeded, even mid-page."""
        config = SyncConfig(batch_size=5, max_total_trades=12)
        source = ListTradeSource(make_trades(40))
        result = await build(source, cache, config, clock).full_load()
        assert result.trades_fetched == 12
        assert result.pages == 3
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_non_increasing_offset_stops(self, cache, sync_config, clock, caplog):
        """A source that does not advance its offset cannot loop forever."""
        class StuckSource(ListTradeSource):
            async def fetch_trades(self, trade_type, start, end, offset):
                page = await super().fetch_trades(trade_type, start, end, 0)
                page.next_offset = offset
                return page

        source = StuckSource(make_trades(10))
        with caplog.at_level(logging.WARNING, logger="ledger_engine.sync"):
            result = await build(source, cache, sync_config, clock).full_load()
        assert result.pages == 1
        assert any("non-increasing offset" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_malformed_entries_skipped(self, cache, sync_config, clock):
        """Malformed upstream entries are counted and the rest are stored."""
        class RawSource(ListTradeSource):
            async def fetch_trades(self, trade_type, start, end, offset):
                trades, skipped = parse_trade_entries({
                    "GOOD": {"pair": "XBTUSD", "type": "buy", "price": "100", "vol": "1",
                             "time": (NOW - timedelta(minutes=5)).timestamp()},
                    "BAD": {"pair": "XBTUSD", "type": "buy", "price": "abc", "vol": "1"},
                })
                return TradePage(trades=trades, next_offset=offset + 2, raw_count=2, skipped=skipped)

        result = await build(RawSource([]), cache, sync_config, clock).full_load()
        assert result.trades_fetched == 1
        assert result.skipped_records == 1
        assert await cache.get_trade("GOOD") is not None

    @pytest.mark.asyncio
    async def test_reload_is_idempotent(self, cache, sync_config, clock):
        """Re-loading the same history stores nothing new."""
        source = ListTradeSource(make_trades(8))
        coordinator = build(source, cache, sync_config, clock)
        await coordinator.full_load()

        again = await coordinator.full_load(force_reload=True)

        assert again.stored == 0
        assert again.duplicates == 8
        assert await cache.count() == 8

    @pytest.mark.asyncio
    async def test_loaded_history_not_reloaded(self, cache, sync_config, clock):
        """Without force_reload a completed load is not repeated."""
        source = ListTradeSource(make_trades(3))
        coordinator = build(source, cache, sync_config, clock)
        await coordinator.full_load()

        result = await coordinator.full_load()

        assert result.skipped is True
        assert result.reason == "already_loaded"
        assert len(source.calls) == 1


# ============================================================
# WATERMARK TESTS
# ============================================================

class TestWatermark:
    """Tests for the incremental watermark."""

    @pytest.mark.asyncio
    async def test_watermark_is_latest_timestamp(self, cache, sync_config, clock):
        """After a load the watermark is the newest ingested timestamp."""
        trades = make_trades(7)
        coordinator = build(ListTradeSource(trades), cache, sync_config, clock)
        await coordinator.full_load()
        assert coordinator.watermark == max(t.timestamp for t in trades)

    @pytest.mark.asyncio
    async def test_incremental_starts_at_watermark(self, cache, sync_config, clock):
        """Incremental sync requests only trades after the watermark."""
        trades = make_trades(4)
        source = ListTradeSource(trades)
        coordinator = build(source, cache, sync_config, clock)
        await coordinator.full_load()

        clock.advance(60)
        result = await coordinator.incremental_sync()

        start, end, _ = source.calls[-1]
        assert start == coordinator.watermark
        assert end == NOW + timedelta(seconds=60)
        assert result.kind == SyncKind.INCREMENTAL
        assert result.stored == 0

    @pytest.mark.asyncio
    async def test_full_load_resumes_from_watermark(self, cache, sync_config, clock):
        """A default full load after an incremental sync starts at the watermark."""
        source = ListTradeSource(make_trades(4))
        coordinator = build(source, cache, sync_config, clock)
        await coordinator.incremental_sync()
        watermark = coordinator.watermark

        await coordinator.full_load()

        assert source.calls[-1][0] == watermark

    @pytest.mark.asyncio
    async def test_truncated_newest_first_run_holds_watermark(self, cache, sync_config, clock):
        """A capped newest-first run keeps the watermark and finishes its window next time."""
        trades = make_trades(30)
        source = NewestFirstSource(trades)
        coordinator = build(source, cache, sync_config, clock)

        first = await coordinator.incremental_sync()

        assert first.truncated is True
        assert first.trades_fetched == 20
        assert coordinator.watermark is None
        assert coordinator.backlog.offset == 20
        assert coordinator.get_stats()["backlog_offset"] == 20

        clock.advance(60)
        second = await coordinator.incremental_sync()

        assert [offset for _, _, offset in source.calls[-3:]] == [20, 25, 30]
        assert source.calls[-1][1] == NOW
        assert second.trades_fetched == 10
        assert second.truncated is False
        assert coordinator.backlog is None
        assert coordinator.watermark == max(t.timestamp for t in trades)
        assert await cache.count() == 30
        assert await cache.get_trade("T0") is not None

    @pytest.mark.asyncio
    async def test_truncated_oldest_first_run_advances_watermark(self, cache, sync_config, clock):
        """A capped oldest-first run advances to its newest trade and the rest follows."""
        trades = make_trades(30)
        coordinator = build(ListTradeSource(trades), cache, sync_config, clock)

        first = await coordinator.incremental_sync()

        assert first.truncated is True
        assert coordinator.backlog is None
        assert coordinator.watermark == trades[19].timestamp

        await coordinator.incremental_sync()

        assert coordinator.watermark == trades[-1].timestamp
        assert await cache.count() == 30

    @pytest.mark.asyncio
    async def test_failed_run_keeps_watermark(self, cache, sync_config, clock):
        """A failed run leaves the watermark where it was."""
        source = ListTradeSource(make_trades(3), errors=[create_network_error("fetch", OSError("reset"))])
        coordinator = build(source, cache, sync_config, clock)
        result = await coordinator.incremental_sync()
        assert result.error is not None
        assert coordinator.watermark is None


# ============================================================
# SINGLE-FLIGHT TESTS
# ============================================================

class TestSingleFlight:
    """Concurrent runs of the same kind are skipped, not queued."""

    @pytest.mark.asyncio
    async def test_concurrent_full_load_skipped(self, cache, sync_config, clock, caplog):
        """A second full load during the first is skipped and logged once."""
        source = GatedSource(make_trades(3))
        coordinator = build(source, cache, sync_config, clock)

        first = asyncio.create_task(coordinator.full_load())
        await source.entered.wait()
        with caplog.at_level(logging.WARNING, logger="ledger_engine.sync"):
            second = await coordinator.full_load(force_reload=True)
        source.release.set()
        result = await first

        assert second.skipped is True
        assert second.reason == "in_progress"
        assert result.success
        assert result.trades_fetched == 3
        skips = [r for r in caplog.records if "already in progress" in r.message]
        assert len(skips) == 1
        assert coordinator.get_stats()["skipped_runs"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_incremental_skipped(self, cache, sync_config, clock):
        """A second incremental sync during the first is skipped."""
        source = GatedSource(make_trades(3))
        coordinator = build(source, cache, sync_config, clock)

        first = asyncio.create_task(coordinator.incremental_sync())
        await source.entered.wait()
        second = await coordinator.incremental_sync()
        source.release.set()
        await first

        assert second.skipped is True
        assert coordinator.get_stats()["incremental_active"] is False


# ============================================================
# ERROR / BACKOFF TESTS
# ============================================================

class TestErrors:
    """Tests for transient failures, timeouts and hard errors."""

    @pytest.mark.asyncio
    async def test_rate_limit_defers_next_attempt(self, cache, sync_config, clock):
        """A rate limit defers further attempts until the backoff elapses."""
        source = ListTradeSource(make_trades(3), errors=[create_rate_limit_error("fetch")])
        coordinator = build(source, cache, sync_config, clock)

        failed = await coordinator.full_load()
        assert failed.error is not None
        assert coordinator.backoff.is_deferred()

        deferred = await coordinator.full_load()
        assert deferred.deferred is True
        assert deferred.reason == "backoff"
        assert len(source.calls) == 1

        clock.advance(2)
        recovered = await coordinator.full_load()
        assert recovered.success
        assert coordinator.backoff.consecutive_failures == 0

        stats = coordinator.get_stats()
        assert stats["errors"] == 1
        assert stats["deferred_runs"] == 1
        assert stats["backoff"]["rate_limit_hits"] == 1

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, cache, sync_config, clock):
        """A hung upstream call is cut off by the request timeout."""
        coordinator = build(SlowSource([]), cache, sync_config, clock, timeout=0.05)
        result = await coordinator.full_load()
        assert "timed out" in result.error
        assert coordinator.backoff.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_non_transient_error_propagates(self, cache, sync_config, clock):
        """Non-retryable errors surface to the caller and release the flag."""
        coordinator = build(FailingSource([]), cache, sync_config, clock)
        with pytest.raises(UpstreamError):
            await coordinator.full_load()
        stats = coordinator.get_stats()
        assert stats["errors"] == 1
        assert stats["full_load_active"] is False
        assert coordinator.is_loaded is False


# ============================================================
# LIFECYCLE TESTS
# ============================================================

class TestLifecycle:
    """Tests for cancellation and background loops."""

    @pytest.mark.asyncio
    async def test_stop_cancels_run_in_progress(self, cache, sync_config, clock):
        """A run in flight during stop() halts before its next page."""
        source = GatedSource(make_trades(12))
        coordinator = build(source, cache, sync_config, clock)

        task = asyncio.create_task(coordinator.full_load())
        await source.entered.wait()
        await coordinator.stop()
        source.release.set()
        result = await task

        assert result.cancelled is True
        assert result.reason == "stopped"
        assert result.pages == 1
        assert result.trades_fetched == 5
        assert coordinator.is_loaded is False
        assert coordinator.watermark is None

    @pytest.mark.asyncio
    async def test_runs_after_stop_proceed(self, cache, sync_config, clock):
        """Manual loads started after stop() run normally."""
        source = ListTradeSource(make_trades(3))
        coordinator = build(source, cache, sync_config, clock)
        await coordinator.stop()

        loaded = await coordinator.full_load()
        synced = await coordinator.incremental_sync()

        assert loaded.success
        assert loaded.cancelled is False
        assert loaded.trades_fetched == 3
        assert coordinator.is_loaded is True
        assert synced.success
        assert synced.pages == 1

    @pytest.mark.asyncio
    async def test_background_loops_tick(self, cache, sync_config, clock):
        """Incremental ticks run until stop()."""
        coordinator = build(ListTradeSource(make_trades(3)), cache, sync_config, clock)
        await coordinator.start()
        assert coordinator.is_running
        await asyncio.sleep(0.15)
        await coordinator.stop()

        stats = coordinator.get_stats()
        assert stats["incremental_syncs"] >= 2
        assert stats["is_running"] is False
        assert await cache.count() == 3

    @pytest.mark.asyncio
    async def test_failed_tick_does_not_stop_loop(self, cache, sync_config, clock):
        """Errors in one tick are logged and later ticks still run."""
        source = FailingSource([])
        coordinator = build(source, cache, sync_config, clock)
        await coordinator.start()
        await asyncio.sleep(0.15)
        await coordinator.stop()

        assert coordinator.get_stats()["errors"] >= 2
        assert len(source.calls) >= 2

    @pytest.mark.asyncio
    async def test_history_recorded(self, cache, sync_config, clock):
        """Each run is kept in the history."""
        coordinator = build(ListTradeSource(make_trades(2)), cache, sync_config, clock)
        await coordinator.full_load()
        await coordinator.incremental_sync()
        kinds = [r.kind for r in coordinator.get_history()]
        assert kinds == [SyncKind.FULL, SyncKind.INCREMENTAL]


# ============================================================
# BACKOFF CONTROLLER TESTS
# ============================================================

class TestBackoffController:
    """Tests for the backoff state machine."""

    def test_exponential_delays_capped(self, clock):
        """Delays double from the initial value up to the cap."""
        backoff = BackoffController(BackoffConfig(1.0, 10.0, 2.0), clock=clock)
        assert [backoff.next_delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
        assert backoff.next_delay(0) == 0.0

    def test_retry_after_wins_when_longer(self, clock):
        """A server retry_after longer than the computed delay is honored."""
        backoff = BackoffController(BackoffConfig(1.0, 300.0, 2.0), clock=clock)
        delay = backoff.record_failure(create_rate_limit_error("fetch", retry_after=30))
        assert delay == 30
        assert backoff.remaining() == pytest.approx(30)

    def test_retry_after_capped(self, clock):
        """retry_after never exceeds the max delay."""
        backoff = BackoffController(BackoffConfig(1.0, 10.0, 2.0), clock=clock)
        assert backoff.record_failure(create_rate_limit_error("fetch", retry_after=600)) == 10.0

    def test_success_resets(self, clock):
        """A success clears failures and the deferral."""
        backoff = BackoffController(BackoffConfig(1.0, 10.0, 2.0), clock=clock)
        backoff.record_failure(create_network_error("fetch", OSError("x")))
        backoff.record_failure(create_network_error("fetch", OSError("x")))
        assert backoff.consecutive_failures == 2
        assert backoff.remaining() == pytest.approx(2.0)

        backoff.record_success()

        state = backoff.get_state()
        assert state["consecutive_failures"] == 0
        assert state["deferred"] is False

    def test_deferral_expires(self, clock):
        """The deferral lapses once its delay has elapsed."""
        backoff = BackoffController(BackoffConfig(1.0, 10.0, 2.0), clock=clock)
        backoff.record_failure(create_network_error("fetch", OSError("x")))
        assert backoff.is_deferred()
        clock.advance(1.5)
        assert not backoff.is_deferred()
