"""
Ledger Engine - Sync Coordinator.

============================================================
PURPOSE
============================================================
Populates the ledger cache from the trade history source.

- Full load: paginated backfill of the retention window
- Incremental sync: trades after the watermark
- Background loops: incremental every sync_interval,
  full re-sync every full_sync_interval

============================================================
SAFETY
============================================================
- Every load is bounded by max_total_trades
- One full load and one incremental sync at a time; concurrent
  attempts are skipped and logged, never queued
- Every upstream call has an explicit timeout
- Transient failures defer later attempts with exponential backoff
- A failed tick never stops later ticks

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from ledger_engine.backoff import BackoffController
from ledger_engine.cache import LedgerCache
from ledger_engine.clock import ClockProtocol, get_clock
from ledger_engine.config import SyncConfig, TimeoutConfig
from ledger_engine.errors import TransientUpstreamError, create_timeout_error
from ledger_engine.sources.base import TradeHistorySource, TradePage


logger = logging.getLogger(__name__)


# ============================================================
# RESULT TYPES
# ============================================================

class SyncKind(Enum):
    """Kind of sync run."""

    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    kind: SyncKind
    started_at: datetime
    completed_at: Optional[datetime] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    pages: int = 0
    trades_fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped_records: int = 0

    skipped: bool = False
    """Not run: another run of the same kind was active, or already loaded."""

    deferred: bool = False
    """Not run: upstream backoff in effect."""

    cancelled: bool = False
    truncated: bool = False
    """Stopped at max_total_trades."""

    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not (self.skipped or self.deferred or self.cancelled or self.error)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "pages": self.pages,
            "trades_fetched": self.trades_fetched,
            "stored": self.stored,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "skipped_records": self.skipped_records,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "cancelled": self.cancelled,
            "truncated": self.truncated,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class BacklogCursor:
    """
    Unfinished window of a truncated run that delivered newest trades first.

    The older end of the window is still unfetched, so the watermark
    stays put and the next incremental sync continues here.
    """

    start: datetime
    end: datetime
    offset: int
    latest: Optional[datetime] = None


# ============================================================
# SYNC COORDINATOR
# ============================================================

class SyncCoordinator:
    """
    Keeps the ledger cache in step with the trade history source.

    Args:
        source: Trade history source (live client or synthetic)
        cache: Ledger cache to populate
        config: Paging and interval settings
        retention_seconds: Default look-back window
        timeouts: Upstream call timeouts
        backoff: Backoff state machine
        clock: Time source
    """

    def __init__(
        self,
        source: TradeHistorySource,
        cache: LedgerCache,
        config: Optional[SyncConfig] = None,
        retention_seconds: Optional[int] = None,
        timeouts: Optional[TimeoutConfig] = None,
        backoff: Optional[BackoffController] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._source = source
        self._cache = cache
        self._config = config or SyncConfig()
        self._retention = retention_seconds or cache.retention
        self._timeouts = timeouts or TimeoutConfig()
        self._clock = clock or get_clock()
        self._backoff = backoff or BackoffController(clock=self._clock)

        # Single-flight flags
        self._full_active = False
        self._incremental_active = False

        self._watermark: Optional[datetime] = None
        self._backlog: Optional[BacklogCursor] = None
        self._loaded = False
        self._last_load_time: Optional[datetime] = None
        self._last_load_duration: Optional[float] = None

        # Background loops
        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        # Bumped by stop(); runs started before the bump halt at the next page
        self._generation = 0

        self._stats = {
            "full_syncs": 0,
            "incremental_syncs": 0,
            "trades_processed": 0,
            "errors": 0,
            "skipped_runs": 0,
            "deferred_runs": 0,
            "api_calls": 0,
            "last_sync_time": None,
        }
        self._history: List[SyncResult] = []
        self._max_history = 50

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def watermark(self) -> Optional[datetime]:
        return self._watermark

    @property
    def backlog(self) -> Optional[BacklogCursor]:
        return self._backlog

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def backoff(self) -> BackoffController:
        return self._backoff

    def get_history(self, limit: int = 10) -> List[SyncResult]:
        return self._history[-limit:]

    # --------------------------------------------------------
    # FULL LOAD
    # --------------------------------------------------------

    async def full_load(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        force_reload: bool = False,
    ) -> SyncResult:
        """
        Paginated backfill of [start, end].

        Defaults to the retention window ending now. Unless forced,
        a load whose default start precedes the incremental
        watermark begins from the watermark instead, and a completed
        load is not repeated.
        """
        now = self._clock.now()
        if self._loaded and not force_reload and start is None and end is None:
            logger.info("Trade history already loaded; skipping full load")
            return SyncResult(SyncKind.FULL, started_at=now, completed_at=now,
                              skipped=True, reason="already_loaded")

        if self._full_active:
            logger.warning("Full load already in progress; skipping")
            self._stats["skipped_runs"] += 1
            return SyncResult(SyncKind.FULL, started_at=now, completed_at=now,
                              skipped=True, reason="in_progress")

        self._full_active = True
        try:
            end = end or now
            if start is None:
                start = now - timedelta(seconds=self._retention)
                if not force_reload and self._watermark is not None and self._watermark > start:
                    start = self._watermark
            logger.info(f"Starting full trade load from {start.isoformat()} to {end.isoformat()}")

            result = await self._run(SyncKind.FULL, start, end)
            self._stats["full_syncs"] += 1
            if result.success:
                self._loaded = True
                self._last_load_time = result.completed_at
                self._last_load_duration = result.duration_seconds
                logger.info(
                    f"Full load complete: {result.trades_fetched} trades in {result.pages} pages "
                    f"({result.stored} new, {result.duplicates} duplicate)"
                )
            return result
        finally:
            self._full_active = False

    # --------------------------------------------------------
    # INCREMENTAL SYNC
    # --------------------------------------------------------

    async def incremental_sync(self) -> SyncResult:
        """
        Fetch trades newer than the watermark.

        A pending backlog from a truncated newest-first run is finished
        first, from the offset where that run stopped.
        """
        now = self._clock.now()
        if self._incremental_active:
            logger.warning("Incremental sync already in progress; skipping")
            self._stats["skipped_runs"] += 1
            return SyncResult(SyncKind.INCREMENTAL, started_at=now, completed_at=now,
                              skipped=True, reason="in_progress")

        self._incremental_active = True
        try:
            cursor = self._backlog
            if cursor is not None:
                logger.info(
                    f"Resuming truncated window {cursor.start.isoformat()} - {cursor.end.isoformat()} "
                    f"at offset {cursor.offset}"
                )
                result = await self._run(
                    SyncKind.INCREMENTAL, cursor.start, cursor.end,
                    offset=cursor.offset, latest=cursor.latest,
                )
            else:
                start = self._watermark or now - timedelta(seconds=self._retention)
                result = await self._run(SyncKind.INCREMENTAL, start, now)
            self._stats["incremental_syncs"] += 1
            if result.success and result.trades_fetched:
                logger.info(f"Incremental sync: {result.stored} new trades")
            return result
        finally:
            self._incremental_active = False

    # --------------------------------------------------------
    # PAGINATION
    # --------------------------------------------------------

    async def _fetch_page(self, start: datetime, end: datetime, offset: int) -> TradePage:
        timeout = self._timeouts.request_timeout_seconds
        self._stats["api_calls"] += 1
        try:
            page = await asyncio.wait_for(
                self._source.fetch_trades(self._config.trade_type, start, end, offset),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise create_timeout_error(f"{self._source.source_id}.fetch_trades", timeout)
        self._backoff.record_success()
        return page

    async def _run(
        self,
        kind: SyncKind,
        start: datetime,
        end: datetime,
        offset: int = 0,
        latest: Optional[datetime] = None,
    ) -> SyncResult:
        result = SyncResult(kind, started_at=self._clock.now(), window_start=start, window_end=end)
        generation = self._generation

        if self._backoff.is_deferred():
            result.deferred = True
            result.reason = "backoff"
            result.completed_at = self._clock.now()
            self._stats["deferred_runs"] += 1
            logger.info(f"{kind.value} sync deferred for {self._backoff.remaining():.2f}s (backoff)")
            return result

        batch_size = self._config.batch_size
        max_total = self._config.max_total_trades
        previous: Optional[datetime] = None
        ascending = True

        try:
            while True:
                if self._generation != generation:
                    result.cancelled = True
                    result.reason = "stopped"
                    logger.info(f"{kind.value} sync cancelled after {result.pages} pages")
                    break
                if result.trades_fetched >= max_total:
                    result.truncated = True
                    logger.warning(f"{kind.value} sync reached max_total_trades={max_total}")
                    break

                page = await self._fetch_page(start, end, offset)
                result.pages += 1
                result.skipped_records += page.skipped
                if not page.trades and page.raw_count == 0:
                    break

                trades = page.trades[: max_total - result.trades_fetched]
                put = await self._cache.put_many(trades)
                result.trades_fetched += len(trades)
                result.stored += put.stored
                result.duplicates += put.duplicates
                result.failed += put.failed
                for trade in trades:
                    if previous is not None and trade.timestamp < previous:
                        ascending = False
                    previous = trade.timestamp
                    if latest is None or trade.timestamp > latest:
                        latest = trade.timestamp
                logger.debug(f"{kind.value} page {result.pages}: offset={offset} trades={len(trades)}")

                if len(trades) < len(page.trades):
                    # Cut mid-page; a resume re-reads this page
                    result.truncated = True
                    logger.warning(f"{kind.value} sync reached max_total_trades={max_total}")
                    break
                if max(page.raw_count, len(page.trades)) < batch_size:
                    break
                if page.next_offset <= offset:
                    logger.warning(
                        f"Source returned non-increasing offset {page.next_offset} after {offset}; stopping"
                    )
                    break
                offset = page.next_offset

        except TransientUpstreamError as e:
            result.error = str(e)
            self._stats["errors"] += 1
            self._backoff.record_failure(e)
            logger.warning(f"{kind.value} sync failed with transient error: {e}")
        except Exception as e:
            result.error = str(e)
            self._stats["errors"] += 1
            logger.error(f"{kind.value} sync failed: {e}")
            raise
        finally:
            result.completed_at = self._clock.now()
            self._stats["trades_processed"] += result.trades_fetched
            self._stats["last_sync_time"] = result.completed_at
            self._record(result)

        if result.success:
            self._advance_watermark(result, offset, latest, ascending)
        return result

    def _advance_watermark(
        self,
        result: SyncResult,
        offset: int,
        latest: Optional[datetime],
        ascending: bool,
    ) -> None:
        """
        Move the watermark only past trades with no gap behind them.

        An untruncated run covered its whole window. A truncated run
        that delivered oldest first covered everything up to its newest
        trade. A truncated run that delivered newest first left the
        older end of its window unfetched: it becomes the backlog, as
        does any truncated run while a backlog is still pending.
        """
        if result.truncated and (not ascending or self._backlog is not None):
            self._backlog = BacklogCursor(result.window_start, result.window_end, offset, latest)
            logger.warning(
                f"{result.kind.value} sync truncated with older trades pending; "
                f"watermark held, resuming at offset {offset}"
            )
            return

        backlog = self._backlog
        if backlog is not None and not result.truncated and result.window_start <= backlog.start:
            if backlog.latest is not None and (latest is None or backlog.latest > latest):
                latest = backlog.latest
            self._backlog = None
            logger.info("Truncated window backlog completed")

        if latest is not None and (self._watermark is None or latest > self._watermark):
            self._watermark = latest

    def _record(self, result: SyncResult) -> None:
        self._history.append(result)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    # --------------------------------------------------------
    # BACKGROUND LOOPS
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the incremental and full-sync loops."""
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._loop(SyncKind.INCREMENTAL, self._config.sync_interval_seconds)),
            asyncio.create_task(self._loop(SyncKind.FULL, self._config.full_sync_interval_seconds)),
        ]
        logger.info(
            f"Background sync started (incremental every {self._config.sync_interval_seconds}s, "
            f"full every {self._config.full_sync_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the loops; a sync in progress halts at the next page boundary."""
        self._generation += 1
        self._stop_event.set()
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Background sync stopped")

    async def _loop(self, kind: SyncKind, interval: float) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                if kind == SyncKind.FULL:
                    await self.full_load(force_reload=True)
                else:
                    await self.incremental_sync()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{kind.value} sync tick failed: {e}")

    # --------------------------------------------------------
    # STATS
    # --------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        last_sync = self._stats["last_sync_time"]
        return {
            **self._stats,
            "last_sync_time": last_sync.isoformat() if last_sync else None,
            "is_running": self._running,
            "is_loaded": self._loaded,
            "full_load_active": self._full_active,
            "incremental_active": self._incremental_active,
            "last_load_time": self._last_load_time.isoformat() if self._last_load_time else None,
            "last_load_duration_seconds": self._last_load_duration,
            "watermark": self._watermark.isoformat() if self._watermark else None,
            "backlog_offset": self._backlog.offset if self._backlog else None,
            "backoff": self._backoff.get_state(),
        }
