"""
Ledger Engine - Service Facade.

============================================================
PURPOSE
============================================================
Single entry point for one trading scope:

- Trade history: load, lookups, background sync
- Positions: derived fresh from the durable order/fill store
- Balances: paper reconstruction or live exchange values

The service owns the resources it creates (store, database,
HTTP session) and releases them in stop().

============================================================
USAGE
============================================================
    service = LedgerService.create(LedgerEngineConfig.from_env())
    await service.start()
    trades = await service.get_recent_trades(limit=20)
    balances = await service.get_balances()
    await service.stop()

============================================================
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ledger_engine.backoff import BackoffController
from ledger_engine.balances import BalanceReconstructor
from ledger_engine.cache import LedgerCache, LookupHint
from ledger_engine.clock import ClockProtocol, get_clock
from ledger_engine.config import LedgerEngineConfig
from ledger_engine.positions import (
    count_open_positions,
    derive_open_positions,
    has_open_positions,
)
from ledger_engine.sources.base import AccountBalanceSource, TradeHistorySource
from ledger_engine.sources.kraken import KrakenRESTClient
from ledger_engine.sources.synthetic import SyntheticTradeSource
from ledger_engine.storage.base import KeyValueStore
from ledger_engine.storage.database import Database
from ledger_engine.storage.memory import InMemoryKeyValueStore
from ledger_engine.storage.order_store import OrderFillStore, SqlOrderFillStore
from ledger_engine.storage.sql import SqlKeyValueStore
from ledger_engine.sync import SyncCoordinator, SyncResult
from ledger_engine.types import BalanceSnapshot, PositionReport, TradeRecord, TradingMode


logger = logging.getLogger(__name__)


# Paper sessions without a configured database keep orders/fills in memory
EPHEMERAL_DATABASE_URL = "sqlite://"


class LedgerService:
    """
    Ledger engine for one trading scope.

    Prefer LedgerService.create(); the constructor takes fully
    built collaborators for tests and custom wiring.
    """

    def __init__(
        self,
        config: LedgerEngineConfig,
        cache: LedgerCache,
        coordinator: SyncCoordinator,
        balances: BalanceReconstructor,
        order_store: OrderFillStore,
        owned_resources: Optional[List[Any]] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config
        self._cache = cache
        self._coordinator = coordinator
        self._balances = balances
        self._order_store = order_store
        self._owned = owned_resources or []
        self._clock = clock or get_clock()
        self._running = False

    # --------------------------------------------------------
    # FACTORY
    # --------------------------------------------------------

    @classmethod
    def create(
        cls,
        config: Optional[LedgerEngineConfig] = None,
        store: Optional[KeyValueStore] = None,
        order_store: Optional[OrderFillStore] = None,
        trade_source: Optional[TradeHistorySource] = None,
        account_source: Optional[AccountBalanceSource] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> "LedgerService":
        """
        Build a service from configuration, creating whatever
        collaborators were not supplied.

        Raises:
            ConfigurationError: invalid options or missing live credentials
        """
        config = config or LedgerEngineConfig.from_env()
        config.validate()
        clock = clock or get_clock()
        owned: List[Any] = []

        database: Optional[Database] = None
        needs_database = order_store is None or (store is None and config.storage.kv_backend == "sql")
        if needs_database:
            url = config.storage.database_url or EPHEMERAL_DATABASE_URL
            database = Database(url, config.storage)
            database.create_all()

        if store is None:
            if config.storage.kv_backend == "sql":
                store = SqlKeyValueStore(database, clock=clock)
            else:
                store = InMemoryKeyValueStore(clock=clock)
            owned.append(store)

        if order_store is None:
            order_store = SqlOrderFillStore(database)
            owned.append(order_store)

        if trade_source is None:
            if config.mode == TradingMode.LIVE:
                trade_source = KrakenRESTClient(config.exchange, config.timeouts)
            else:
                trade_source = SyntheticTradeSource(
                    page_size=config.sync.batch_size,
                    seed=config.sync.synthetic_seed,
                )
            owned.append(trade_source)

        if account_source is None and config.mode == TradingMode.LIVE:
            if isinstance(trade_source, AccountBalanceSource):
                account_source = trade_source
            else:
                account_source = KrakenRESTClient(config.exchange, config.timeouts)
                owned.append(account_source)

        if database is not None:
            owned.append(database)

        cache = LedgerCache(store, config.cache, clock=clock)
        coordinator = SyncCoordinator(
            trade_source,
            cache,
            config.sync,
            retention_seconds=config.cache.retention_seconds,
            timeouts=config.timeouts,
            backoff=BackoffController(config.backoff, clock=clock),
            clock=clock,
        )
        balances = BalanceReconstructor(
            config.balance,
            config.mode,
            config.scope_id,
            order_store=order_store,
            account_source=account_source,
            timeouts=config.timeouts,
            clock=clock,
        )
        logger.info(
            f"Ledger service created: scope={config.scope_id} mode={config.mode.value} "
            f"prefix={config.cache.key_prefix} kv={config.storage.kv_backend}"
        )
        return cls(config, cache, coordinator, balances, order_store, owned, clock)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    @property
    def config(self) -> LedgerEngineConfig:
        return self._config

    @property
    def cache(self) -> LedgerCache:
        return self._cache

    @property
    def coordinator(self) -> SyncCoordinator:
        return self._coordinator

    @property
    def balances(self) -> BalanceReconstructor:
        return self._balances

    async def start(self, load_history: bool = True) -> None:
        """Load trade history, then start background sync if enabled."""
        if self._running:
            return
        logger.info(f"Starting ledger service for scope {self._config.scope_id}...")
        if load_history:
            await self.load_trade_history()
        if self._config.sync.enable_background_sync:
            await self._coordinator.start()
        self._running = True
        logger.info("Ledger service started")

    async def stop(self) -> None:
        """Stop background sync and release owned resources."""
        logger.info("Stopping ledger service...")
        await self._coordinator.stop()
        closed = set()
        for resource in self._owned:
            if id(resource) in closed:
                continue
            closed.add(id(resource))
            if isinstance(resource, Database):
                resource.dispose()
            else:
                await resource.close()
        self._owned = []
        self._running = False
        logger.info("Ledger service stopped")

    # --------------------------------------------------------
    # TRADE HISTORY
    # --------------------------------------------------------

    async def load_trade_history(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        force_reload: bool = False,
    ) -> SyncResult:
        return await self._coordinator.full_load(start=start, end=end, force_reload=force_reload)

    async def sync_now(self) -> SyncResult:
        """Run one incremental sync immediately."""
        return await self._coordinator.incremental_sync()

    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        return await self._cache.get_trade(trade_id)

    async def get_trade_by_id(self, trade_id: str, hint: Optional[LookupHint] = None) -> Optional[TradeRecord]:
        return await self._cache.get_by_id(trade_id, hint)

    async def get_trades_by_pair(self, pair: str, limit: int = 100) -> List[TradeRecord]:
        return await self._cache.get_by_pair(pair, limit)

    async def get_recent_trades(self, limit: int = 50, since: Optional[datetime] = None) -> List[TradeRecord]:
        return await self._cache.get_recent(limit, since)

    async def get_trades_in_range(self, start: datetime, end: datetime) -> List[TradeRecord]:
        return await self._cache.get_trades_in_range(start, end)

    async def find_trades_by_order_id(self, order_id: str, hint: Optional[LookupHint] = None) -> List[TradeRecord]:
        return await self._cache.find_trades_by_order_id(order_id, hint)

    async def remove_trade(self, trade_id: str, hint: Optional[LookupHint] = None) -> bool:
        return await self._cache.remove_trade(trade_id, hint)

    async def get_bucket_stats(self, hour: datetime) -> Dict[str, Any]:
        return await self._cache.get_bucket_stats(hour)

    async def clear_cache(self) -> int:
        """Drop cached trades and the balance memo."""
        self._balances.clear_cache()
        return await self._cache.clear()

    # --------------------------------------------------------
    # POSITIONS
    # --------------------------------------------------------

    async def _orders_and_fills(self, orders: Optional[Iterable[Any]], fills: Optional[Iterable[Any]]):
        if orders is None:
            orders = await self._order_store.list_orders(self._config.scope_id)
        if fills is None:
            fills = await self._order_store.list_fills(self._config.scope_id)
        return orders, fills

    async def derive_open_positions(
        self,
        orders: Optional[Iterable[Any]] = None,
        fills: Optional[Iterable[Any]] = None,
        include_details: bool = True,
        include_aggregated: bool = False,
    ) -> PositionReport:
        """Open positions, read fresh from the order/fill store unless given."""
        orders, fills = await self._orders_and_fills(orders, fills)
        return derive_open_positions(orders, fills, include_details, include_aggregated)

    async def has_open_positions(
        self,
        orders: Optional[Iterable[Any]] = None,
        fills: Optional[Iterable[Any]] = None,
    ) -> bool:
        orders, fills = await self._orders_and_fills(orders, fills)
        return has_open_positions(orders, fills)

    async def count_open_positions(
        self,
        orders: Optional[Iterable[Any]] = None,
        fills: Optional[Iterable[Any]] = None,
    ) -> int:
        orders, fills = await self._orders_and_fills(orders, fills)
        return count_open_positions(orders, fills)

    # --------------------------------------------------------
    # BALANCES
    # --------------------------------------------------------

    async def get_balances(self, force_recalculation: bool = False) -> BalanceSnapshot:
        return await self._balances.get_balances(force_recalculation)

    async def check_sufficient_balance(self, order: Any) -> bool:
        return await self._balances.check_sufficient_balance(order)

    async def on_order_created(self, order: Any = None) -> Optional[BalanceSnapshot]:
        return await self._balances.on_order_created(order)

    async def on_order_cancelled(self, order: Any = None) -> Optional[BalanceSnapshot]:
        return await self._balances.on_order_cancelled(order)

    async def on_fill(self, fill: Any = None) -> Optional[BalanceSnapshot]:
        return await self._balances.on_fill(fill)

    # --------------------------------------------------------
    # STATS / HEALTH
    # --------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        sync = self._coordinator.get_stats()
        cache = self._cache.get_stats()
        return {
            "scope_id": self._config.scope_id,
            "total_trades": await self._cache.count(),
            "is_loaded": sync["is_loaded"],
            "last_load_time": sync["last_load_time"],
            "load_time_seconds": sync["last_load_duration_seconds"],
            "api_calls": sync["api_calls"],
            "paper_mode": self._config.paper_mode,
            "key_prefix": self._config.cache.key_prefix,
            "background_sync": {
                "is_running": sync["is_running"],
                "incremental_syncs": sync["incremental_syncs"],
                "full_syncs": sync["full_syncs"],
                "trades_processed": sync["trades_processed"],
                "last_sync_time": sync["last_sync_time"],
                "errors": sync["errors"],
                "skipped_runs": sync["skipped_runs"],
                "deferred_runs": sync["deferred_runs"],
                "watermark": sync["watermark"],
                "backoff": sync["backoff"],
            },
            "cache": {
                "hits": cache["hits"],
                "misses": cache["misses"],
                "hit_rate": cache["hit_rate"],
                "queries": cache["queries"],
                "trades_retrieved": cache["trades_retrieved"],
                "integrity_warnings": cache["integrity_warnings"],
            },
            "balances": self._balances.get_stats(),
        }

    async def health_check(self) -> Dict[str, Any]:
        cache = await self._cache.health_check()
        backoff = self._coordinator.backoff.get_state()
        return {
            "healthy": cache["healthy"],
            "scope_id": self._config.scope_id,
            "mode": self._config.mode.value,
            "store": cache,
            "sync_running": self._coordinator.is_running,
            "is_loaded": self._coordinator.is_loaded,
            "backoff": backoff,
            "checked_at": self._clock.now().isoformat(),
        }
