"""
Ledger Engine - Balance Reconstructor.

============================================================
PURPOSE
============================================================
Per-asset total / available / reserved balances for one
trading pair (BASE/QUOTE).

LIVE MODE:
- The exchange is the authority; values are fetched directly
- Any fetch failure raises AuthoritativeFetchError, never a
  stale or derived number

PAPER MODE:
1. Start from the configured initial totals
2. Each fill moves totals (buy: base +size, quote -price*size;
   sell: the inverse)
3. Reserved is recomputed from scratch over open and partially
   filled orders (buy reserves price*remaining of quote, sell
   reserves remaining of base)
4. available = total - reserved

Results are memoized for cache_ttl_seconds and recomputed on
order-create, order-cancel and fill events.

============================================================
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from ledger_engine.clock import ClockProtocol, get_clock
from ledger_engine.config import BalanceConfig, TimeoutConfig
from ledger_engine.errors import AuthoritativeFetchError, ConfigurationError, DataIntegrityWarning
from ledger_engine.sources.base import AccountBalanceSource
from ledger_engine.storage.order_store import OrderFillStore
from ledger_engine.types import (
    AssetBalance,
    BalanceSnapshot,
    Fill,
    Order,
    OrderCandidate,
    OrderSide,
    TradingMode,
    parse_records,
)


logger = logging.getLogger(__name__)


def _same_pair(symbol: Optional[str], base: str, quote: str) -> bool:
    """Records without a symbol belong to the configured pair."""
    if not symbol:
        return True
    return symbol.replace("/", "").replace("-", "").upper() == f"{base}{quote}"


# ============================================================
# PAPER RECONSTRUCTION
# ============================================================

def reconstruct_paper_balances(
    initial_balances: Mapping[str, Decimal],
    base: str,
    quote: str,
    orders: Iterable[Any],
    fills: Iterable[Any],
) -> Tuple[Dict[str, AssetBalance], int]:
    """
    Derive paper balances from the initial snapshot, fills and open orders.

    Returns:
        (balances by asset, skipped record count)
    """
    parsed_orders, skipped = parse_records(orders, Order)
    parsed_fills, skipped_fills = parse_records(fills, Fill)
    skipped += skipped_fills

    totals: Dict[str, Decimal] = {asset: Decimal(str(amount)) for asset, amount in initial_balances.items()}
    totals.setdefault(base, Decimal("0"))
    totals.setdefault(quote, Decimal("0"))

    for fill in parsed_fills:
        if fill.size <= 0 or not _same_pair(fill.symbol, base, quote):
            continue
        notional = fill.price * fill.size
        if fill.side == OrderSide.BUY:
            totals[base] += fill.size
            totals[quote] -= notional
        else:
            totals[base] -= fill.size
            totals[quote] += notional

    reserved: Dict[str, Decimal] = {asset: Decimal("0") for asset in totals}
    for order in parsed_orders:
        if not order.status.holds_funds() or not _same_pair(order.symbol, base, quote):
            continue
        remaining = order.open_quantity
        if remaining <= 0:
            continue
        if order.side == OrderSide.BUY:
            if order.price is None or order.price <= 0:
                skipped += 1
                logger.warning(f"Open buy order {order.id} has no price; not reserving quote")
                continue
            reserved[quote] += order.price * remaining
        else:
            reserved[base] += remaining

    balances = {
        asset: AssetBalance(asset=asset, total=total, reserved=reserved[asset])
        for asset, total in totals.items()
    }
    return balances, skipped


# ============================================================
# BALANCE RECONSTRUCTOR
# ============================================================

class BalanceReconstructor:
    """
    Balance view for one trading scope.

    Args:
        config: Pair, memo TTL and paper initial balances
        mode: PAPER or LIVE
        scope_id: Scope whose orders/fills are replayed
        order_store: Durable order/fill store (paper mode)
        account_source: Authoritative balance source (live mode)
        timeouts: Upstream call timeouts
        clock: Time source for the memo
    """

    def __init__(
        self,
        config: BalanceConfig,
        mode: TradingMode,
        scope_id: str,
        order_store: Optional[OrderFillStore] = None,
        account_source: Optional[AccountBalanceSource] = None,
        timeouts: Optional[TimeoutConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        if mode == TradingMode.LIVE and account_source is None:
            raise ConfigurationError("Live mode requires an account balance source")
        if mode == TradingMode.PAPER and order_store is None:
            raise ConfigurationError("Paper mode requires an order/fill store")

        self._config = config
        self._mode = mode
        self._scope_id = scope_id
        self._order_store = order_store
        self._account_source = account_source
        self._timeouts = timeouts or TimeoutConfig()
        self._clock = clock or get_clock()
        self._base, self._quote = config.assets

        self._memo: Optional[BalanceSnapshot] = None
        self._memo_at = 0.0
        self._stats = {"computations": 0, "memo_hits": 0, "live_fetch_failures": 0, "skipped_records": 0}

    @property
    def mode(self) -> TradingMode:
        return self._mode

    @property
    def assets(self) -> Tuple[str, str]:
        return self._base, self._quote

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def get_balances(self, force_recalculation: bool = False) -> BalanceSnapshot:
        """
        Current balances, memoized for cache_ttl_seconds.

        Raises:
            AuthoritativeFetchError: live mode and the exchange could not be read
        """
        if (
            not force_recalculation
            and self._memo is not None
            and self._clock.monotonic() - self._memo_at < self._config.cache_ttl_seconds
        ):
            self._stats["memo_hits"] += 1
            return self._memo

        if self._mode == TradingMode.LIVE:
            snapshot = await self._fetch_live()
        else:
            snapshot = await self._compute_paper()

        self._stats["computations"] += 1
        self._memo = snapshot
        self._memo_at = self._clock.monotonic()
        return snapshot

    async def _fetch_live(self) -> BalanceSnapshot:
        timeout = self._timeouts.request_timeout_seconds
        try:
            balances = await asyncio.wait_for(self._account_source.fetch_balances(), timeout=timeout)
        except asyncio.TimeoutError as e:
            self._on_live_failure()
            raise AuthoritativeFetchError(f"Live balance fetch timed out after {timeout}s", cause=e) from e
        except Exception as e:
            self._on_live_failure()
            raise AuthoritativeFetchError(f"Live balance fetch failed: {e}", cause=e) from e

        balances = dict(balances)
        for asset in (self._base, self._quote):
            balances.setdefault(asset, AssetBalance(asset=asset))
        return BalanceSnapshot(balances=balances, mode=self._mode, computed_at=self._clock.now())

    def _on_live_failure(self) -> None:
        self._memo = None
        self._stats["live_fetch_failures"] += 1
        logger.error(f"Authoritative balance fetch failed for scope {self._scope_id}")

    async def _compute_paper(self) -> BalanceSnapshot:
        orders = await self._order_store.list_orders(self._scope_id)
        fills = await self._order_store.list_fills(self._scope_id)
        balances, skipped = reconstruct_paper_balances(
            self._config.initial_balances, self._base, self._quote, orders, fills,
        )
        if skipped:
            self._stats["skipped_records"] += skipped
            logger.warning(f"Paper balance reconstruction skipped {skipped} records")
        return BalanceSnapshot(
            balances=balances,
            mode=self._mode,
            computed_at=self._clock.now(),
            skipped_records=skipped,
        )

    async def check_sufficient_balance(self, candidate: Union[OrderCandidate, Mapping[str, Any]]) -> bool:
        """
        Whether a prospective order fits the available balance.

        A buy needs price*size of quote, a sell needs size of base.
        Equality is sufficient. Invalid candidates return False.
        """
        if not isinstance(candidate, OrderCandidate):
            try:
                candidate = OrderCandidate.from_mapping(candidate)
            except DataIntegrityWarning as e:
                logger.warning(f"Invalid order for balance check: {e}")
                return False

        snapshot = await self.get_balances()
        if candidate.side == OrderSide.BUY:
            asset, required = self._quote, candidate.notional
        else:
            asset, required = self._base, candidate.size
        available = snapshot.get(asset).available
        sufficient = available >= required
        logger.debug(
            f"Balance check {candidate.side.value} {candidate.size}@{candidate.price}: "
            f"{asset} available={available} required={required} sufficient={sufficient}"
        )
        return sufficient

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    async def on_order_created(self, order: Any = None) -> Optional[BalanceSnapshot]:
        return await self._refresh("order created")

    async def on_order_cancelled(self, order: Any = None) -> Optional[BalanceSnapshot]:
        return await self._refresh("order cancelled")

    async def on_fill(self, fill: Any = None) -> Optional[BalanceSnapshot]:
        return await self._refresh("fill")

    async def _refresh(self, reason: str) -> Optional[BalanceSnapshot]:
        self._memo = None
        if self._mode == TradingMode.LIVE:
            return None
        logger.debug(f"Recomputing paper balances after {reason}")
        return await self.get_balances(force_recalculation=True)

    def clear_cache(self) -> None:
        self._memo = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "mode": self._mode.value,
            "symbol": self._config.symbol,
            "memoized": self._memo is not None,
        }
