"""
Ledger Engine - Position Reconstructor.

============================================================
PURPOSE
============================================================
Replays orders and fills into the set of open positions.

RULES:
1. Fills are indexed by owning order id
2. Sell orders are indexed by parent (entry) order id
3. A buy order with at least one fill is OPEN iff none of its
   linked sell orders has any fill
4. Size = sum of fill sizes; entry price = size-weighted
   average fill price
5. Optional per-symbol aggregation into one weighted summary

POLICY: any filled sell linked to a buy closes the whole buy,
regardless of how much of the size it covers.

Zero-size fills add nothing to size or entry price, but any fill on
a linked sell still closes its buy. Malformed records are skipped
with a warning. Stateless: callers pass fresh orders and fills.

============================================================
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from ledger_engine.types import (
    Fill,
    Order,
    OrderSide,
    OrderStatus,
    Position,
    PositionReport,
    parse_records,
)


logger = logging.getLogger(__name__)


_WORKING_STATUSES = (OrderStatus.PENDING, OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


def _index(orders: List[Order], fills: List[Fill]):
    # Sized fills only; filled_ids records every order with any fill
    fills_by_order: Dict[str, List[Fill]] = defaultdict(list)
    filled_ids: Set[str] = set()
    for fill in fills:
        filled_ids.add(fill.order_id)
        if fill.size > 0:
            fills_by_order[fill.order_id].append(fill)

    sells_by_parent: Dict[str, List[Order]] = defaultdict(list)
    for order in orders:
        if order.side == OrderSide.SELL and order.parent_order_id:
            sells_by_parent[order.parent_order_id].append(order)
    return fills_by_order, filled_ids, sells_by_parent


def _iter_open(
    orders: List[Order],
    fills: List[Fill],
    include_details: bool,
) -> Iterator[Position]:
    fills_by_order, filled_ids, sells_by_parent = _index(orders, fills)

    for order in orders:
        if order.side != OrderSide.BUY:
            continue
        buy_fills = fills_by_order.get(order.id)
        if not buy_fills:
            continue
        linked_sells = sells_by_parent.get(order.id, [])
        if any(sell.id in filled_ids for sell in linked_sells):
            continue

        size = sum((fill.size for fill in buy_fills), Decimal("0"))
        notional = sum((fill.size * fill.price for fill in buy_fills), Decimal("0"))
        entry_price = notional / size
        timestamps = [fill.timestamp for fill in buy_fills if fill.timestamp is not None]

        position = Position(
            id=f"position-{order.id}",
            symbol=order.symbol,
            entry_price=entry_price,
            size=size,
            timestamp=min(timestamps) if timestamps else order.created_at,
            order_ids=[order.id],
        )
        if include_details:
            position.current_value = notional
            position.open_sell_orders = [
                sell.id for sell in linked_sells if sell.status in _WORKING_STATUSES
            ]
        yield position


def aggregate_positions(positions: Iterable[Position], symbol: str) -> Optional[Position]:
    """Collapse all open positions of one symbol into a weighted-average summary."""
    matching = [p for p in positions if p.symbol == symbol]
    if not matching:
        return None
    size = sum((p.size for p in matching), Decimal("0"))
    notional = sum((p.size * p.entry_price for p in matching), Decimal("0"))
    timestamps = [p.timestamp for p in matching if p.timestamp is not None]
    order_ids: List[str] = []
    open_sells: List[str] = []
    for p in matching:
        order_ids.extend(p.order_ids)
        open_sells.extend(p.open_sell_orders)
    return Position(
        id=f"aggregated-position-{symbol}",
        symbol=symbol,
        entry_price=notional / size,
        size=size,
        timestamp=min(timestamps) if timestamps else None,
        order_ids=order_ids,
        current_value=notional,
        open_sell_orders=open_sells,
    )


def derive_open_positions(
    orders: Iterable[Any],
    fills: Iterable[Any],
    include_details: bool = True,
    include_aggregated: bool = False,
) -> PositionReport:
    """
    Derive open positions from orders and fills.

    Args:
        orders: Order records or raw mappings
        fills: Fill records or raw mappings
        include_details: Attach current value and working sell orders
        include_aggregated: Attach one weighted summary per symbol

    Returns:
        PositionReport
    """
    parsed_orders, skipped_orders = parse_records(orders, Order)
    parsed_fills, skipped_fills = parse_records(fills, Fill)

    report = PositionReport(skipped_records=skipped_orders + skipped_fills)
    report.open_positions = list(_iter_open(parsed_orders, parsed_fills, include_details))
    for position in report.open_positions:
        report.total_size += position.size
        report.total_value += position.size * position.entry_price

    if include_aggregated:
        for symbol in dict.fromkeys(p.symbol for p in report.open_positions):
            report.aggregated_positions[symbol] = aggregate_positions(report.open_positions, symbol)

    if report.skipped_records:
        logger.warning(f"Position derivation skipped {report.skipped_records} malformed records")
    logger.debug(
        f"Derived {report.total_open_positions} open positions from "
        f"{len(parsed_orders)} orders / {len(parsed_fills)} fills"
    )
    return report


def has_open_positions(orders: Iterable[Any], fills: Iterable[Any]) -> bool:
    """Whether any buy order is still open. Stops at the first one."""
    parsed_orders, _ = parse_records(orders, Order)
    parsed_fills, _ = parse_records(fills, Fill)
    return next(_iter_open(parsed_orders, parsed_fills, include_details=False), None) is not None


def count_open_positions(orders: Iterable[Any], fills: Iterable[Any]) -> int:
    """Number of open positions."""
    return derive_open_positions(orders, fills, include_details=False).total_open_positions
