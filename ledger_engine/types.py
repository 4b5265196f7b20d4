"""
Ledger Engine - Types.

============================================================
PURPOSE
============================================================
All record and result types shared by the ledger cache, the
sync coordinator and the position/balance reconstructors.

Raw exchange and store payloads are parsed through the
`from_exchange` / `from_mapping` constructors, which raise
DataIntegrityWarning for malformed records so callers can
skip and count them.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar

from ledger_engine.errors import DataIntegrityWarning


logger = logging.getLogger(__name__)

R = TypeVar("R")


# ============================================================
# PARSING HELPERS
# ============================================================

def to_decimal(value: Any, field_name: str, required: bool = True) -> Optional[Decimal]:
    """
    Parse a numeric field into a finite Decimal.

    Raises:
        DataIntegrityWarning: missing (when required) or non-numeric value
    """
    if value is None or value == "":
        if required:
            raise DataIntegrityWarning(f"Missing numeric field '{field_name}'")
        return None
    if isinstance(value, bool):
        raise DataIntegrityWarning(f"Field '{field_name}' is not numeric: {value!r}")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise DataIntegrityWarning(f"Field '{field_name}' is not numeric: {value!r}")
    if not number.is_finite():
        raise DataIntegrityWarning(f"Field '{field_name}' is not finite: {value!r}")
    return number


def to_datetime(value: Any, field_name: str) -> datetime:
    """Parse an epoch-seconds number, ISO string or datetime into UTC."""
    if value is None or value == "":
        raise DataIntegrityWarning(f"Missing timestamp field '{field_name}'")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            return to_datetime(Decimal(value), field_name)
        except InvalidOperation:
            pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise DataIntegrityWarning(f"Field '{field_name}' is not a timestamp: {value!r}")
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise DataIntegrityWarning(f"Field '{field_name}' is not a timestamp: {value!r}")


def _first(raw: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


# ============================================================
# ENUMS
# ============================================================

class OrderSide(Enum):
    """Order / trade side."""

    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> "OrderSide":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise DataIntegrityWarning(f"Unknown side: {value!r}")


class OrderStatus(Enum):
    """Order status as recorded by the durable store."""

    PENDING = "PENDING"
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        if isinstance(value, cls):
            return value
        normalized = str(value).upper()
        if normalized == "CANCELED":
            normalized = "CANCELLED"
        try:
            return cls(normalized)
        except ValueError:
            raise DataIntegrityWarning(f"Unknown order status: {value!r}")

    def holds_funds(self) -> bool:
        """Open and partially filled orders reserve balance."""
        return self in (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


class TradingMode(Enum):
    """Where balances and trades come from."""

    PAPER = "PAPER"
    """Simulated trading: balances derived from fills and open orders."""

    LIVE = "LIVE"
    """Real trading: the exchange is the authority."""


# ============================================================
# TRADE RECORDS
# ============================================================

@dataclass(frozen=True)
class TradeRecord:
    """One executed exchange trade. Immutable once cached."""

    id: str
    pair: str
    side: OrderSide
    price: Decimal
    volume: Decimal
    cost: Decimal
    fee: Decimal
    timestamp: datetime
    order_id: Optional[str] = None
    order_type: Optional[str] = None

    @property
    def epoch(self) -> float:
        return self.timestamp.timestamp()

    @classmethod
    def from_exchange(cls, trade_id: str, raw: Mapping[str, Any]) -> "TradeRecord":
        """
        Parse a Kraken-style trade entry.

        Kraken keys trades by id and carries `ordertxid, pair, time,
        type, ordertype, price, cost, fee, vol` in the body.
        """
        if not trade_id:
            raise DataIntegrityWarning("Trade without id")
        if not isinstance(raw, Mapping):
            raise DataIntegrityWarning(f"Trade {trade_id} is not an object")
        pair = raw.get("pair")
        if not pair:
            raise DataIntegrityWarning(f"Trade {trade_id} has no pair")
        price = to_decimal(raw.get("price"), "price")
        volume = to_decimal(raw.get("vol"), "vol")
        cost = to_decimal(raw.get("cost"), "cost", required=False)
        return cls(
            id=str(trade_id),
            pair=str(pair),
            side=OrderSide.parse(raw.get("type")),
            price=price,
            volume=volume,
            cost=cost if cost is not None else price * volume,
            fee=to_decimal(raw.get("fee"), "fee", required=False) or Decimal("0"),
            timestamp=to_datetime(raw.get("time"), "time"),
            order_id=raw.get("ordertxid"),
            order_type=raw.get("ordertype"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form stored in the cache."""
        return {
            "id": self.id,
            "pair": self.pair,
            "side": self.side.value,
            "price": str(self.price),
            "volume": str(self.volume),
            "cost": str(self.cost),
            "fee": str(self.fee),
            "time": self.epoch,
            "order_id": self.order_id,
            "order_type": self.order_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TradeRecord":
        if not isinstance(data, Mapping) or not data.get("id") or not data.get("pair"):
            raise DataIntegrityWarning(f"Cached trade is malformed: {data!r}")
        return cls(
            id=str(data["id"]),
            pair=str(data["pair"]),
            side=OrderSide.parse(data.get("side")),
            price=to_decimal(data.get("price"), "price"),
            volume=to_decimal(data.get("volume"), "volume"),
            cost=to_decimal(data.get("cost"), "cost"),
            fee=to_decimal(data.get("fee"), "fee"),
            timestamp=to_datetime(data.get("time"), "time"),
            order_id=data.get("order_id"),
            order_type=data.get("order_type"),
        )


@dataclass
class HourBucketMetadata:
    """Metadata stored in the `_metadata` field of an hour bucket."""

    timestamp: datetime
    """Start of the hour this bucket covers."""

    trade_count: int = 0
    """Number of distinct trade ids in the bucket."""

    last_updated: Optional[datetime] = None
    """Last time a new trade landed in the bucket."""

    processed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "timestamp": self.timestamp.isoformat(),
            "trade_count": self.trade_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HourBucketMetadata":
        last_updated = data.get("last_updated")
        return cls(
            timestamp=to_datetime(data.get("timestamp"), "timestamp"),
            trade_count=int(data.get("trade_count", 0)),
            last_updated=to_datetime(last_updated, "last_updated") if last_updated else None,
            processed=bool(data.get("processed", True)),
        )


# ============================================================
# ORDERS AND FILLS
# ============================================================

@dataclass(frozen=True)
class Order:
    """An order as recorded by the durable order/fill store."""

    id: str
    side: OrderSide
    status: OrderStatus
    size: Decimal
    filled: Decimal = Decimal("0")
    remaining: Optional[Decimal] = None
    price: Optional[Decimal] = None
    symbol: str = ""
    parent_order_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def open_quantity(self) -> Decimal:
        """Quantity still working on the book (remaining = size - filled)."""
        if self.remaining is not None:
            return self.remaining
        return self.size - self.filled

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "Order":
        if not isinstance(raw, Mapping):
            raise DataIntegrityWarning(f"Order is not an object: {raw!r}")
        order_id = _first(raw, "id", "order_id")
        if not order_id:
            raise DataIntegrityWarning("Order without id")
        created_at = _first(raw, "created_at", "timestamp")
        parent = _first(raw, "parent_order_id", "parentOrderId")
        return cls(
            id=str(order_id),
            side=OrderSide.parse(raw.get("side")),
            status=OrderStatus.parse(raw.get("status")),
            size=to_decimal(_first(raw, "size", "amount", "quantity"), "size"),
            filled=to_decimal(raw.get("filled"), "filled", required=False) or Decimal("0"),
            remaining=to_decimal(raw.get("remaining"), "remaining", required=False),
            price=to_decimal(raw.get("price"), "price", required=False),
            symbol=str(raw.get("symbol") or ""),
            parent_order_id=str(parent) if parent else None,
            created_at=to_datetime(created_at, "created_at") if created_at else None,
        )


@dataclass(frozen=True)
class Fill:
    """An execution against an order. Read-only to this engine."""

    id: str
    order_id: str
    side: OrderSide
    size: Decimal
    price: Decimal
    timestamp: Optional[datetime] = None
    symbol: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "Fill":
        if not isinstance(raw, Mapping):
            raise DataIntegrityWarning(f"Fill is not an object: {raw!r}")
        fill_id = raw.get("id")
        order_id = _first(raw, "order_id", "orderId")
        if not fill_id or not order_id:
            raise DataIntegrityWarning(f"Fill without id or order id: {raw!r}")
        timestamp = _first(raw, "timestamp", "created_at")
        return cls(
            id=str(fill_id),
            order_id=str(order_id),
            side=OrderSide.parse(raw.get("side")),
            size=to_decimal(_first(raw, "size", "quantity"), "size"),
            price=to_decimal(raw.get("price"), "price"),
            timestamp=to_datetime(timestamp, "timestamp") if timestamp else None,
            symbol=raw.get("symbol"),
        )


@dataclass(frozen=True)
class OrderCandidate:
    """A prospective order checked against available balance."""

    side: OrderSide
    size: Decimal
    price: Decimal

    @property
    def notional(self) -> Decimal:
        return self.size * self.price

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "OrderCandidate":
        if not isinstance(raw, Mapping):
            raise DataIntegrityWarning(f"Order candidate is not an object: {raw!r}")
        size = to_decimal(_first(raw, "size", "amount", "quantity"), "size")
        price = to_decimal(raw.get("price"), "price")
        if size <= 0 or price <= 0:
            raise DataIntegrityWarning(f"Order candidate must have positive size and price: {raw!r}")
        return cls(side=OrderSide.parse(raw.get("side")), size=size, price=price)


# ============================================================
# POSITIONS
# ============================================================

@dataclass
class Position:
    """An open position derived from a filled buy order. Never persisted."""

    id: str
    symbol: str
    entry_price: Decimal
    size: Decimal
    timestamp: Optional[datetime]
    side: OrderSide = OrderSide.BUY
    order_ids: List[str] = field(default_factory=list)

    # Detail fields (include_details=True)
    current_value: Optional[Decimal] = None
    open_sell_orders: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": str(self.entry_price),
            "size": str(self.size),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "order_ids": list(self.order_ids),
            "current_value": str(self.current_value) if self.current_value is not None else None,
            "open_sell_orders": list(self.open_sell_orders),
        }


@dataclass
class PositionReport:
    """Result of replaying orders and fills."""

    open_positions: List[Position] = field(default_factory=list)
    aggregated_positions: Dict[str, Position] = field(default_factory=dict)
    total_size: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")
    skipped_records: int = 0

    @property
    def total_open_positions(self) -> int:
        return len(self.open_positions)

    @property
    def aggregated_position(self) -> Optional[Position]:
        """The single aggregate when exactly one symbol is open."""
        if len(self.aggregated_positions) == 1:
            return next(iter(self.aggregated_positions.values()))
        return None


# ============================================================
# BALANCES
# ============================================================

@dataclass(frozen=True)
class AssetBalance:
    """Balance for one asset. available + reserved == total."""

    asset: str
    total: Decimal = Decimal("0")
    reserved: Decimal = Decimal("0")

    @property
    def available(self) -> Decimal:
        return self.total - self.reserved

    def to_dict(self) -> Dict[str, str]:
        return {
            "total": str(self.total),
            "available": str(self.available),
            "reserved": str(self.reserved),
        }


@dataclass
class BalanceSnapshot:
    """Per-asset balances at a point in time."""

    balances: Dict[str, AssetBalance]
    mode: TradingMode
    computed_at: datetime
    skipped_records: int = 0

    def get(self, asset: str) -> AssetBalance:
        return self.balances.get(asset) or AssetBalance(asset=asset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balances": {asset: bal.to_dict() for asset, bal in self.balances.items()},
            "mode": self.mode.value,
            "computed_at": self.computed_at.isoformat(),
            "skipped_records": self.skipped_records,
        }


# ============================================================
# RECORD COERCION
# ============================================================

def parse_records(records: Iterable[Any], record_type: Type[R]) -> Tuple[List[R], int]:
    """
    Coerce raw mappings (or ready instances) into Order/Fill records.

    Malformed records are skipped with a logged warning.

    Returns:
        (records, skipped count)
    """
    parsed: List[R] = []
    skipped = 0
    for raw in records or []:
        if isinstance(raw, record_type):
            parsed.append(raw)
            continue
        try:
            parsed.append(record_type.from_mapping(raw))
        except DataIntegrityWarning as e:
            skipped += 1
            logger.warning(f"Skipping malformed {record_type.__name__.lower()}: {e}")
    return parsed, skipped
