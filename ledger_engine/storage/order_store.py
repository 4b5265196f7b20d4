"""
Ledger Engine - Durable Order/Fill Store.

============================================================
PURPOSE
============================================================
Read interface over the durable order and fill records that the
position and balance reconstructors replay. The store is owned
externally; reconstruction only reads, and always reads fresh.

Records are returned raw (mappings) so the reconstructors can
skip malformed ones individually.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, List, Mapping, Union

from sqlalchemy import select

from ledger_engine.storage.database import Database
from ledger_engine.storage.models import FillModel, OrderModel
from ledger_engine.types import Fill, Order


logger = logging.getLogger(__name__)


RawRecord = Mapping[str, Any]


class OrderFillStore(ABC):
    """Read access to one scope's orders and fills."""

    @abstractmethod
    async def list_orders(self, scope: str) -> List[RawRecord]:
        pass

    @abstractmethod
    async def list_fills(self, scope: str) -> List[RawRecord]:
        pass

    async def close(self) -> None:
        pass


class SqlOrderFillStore(OrderFillStore):
    """
    Order/fill store on the ledger_orders / ledger_fills tables.

    Queries run on the synchronous SQLAlchemy session and block the event
    loop while they execute.
    """

    def __init__(self, database: Database, owns_database: bool = False):
        self._db = database
        self._owns_database = owns_database

    async def list_orders(self, scope: str) -> List[RawRecord]:
        with self._db.session_scope() as session:
            rows = session.scalars(
                select(OrderModel)
                .where(OrderModel.scope_id == scope)
                .order_by(OrderModel.created_at, OrderModel.id)
            )
            return [row.to_dict() for row in rows]

    async def list_fills(self, scope: str) -> List[RawRecord]:
        with self._db.session_scope() as session:
            rows = session.scalars(
                select(FillModel)
                .where(FillModel.scope_id == scope)
                .order_by(FillModel.timestamp, FillModel.id)
            )
            return [row.to_dict() for row in rows]

    # --------------------------------------------------------
    # WRITES (used by the owning order system and fixtures)
    # --------------------------------------------------------

    async def save_order(self, scope: str, order: Union[Order, RawRecord]) -> None:
        """Insert or update one order."""
        if not isinstance(order, Order):
            order = Order.from_mapping(order)
        with self._db.session_scope() as session:
            row = session.get(OrderModel, order.id) or OrderModel(id=order.id, scope_id=scope)
            row.parent_order_id = order.parent_order_id
            row.symbol = order.symbol
            row.side = order.side.value
            row.status = order.status.value
            row.size = order.size
            row.filled = order.filled
            row.remaining = order.remaining
            row.price = order.price
            if order.created_at is not None:
                row.created_at = _naive_utc(order.created_at)
            session.add(row)
        logger.debug(f"Saved order {order.id} ({order.status.value}) for scope {scope}")

    async def save_fill(self, scope: str, fill: Union[Fill, RawRecord]) -> None:
        """Insert one fill. Fills are immutable; re-saving an id is a no-op."""
        if not isinstance(fill, Fill):
            fill = Fill.from_mapping(fill)
        with self._db.session_scope() as session:
            if session.get(FillModel, fill.id) is not None:
                return
            row = FillModel(
                id=fill.id,
                scope_id=scope,
                order_id=fill.order_id,
                symbol=fill.symbol,
                side=fill.side.value,
                size=fill.size,
                price=fill.price,
            )
            if fill.timestamp is not None:
                row.timestamp = _naive_utc(fill.timestamp)
            session.add(row)
        logger.debug(f"Saved fill {fill.id} for order {fill.order_id}")

    async def close(self) -> None:
        if self._owns_database:
            self._db.dispose()


def _naive_utc(moment: datetime) -> datetime:
    """DateTime columns hold naive UTC."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
