"""
Ledger Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for the SQL adapters.

TABLES:
- ledger_kv_keys:           key registry (kind, plain value, expiry)
- ledger_kv_hash_fields:    hash field values
- ledger_kv_sorted_members: sorted set members and scores
- ledger_orders:            durable order records
- ledger_fills:             durable fill records

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for ledger ORM models."""
    pass


# ============================================================
# KEY-VALUE MODELS
# ============================================================

class KeyModel(Base):
    """One key of any kind, with its optional expiry."""

    __tablename__ = "ledger_kv_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    value: Mapped[Optional[str]] = mapped_column(Text)
    expires_at: Mapped[Optional[float]] = mapped_column(Float, index=True)


class HashFieldModel(Base):
    """A field of a hash key."""

    __tablename__ = "ledger_kv_hash_fields"

    key: Mapped[str] = mapped_column(
        String(255), ForeignKey("ledger_kv_keys.key", ondelete="CASCADE"), primary_key=True
    )
    field: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class SortedMemberModel(Base):
    """A member of a sorted set key."""

    __tablename__ = "ledger_kv_sorted_members"

    key: Mapped[str] = mapped_column(
        String(255), ForeignKey("ledger_kv_keys.key", ondelete="CASCADE"), primary_key=True
    )
    member: Mapped[str] = mapped_column(String(255), primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("ix_ledger_kv_sorted_members_key_score", "key", "score"),
    )


# ============================================================
# ORDER / FILL MODELS
# ============================================================

class OrderModel(Base):
    """Persisted order record for one trading scope."""

    __tablename__ = "ledger_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    parent_order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    size: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    filled: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    remaining: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_ledger_orders_scope_status", "scope_id", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_order_id": self.parent_order_id,
            "symbol": self.symbol,
            "side": self.side,
            "status": self.status,
            "size": self.size,
            "filled": self.filled,
            "remaining": self.remaining,
            "price": self.price,
            "created_at": self.created_at,
        }


class FillModel(Base):
    """Persisted fill record."""

    __tablename__ = "ledger_fills"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    symbol: Mapped[Optional[str]] = mapped_column(String(32))
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    size: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side,
            "size": self.size,
            "price": self.price,
            "timestamp": self.timestamp,
        }
