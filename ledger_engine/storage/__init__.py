"""
Ledger Engine - Storage Adapters.

Key-value adapters for the ledger cache and the durable
order/fill store read by the reconstructors.
"""

from .base import KeyValueStore
from .memory import InMemoryKeyValueStore
from .database import Database
from .models import Base, FillModel, HashFieldModel, KeyModel, OrderModel, SortedMemberModel
from .sql import SqlKeyValueStore
from .order_store import OrderFillStore, SqlOrderFillStore


__all__ = [
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SqlKeyValueStore",
    "Database",
    "Base",
    "KeyModel",
    "HashFieldModel",
    "SortedMemberModel",
    "OrderModel",
    "FillModel",
    "OrderFillStore",
    "SqlOrderFillStore",
]
