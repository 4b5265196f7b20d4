"""
Ledger Engine - Key-Value Store Interface.

============================================================
PURPOSE
============================================================
One capability interface for the backing key-value store used
by the ledger cache. Each concrete store gets one adapter:

- InMemoryKeyValueStore  (tests, paper sessions)
- SqlKeyValueStore       (durable, SQLAlchemy)

Three value kinds live under a key: plain strings, hashes
(field -> string) and sorted sets (member -> float score).
TTLs apply per key.

============================================================
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional


class KeyValueStore(ABC):
    """Abstract key-value store adapter. All methods are async."""

    # --------------------------------------------------------
    # PLAIN VALUES
    # --------------------------------------------------------

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys of any kind. Returns how many existed."""
        pass

    # --------------------------------------------------------
    # HASHES
    # --------------------------------------------------------

    @abstractmethod
    async def hash_get(self, key: str, field: str) -> Optional[str]:
        pass

    @abstractmethod
    async def hash_set(self, key: str, mapping: Mapping[str, str]) -> int:
        """Set hash fields. Returns the number of fields that were new."""
        pass

    @abstractmethod
    async def hash_get_all(self, key: str) -> Dict[str, str]:
        pass

    @abstractmethod
    async def hash_len(self, key: str) -> int:
        pass

    @abstractmethod
    async def hash_del(self, key: str, *fields: str) -> int:
        pass

    # --------------------------------------------------------
    # SORTED SETS
    # --------------------------------------------------------

    @abstractmethod
    async def sorted_set_add(self, key: str, members: Mapping[str, float]) -> int:
        """Add or rescore members. Returns the number of new members."""
        pass

    @abstractmethod
    async def sorted_set_remove(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    async def sorted_set_range(
        self,
        key: str,
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        offset: int = 0,
        count: Optional[int] = None,
        descending: bool = False,
    ) -> List[str]:
        """Members with min_score <= score <= max_score, ordered by score."""
        pass

    @abstractmethod
    async def sorted_set_card(self, key: str) -> int:
        pass

    # --------------------------------------------------------
    # KEYS / TTL
    # --------------------------------------------------------

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: float) -> bool:
        """Set a key's TTL. Returns False if the key does not exist."""
        pass

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, None if the key has no TTL or is missing."""
        pass

    @abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        """Live keys starting with prefix."""
        pass

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass
