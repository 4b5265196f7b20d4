"""
Ledger Engine - In-Memory Key-Value Store.

Process-local adapter with clock-driven lazy expiry. Expired keys
are purged on access.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from ledger_engine.clock import ClockProtocol, get_clock
from ledger_engine.errors import StoragePersistenceError
from ledger_engine.storage.base import KeyValueStore


logger = logging.getLogger(__name__)


KIND_STRING = "string"
KIND_HASH = "hash"
KIND_ZSET = "zset"


@dataclass
class _Entry:
    kind: str
    value: Any
    expires_at: Optional[float] = None


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store honoring per-key TTLs."""

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or get_clock()
        self._data: Dict[str, _Entry] = {}

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock.timestamp():
            del self._data[key]
            return None
        return entry

    def _typed(self, key: str, kind: str, create: bool = False) -> Optional[_Entry]:
        entry = self._live(key)
        if entry is None:
            if not create:
                return None
            entry = _Entry(kind=kind, value={} if kind != KIND_STRING else "")
            self._data[key] = entry
        if entry.kind != kind:
            raise StoragePersistenceError(
                f"Key {key} holds a {entry.kind}, not a {kind}",
                context={"key": key},
            )
        return entry

    def _drop_if_empty(self, key: str, entry: _Entry) -> None:
        if not entry.value:
            self._data.pop(key, None)

    # --------------------------------------------------------
    # PLAIN VALUES
    # --------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        entry = self._typed(key, KIND_STRING)
        return entry.value if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock.timestamp() + ttl_seconds if ttl_seconds else None
        self._data[key] = _Entry(kind=KIND_STRING, value=value, expires_at=expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    # --------------------------------------------------------
    # HASHES
    # --------------------------------------------------------

    async def hash_get(self, key: str, field: str) -> Optional[str]:
        entry = self._typed(key, KIND_HASH)
        return entry.value.get(field) if entry else None

    async def hash_set(self, key: str, mapping: Mapping[str, str]) -> int:
        entry = self._typed(key, KIND_HASH, create=True)
        added = sum(1 for field in mapping if field not in entry.value)
        entry.value.update(mapping)
        return added

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        entry = self._typed(key, KIND_HASH)
        return dict(entry.value) if entry else {}

    async def hash_len(self, key: str) -> int:
        entry = self._typed(key, KIND_HASH)
        return len(entry.value) if entry else 0

    async def hash_del(self, key: str, *fields: str) -> int:
        entry = self._typed(key, KIND_HASH)
        if entry is None:
            return 0
        removed = 0
        for field in fields:
            if entry.value.pop(field, None) is not None:
                removed += 1
        self._drop_if_empty(key, entry)
        return removed

    # --------------------------------------------------------
    # SORTED SETS
    # --------------------------------------------------------

    async def sorted_set_add(self, key: str, members: Mapping[str, float]) -> int:
        entry = self._typed(key, KIND_ZSET, create=True)
        added = sum(1 for member in members if member not in entry.value)
        entry.value.update({member: float(score) for member, score in members.items()})
        return added

    async def sorted_set_remove(self, key: str, *members: str) -> int:
        entry = self._typed(key, KIND_ZSET)
        if entry is None:
            return 0
        removed = 0
        for member in members:
            if entry.value.pop(member, None) is not None:
                removed += 1
        self._drop_if_empty(key, entry)
        return removed

    async def sorted_set_range(
        self,
        key: str,
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        offset: int = 0,
        count: Optional[int] = None,
        descending: bool = False,
    ) -> List[str]:
        entry = self._typed(key, KIND_ZSET)
        if entry is None:
            return []
        items = [
            (score, member) for member, score in entry.value.items()
            if (min_score is None or score >= min_score)
            and (max_score is None or score <= max_score)
        ]
        items.sort(reverse=descending)
        members = [member for _, member in items]
        end = offset + count if count is not None else None
        return members[offset:end]

    async def sorted_set_card(self, key: str) -> int:
        entry = self._typed(key, KIND_ZSET)
        return len(entry.value) if entry else 0

    # --------------------------------------------------------
    # KEYS / TTL
    # --------------------------------------------------------

    async def expire(self, key: str, ttl_seconds: float) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        entry.expires_at = self._clock.timestamp() + ttl_seconds
        return True

    async def ttl(self, key: str) -> Optional[float]:
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return entry.expires_at - self._clock.timestamp()

    async def keys(self, prefix: str) -> List[str]:
        return sorted(key for key in list(self._data) if key.startswith(prefix) and self._live(key))

    async def close(self) -> None:
        self._data.clear()
