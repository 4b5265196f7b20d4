"""
Key-Value Store Adapter Tests.

============================================================
PURPOSE
============================================================
Both adapters must behave identically:
- InMemoryKeyValueStore
- SqlKeyValueStore (SQLite in-memory)

TEST CATEGORIES:
- Plain values and TTL expiry
- Hashes
- Sorted sets
- Key listing and kind checks

============================================================
"""

from datetime import datetime, timezone

import pytest

from ledger_engine.clock import MockClock
from ledger_engine.errors import StoragePersistenceError
from ledger_engine.storage import Database, InMemoryKeyValueStore, SqlKeyValueStore


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Frozen clock."""
    return MockClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(params=["memory", "sql"])
def store(request, clock):
    """Each adapter in turn."""
    if request.param == "memory":
        yield InMemoryKeyValueStore(clock=clock)
        return
    database = Database("sqlite://")
    database.create_all()
    yield SqlKeyValueStore(database, clock=clock)
    database.dispose()


# ============================================================
# PLAIN VALUE TESTS
# ============================================================

class TestPlainValues:
    """Tests for get/set/delete and TTL."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, store):
        """A set value is readable."""
        await store.set("k", "v")
        assert await store.get("k") == "v"
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_value_expires(self, store, clock):
        """Values vanish once their TTL elapses."""
        await store.set("k", "v", ttl_seconds=10)
        clock.advance(9)
        assert await store.get("k") == "v"
        clock.advance(2)
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_counts_existing(self, store):
        """delete() reports only keys that existed."""
        await store.set("a", "1")
        await store.hash_set("b", {"f": "1"})
        assert await store.delete("a", "b", "c") == 2
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_expire_and_ttl(self, store, clock):
        """expire() sets a TTL on existing keys only."""
        assert await store.expire("missing", 5) is False
        await store.hash_set("h", {"f": "1"})
        assert await store.ttl("h") is None
        assert await store.expire("h", 60) is True
        clock.advance(20)
        assert await store.ttl("h") == pytest.approx(40)
        clock.advance(41)
        assert await store.hash_get_all("h") == {}


# ============================================================
# HASH TESTS
# ============================================================

class TestHashes:
    """Tests for hash operations."""

    @pytest.mark.asyncio
    async def test_hash_set_counts_new_fields(self, store):
        """Only new fields are counted."""
        assert await store.hash_set("h", {"a": "1", "b": "2"}) == 2
        assert await store.hash_set("h", {"a": "9", "c": "3"}) == 1
        assert await store.hash_get_all("h") == {"a": "9", "b": "2", "c": "3"}
        assert await store.hash_len("h") == 3

    @pytest.mark.asyncio
    async def test_hash_get(self, store):
        """Single field reads."""
        await store.hash_set("h", {"a": "1"})
        assert await store.hash_get("h", "a") == "1"
        assert await store.hash_get("h", "zz") is None
        assert await store.hash_get("nope", "a") is None

    @pytest.mark.asyncio
    async def test_hash_del_drops_empty_key(self, store):
        """Removing the last field removes the key."""
        await store.hash_set("h", {"a": "1", "b": "2"})
        assert await store.hash_del("h", "a", "missing") == 1
        assert await store.hash_len("h") == 1
        await store.hash_del("h", "b")
        assert await store.keys("h") == []


# ============================================================
# SORTED SET TESTS
# ============================================================

class TestSortedSets:
    """Tests for sorted set operations."""

    @pytest.mark.asyncio
    async def test_range_ordering(self, store):
        """Members come back ordered by score in either direction."""
        await store.sorted_set_add("z", {"a": 3.0, "b": 1.0, "c": 2.0})
        assert await store.sorted_set_range("z") == ["b", "c", "a"]
        assert await store.sorted_set_range("z", descending=True) == ["a", "c", "b"]

    @pytest.mark.asyncio
    async def test_range_filters_and_limits(self, store):
        """Score bounds are inclusive; offset and count page the result."""
        await store.sorted_set_add("z", {f"m{i}": float(i) for i in range(10)})
        assert await store.sorted_set_range("z", min_score=3, max_score=5) == ["m3", "m4", "m5"]
        assert await store.sorted_set_range("z", descending=True, count=2) == ["m9", "m8"]
        assert await store.sorted_set_range("z", offset=8) == ["m8", "m9"]

    @pytest.mark.asyncio
    async def test_add_rescores(self, store):
        """Re-adding a member updates its score without growing the set."""
        assert await store.sorted_set_add("z", {"a": 1.0}) == 1
        assert await store.sorted_set_add("z", {"a": 5.0, "b": 2.0}) == 1
        assert await store.sorted_set_card("z") == 2
        assert await store.sorted_set_range("z") == ["b", "a"]

    @pytest.mark.asyncio
    async def test_remove(self, store):
        """Removed members disappear."""
        await store.sorted_set_add("z", {"a": 1.0, "b": 2.0})
        assert await store.sorted_set_remove("z", "a", "x") == 1
        assert await store.sorted_set_range("z") == ["b"]


# ============================================================
# KEY TESTS
# ============================================================

class TestKeys:
    """Tests for key listing and kind enforcement."""

    @pytest.mark.asyncio
    async def test_keys_by_prefix(self, store, clock):
        """Only live keys under the prefix are listed."""
        await store.set("p:a", "1")
        await store.hash_set("p:b", {"f": "1"})
        await store.set("q:a", "1")
        await store.set("p:c", "1", ttl_seconds=1)
        clock.advance(2)
        assert await store.keys("p:") == ["p:a", "p:b"]

    @pytest.mark.asyncio
    async def test_wrong_kind_raises(self, store):
        """Using a key as the wrong kind is a storage error."""
        await store.set("k", "v")
        with pytest.raises(StoragePersistenceError):
            await store.hash_set("k", {"f": "1"})

    @pytest.mark.asyncio
    async def test_set_replaces_other_kind(self, store):
        """set() overwrites whatever the key held."""
        await store.hash_set("k", {"f": "1"})
        await store.set("k", "v")
        assert await store.get("k") == "v"


class TestSqlMaintenance:
    """SQL-only maintenance."""

    @pytest.mark.asyncio
    async def test_purge_expired(self, clock):
        """purge_expired() removes expired keys and their children."""
        database = Database("sqlite://")
        database.create_all()
        store = SqlKeyValueStore(database, clock=clock, owns_database=True)

        await store.hash_set("h", {"a": "1"})
        await store.expire("h", 5)
        await store.sorted_set_add("z", {"m": 1.0})
        clock.advance(10)

        assert await store.purge_expired() == 1
        assert await store.keys("") == ["z"]
        assert await store.ping() is True
        await store.close()
