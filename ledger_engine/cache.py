"""
Ledger Engine - Ledger Cache.

============================================================
PURPOSE
============================================================
Time-bucketed cache of the exchange trade history.

KEY LAYOUT (under <prefix>):
- <prefix>:trades:YYYY-MM-DD-HH  hour bucket hash (id -> trade JSON,
                                 plus _metadata)
- <prefix>:trade:<id>            per-trade hash for O(1) lookup
- <prefix>:pair:<pair>           sorted set of ids by timestamp
- <prefix>:timeline              sorted set of all ids by timestamp

============================================================
INVARIANTS
============================================================
- put() is an idempotent upsert; the same id never duplicates
- A trade lives in exactly one bucket, chosen by its timestamp
- Every write refreshes the TTL of each key it touches
- Bucket metadata counts only distinct ids
- Reads never fail because one bucket is unreadable or holds
  a malformed record; those are logged and skipped

============================================================
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ledger_engine.buckets import METADATA_FIELD, KeyLayout, floor_to_hour, group_by_hour, iterate_hours
from ledger_engine.clock import ClockProtocol, get_clock
from ledger_engine.config import CacheConfig
from ledger_engine.errors import DataIntegrityWarning, LedgerEngineError, StoragePersistenceError
from ledger_engine.storage.base import KeyValueStore
from ledger_engine.types import HourBucketMetadata, TradeRecord


logger = logging.getLogger(__name__)


LookupHint = Union[datetime, Tuple[datetime, datetime]]


@dataclass
class PutResult:
    """Outcome of a batch ingestion."""

    stored: int = 0
    duplicates: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.stored + self.duplicates


class LedgerCache:
    """
    Hour-bucketed trade cache over a KeyValueStore.

    The cache never branches on where a trade came from; live and
    synthetic trades enter through the same put() path.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[CacheConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._config = config or CacheConfig()
        self._clock = clock or get_clock()
        self._keys = KeyLayout(self._config.key_prefix)

        self._stats = {
            "writes": 0,
            "duplicates": 0,
            "write_errors": 0,
            "queries": 0,
            "hits": 0,
            "misses": 0,
            "trades_retrieved": 0,
            "integrity_warnings": 0,
            "bucket_errors": 0,
        }

    @property
    def keys(self) -> KeyLayout:
        return self._keys

    @property
    def retention(self) -> int:
        return self._config.retention_seconds

    def _cutoff(self) -> float:
        return self._clock.timestamp() - self.retention

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    async def put(self, trade: TradeRecord) -> bool:
        """
        Upsert one trade into its hour bucket.

        Returns:
            True if the id was not already cached
        """
        is_new = await self._put_entry(trade)
        if is_new:
            await self._write_metadata(self._keys.bucket(trade.timestamp), trade.timestamp)
        return is_new

    async def _put_entry(self, trade: TradeRecord) -> bool:
        """Write the bucket entry and indices; metadata is left to the caller."""
        bucket_key = self._keys.bucket(trade.timestamp)
        trade_key = self._keys.trade(trade.id)
        pair_key = self._keys.pair(trade.pair)
        payload = json.dumps(trade.to_dict(), sort_keys=True)

        is_new = await self._store.hash_get(bucket_key, trade.id) is None
        await self._store.hash_set(bucket_key, {trade.id: payload})
        await self._store.hash_set(trade_key, {
            "data": payload,
            "cached_at": str(self._clock.timestamp()),
            "pair": trade.pair,
            "side": trade.side.value,
            "time": str(trade.epoch),
        })
        await self._store.sorted_set_add(pair_key, {trade.id: trade.epoch})
        await self._store.sorted_set_add(self._keys.timeline, {trade.id: trade.epoch})

        if is_new:
            self._stats["writes"] += 1
        else:
            self._stats["duplicates"] += 1

        for key in (bucket_key, trade_key, pair_key, self._keys.timeline):
            await self._store.expire(key, self.retention)
        return is_new

    async def put_many(self, trades: Sequence[TradeRecord]) -> PutResult:
        """
        Ingest a batch. One bad item never aborts the rest.

        Metadata is rewritten once per bucket that gained a new id.
        """
        result = PutResult()
        for hour, group in group_by_hour(trades).items():
            bucket_key = self._keys.bucket(hour)
            gained = False
            for trade in group:
                try:
                    if await self._put_entry(trade):
                        result.stored += 1
                        gained = True
                    else:
                        result.duplicates += 1
                except LedgerEngineError as e:
                    result.failed += 1
                    result.errors.append(f"{trade.id}: {e}")
                    self._stats["write_errors"] += 1
                    logger.error(f"Failed to cache trade {trade.id}: {e}")
            if gained:
                try:
                    await self._write_metadata(bucket_key, hour)
                except LedgerEngineError as e:
                    self._stats["write_errors"] += 1
                    logger.error(f"Failed to update metadata for {bucket_key}: {e}")
        if trades:
            await self.prune_indices()
        return result

    async def _write_metadata(self, bucket_key: str, moment: datetime) -> None:
        has_metadata = await self._store.hash_get(bucket_key, METADATA_FIELD) is not None
        field_count = await self._store.hash_len(bucket_key)
        metadata = HourBucketMetadata(
            timestamp=floor_to_hour(moment),
            trade_count=field_count - (1 if has_metadata else 0),
            last_updated=self._clock.now(),
        )
        await self._store.hash_set(bucket_key, {METADATA_FIELD: json.dumps(metadata.to_dict())})

    async def prune_indices(self) -> int:
        """Drop index members older than the retention window."""
        cutoff = self._cutoff()
        removed = 0
        index_keys = [self._keys.timeline]
        index_keys.extend(await self._store.keys(self._keys.pair("")))
        for key in index_keys:
            stale = await self._store.sorted_set_range(key, max_score=cutoff)
            if stale:
                removed += await self._store.sorted_set_remove(key, *stale)
        if removed:
            logger.debug(f"Pruned {removed} expired index entries")
        return removed

    # --------------------------------------------------------
    # DECODING
    # --------------------------------------------------------

    def _decode(self, raw: Optional[str], source: str) -> Optional[TradeRecord]:
        if raw is None:
            return None
        try:
            return TradeRecord.from_dict(json.loads(raw))
        except (ValueError, TypeError, DataIntegrityWarning) as e:
            self._stats["integrity_warnings"] += 1
            logger.warning(f"Skipping malformed cached trade in {source}: {e}")
            return None

    async def _load_trade(self, trade_id: str) -> Optional[TradeRecord]:
        key = self._keys.trade(trade_id)
        return self._decode(await self._store.hash_get(key, "data"), key)

    async def _load_many(self, trade_ids: Sequence[str]) -> List[TradeRecord]:
        trades = []
        for trade_id in trade_ids:
            trade = await self._load_trade(trade_id)
            if trade is not None:
                trades.append(trade)
        self._stats["trades_retrieved"] += len(trades)
        return trades

    async def _read_bucket(self, bucket_key: str) -> List[TradeRecord]:
        try:
            fields = await self._store.hash_get_all(bucket_key)
        except StoragePersistenceError as e:
            self._stats["bucket_errors"] += 1
            logger.error(f"Failed to read bucket {bucket_key}: {e}")
            return []
        trades = []
        for name, raw in fields.items():
            if name == METADATA_FIELD:
                continue
            trade = self._decode(raw, bucket_key)
            if trade is not None:
                trades.append(trade)
        return trades

    def _bucket_keys(self, hint: Optional[LookupHint]) -> List[str]:
        """Bucket keys to search, newest first."""
        if isinstance(hint, datetime):
            return [self._keys.bucket(hint)]
        if hint is None:
            end = self._clock.now()
            start = end - timedelta(seconds=self._config.effective_lookup_window)
        else:
            start, end = hint
        return list(reversed(self._keys.hour_keys(start, end)))

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    async def get_by_id(self, trade_id: str, hint: Optional[LookupHint] = None) -> Optional[TradeRecord]:
        """
        Find a trade by id through the hour buckets.

        Args:
            trade_id: Exchange trade id
            hint: Trade timestamp (single bucket) or (start, end) range.
                Without a hint the recent lookup window is scanned
                bucket by bucket, newest first.
        """
        self._stats["queries"] += 1
        for bucket_key in self._bucket_keys(hint):
            try:
                raw = await self._store.hash_get(bucket_key, trade_id)
            except StoragePersistenceError as e:
                self._stats["bucket_errors"] += 1
                logger.error(f"Failed to read bucket {bucket_key}: {e}")
                continue
            trade = self._decode(raw, bucket_key)
            if trade is not None:
                self._stats["hits"] += 1
                self._stats["trades_retrieved"] += 1
                return trade
        self._stats["misses"] += 1
        return None

    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        """O(1) lookup through the per-trade key, falling back to a bucket scan."""
        trade = await self._load_trade(trade_id)
        if trade is None:
            return await self.get_by_id(trade_id)
        self._stats["queries"] += 1
        self._stats["hits"] += 1
        self._stats["trades_retrieved"] += 1
        return trade

    async def get_by_pair(self, pair: str, limit: int = 100) -> List[TradeRecord]:
        """Most recent trades for a pair, newest first."""
        self._stats["queries"] += 1
        ids = await self._store.sorted_set_range(
            self._keys.pair(pair),
            min_score=self._cutoff(),
            count=limit,
            descending=True,
        )
        return await self._load_many(ids)

    async def get_recent(self, limit: int = 50, since: Optional[datetime] = None) -> List[TradeRecord]:
        """Most recent trades across all pairs, newest first."""
        self._stats["queries"] += 1
        min_score = self._cutoff()
        if since is not None:
            min_score = max(min_score, since.timestamp())
        ids = await self._store.sorted_set_range(
            self._keys.timeline,
            min_score=min_score,
            count=limit,
            descending=True,
        )
        return await self._load_many(ids)

    async def get_trades_in_range(self, start: datetime, end: datetime) -> List[TradeRecord]:
        """All cached trades with start <= timestamp <= end, newest first."""
        self._stats["queries"] += 1
        trades = []
        for bucket_key in self._bucket_keys((start, end)):
            trades.extend(t for t in await self._read_bucket(bucket_key) if start <= t.timestamp <= end)
        trades.sort(key=lambda t: (t.timestamp, t.id), reverse=True)
        self._stats["trades_retrieved"] += len(trades)
        return trades

    async def find_trades_by_order_id(
        self,
        order_id: str,
        hint: Optional[LookupHint] = None,
    ) -> List[TradeRecord]:
        """Trades executed for one exchange order, newest first."""
        self._stats["queries"] += 1
        trades = []
        for bucket_key in self._bucket_keys(hint):
            trades.extend(t for t in await self._read_bucket(bucket_key) if t.order_id == order_id)
        trades.sort(key=lambda t: (t.timestamp, t.id), reverse=True)
        self._stats["trades_retrieved"] += len(trades)
        return trades

    # --------------------------------------------------------
    # MAINTENANCE
    # --------------------------------------------------------

    async def remove_trade(self, trade_id: str, hint: Optional[LookupHint] = None) -> bool:
        """Remove a trade from its bucket and every index."""
        trade = await self._load_trade(trade_id)
        if trade is None:
            trade = await self.get_by_id(trade_id, hint)
        if trade is None:
            return False

        bucket_key = self._keys.bucket(trade.timestamp)
        await self._store.hash_del(bucket_key, trade_id)
        if await self._store.hash_len(bucket_key) > 1:
            await self._write_metadata(bucket_key, trade.timestamp)
        else:
            await self._store.delete(bucket_key)
        await self._store.sorted_set_remove(self._keys.pair(trade.pair), trade_id)
        await self._store.sorted_set_remove(self._keys.timeline, trade_id)
        await self._store.delete(self._keys.trade(trade_id))
        logger.info(f"Removed trade {trade_id} from {bucket_key}")
        return True

    async def get_bucket_stats(self, hour: datetime) -> Dict[str, Any]:
        """Metadata and size of the bucket containing `hour`."""
        bucket_key = self._keys.bucket(hour)
        raw = await self._store.hash_get(bucket_key, METADATA_FIELD)
        metadata = None
        if raw is not None:
            try:
                metadata = HourBucketMetadata.from_dict(json.loads(raw)).to_dict()
            except (ValueError, TypeError, DataIntegrityWarning) as e:
                self._stats["integrity_warnings"] += 1
                logger.warning(f"Malformed metadata in {bucket_key}: {e}")
        field_count = await self._store.hash_len(bucket_key)
        return {
            "key": bucket_key,
            "exists": field_count > 0,
            "trade_count": max(field_count - (1 if raw is not None else 0), 0),
            "metadata": metadata,
            "ttl_seconds": await self._store.ttl(bucket_key),
        }

    async def count(self) -> int:
        """Trades currently inside the retention window."""
        await self.prune_indices()
        return await self._store.sorted_set_card(self._keys.timeline)

    async def clear(self) -> int:
        """Delete every key under this cache's prefix."""
        keys = await self._store.keys(self._keys.namespace)
        removed = await self._store.delete(*keys) if keys else 0
        logger.info(f"Cleared {removed} keys under {self._keys.namespace}")
        return removed

    async def health_check(self) -> Dict[str, Any]:
        try:
            healthy = await self._store.ping()
            error = None
        except LedgerEngineError as e:
            healthy = False
            error = str(e)
        return {"healthy": healthy, "key_prefix": self._config.key_prefix, "error": error}

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
        }
