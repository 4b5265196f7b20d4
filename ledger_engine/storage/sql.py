"""
Ledger Engine - SQL Key-Value Store.

============================================================
PURPOSE
============================================================
Durable KeyValueStore adapter on SQLAlchemy.

Every key has one row in ledger_kv_keys carrying its kind and
expiry; hash fields and sorted set members live in child tables.
Expired keys are purged lazily on access and in bulk by
purge_expired().

============================================================
"""

import logging
from typing import Dict, List, Mapping, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from ledger_engine.clock import ClockProtocol, get_clock
from ledger_engine.errors import StoragePersistenceError
from ledger_engine.storage.base import KeyValueStore
from ledger_engine.storage.database import Database
from ledger_engine.storage.memory import KIND_HASH, KIND_STRING, KIND_ZSET
from ledger_engine.storage.models import HashFieldModel, KeyModel, SortedMemberModel


logger = logging.getLogger(__name__)


class SqlKeyValueStore(KeyValueStore):
    """
    KeyValueStore backed by three SQL tables.

    Uses the synchronous SQLAlchemy session; each call blocks the event
    loop for the length of its query.
    """

    def __init__(
        self,
        database: Database,
        clock: Optional[ClockProtocol] = None,
        owns_database: bool = False,
    ):
        self._db = database
        self._clock = clock or get_clock()
        self._owns_database = owns_database

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _purge(self, session: Session, key: str) -> None:
        session.execute(delete(HashFieldModel).where(HashFieldModel.key == key))
        session.execute(delete(SortedMemberModel).where(SortedMemberModel.key == key))
        session.execute(delete(KeyModel).where(KeyModel.key == key))

    def _row(
        self,
        session: Session,
        key: str,
        kind: Optional[str] = None,
        create: bool = False,
    ) -> Optional[KeyModel]:
        row = session.get(KeyModel, key)
        if row is not None and row.expires_at is not None and row.expires_at <= self._clock.timestamp():
            self._purge(session, key)
            row = None
        if row is None:
            if not create:
                return None
            row = KeyModel(key=key, kind=kind)
            session.add(row)
            session.flush()
        if kind is not None and row.kind != kind:
            raise StoragePersistenceError(
                f"Key {key} holds a {row.kind}, not a {kind}",
                context={"key": key},
            )
        return row

    def _drop_if_empty(self, session: Session, key: str, child) -> None:
        remaining = session.scalar(select(func.count()).select_from(child).where(child.key == key))
        if not remaining:
            self._purge(session, key)

    # --------------------------------------------------------
    # PLAIN VALUES
    # --------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        with self._db.session_scope() as session:
            row = self._row(session, key, KIND_STRING)
            return row.value if row else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        with self._db.session_scope() as session:
            self._purge(session, key)
            session.add(KeyModel(
                key=key,
                kind=KIND_STRING,
                value=value,
                expires_at=self._clock.timestamp() + ttl_seconds if ttl_seconds else None,
            ))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._db.session_scope() as session:
            for key in keys:
                if self._row(session, key) is not None:
                    self._purge(session, key)
                    removed += 1
        return removed

    # --------------------------------------------------------
    # HASHES
    # --------------------------------------------------------

    async def hash_get(self, key: str, field: str) -> Optional[str]:
        with self._db.session_scope() as session:
            if self._row(session, key, KIND_HASH) is None:
                return None
            item = session.get(HashFieldModel, (key, field))
            return item.value if item else None

    async def hash_set(self, key: str, mapping: Mapping[str, str]) -> int:
        added = 0
        with self._db.session_scope() as session:
            self._row(session, key, KIND_HASH, create=True)
            for field, value in mapping.items():
                item = session.get(HashFieldModel, (key, field))
                if item is None:
                    session.add(HashFieldModel(key=key, field=field, value=value))
                    added += 1
                else:
                    item.value = value
        return added

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        with self._db.session_scope() as session:
            if self._row(session, key, KIND_HASH) is None:
                return {}
            rows = session.execute(
                select(HashFieldModel.field, HashFieldModel.value).where(HashFieldModel.key == key)
            ).all()
            return {field: value for field, value in rows}

    async def hash_len(self, key: str) -> int:
        with self._db.session_scope() as session:
            if self._row(session, key, KIND_HASH) is None:
                return 0
            return session.scalar(
                select(func.count()).select_from(HashFieldModel).where(HashFieldModel.key == key)
            )

    async def hash_del(self, key: str, *fields: str) -> int:
        with self._db.session_scope() as session:
            if self._row(session, key, KIND_HASH) is None or not fields:
                return 0
            result = session.execute(
                delete(HashFieldModel).where(
                    HashFieldModel.key == key,
                    HashFieldModel.field.in_(fields),
                )
            )
            self._drop_if_empty(session, key, HashFieldModel)
            return result.rowcount

    # --------------------------------------------------------
    # SORTED SETS
    # --------------------------------------------------------

    async def sorted_set_add(self, key: str, members: Mapping[str, float]) -> int:
        added = 0
        with self._db.session_scope() as session:
            self._row(session, key, KIND_ZSET, create=True)
            for member, score in members.items():
                item = session.get(SortedMemberModel, (key, member))
                if item is None:
                    session.add(SortedMemberModel(key=key, member=member, score=float(score)))
                    added += 1
                else:
                    item.score = float(score)
        return added

    async def sorted_set_remove(self, key: str, *members: str) -> int:
        with self._db.session_scope() as session:
            if self._row(session, key, KIND_ZSET) is None or not members:
                return 0
            result = session.execute(
                delete(SortedMemberModel).where(
                    SortedMemberModel.key == key,
                    SortedMemberModel.member.in_(members),
                )
            )
            self._drop_if_empty(session, key, SortedMemberModel)
            return result.rowcount

    async def sorted_set_range(
        self,
        key: str,
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        offset: int = 0,
        count: Optional[int] = None,
        descending: bool = False,
    ) -> List[str]:
        with self._db.session_scope() as session:
            if self._row(session, key, KIND_ZSET) is None:
                return []
            query = select(SortedMemberModel.member).where(SortedMemberModel.key == key)
            if min_score is not None:
                query = query.where(SortedMemberModel.score >= min_score)
            if max_score is not None:
                query = query.where(SortedMemberModel.score <= max_score)
            if descending:
                query = query.order_by(SortedMemberModel.score.desc(), SortedMemberModel.member.desc())
            else:
                query = query.order_by(SortedMemberModel.score.asc(), SortedMemberModel.member.asc())
            if offset:
                query = query.offset(offset)
            if count is not None:
                query = query.limit(count)
            return list(session.scalars(query))

    async def sorted_set_card(self, key: str) -> int:
        with self._db.session_scope() as session:
            if self._row(session, key, KIND_ZSET) is None:
                return 0
            return session.scalar(
                select(func.count()).select_from(SortedMemberModel).where(SortedMemberModel.key == key)
            )

    # --------------------------------------------------------
    # KEYS / TTL
    # --------------------------------------------------------

    async def expire(self, key: str, ttl_seconds: float) -> bool:
        with self._db.session_scope() as session:
            row = self._row(session, key)
            if row is None:
                return False
            row.expires_at = self._clock.timestamp() + ttl_seconds
            return True

    async def ttl(self, key: str) -> Optional[float]:
        with self._db.session_scope() as session:
            row = self._row(session, key)
            if row is None or row.expires_at is None:
                return None
            return row.expires_at - self._clock.timestamp()

    async def keys(self, prefix: str) -> List[str]:
        with self._db.session_scope() as session:
            query = (
                select(KeyModel.key)
                .where(KeyModel.key.startswith(prefix, autoescape=True))
                .where(or_(KeyModel.expires_at.is_(None), KeyModel.expires_at > self._clock.timestamp()))
                .order_by(KeyModel.key)
            )
            return list(session.scalars(query))

    async def purge_expired(self) -> int:
        """Delete every expired key. Returns the number purged."""
        with self._db.session_scope() as session:
            expired = list(session.scalars(
                select(KeyModel.key).where(KeyModel.expires_at <= self._clock.timestamp())
            ))
            for key in expired:
                self._purge(session, key)
        if expired:
            logger.info(f"Purged {len(expired)} expired keys")
        return len(expired)

    async def ping(self) -> bool:
        return self._db.ping()

    async def close(self) -> None:
        if self._owns_database:
            self._db.dispose()
