"""
Ledger Engine - Database Resource.

============================================================
PURPOSE
============================================================
Owned SQLAlchemy engine + session factory for the SQL adapters.

- Constructed explicitly and injected (no module globals)
- Sessions scoped per operation
- Hard failures on persistence errors
- Released by dispose()

============================================================
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ledger_engine.config import StorageConfig
from ledger_engine.errors import ConfigurationError, StoragePersistenceError
from ledger_engine.storage.models import Base


logger = logging.getLogger(__name__)


def _engine_options(url: str, config: StorageConfig) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "poolclass": QueuePool,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": config.pool_recycle_seconds,
        "pool_pre_ping": True,
    }


class Database:
    """Engine and session factory for one database URL."""

    def __init__(self, url: str, config: Optional[StorageConfig] = None):
        if not url:
            raise ConfigurationError("Database URL is required")
        config = config or StorageConfig(database_url=url)
        self.url = url
        self._engine: Optional[Engine] = create_engine(
            url,
            echo=config.echo,
            future=True,
            **_engine_options(url, config),
        )
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            logger.debug("Database connection established")

        logger.info(f"Database engine created for: {url.split('@')[-1]}")

    @classmethod
    def from_config(cls, config: StorageConfig) -> "Database":
        return cls(config.database_url, config)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise StoragePersistenceError("Database has been disposed")
        return self._engine

    def create_all(self) -> None:
        """Create the ledger tables if they do not exist."""
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create ledger tables: {e}")
            raise StoragePersistenceError(f"Table creation failed: {e}", cause=e) from e

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Transaction boundary for one operation.

        Commits only if no exception occurs, rolls back on any.
        """
        if self._engine is None:
            raise StoragePersistenceError("Database has been disposed")
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            session.rollback()
            raise StoragePersistenceError(f"Transaction failed: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            return False

    def dispose(self) -> None:
        """Release pooled connections. Further use raises."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Database engine disposed")
