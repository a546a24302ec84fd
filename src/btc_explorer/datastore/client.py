"""Index database handle — engine, sessions and on-disk file lifecycle.

The address index normally lives in a single SQLite file. Opening prepares
the parent directory and creates missing tables; closing checkpoints the
write-ahead log so the file is self-contained at rest.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from btc_explorer.datastore.engines import create_engine
from btc_explorer.errors.definitions import StoreOpenError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.orm import DeclarativeBase

    from btc_explorer.config.settings import IndexerConfig

logger = logging.getLogger(__name__)


def database_path(dsn: str) -> Path | None:
    """Return the file behind a SQLite DSN, or None for memory and non-SQLite DSNs."""
    url = make_url(dsn)
    database = url.database
    if url.get_backend_name() != "sqlite" or not database:
        return None
    if database == ":memory:" or database.startswith("file:"):
        return None
    return Path(database)


class Datastore:
    """Async handle on the index database.

    Usage::

        ds = Datastore(indexer_config, Base)
        await ds.open()
        async with ds.transaction() as session:
            session.add(row)
        await ds.close()

    Args:
        config: Indexer configuration (DSN and SQLite sizing).
        base: Declarative base whose tables are created on open.
    """

    def __init__(self, config: IndexerConfig, base: type[DeclarativeBase]) -> None:
        self._config = config
        self._base = base
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def path(self) -> Path | None:
        return database_path(self._config.dsn)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            msg = "Index database is not open; call open() first"
            raise RuntimeError(msg)
        return self._engine

    async def open(self) -> None:
        """Create the engine and any missing tables. No-op when already open.

        Raises:
            StoreOpenError: The path is inaccessible or the schema can't be created.
        """
        if self._engine is not None:
            return
        try:
            path = self.path
            if path is not None:
                path.parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(self._config)
            async with self._engine.begin() as conn:
                await conn.run_sync(self._base.metadata.create_all)
        except (OSError, SQLAlchemyError, ValueError) as exc:
            await self.close()
            msg = f"Failed to open address index at {self._config.dsn}: {exc}"
            raise StoreOpenError(msg) from exc
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.info("Address index database opened (%s)", self._config.dsn)

    async def close(self) -> None:
        """Checkpoint the WAL into the main file and dispose the engine."""
        engine, self._engine = self._engine, None
        self._sessions = None
        if engine is None:
            return
        try:
            if self.path is not None:
                async with engine.connect() as conn:
                    await conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))
        except SQLAlchemyError as exc:
            logger.warning("WAL checkpoint on close failed for %s: %s", self._config.dsn, exc)
        finally:
            await engine.dispose()

    def session(self) -> AsyncSession:
        """New session for reads; use as an async context manager."""
        if self._sessions is None:
            msg = "Index database is not open; call open() first"
            raise RuntimeError(msg)
        return self._sessions()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside one transaction: committed on exit, rolled back on error."""
        async with self.session() as session, session.begin():
            yield session
