"""Database engine factory — SQLite in WAL mode.

The address index is single-writer/multi-reader: write-ahead logging lets
query callers read a consistent snapshot while a block is being applied.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

if TYPE_CHECKING:
    from btc_explorer.config.settings import IndexerConfig


def sqlite_pragmas(config: IndexerConfig) -> list[str]:
    """Return the PRAGMA statements applied to every new SQLite connection."""
    pragmas = [
        "PRAGMA journal_mode=WAL",
        "PRAGMA synchronous=NORMAL",
    ]
    if config.cache_size_kib > 0:
        # negative cache_size is interpreted as KiB
        pragmas.append(f"PRAGMA cache_size=-{config.cache_size_kib}")
    if config.wal_autocheckpoint > 0:
        pragmas.append(f"PRAGMA wal_autocheckpoint={config.wal_autocheckpoint}")
    return pragmas


def create_engine(config: IndexerConfig) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the address index.

    Args:
        config: Indexer configuration with DSN and store sizing.

    Returns:
        A configured ``AsyncEngine`` ready for use.
    """
    kwargs: dict[str, Any] = {
        "echo": config.debug_sql,
    }

    if "sqlite" not in config.dsn:
        kwargs["pool_pre_ping"] = True
        return create_async_engine(config.dsn, **kwargs)

    engine = create_async_engine(config.dsn, **kwargs)
    pragmas = sqlite_pragmas(config)

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in pragmas:
                cursor.execute(pragma)
        finally:
            cursor.close()

    return engine
