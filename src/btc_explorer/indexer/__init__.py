"""Address indexer — store, prevout resolution, status and the sync engine."""

from __future__ import annotations

from btc_explorer.indexer.engine import AddressIndexer, IndexerState
from btc_explorer.indexer.prevouts import PrevoutResolver, PrevoutWorkerPool
from btc_explorer.indexer.status import IndexerStatus, SyncState, SyncStatusReporter
from btc_explorer.indexer.store import IndexStore

__all__ = [
    "AddressIndexer",
    "IndexStore",
    "IndexerState",
    "IndexerStatus",
    "PrevoutResolver",
    "PrevoutWorkerPool",
    "SyncState",
    "SyncStatusReporter",
]
