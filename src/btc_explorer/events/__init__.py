"""Events — block/transaction change feed.

Delivers ``BLOCK_NEW`` / ``TX_NEW`` notifications from the node listener to
every live subscriber. Missed events are not replayed; the indexer's
backfill on restart is what catches up.
"""

from __future__ import annotations

from btc_explorer.events.feed import (
    ChangeFeed,
    Channel,
    MemoryChangeFeed,
    RedisChangeFeed,
    create_feed,
)
from btc_explorer.events.notifier import BlockNotifier

__all__ = [
    "BlockNotifier",
    "ChangeFeed",
    "Channel",
    "MemoryChangeFeed",
    "RedisChangeFeed",
    "create_feed",
]
