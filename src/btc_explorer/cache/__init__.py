"""Bounded in-memory caches used by the indexer."""

from __future__ import annotations

from btc_explorer.cache.memory import MemoryCache

__all__ = ["MemoryCache"]
