"""In-memory LRU cache with TTL expiry.

Backs the prevout cache: keys are ``"txid:vout"`` and values are the decoded
output dicts returned by ``getrawtransaction``.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any


class MemoryCache:
    """In-memory LRU cache with a per-cache TTL.

    Entries past their expiry are dropped lazily on access. The cache is
    shared by coroutines on one event loop, so no locking is needed.
    """

    def __init__(self, max_size: int = 10_000, ttl: float | None = None) -> None:
        """Initialize the cache.

        Args:
            max_size: Maximum number of keys to store before evicting LRU.
            ttl: Default time-to-live in seconds. None = no expiry.
        """
        if max_size < 1:
            msg = "max_size must be >= 1"
            raise ValueError(msg)
        self._max_size = max_size
        self._ttl = ttl
        self._cache: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        # Format: {key: (value, expiry_monotonic_or_none)}

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, key: str) -> Any | None:
        """Get a value from the cache.

        Args:
            key: Cache key.

        Returns:
            The cached value, or None if not found/expired.
        """
        entry = self._cache.get(key)
        if entry is None:
            return None

        value, expiry = entry
        if expiry is not None and time.monotonic() > expiry:
            del self._cache[key]
            return None

        # Move to end (LRU)
        self._cache.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value in the cache.

        Args:
            key: Cache key.
            value: Value to store.
            ttl: Override for the cache TTL in seconds.
        """
        ttl = self._ttl if ttl is None else ttl
        expiry = None if ttl is None else time.monotonic() + ttl

        self._cache.pop(key, None)
        self._cache[key] = (value, expiry)

        while len(self._cache) > self._max_size:
            self._cache.popitem(last=False)

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def exists(self, key: str) -> bool:
        """Check if a key exists and is not expired."""
        return self.get(key) is not None

    def clear(self) -> None:
        """Drop every entry."""
        self._cache.clear()
