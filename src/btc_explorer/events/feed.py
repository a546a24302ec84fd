"""Change feed backends — in-memory and Redis.

The in-memory feed serves a single process where the ZMQ listener and the
indexer live together; the Redis feed lets a separate listener process
publish notifications to indexers elsewhere.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from btc_explorer.config.settings import FeedConfig

    Handler = Callable[[dict[str, Any]], Awaitable[None]]

logger = logging.getLogger(__name__)


class Channel(enum.StrEnum):
    """Named feed channels."""

    BLOCK_NEW = "block:new"
    TX_NEW = "tx:new"


class ChangeFeed(ABC):
    """Abstract change feed interface."""

    @abstractmethod
    async def subscribe(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *channel* and return a callable that removes it."""

    @abstractmethod
    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        """Deliver *payload* to all current subscribers of *channel*."""

    @abstractmethod
    async def close(self) -> None:
        """Drop all subscriptions and release connections."""


class MemoryChangeFeed(ChangeFeed):
    """In-process feed for single-instance deployments."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    async def subscribe(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for a channel."""
        self._subscribers.setdefault(channel, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(channel, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        """Deliver payload to all subscribers of the channel."""
        for handler in list(self._subscribers.get(channel, [])):
            try:
                await handler(payload)
            except Exception:
                logger.exception("MemoryChangeFeed handler error on channel %s", channel)

    async def close(self) -> None:
        """Clear all subscribers."""
        self._subscribers.clear()


class RedisChangeFeed(ChangeFeed):
    """Redis-backed feed for multi-process deployments.

    Payloads travel as JSON. Each subscription spawns an asyncio task that
    reads messages from its own Redis pub/sub connection.
    """

    def __init__(self, redis_url: str, *, prefix: str = "explorer_") -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis: Any = None
        self._tasks: list[asyncio.Task[None]] = []

    async def _ensure_connection(self) -> None:
        """Lazy-connect to Redis."""
        if self._redis is not None:
            return
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(self._redis_url)

    async def subscribe(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to a prefixed Redis channel."""
        await self._ensure_connection()
        full_channel = f"{self._prefix}{channel}"
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(full_channel)

        async def _listener() -> None:
            try:
                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    data = message["data"]
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    try:
                        await handler(json.loads(data))
                    except Exception:
                        logger.exception("RedisChangeFeed handler error on %s", full_channel)
            finally:
                await pubsub.aclose()

        task = asyncio.create_task(_listener())
        self._tasks.append(task)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        """Publish a JSON payload to a prefixed Redis channel."""
        await self._ensure_connection()
        await self._redis.publish(f"{self._prefix}{channel}", json.dumps(payload))

    async def close(self) -> None:
        """Close the Redis connection and cancel listener tasks."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_feed(config: FeedConfig) -> ChangeFeed:
    """Build the feed backend selected by configuration."""
    from btc_explorer.config.settings import FeedEngine

    if config.engine == FeedEngine.REDIS:
        logger.info("Change feed using Redis pub/sub (%s)", config.redis_url)
        return RedisChangeFeed(config.redis_url, prefix=config.prefix)
    logger.info("Change feed using in-memory pub/sub")
    return MemoryChangeFeed()
