"""Node block notifications — bitcoind ZMQ ``hashblock`` to the change feed.

bitcoind publishes ``[topic, body, sequence]`` multipart messages when started
with ``-zmqpubhashblock=<endpoint>``. The ``hashblock`` body is the 32-byte
block hash in RPC byte order, so no decoding beyond hex is needed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING, Any

import zmq
import zmq.asyncio

from btc_explorer.events.feed import Channel

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from btc_explorer.config.settings import FeedConfig
    from btc_explorer.events.feed import ChangeFeed

logger = logging.getLogger(__name__)

HASHBLOCK_TOPIC = b"hashblock"

# Pause after a socket error before reading again
_ERROR_BACKOFF = 1.0


class BlockNotifier:
    """Relays bitcoind ``hashblock`` notifications to ``Channel.BLOCK_NEW``.

    Usage::

        notifier = BlockNotifier("tcp://127.0.0.1:28332", feed)
        await notifier.start()
        ...
        await notifier.close()

    Args:
        endpoint: ZMQ endpoint bitcoind publishes ``hashblock`` on.
        feed: Feed that receives ``{"hash": <hex>}`` payloads.
        context: ZMQ context; the shared asyncio context when omitted.
        dedupe_window: Seconds within which a repeated hash is dropped.
        clock: Monotonic clock used for de-duplication.
    """

    def __init__(
        self,
        endpoint: str,
        feed: ChangeFeed,
        *,
        context: zmq.asyncio.Context | None = None,
        dedupe_window: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._endpoint = endpoint
        self._feed = feed
        self._context = context
        self._dedupe_window = dedupe_window
        self._clock = clock
        self._socket: Any = None
        self._task: asyncio.Task[None] | None = None
        self._last_hash: str | None = None
        self._last_seen = 0.0
        self.published = 0

    @classmethod
    def from_config(cls, config: FeedConfig, feed: ChangeFeed) -> BlockNotifier | None:
        """Build a notifier, or None when no endpoint is configured."""
        if not config.zmq_block_endpoint:
            return None
        return cls(config.zmq_block_endpoint, feed, dedupe_window=config.zmq_dedupe_window)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        context = self._context or zmq.asyncio.Context.instance()
        self._socket = context.socket(zmq.SUB)
        self._socket.connect(self._endpoint)
        self._socket.subscribe(HASHBLOCK_TOPIC)
        logger.info("Subscribed to hashblock notifications on %s", self._endpoint)
        self._task = asyncio.create_task(self._run(), name="zmq-hashblock")

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None

    async def _run(self) -> None:
        while True:
            try:
                parts = await self._socket.recv_multipart()
            except zmq.ZMQError as exc:
                logger.error("ZMQ receive failed on %s: %s", self._endpoint, exc)
                await asyncio.sleep(_ERROR_BACKOFF)
                continue
            await self.handle_message(parts)

    async def handle_message(self, parts: Sequence[bytes]) -> bool:
        """Publish one multipart message; returns whether it reached the feed."""
        if len(parts) < 2 or parts[0] != HASHBLOCK_TOPIC:
            logger.debug("Ignoring ZMQ message with topic %r", parts[0] if parts else None)
            return False
        if len(parts[1]) != 32:
            logger.warning("Ignoring malformed hashblock body (%d bytes)", len(parts[1]))
            return False
        block_hash = bytes(parts[1]).hex()
        now = self._clock()
        if block_hash == self._last_hash and now - self._last_seen < self._dedupe_window:
            return False
        self._last_hash, self._last_seen = block_hash, now
        try:
            await self._feed.publish(Channel.BLOCK_NEW, {"hash": block_hash})
        except Exception:
            logger.exception("Failed to publish block notification %s", block_hash)
            return False
        self.published += 1
        logger.debug("Block notification %s published", block_hash)
        return True
