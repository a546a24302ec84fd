"""Prevout resolution — cached, parallel lookups of spent outputs.

Every non-coinbase input needs the output it spends (value and owning
address), which costs one ``getrawtransaction`` round-trip. Lookups go
through an LRU/TTL cache first, then a fixed-size pool of asyncio workers.
When the pool is unavailable or fails, lookups fall back to inline RPC calls
so a degraded pool never fails a block.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from btc_explorer.cache.memory import MemoryCache

if TYPE_CHECKING:
    from collections.abc import Sequence

    from btc_explorer.config.settings import IndexerConfig
    from btc_explorer.metrics.collector import IndexerMetrics
    from btc_explorer.rpc.client import RpcGateway

logger = logging.getLogger(__name__)

MAX_RECOMMENDED_CONCURRENCY = 8


@dataclass(slots=True, frozen=True)
class PrevoutRequest:
    txid: str
    vout: int

    @property
    def key(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(slots=True)
class PrevoutResult:
    """Outcome of one pooled lookup: ``status`` is ``"ok"`` or ``"error"``."""

    status: str
    prevout: dict[str, Any] | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(slots=True)
class PrevoutStats:
    cache_hits: int = 0
    rpc_calls: int = 0


class PrevoutPool(Protocol):
    """Anything that can run a batch of lookups."""

    async def fetch_many(self, requests: Sequence[PrevoutRequest]) -> list[PrevoutResult]: ...

    async def close(self) -> None: ...


async def lookup_prevout(rpc: RpcGateway, request: PrevoutRequest) -> dict[str, Any] | None:
    """Fetch the transaction that created the output and pick output ``vout``."""
    prev_tx = await rpc.call("getrawtransaction", [request.txid, True])
    if not isinstance(prev_tx, dict):
        return None
    for output in prev_tx.get("vout") or []:
        if output.get("n") == request.vout:
            return output
    return None


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------


class PrevoutWorkerPool:
    """Fixed number of asyncio workers draining a shared job queue.

    Usage::

        pool = PrevoutWorkerPool(rpc, size=4)
        await pool.start()
        results = await pool.fetch_many([PrevoutRequest(txid, 0)])
        await pool.close()
    """

    def __init__(self, rpc: RpcGateway, size: int) -> None:
        self._rpc = rpc
        self._size = max(1, size)
        self._queue: asyncio.Queue[tuple[PrevoutRequest, asyncio.Future[PrevoutResult]]] = (
            asyncio.Queue()
        )
        self._workers: list[asyncio.Task[None]] = []
        self._pending: set[asyncio.Future[PrevoutResult]] = set()
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and not self._closed

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self._closed:
            msg = "Prevout worker pool is closed"
            raise RuntimeError(msg)
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"prevout-worker-{n}")
            for n in range(self._size)
        ]
        logger.debug("Prevout worker pool started with %d workers", self._size)

    async def fetch_many(self, requests: Sequence[PrevoutRequest]) -> list[PrevoutResult]:
        """Queue every request and wait for all results, in request order.

        Raises:
            RuntimeError: If the pool is not running or is closed mid-batch.
        """
        if not self.is_running:
            msg = "Prevout worker pool is not running"
            raise RuntimeError(msg)
        loop = asyncio.get_running_loop()
        futures: list[asyncio.Future[PrevoutResult]] = []
        for request in requests:
            future: asyncio.Future[PrevoutResult] = loop.create_future()
            self._pending.add(future)
            future.add_done_callback(self._pending.discard)
            self._queue.put_nowait((request, future))
            futures.append(future)
        return list(await asyncio.gather(*futures))

    async def close(self) -> None:
        """Cancel workers and fail every job still waiting for a result."""
        self._closed = True
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        for future in list(self._pending):
            if not future.done():
                future.set_exception(RuntimeError("Prevout worker pool closed"))
        while not self._queue.empty():
            self._queue.get_nowait()

    async def _worker(self) -> None:
        while True:
            request, future = await self._queue.get()
            try:
                if future.done():
                    continue
                try:
                    prevout = await lookup_prevout(self._rpc, request)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    result = PrevoutResult(status="error", error=exc)
                else:
                    result = PrevoutResult(status="ok", prevout=prevout)
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class PrevoutResolver:
    """Resolves the spent output of every input of a transaction.

    Args:
        rpc: Gateway used for ``getrawtransaction`` lookups.
        concurrency: Worker count (capped at ``MAX_RECOMMENDED_CONCURRENCY``
            for the pool) and inline fan-out bound.
        parallel: Disable to force sequential inline lookups.
        cache_max: Maximum cached prevouts.
        cache_ttl: Seconds a cached prevout stays valid.
        metrics: Optional metrics sink.
        pool: Pre-built pool; when given, ``start()`` does not create one.
    """

    def __init__(
        self,
        rpc: RpcGateway,
        *,
        concurrency: int = 4,
        parallel: bool = True,
        cache_max: int = 50_000,
        cache_ttl: float = 600,
        metrics: IndexerMetrics | None = None,
        pool: PrevoutPool | None = None,
    ) -> None:
        self._rpc = rpc
        self._concurrency = max(1, concurrency)
        self._parallel = parallel
        self._metrics = metrics
        self._cache = MemoryCache(max_size=cache_max, ttl=cache_ttl)
        self._pool: PrevoutPool | None = pool
        self._pool_disabled = False
        # Bounds inline RPC fan-out across concurrent fetch_prevouts calls
        self._inline_slots = asyncio.Semaphore(self._concurrency if parallel else 1)
        self.stats = PrevoutStats()

    @classmethod
    def from_config(
        cls,
        config: IndexerConfig,
        rpc: RpcGateway,
        *,
        metrics: IndexerMetrics | None = None,
    ) -> PrevoutResolver:
        return cls(
            rpc,
            concurrency=config.concurrency,
            parallel=config.parallel_prevout_enabled,
            cache_max=config.prevout_cache_max,
            cache_ttl=config.prevout_cache_ttl,
            metrics=metrics,
        )

    @property
    def cache(self) -> MemoryCache:
        return self._cache

    @property
    def pool_active(self) -> bool:
        return self._pool is not None and not self._pool_disabled

    def reset_stats(self) -> None:
        self.stats = PrevoutStats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Create the worker pool when parallel lookups are enabled."""
        self._pool_disabled = False
        if not self._parallel:
            if self._concurrency > 1:
                logger.info(
                    "Prevout parallelism disabled; using sequential lookups despite %d workers",
                    self._concurrency,
                )
            return
        if self._concurrency <= 1 or self._pool is not None:
            return
        if self._concurrency > MAX_RECOMMENDED_CONCURRENCY:
            logger.warning(
                "Prevout concurrency %d exceeds recommended maximum %d; monitor RPC load",
                self._concurrency,
                MAX_RECOMMENDED_CONCURRENCY,
            )
        pool = PrevoutWorkerPool(self._rpc, min(self._concurrency, MAX_RECOMMENDED_CONCURRENCY))
        try:
            await pool.start()
        except RuntimeError as exc:
            logger.warning("Failed to start prevout worker pool; using inline lookups: %s", exc)
            self._pool_disabled = True
            return
        self._pool = pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._cache.clear()

    async def _disable_pool(self, error: Exception) -> None:
        logger.warning(
            "Prevout worker pool failure; disabling pool and falling back to inline fetch: %s",
            error,
        )
        self._pool_disabled = True
        pool, self._pool = self._pool, None
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.warning("Failed to cleanly shut down prevout worker pool", exc_info=True)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def fetch_prevouts(self, transaction: dict[str, Any]) -> list[dict[str, Any] | None]:
        """Return one entry per input: the spent output, or None.

        None is returned for coinbase inputs and for prevouts that could not
        be resolved (logged as a warning).
        """
        started = time.monotonic()
        vin = transaction.get("vin") or []
        results: list[dict[str, Any] | None] = [None] * len(vin)
        cache_hits = 0
        rpc_calls = 0

        pooled: list[tuple[int, PrevoutRequest]] = []
        inline: list[tuple[int, PrevoutRequest]] = []
        pool = self._pool if self.pool_active else None

        for index, tx_input in enumerate(vin):
            if not tx_input or tx_input.get("coinbase") or not tx_input.get("txid"):
                continue
            request = PrevoutRequest(tx_input["txid"], int(tx_input.get("vout", 0)))
            cached = self._cache.get(request.key)
            if cached is not None:
                cache_hits += 1
                results[index] = cached
                continue
            (pooled if pool is not None else inline).append((index, request))

        if pooled and pool is not None:
            try:
                pool_results = await pool.fetch_many([request for _, request in pooled])
            except Exception as exc:
                await self._disable_pool(exc)
                inline.extend(pooled)
            else:
                failures = 0
                for (index, request), result in zip(pooled, pool_results, strict=True):
                    if result.ok:
                        rpc_calls += 1
                        if result.prevout is not None:
                            self._cache.set(request.key, result.prevout)
                        results[index] = result.prevout
                    else:
                        failures += 1
                        logger.warning(
                            "Prevout worker lookup failed for %s; retrying inline: %s",
                            request.key,
                            result.error,
                        )
                        inline.append((index, request))
                self._record_lookups("worker", len(pooled) - failures, failures)

        if inline:
            hits, calls = await self._fetch_inline(inline, results)
            cache_hits += hits
            rpc_calls += calls

        self.stats.cache_hits += cache_hits
        self.stats.rpc_calls += rpc_calls
        duration_ms = (time.monotonic() - started) * 1000
        source = ("mixed" if cache_hits else "rpc") if rpc_calls else "cache"
        logger.debug(
            "Prevouts for %s: %d inputs, %d cache hits, %d rpc calls, pool=%s in %.1fms",
            transaction.get("txid"),
            len(vin),
            cache_hits,
            rpc_calls,
            self.pool_active,
            duration_ms,
        )
        if self._metrics is not None:
            self._metrics.record_prevout_duration(source=source, duration_ms=duration_ms)
        return results

    async def _fetch_inline(
        self,
        items: list[tuple[int, PrevoutRequest]],
        results: list[dict[str, Any] | None],
    ) -> tuple[int, int]:
        cache_hits = 0
        rpc_calls = 0
        successes = 0
        failures = 0

        async def fetch(index: int, request: PrevoutRequest) -> None:
            nonlocal cache_hits, rpc_calls, successes, failures
            cached = self._cache.get(request.key)
            if cached is not None:
                cache_hits += 1
                results[index] = cached
                return
            rpc_calls += 1
            try:
                prevout = await lookup_prevout(self._rpc, request)
            except Exception as exc:
                failures += 1
                logger.warning("Failed to fetch prevout %s: %s", request.key, exc)
                results[index] = None
                return
            successes += 1
            if prevout is not None:
                self._cache.set(request.key, prevout)
            results[index] = prevout

        async def bounded(index: int, request: PrevoutRequest) -> None:
            async with self._inline_slots:
                await fetch(index, request)

        await asyncio.gather(*(bounded(index, request) for index, request in items))

        self._record_lookups("inline", successes, failures)
        return cache_hits, rpc_calls

    def _record_lookups(self, source: str, successes: int, failures: int) -> None:
        if self._metrics is None:
            return
        if successes:
            self._metrics.record_prevout_lookup(source=source, outcome="success", count=successes)
        if failures:
            self._metrics.record_prevout_lookup(source=source, outcome="error", count=failures)
