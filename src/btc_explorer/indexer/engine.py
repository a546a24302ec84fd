"""Address indexer engine — backfill, live updates and checkpoint repair.

Lifecycle::

    uninitialized -> opening -> reconciling -> backfilling -> live -> stopping -> closed

The engine is the only writer of the index store. Every block application
(backfill or live) runs under one ``asyncio.Lock`` so blocks are applied
strictly one at a time and in ascending height order; ``sync_in_progress``
mirrors that lock for status reporting and shutdown draining.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from btc_explorer.errors.rpc_errors import NotFoundError, RpcError
from btc_explorer.events.feed import Channel
from btc_explorer.indexer.prevouts import PrevoutResolver
from btc_explorer.indexer.status import SyncStatusReporter
from btc_explorer.indexer.store import (
    BlockDelta,
    IndexStore,
    InputDebit,
    OutputCredit,
    TransactionDelta,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from btc_explorer.config.settings import IndexerConfig
    from btc_explorer.events.feed import ChangeFeed
    from btc_explorer.indexer.status import IndexerStatus
    from btc_explorer.indexer.store import AddressSummary, TransactionPage, UtxoRecord
    from btc_explorer.metrics.collector import IndexerMetrics
    from btc_explorer.rpc.client import RpcGateway

logger = logging.getLogger(__name__)

SATS_PER_BTC = Decimal(100_000_000)
PROGRESS_LOG_INTERVAL = 100


class IndexerState(enum.StrEnum):
    """Lifecycle states of the engine."""

    UNINITIALIZED = "uninitialized"
    OPENING = "opening"
    RECONCILING = "reconciling"
    BACKFILLING = "backfilling"
    LIVE = "live"
    STOPPING = "stopping"
    CLOSED = "closed"


def btc_to_sats(value: Any) -> int:
    """Convert a BTC amount from RPC JSON to integer satoshis."""
    return int((Decimal(str(value or 0)) * SATS_PER_BTC).to_integral_value())


def script_addresses(script_pub_key: dict[str, Any] | None) -> list[str]:
    """Addresses paid by a ``scriptPubKey`` (``address`` or legacy ``addresses``)."""
    if not script_pub_key:
        return []
    addresses = script_pub_key.get("addresses")
    if isinstance(addresses, list) and addresses:
        return [addr for addr in addresses if addr]
    address = script_pub_key.get("address")
    return [address] if address else []


class AddressIndexer:
    """Builds and maintains the address index from a Bitcoin Core node.

    Usage::

        indexer = AddressIndexer(config.indexer, rpc, feed, metrics=metrics)
        await indexer.start()       # open, reconcile, backfill, go live
        status = await indexer.get_status(refresh_tip=True)
        await indexer.shutdown()

    Args:
        config: Indexer configuration.
        rpc: Chain data source.
        feed: Block notification feed used once backfill completes.
        store: Index store (built from ``config`` when omitted).
        metrics: Optional metrics sink.
        resolver: Prevout resolver (built from ``config`` when omitted).
        clock: Wall-clock source in seconds for status samples.
    """

    def __init__(
        self,
        config: IndexerConfig,
        rpc: RpcGateway,
        feed: ChangeFeed,
        *,
        store: IndexStore | None = None,
        metrics: IndexerMetrics | None = None,
        resolver: PrevoutResolver | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._rpc = rpc
        self._feed = feed
        self._metrics = metrics
        self._store = store or IndexStore(config)
        self._resolver = resolver or PrevoutResolver.from_config(config, rpc, metrics=metrics)
        self._reporter = SyncStatusReporter(
            rpc, window=config.sample_window, metrics=metrics, clock=clock
        )

        self._state = IndexerState.UNINITIALIZED
        self._stopping = False
        self._lock = asyncio.Lock()
        self._sync_in_progress = False
        self._unsubscribe: list[Callable[[], None]] = []
        self._checkpoint_height = -1
        self._checkpoint_hash: str | None = None
        self._blocks_processed = 0
        self._transactions_processed = 0
        self._started_at: float | None = None
        self.error: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> IndexerState:
        return self._state

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def store(self) -> IndexStore:
        return self._store

    @property
    def gap_limit(self) -> int:
        return self._config.xpub_gap_limit

    @property
    def checkpoint(self) -> tuple[int, str | None]:
        return self._checkpoint_height, self._checkpoint_hash

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the index store.

        Raises:
            StoreOpenError: The store path is inaccessible.
        """
        self._state = IndexerState.OPENING
        await self._store.open()

    async def reconcile_checkpoint(self) -> int:
        """Align the stored checkpoint with the highest height actually indexed.

        Returns:
            The checkpoint height after reconciliation (``-1`` = not started).
        """
        self._state = IndexerState.RECONCILING
        height, block_hash = await self._store.get_checkpoint()
        observed = await self._store.max_observed_height()

        if observed is None:
            if height >= 0:
                logger.warning(
                    "Index tables are empty but checkpoint is %d; resetting checkpoint", height
                )
                height, block_hash = -1, None
                await self._store.set_checkpoint(height, block_hash)
        elif observed != height:
            logger.warning(
                "Checkpoint height %d disagrees with indexed data (max height %d); correcting",
                height,
                observed,
            )
            try:
                block_hash = await self._rpc.call("getblockhash", [observed])
            except RpcError as exc:
                logger.warning(
                    "Could not refresh checkpoint hash for height %d; keeping stale hash: %s",
                    observed,
                    exc.message,
                )
            height = observed
            await self._store.set_checkpoint(height, block_hash)

        self._checkpoint_height, self._checkpoint_hash = height, block_hash
        return height

    async def start(self) -> None:
        """Open, reconcile, backfill to the tip, then follow the change feed.

        Raises:
            StoreOpenError: The store could not be opened.
            RpcError: The node failed during backfill; the next start resumes
                at ``checkpoint + 1``.
        """
        if self._state not in (IndexerState.UNINITIALIZED, IndexerState.CLOSED):
            return
        self._stopping = False
        self.error = None
        self._started_at = time.time()
        self._blocks_processed = 0
        self._transactions_processed = 0
        self._resolver.reset_stats()
        logger.info(
            "Address indexer starting (dsn=%s, gap_limit=%d, concurrency=%d, batch=%d)",
            self._config.dsn,
            self._config.xpub_gap_limit,
            self._config.concurrency,
            self._config.batch_block_count,
        )
        try:
            await self.open()
            await self.reconcile_checkpoint()
            await self._resolver.start()
            await self.initial_sync()
        except Exception as exc:
            self.error = str(exc) or type(exc).__name__
            logger.error("Address indexer failed to start: %s", self.error)
            # Leave the engine restartable; the next start resumes at checkpoint + 1
            await self._close_resources()
            raise
        if self._stopping:
            return
        await self.watch_feed()
        self._state = IndexerState.LIVE

    async def await_sync_drain(self, timeout: float | None = None) -> None:
        """Wait until no block application is in flight.

        Raises:
            TimeoutError: The in-flight block did not finish within *timeout*.
        """
        timeout = self._config.drain_timeout if timeout is None else timeout
        async with asyncio.timeout(timeout), self._lock:
            pass

    async def shutdown(self) -> None:
        """Stop syncing, drain in-flight work, unsubscribe, close resources.

        Safe to call more than once; later calls only wait for the drain.
        """
        if self._stopping:
            try:
                await self.await_sync_drain()
            except TimeoutError:
                logger.warning("Timed out waiting for address indexer to drain")
            return
        self._stopping = True
        self._state = IndexerState.STOPPING
        logger.info("Address indexer stopping; waiting for in-flight block")
        # Hold the block lock while closing so no commit can start meanwhile
        acquired = False
        try:
            async with asyncio.timeout(self._config.drain_timeout):
                await self._lock.acquire()
            acquired = True
        except TimeoutError:
            logger.warning(
                "Timed out after %.1fs waiting for in-flight block; closing anyway",
                self._config.drain_timeout,
            )
        try:
            await self._close_resources()
        finally:
            if acquired:
                self._lock.release()
        logger.info("Address indexer closed at height %d", self._checkpoint_height)

    async def _close_resources(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        await self._resolver.close()
        await self._store.close()
        self._state = IndexerState.CLOSED

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def initial_sync(self) -> int:
        """Apply every block from ``checkpoint + 1`` to the current tip.

        Stops early (keeping the last committed checkpoint) once shutdown
        begins. With ``batch_block_count > 1`` consecutive blocks are
        committed together.

        Returns:
            The checkpoint height when the loop ends.
        """
        self._state = IndexerState.BACKFILLING
        best_height = int(await self._rpc.call("getblockcount"))
        next_height = self._checkpoint_height + 1
        start_height = next_height
        total = best_height - start_height + 1
        batch_size = self._config.batch_block_count
        pending: list[BlockDelta] = []
        logger.info("Address index sync starting from %d to %d", start_height, best_height)

        while not self._stopping and next_height <= best_height:
            async with self._lock:
                if self._stopping:
                    break
                self._sync_in_progress = True
                try:
                    if batch_size > 1:
                        delta = await self.process_block_height(next_height, commit=False)
                        if delta is not None:
                            pending.append(delta)
                        if pending and (len(pending) >= batch_size or self._stopping):
                            await self._commit(pending)
                            pending = []
                    else:
                        await self.process_block_height(next_height)
                finally:
                    self._sync_in_progress = False

            if total > 0 and (
                next_height == best_height or next_height % PROGRESS_LOG_INTERVAL == 0
            ):
                processed = next_height - start_height + 1
                logger.info(
                    "Address index sync progress %d/%d (%d%%), height %d, %d remaining",
                    processed,
                    total,
                    round(processed / total * 100),
                    next_height,
                    max(0, total - processed),
                )
            next_height += 1

        if pending:
            async with self._lock:
                if self._store.is_open:
                    await self._commit(pending)
                else:
                    logger.info(
                        "Dropping %d uncommitted block(s); they replay on next start",
                        len(pending),
                    )

        if self._stopping:
            logger.info(
                "Address index sync halted before completion at height %d",
                self._checkpoint_height,
            )
        else:
            logger.info("Address index initial sync complete at height %d", best_height)
        return self._checkpoint_height

    # ------------------------------------------------------------------
    # Block pipeline
    # ------------------------------------------------------------------

    async def process_block_height(self, height: int, *, commit: bool = True) -> BlockDelta | None:
        block_hash = await self._rpc.call("getblockhash", [height])
        return await self.process_block_hash(block_hash, height, commit=commit)

    async def process_block_hash(
        self,
        block_hash: str,
        expected_height: int | None = None,
        *,
        commit: bool = True,
    ) -> BlockDelta | None:
        """Fetch, resolve and apply one block.

        Args:
            block_hash: Block to apply.
            expected_height: Height from the caller; the block's own height
                is used when None.
            commit: Write to the store. When False the built delta is only
                returned, for batched commits.

        Returns:
            The block's delta, or None when skipped during shutdown.
        """
        if self._stopping or not self._store.is_open:
            logger.debug("Skipping block %s: indexer is shutting down", block_hash)
            return None
        block = await self._fetch_block(block_hash)
        return await self._apply_fetched(block, block_hash, expected_height, commit=commit)

    async def _apply_fetched(
        self,
        block: dict[str, Any],
        block_hash: str,
        expected_height: int | None,
        *,
        commit: bool,
    ) -> BlockDelta:
        started = time.monotonic()
        outcome = "success"
        height = expected_height
        transactions = block.get("tx") or []
        try:
            height = expected_height if expected_height is not None else int(block["height"])
            timestamp = block.get("time")
            prevouts = await asyncio.gather(
                *(self._resolver.fetch_prevouts(tx) for tx in transactions)
            )
            delta = BlockDelta(
                height=height,
                block_hash=block_hash,
                timestamp=timestamp,
                transactions=[
                    self.process_transaction(tx, tx_prevouts, height, timestamp)
                    for tx, tx_prevouts in zip(transactions, prevouts, strict=True)
                ],
            )
            if commit:
                await self._commit([delta])
        except Exception:
            outcome = "error"
            raise
        finally:
            duration_ms = (time.monotonic() - started) * 1000
            logger.debug(
                "Block %s at height %s: %d txs, %s in %.1fms",
                block_hash,
                height,
                len(transactions),
                outcome,
                duration_ms,
            )
            if self._metrics is not None:
                self._metrics.record_block_duration(outcome=outcome, duration_ms=duration_ms)

        self._blocks_processed += 1
        self._transactions_processed += len(transactions)
        self.record_block_sample(
            height=height,
            block_hash=block_hash,
            tx_count=len(transactions),
            duration_ms=duration_ms,
        )
        return delta

    def process_transaction(
        self,
        tx: dict[str, Any],
        prevouts: list[dict[str, Any] | None],
        height: int | None,
        timestamp: int | None,
    ) -> TransactionDelta:
        """Turn a decoded transaction into per-address credits and debits.

        Inputs whose prevout is None (coinbase or unresolvable) are skipped.
        ``height`` and ``timestamp`` are applied by the store per block.
        """
        delta = TransactionDelta(txid=tx["txid"])

        for index, output in enumerate(tx.get("vout") or []):
            addresses = script_addresses(output.get("scriptPubKey"))
            if not addresses:
                continue
            value_sat = btc_to_sats(output.get("value"))
            vout = int(output.get("n", index))
            delta.credits.extend(OutputCredit(address, vout, value_sat) for address in addresses)

        for index, tx_input in enumerate(tx.get("vin") or []):
            if tx_input.get("coinbase"):
                continue
            prevout = prevouts[index] if index < len(prevouts) else None
            if prevout is None:
                continue
            value_sat = btc_to_sats(prevout.get("value"))
            delta.debits.extend(
                InputDebit(
                    address=address,
                    vin=index,
                    prev_txid=tx_input["txid"],
                    prev_vout=int(tx_input.get("vout", 0)),
                    value_sat=value_sat,
                )
                for address in script_addresses(prevout.get("scriptPubKey"))
            )
        return delta

    async def _commit(self, blocks: list[BlockDelta]) -> None:
        started = time.monotonic()
        await self._store.apply_blocks(blocks)
        last = blocks[-1]
        self._checkpoint_height, self._checkpoint_hash = last.height, last.block_hash
        logger.debug(
            "Committed %d block(s) through height %d in %.1fms",
            len(blocks),
            last.height,
            (time.monotonic() - started) * 1000,
        )

    async def _fetch_block(self, block_hash: str) -> dict[str, Any]:
        """``getblock`` with linear backoff while the node reports NotFound."""
        attempts = self._config.block_fetch_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._rpc.call("getblock", [block_hash, 2])
            except NotFoundError:
                if attempt >= attempts:
                    raise
                delay = self._config.block_fetch_backoff * attempt
                logger.debug(
                    "Block %s not found yet (attempt %d/%d); retrying in %.2fs",
                    block_hash,
                    attempt,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        msg = f"Block {block_hash} not found"
        raise NotFoundError(msg)

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    async def watch_feed(self) -> None:
        """Subscribe to ``BLOCK_NEW`` notifications."""
        unsubscribe = await self._feed.subscribe(Channel.BLOCK_NEW, self._on_block_new)
        self._unsubscribe.append(unsubscribe)
        logger.info("Address indexer following block notifications")

    async def _on_block_new(self, payload: dict[str, Any]) -> None:
        block_hash = payload.get("hash")
        if not block_hash or self._stopping:
            return
        logger.debug("Received block notification %s", block_hash)
        async with self._lock:
            if self._stopping:
                return
            self._sync_in_progress = True
            try:
                await self._apply_live_block(block_hash)
            except Exception:
                logger.exception("Failed to process new block %s", block_hash)
            finally:
                self._sync_in_progress = False

    async def _apply_live_block(self, block_hash: str) -> None:
        block = await self._fetch_block(block_hash)
        height = int(block["height"])
        if height <= self._checkpoint_height:
            logger.debug("Block %s at height %d is already indexed", block_hash, height)
            return
        # Fill any gap first so heights are applied in ascending order
        for missing in range(self._checkpoint_height + 1, height):
            if self._stopping:
                return
            await self.process_block_height(missing)
        if self._stopping:
            return
        await self._apply_fetched(block, block_hash, height, commit=True)
        logger.debug("Address indexer applied new block %s at height %d", block_hash, height)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_address_summary(self, address: str) -> AddressSummary | None:
        return await self._store.get_address_summary(address)

    async def get_address_transactions(
        self, address: str, page: int = 1, page_size: int = 25
    ) -> TransactionPage:
        return await self._store.get_address_transactions(address, page, page_size)

    async def get_address_utxos(self, address: str) -> list[UtxoRecord]:
        return await self._store.get_address_utxos(address)

    def get_sync_stats(self) -> dict[str, Any]:
        return {
            "started_at": self._started_at,
            "blocks_processed": self._blocks_processed,
            "transactions_processed": self._transactions_processed,
            "prevout_cache_hits": self._resolver.stats.cache_hits,
            "prevout_rpc_calls": self._resolver.stats.rpc_calls,
            "prevout_pool_active": self._resolver.pool_active,
            "last_processed_height": self._checkpoint_height,
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def record_block_sample(
        self,
        *,
        height: int,
        block_hash: str | None,
        tx_count: int,
        duration_ms: float,
        timestamp: float | None = None,
    ) -> None:
        self._reporter.record_block_sample(
            height=height,
            block_hash=block_hash,
            tx_count=tx_count,
            duration_ms=duration_ms,
            timestamp=timestamp,
        )

    async def get_status(self, *, refresh_tip: bool = False) -> IndexerStatus:
        """Current sync status; never raises."""
        has_checkpoint = self._checkpoint_height >= 0
        return await self._reporter.get_status(
            refresh_tip=refresh_tip,
            last_processed_height=self._checkpoint_height if has_checkpoint else None,
            last_processed_hash=self._checkpoint_hash if has_checkpoint else None,
            sync_in_progress=self._sync_in_progress,
            error=self.error,
        )
