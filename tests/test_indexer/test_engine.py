"""Tests for the address indexer engine: backfill, live updates, shutdown."""

from __future__ import annotations

import asyncio
import logging

import pytest

from btc_explorer.errors.rpc_errors import NotFoundError, ServiceUnavailableError
from btc_explorer.events.feed import Channel
from btc_explorer.indexer.engine import (
    AddressIndexer,
    IndexerState,
    btc_to_sats,
    script_addresses,
)
from btc_explorer.indexer.status import SyncState
from btc_explorer.indexer.store import IndexStore, OutputCredit, TransactionDelta

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FailOnceAtHeight:
    """Wraps a chain and fails the first ``getblockhash`` for one height."""

    def __init__(self, chain, height: int) -> None:
        self._chain = chain
        self._height = height
        self.armed = True

    async def call(self, method, params=None):
        if self.armed and method == "getblockhash" and params == [self._height]:
            self.armed = False
            raise ServiceUnavailableError("node down")
        return await self._chain.call(method, params)


class _GatedChain:
    """Wraps a chain and blocks one RPC method until ``gate`` is set."""

    def __init__(self, chain, method: str) -> None:
        self._chain = chain
        self._method = method
        self.gate = asyncio.Event()

    async def call(self, method, params=None):
        if method == self._method:
            await self.gate.wait()
        return await self._chain.call(method, params)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def _add_receive_and_spend(chain, make_tx, *, same_block: bool) -> None:
    """A receives 0.001 BTC in T1, then pays 0.0006 to B with 0.0004 change in T2."""
    t1 = make_tx("T1", [("A", "0.001")])
    t2 = make_tx("T2", [("B", "0.0006"), ("A", "0.0004")], inputs=[("T1", 0)])
    if same_block:
        chain.add_block([t1, t2])
    else:
        chain.add_block([t1])
        chain.add_block([make_tx("coinbase-1", [("miner-1", "6.25")]), t2])


@pytest.fixture
async def indexer(indexer_config, chain, feed, metrics):
    indexer = AddressIndexer(indexer_config, chain, feed, metrics=metrics)
    yield indexer
    await indexer.shutdown()


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


class TestConversions:
    def test_btc_to_sats_is_exact(self) -> None:
        assert btc_to_sats(0.1) == 10_000_000
        assert btc_to_sats(0.29) == 29_000_000
        assert btc_to_sats("0.00000001") == 1
        assert btc_to_sats("21000000") == 2_100_000_000_000_000
        assert btc_to_sats(None) == 0

    def test_script_addresses(self) -> None:
        assert script_addresses({"address": "bc1qx"}) == ["bc1qx"]
        assert script_addresses({"addresses": ["1a", "1b"]}) == ["1a", "1b"]
        assert script_addresses({"type": "nulldata"}) == []
        assert script_addresses(None) == []


class TestProcessTransaction:
    def test_credits_and_debits(self, indexer, make_tx) -> None:
        tx = make_tx("T2", [("B", "0.0006"), (None, "0"), ("A", "0.0004")], inputs=[("T1", 0)])
        prevout = {"n": 0, "value": 0.001, "scriptPubKey": {"address": "A"}}

        delta = indexer.process_transaction(tx, [prevout], 5, None)

        assert delta.txid == "T2"
        assert [(c.address, c.vout, c.value_sat) for c in delta.credits] == [
            ("B", 0, 60_000),
            ("A", 2, 40_000),
        ]
        assert len(delta.debits) == 1
        debit = delta.debits[0]
        assert (debit.address, debit.vin, debit.prev_txid, debit.prev_vout) == ("A", 0, "T1", 0)
        assert debit.value_sat == 100_000

    def test_unresolved_prevouts_are_skipped(self, indexer, make_tx) -> None:
        tx = make_tx("T2", [("B", "1")], inputs=[("T1", 0), ("T1", 1)])
        delta = indexer.process_transaction(tx, [None], 5, None)
        assert delta.debits == []
        assert delta.addresses() == {"B"}

    def test_coinbase_has_no_debits(self, indexer, make_tx) -> None:
        delta = indexer.process_transaction(make_tx("cb", [("M", "6.25")]), [None], 0, None)
        assert delta.debits == []
        assert delta.credits[0].value_sat == 625_000_000


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------


class TestBackfill:
    async def test_start_backfills_then_goes_live(self, indexer, chain, feed, make_tx) -> None:
        _add_receive_and_spend(chain, make_tx, same_block=False)
        chain.add_empty_blocks(2)

        await indexer.start()

        assert indexer.state == IndexerState.LIVE
        assert indexer.checkpoint == (3, chain.blocks[3]["hash"])
        assert feed.subscriber_count(Channel.BLOCK_NEW) == 1
        a = await indexer.get_address_summary("A")
        assert a is not None
        assert a.balance_sat == 40_000
        assert a.tx_count == 2
        assert a.first_seen_height == 0
        assert a.last_seen_height == 1

    async def test_receive_and_spend_in_one_block(self, indexer, chain, make_tx) -> None:
        _add_receive_and_spend(chain, make_tx, same_block=True)

        await indexer.start()

        a = await indexer.get_address_summary("A")
        b = await indexer.get_address_summary("B")
        assert (a.balance_sat, a.tx_count) == (40_000, 2)
        assert b.balance_sat == 60_000
        assert [(u.txid, u.value_sat) for u in await indexer.get_address_utxos("A")] == [
            ("T2", 40_000)
        ]
        assert [(u.txid, u.value_sat) for u in await indexer.get_address_utxos("B")] == [
            ("T2", 60_000)
        ]
        history = await indexer.get_address_transactions("A")
        assert history.total_rows == 3

    async def test_reapplying_committed_block_is_noop(self, indexer, chain, make_tx) -> None:
        _add_receive_and_spend(chain, make_tx, same_block=False)
        await indexer.start()
        before = await indexer.get_address_summary("A")

        await indexer.process_block_height(1)

        assert await indexer.get_address_summary("A") == before

    async def test_restart_resumes_after_checkpoint(
        self, indexer_config, chain, feed, make_tx
    ) -> None:
        chain.add_empty_blocks(3)
        first = AddressIndexer(indexer_config, chain, feed)
        await first.start()
        await first.shutdown()
        assert first.state == IndexerState.CLOSED

        chain.add_empty_blocks(2)
        calls_before = len(chain.calls)
        second = AddressIndexer(indexer_config, chain, feed)
        await second.start()
        try:
            fetched = [
                params[0]
                for method, params in chain.calls[calls_before:]
                if method == "getblockhash"
            ]
            assert fetched == [3, 4]
            assert second.checkpoint[0] == 4
        finally:
            await second.shutdown()

    async def test_getblock_not_found_is_retried(self, indexer, chain) -> None:
        chain.add_empty_blocks(2)
        chain.fail_next("getblock", NotFoundError(), NotFoundError())

        await indexer.start()

        assert indexer.checkpoint[0] == 1
        assert chain.count("getblock") == 4

    async def test_rpc_failure_fails_start(self, indexer, chain) -> None:
        chain.add_empty_blocks(3)
        chain.fail_next("getblockhash", ServiceUnavailableError("node down"))

        with pytest.raises(ServiceUnavailableError):
            await indexer.start()

        assert indexer.error == "node down"
        status = await indexer.get_status(refresh_tip=True)
        assert status.state == SyncState.ERROR
        assert status.error == "node down"

    async def test_failed_start_can_be_retried(self, indexer_config, chain, feed) -> None:
        chain.add_empty_blocks(3)
        indexer = AddressIndexer(indexer_config, _FailOnceAtHeight(chain, 2), feed)

        with pytest.raises(ServiceUnavailableError):
            await indexer.start()

        assert indexer.state == IndexerState.CLOSED
        assert not indexer.store.is_open
        assert feed.subscriber_count(Channel.BLOCK_NEW) == 0

        await indexer.start()
        try:
            assert indexer.state == IndexerState.LIVE
            assert indexer.error is None
            assert indexer.checkpoint == (2, chain.blocks[2]["hash"])
            assert feed.subscriber_count(Channel.BLOCK_NEW) == 1
            # blocks committed before the failure are not fetched again
            heights = [params[0] for method, params in chain.calls if method == "getblockhash"]
            assert heights == [0, 1, 2]
        finally:
            await indexer.shutdown()

    async def test_batched_commits(self, indexer_config, chain, feed, monkeypatch) -> None:
        chain.add_empty_blocks(5)
        config = indexer_config.model_copy(update={"batch_block_count": 3})
        indexer = AddressIndexer(config, chain, feed)
        batches: list[list[int]] = []
        original = indexer.store.apply_blocks

        async def _spy(blocks):
            batches.append([block.height for block in blocks])
            await original(blocks)

        monkeypatch.setattr(indexer.store, "apply_blocks", _spy)
        try:
            await indexer.start()
            assert batches == [[0, 1, 2], [3, 4]]
            assert indexer.checkpoint[0] == 4
        finally:
            await indexer.shutdown()

    async def test_progress_is_logged(self, indexer, chain, caplog) -> None:
        chain.add_empty_blocks(3)
        with caplog.at_level(logging.INFO, logger="btc_explorer.indexer.engine"):
            await indexer.start()
        assert "Address index sync progress 3/3 (100%)" in caplog.text
        assert "initial sync complete at height 2" in caplog.text

    async def test_block_metrics_recorded(self, indexer, chain, metrics) -> None:
        chain.add_empty_blocks(3)
        await indexer.start()
        count = metrics.registry.get_sample_value(
            "explorer_address_indexer_block_duration_seconds_count", {"outcome": "success"}
        )
        assert count == 3

    async def test_sync_stats(self, indexer, chain) -> None:
        chain.add_empty_blocks(2)
        await indexer.start()
        stats = indexer.get_sync_stats()
        assert stats["blocks_processed"] == 2
        assert stats["transactions_processed"] == 2
        assert stats["last_processed_height"] == 1
        assert stats["prevout_pool_active"] is False


# ---------------------------------------------------------------------------
# Checkpoint reconciliation
# ---------------------------------------------------------------------------


class TestReconcile:
    @staticmethod
    async def _seed(indexer) -> None:
        await indexer.open()
        delta = TransactionDelta(txid="seed", credits=[OutputCredit("A", 0, 1_000)])
        await indexer.store.apply_block(3, "hash-3-stale", None, [delta])

    async def test_checkpoint_ahead_of_data_is_rewound(self, indexer, chain) -> None:
        chain.add_empty_blocks(8)
        await self._seed(indexer)
        await indexer.store.set_checkpoint(7, "hash-7")

        assert await indexer.reconcile_checkpoint() == 3

        expected = (3, chain.blocks[3]["hash"])
        assert indexer.checkpoint == expected
        assert await indexer.store.get_checkpoint() == expected

    async def test_checkpoint_behind_data_moves_forward(self, indexer, chain) -> None:
        chain.add_empty_blocks(8)
        await self._seed(indexer)
        await indexer.store.set_checkpoint(1, "hash-1")

        assert await indexer.reconcile_checkpoint() == 3

    async def test_empty_tables_reset_checkpoint(self, indexer) -> None:
        await indexer.open()
        await indexer.store.set_checkpoint(5, "hash-5")

        assert await indexer.reconcile_checkpoint() == -1
        assert await indexer.store.get_checkpoint() == (-1, None)

    async def test_hash_refresh_failure_keeps_stale_hash(self, indexer, chain, caplog) -> None:
        chain.add_empty_blocks(8)
        await self._seed(indexer)
        await indexer.store.set_checkpoint(7, "hash-7")
        chain.fail_next("getblockhash", ServiceUnavailableError("node down"))

        with caplog.at_level(logging.WARNING):
            assert await indexer.reconcile_checkpoint() == 3

        assert indexer.checkpoint == (3, "hash-7")
        assert "keeping stale hash" in caplog.text

    async def test_consistent_checkpoint_is_untouched(self, indexer, chain) -> None:
        await self._seed(indexer)
        calls = len(chain.calls)
        assert await indexer.reconcile_checkpoint() == 3
        assert indexer.checkpoint == (3, "hash-3-stale")
        assert len(chain.calls) == calls


# ---------------------------------------------------------------------------
# Live updates
# ---------------------------------------------------------------------------


class TestLiveUpdates:
    async def test_new_block_notification_is_applied(self, indexer, chain, feed, make_tx) -> None:
        chain.add_empty_blocks(2)
        await indexer.start()

        block = chain.add_block([make_tx("cb-2", [("C", "1.5")])])
        await feed.publish(Channel.BLOCK_NEW, {"hash": block["hash"], "height": 2})

        assert indexer.checkpoint == (2, block["hash"])
        summary = await indexer.get_address_summary("C")
        assert summary.balance_sat == 150_000_000

    async def test_out_of_order_notifications_apply_in_height_order(
        self, indexer, chain, feed, monkeypatch
    ) -> None:
        chain.add_empty_blocks(6)
        await indexer.start()
        chain.add_empty_blocks(3)
        applied: list[int] = []
        original = indexer.store.apply_blocks

        async def _spy(blocks):
            applied.extend(block.height for block in blocks)
            await original(blocks)

        monkeypatch.setattr(indexer.store, "apply_blocks", _spy)

        for height in (7, 6, 8):
            await feed.publish(Channel.BLOCK_NEW, {"hash": chain.blocks[height]["hash"]})

        assert applied == [6, 7, 8]
        assert indexer.checkpoint[0] == 8

    async def test_failed_notification_is_logged(
        self, indexer_config, chain, feed, caplog
    ) -> None:
        chain.add_empty_blocks(1)
        config = indexer_config.model_copy(update={"block_fetch_attempts": 2})
        indexer = AddressIndexer(config, chain, feed)
        await indexer.start()
        try:
            with caplog.at_level(logging.ERROR):
                await feed.publish(Channel.BLOCK_NEW, {"hash": "f" * 64})
            assert "Failed to process new block" in caplog.text
            assert indexer.checkpoint[0] == 0
            assert indexer.state == IndexerState.LIVE
        finally:
            await indexer.shutdown()

    async def test_notifications_ignored_after_shutdown(self, indexer, chain, feed) -> None:
        chain.add_empty_blocks(1)
        await indexer.start()
        await indexer.shutdown()

        assert feed.subscriber_count(Channel.BLOCK_NEW) == 0
        chain.add_empty_blocks(1)
        await indexer._on_block_new({"hash": chain.blocks[1]["hash"]})
        assert indexer.checkpoint[0] == 0


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    async def test_shutdown_drains_in_flight_block(
        self, indexer_config, chain, feed, make_tx
    ) -> None:
        _add_receive_and_spend(chain, make_tx, same_block=False)
        chain.add_empty_blocks(3)
        gated = _GatedChain(chain, "getrawtransaction")
        indexer = AddressIndexer(indexer_config, gated, feed)

        start_task = asyncio.create_task(indexer.start())
        await _wait_for(lambda: indexer.sync_in_progress and indexer.checkpoint[0] == 0)

        with pytest.raises(TimeoutError):
            await indexer.await_sync_drain(0.05)

        shutdown_task = asyncio.create_task(indexer.shutdown())
        await asyncio.sleep(0.05)
        assert indexer.stopping
        assert not shutdown_task.done()

        gated.gate.set()
        await shutdown_task
        await start_task

        assert indexer.state == IndexerState.CLOSED
        assert not indexer.store.is_open
        # the in-flight block committed; nothing after it was started
        reopened = IndexStore(indexer_config)
        await reopened.open()
        try:
            assert (await reopened.get_checkpoint())[0] == 1
        finally:
            await reopened.close()

    async def test_shutdown_is_idempotent(self, indexer, chain) -> None:
        chain.add_empty_blocks(1)
        await indexer.start()
        await indexer.shutdown()
        await indexer.shutdown()
        assert indexer.state == IndexerState.CLOSED


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class TestEngineStatus:
    async def test_synced_after_backfill(self, indexer, chain) -> None:
        chain.add_empty_blocks(4)
        await indexer.start()

        status = await indexer.get_status(refresh_tip=True)

        assert status.state == SyncState.SYNCED
        assert status.last_processed_height == 3
        assert status.last_processed_hash == chain.blocks[3]["hash"]
        assert status.blocks_remaining == 0
        assert status.throughput.sample_count == 4

    async def test_catching_up_when_tip_moves(self, indexer, chain) -> None:
        chain.add_empty_blocks(2)
        await indexer.start()
        chain.add_empty_blocks(5)

        status = await indexer.get_status(refresh_tip=True)

        assert status.state == SyncState.CATCHING_UP
        assert status.blocks_remaining == 5
