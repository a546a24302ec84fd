"""Shared test fixtures for the address indexer test suite."""

from __future__ import annotations

from typing import Any

import pytest

from btc_explorer.config.settings import IndexerConfig
from btc_explorer.errors.rpc_errors import BadRequestError, NotFoundError
from btc_explorer.events.feed import MemoryChangeFeed
from btc_explorer.metrics.collector import IndexerMetrics

GENESIS_TIME = 1_600_000_000


def block_hash_for(height: int) -> str:
    return f"{height:064x}"


def build_tx(
    txid: str,
    outputs: list[tuple[str | None, str]],
    inputs: list[tuple[str, int]] | None = None,
) -> dict[str, Any]:
    """Build a verbosity-2 style transaction.

    ``outputs`` are ``(address, btc_value)`` pairs; a None address gives an
    output without one (e.g. OP_RETURN). Without ``inputs`` the transaction
    is a coinbase.
    """
    if inputs is None:
        vin: list[dict[str, Any]] = [{"coinbase": "03a08601", "sequence": 4294967295}]
    else:
        vin = [{"txid": prev_txid, "vout": prev_vout} for prev_txid, prev_vout in inputs]
    vout = []
    for n, (address, value) in enumerate(outputs):
        script: dict[str, Any] = {"type": "witness_v0_keyhash", "address": address}
        if address is None:
            script = {"type": "nulldata"}
        vout.append({"n": n, "value": value, "scriptPubKey": script})
    return {"txid": txid, "vin": vin, "vout": vout}


class FakeChain:
    """In-memory chain that answers the RPC calls the indexer makes."""

    def __init__(self) -> None:
        self.blocks: list[dict[str, Any]] = []
        self.transactions: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, list[Any]]] = []
        self.failures: dict[str, list[Exception]] = {}

    def add_block(self, transactions: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        height = len(self.blocks)
        if transactions is None:
            transactions = [build_tx(f"coinbase-{height}", [(f"miner-{height}", "6.25")])]
        block = {
            "hash": block_hash_for(height),
            "height": height,
            "time": GENESIS_TIME + height * 600,
            "tx": transactions,
        }
        self.blocks.append(block)
        for tx in transactions:
            self.transactions[tx["txid"]] = tx
        return block

    def add_empty_blocks(self, count: int) -> None:
        for _ in range(count):
            self.add_block()

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def count(self, method: str) -> int:
        return sum(1 for called, _ in self.calls if called == method)

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        params = list(params or [])
        self.calls.append((method, params))
        queued = self.failures.get(method)
        if queued:
            raise queued.pop(0)
        if method == "getblockcount":
            return len(self.blocks) - 1
        if method == "getblockhash":
            height = params[0]
            if not 0 <= height < len(self.blocks):
                raise NotFoundError("Block height out of range")
            return self.blocks[height]["hash"]
        if method == "getblock":
            for block in self.blocks:
                if block["hash"] == params[0]:
                    return block
            raise NotFoundError("Block not found")
        if method == "getrawtransaction":
            tx = self.transactions.get(params[0])
            if tx is None:
                raise NotFoundError("No such mempool or blockchain transaction")
            return tx
        raise BadRequestError(f"Method not found: {method}")


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def indexer_config(tmp_path) -> IndexerConfig:
    """Indexer settings pointing at a throwaway SQLite file."""
    return IndexerConfig(
        dsn=f"sqlite+aiosqlite:///{tmp_path}/address-index/index.db",
        concurrency=1,
        drain_timeout=2.0,
        block_fetch_backoff=0.0,
    )


@pytest.fixture
def metrics() -> IndexerMetrics:
    return IndexerMetrics()


@pytest.fixture
def feed() -> MemoryChangeFeed:
    return MemoryChangeFeed()


@pytest.fixture
def make_tx():
    """Factory for verbosity-2 transactions (see ``build_tx``)."""
    return build_tx
