"""Sync status and throughput telemetry for the address indexer.

Keeps a rolling window of per-block samples and turns it into a status
snapshot: where the index is, where the chain tip is, how fast blocks are
being applied and when the index should catch up. ``get_status`` never
raises; a failed tip lookup is reported as the ``degraded`` state.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from btc_explorer.metrics.collector import IndexerMetrics
    from btc_explorer.rpc.client import RpcGateway

logger = logging.getLogger(__name__)


class SyncState(enum.StrEnum):
    """Observable sync states."""

    DISABLED = "disabled"
    STARTING = "starting"
    CATCHING_UP = "catching_up"
    SYNCED = "synced"
    DEGRADED = "degraded"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class BlockSample:
    """One applied block. ``timestamp`` is wall-clock milliseconds."""

    height: int
    hash: str | None
    tx_count: int
    duration_ms: float
    timestamp: float


@dataclass(slots=True)
class ChainTip:
    height: int | None = None
    hash: str | None = None
    fetched_at: float | None = None
    stale: bool = True
    error: str | None = None


@dataclass(slots=True)
class Throughput:
    sample_count: int = 0
    window_ms: float = 0.0
    blocks_per_second: float | None = None
    transactions_per_second: float | None = None


@dataclass(slots=True)
class IndexerStatus:
    """Status snapshot; ``to_dict`` gives the JSON-ready shape."""

    state: str
    sync_in_progress: bool = False
    last_processed_height: int | None = None
    last_processed_hash: str | None = None
    chain_tip: ChainTip = field(default_factory=ChainTip)
    blocks_remaining: int | None = None
    progress_percent: float | None = None
    throughput: Throughput = field(default_factory=Throughput)
    estimated_completion_ms: float | None = None
    error: str | None = None

    @classmethod
    def disabled(cls) -> IndexerStatus:
        return cls(state=SyncState.DISABLED)

    @classmethod
    def failed(cls, message: str) -> IndexerStatus:
        return cls(state=SyncState.ERROR, error=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": str(self.state),
            "sync_in_progress": self.sync_in_progress,
            "last_processed": {
                "height": self.last_processed_height,
                "hash": self.last_processed_hash,
            },
            "chain_tip": asdict(self.chain_tip),
            "blocks_remaining": self.blocks_remaining,
            "progress_percent": self.progress_percent,
            "throughput": asdict(self.throughput),
            "estimated_completion_ms": self.estimated_completion_ms,
            "error": self.error,
        }


class SyncStatusReporter:
    """Rolling-window throughput tracker and status builder.

    Args:
        rpc: Gateway used to look up the chain tip.
        window: Number of samples kept.
        metrics: Optional sink for the status gauges.
        clock: Wall-clock source in seconds (``time.time`` by default).
    """

    def __init__(
        self,
        rpc: RpcGateway,
        *,
        window: int = 50,
        metrics: IndexerMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rpc = rpc
        self._metrics = metrics
        self._clock = clock
        self._samples: deque[BlockSample] = deque(maxlen=max(2, window))
        self._tip = ChainTip()

    @property
    def samples(self) -> list[BlockSample]:
        return list(self._samples)

    def record_block_sample(
        self,
        *,
        height: int,
        block_hash: str | None,
        tx_count: int,
        duration_ms: float,
        timestamp: float | None = None,
    ) -> BlockSample:
        sample = BlockSample(
            height=height,
            hash=block_hash,
            tx_count=tx_count,
            duration_ms=duration_ms,
            timestamp=self._clock() * 1000 if timestamp is None else timestamp,
        )
        self._samples.append(sample)
        return sample

    def reset(self) -> None:
        self._samples.clear()
        self._tip = ChainTip()

    async def refresh_tip(self) -> ChainTip:
        """Fetch the tip height and hash; failures are captured on the tip."""
        try:
            height = int(await self._rpc.call("getblockcount"))
            block_hash = await self._rpc.call("getblockhash", [height])
        except Exception as exc:
            logger.warning("Failed to refresh chain tip for indexer status: %s", exc)
            self._tip = ChainTip(
                height=self._tip.height,
                hash=self._tip.hash,
                fetched_at=self._tip.fetched_at,
                stale=True,
                error=str(exc) or type(exc).__name__,
            )
        else:
            self._tip = ChainTip(
                height=height, hash=block_hash, fetched_at=self._clock() * 1000, stale=False
            )
        return self._tip

    def throughput(self) -> Throughput:
        """Blocks and transactions per second over the sample window."""
        count = len(self._samples)
        if count == 0:
            return Throughput()
        window_ms = self._samples[-1].timestamp - self._samples[0].timestamp
        if window_ms <= 0:
            window_ms = sum(sample.duration_ms for sample in self._samples)
        if window_ms <= 0:
            return Throughput(sample_count=count, window_ms=0.0)
        window_s = window_ms / 1000
        tx_total = sum(sample.tx_count for sample in self._samples)
        return Throughput(
            sample_count=count,
            window_ms=window_ms,
            blocks_per_second=count / window_s,
            transactions_per_second=tx_total / window_s,
        )

    async def get_status(
        self,
        *,
        refresh_tip: bool = False,
        last_processed_height: int | None = None,
        last_processed_hash: str | None = None,
        sync_in_progress: bool = False,
        error: str | None = None,
    ) -> IndexerStatus:
        """Build a status snapshot and publish it to the metrics sink.

        Args:
            refresh_tip: Always query the node for the tip. The tip is also
                fetched when none is cached yet.
            last_processed_height: Checkpoint height; falls back to the
                newest sample when None.
            last_processed_hash: Checkpoint hash.
            sync_in_progress: Whether a block application is in flight.
            error: Engine failure message; forces the ``error`` state.
        """
        if refresh_tip or self._tip.height is None:
            tip = await self.refresh_tip()
        else:
            tip = ChainTip(
                height=self._tip.height,
                hash=self._tip.hash,
                fetched_at=self._tip.fetched_at,
                stale=True,
                error=self._tip.error,
            )

        if last_processed_height is None and self._samples:
            newest = self._samples[-1]
            last_processed_height = newest.height
            last_processed_hash = last_processed_hash or newest.hash

        throughput = self.throughput()
        status = IndexerStatus(
            state=SyncState.STARTING,
            sync_in_progress=sync_in_progress,
            last_processed_height=last_processed_height,
            last_processed_hash=last_processed_hash,
            chain_tip=tip,
            throughput=throughput,
            error=error,
        )

        if error is not None:
            status.state = SyncState.ERROR
        elif tip.error is not None or tip.height is None:
            status.state = SyncState.DEGRADED
            status.error = tip.error
        else:
            last = last_processed_height if last_processed_height is not None else -1
            remaining = max(0, tip.height - last)
            status.blocks_remaining = remaining
            status.progress_percent = _progress(last, tip.height)
            bps = throughput.blocks_per_second
            if bps:
                status.estimated_completion_ms = remaining / bps * 1000
            if not self._samples and last < 0:
                status.state = SyncState.STARTING
            elif remaining > 0:
                status.state = SyncState.CATCHING_UP
            else:
                status.state = SyncState.SYNCED

        self._publish(status)
        return status

    def _publish(self, status: IndexerStatus) -> None:
        if self._metrics is None:
            return
        eta_ms = status.estimated_completion_ms
        self._metrics.record_sync_status(
            state=str(status.state),
            blocks_remaining=status.blocks_remaining,
            progress_percent=status.progress_percent,
            estimated_completion_seconds=None if eta_ms is None else eta_ms / 1000,
            tip_height=status.chain_tip.height,
            last_processed_height=status.last_processed_height,
            sync_in_progress=status.sync_in_progress,
        )


def _progress(last: int, tip: int) -> float:
    if tip <= 0:
        return 100.0 if last >= tip else 0.0
    return min(100.0, max(0.0, 100 * last / tip))
