"""Metrics collector — Prometheus counters, gauges, histograms.

Indexer metrics exposed under the ``explorer`` prefix:
- ``explorer_rpc_requests_total`` / ``explorer_rpc_request_duration_seconds``
- ``explorer_address_indexer_block_duration_seconds``
- ``explorer_address_indexer_prevout_duration_seconds``
- ``explorer_address_indexer_prevout_lookups_total``
- ``explorer_address_indexer_sync_*`` status gauges
- ``explorer_cron_histogram`` / ``explorer_cron_last_execution_gauge``
"""

from __future__ import annotations

import math
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

if TYPE_CHECKING:
    from collections.abc import Iterator


_PREFIX = "explorer"
_INDEXER = f"{_PREFIX}_address_indexer"

_DURATION_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10)

SYNC_STATES = (
    "disabled",
    "starting",
    "catching_up",
    "synced",
    "degraded",
    "error",
)


class MetricsCollector:
    """Low-level Prometheus collector that owns the registry.

    Use :class:`IndexerMetrics` for the high-level tracking interface.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

    @property
    def registry(self) -> CollectorRegistry:
        """Return the underlying Prometheus registry."""
        return self._registry

    def gauge(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Gauge:
        """Register and return a Gauge."""
        return Gauge(name, doc, labels, registry=self._registry)

    def histogram(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Histogram:
        """Register and return a Histogram."""
        return Histogram(
            name, doc, labels, registry=self._registry, buckets=_DURATION_BUCKETS
        )

    def counter(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Counter:
        """Register and return a Counter."""
        return Counter(name, doc, labels, registry=self._registry)


def _gauge_value(value: float | None) -> float:
    return math.nan if value is None else float(value)


class IndexerMetrics:
    """High-level metrics for the RPC gateway and the address indexer.

    All histograms track durations in seconds.
    """

    def __init__(self, collector: MetricsCollector | None = None) -> None:
        self._collector = collector or MetricsCollector()

        # RPC
        self._rpc_requests = self._collector.counter(
            f"{_PREFIX}_rpc_requests",
            "Bitcoin RPC requests executed grouped by outcome",
            ("method", "outcome"),
        )
        self._rpc_duration = self._collector.histogram(
            f"{_PREFIX}_rpc_request_duration_seconds",
            "Bitcoin RPC request duration",
            ("method", "outcome"),
        )

        # Indexer pipeline
        self._block_duration = self._collector.histogram(
            f"{_INDEXER}_block_duration_seconds",
            "Duration of address indexer block processing",
            ("outcome",),
        )
        self._prevout_duration = self._collector.histogram(
            f"{_INDEXER}_prevout_duration_seconds",
            "Duration of prevout resolution per transaction",
            ("source",),
        )
        self._prevout_lookups = self._collector.counter(
            f"{_INDEXER}_prevout_lookups",
            "Prevout lookups grouped by source and outcome",
            ("source", "outcome"),
        )

        # Sync status
        self._blocks_remaining = self._collector.gauge(
            f"{_INDEXER}_sync_blocks_remaining", "Blocks left to reach the chain tip"
        )
        self._progress_percent = self._collector.gauge(
            f"{_INDEXER}_sync_progress_percent", "Indexed share of the chain"
        )
        self._eta_seconds = self._collector.gauge(
            f"{_INDEXER}_sync_eta_seconds", "Estimated seconds until the index is synced"
        )
        self._tip_height = self._collector.gauge(
            f"{_INDEXER}_sync_tip_height", "Chain tip height reported by the node"
        )
        self._last_processed = self._collector.gauge(
            f"{_INDEXER}_sync_last_processed_height", "Checkpoint height of the index"
        )
        self._sync_in_progress = self._collector.gauge(
            f"{_INDEXER}_sync_in_progress", "1 while a block is being applied"
        )
        self._state = self._collector.gauge(
            f"{_INDEXER}_sync_state", "One-hot indexer sync state", ("state",)
        )

        # Cron
        self._cron_histogram = self._collector.histogram(
            f"{_PREFIX}_cron_histogram",
            "Duration of cron job executions",
            ("job_name",),
        )
        self._cron_last = self._collector.gauge(
            f"{_PREFIX}_cron_last_execution_gauge",
            "Timestamp of last cron execution",
            ("job_name",),
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Return the underlying Prometheus registry."""
        return self._collector.registry

    # -- Recorders --

    def observe_rpc_request(self, method: str, *, outcome: str, duration_ms: float) -> None:
        """Count an RPC call and record its duration."""
        safe_outcome = "success" if outcome == "success" else "error"
        self._rpc_requests.labels(method=method, outcome=safe_outcome).inc()
        self._rpc_duration.labels(method=method, outcome=safe_outcome).observe(
            duration_ms / 1000
        )

    def record_block_duration(self, *, outcome: str, duration_ms: float) -> None:
        """Record how long one block took to fetch, resolve, and apply."""
        self._block_duration.labels(outcome=outcome).observe(duration_ms / 1000)

    def record_prevout_duration(self, *, source: str, duration_ms: float) -> None:
        """Record prevout resolution time for one transaction."""
        self._prevout_duration.labels(source=source).observe(duration_ms / 1000)

    def record_prevout_lookup(self, *, source: str, outcome: str, count: int = 1) -> None:
        """Count individual prevout lookups (``worker`` or ``inline``)."""
        if count <= 0:
            return
        self._prevout_lookups.labels(source=source, outcome=outcome).inc(count)

    def record_sync_status(
        self,
        *,
        state: str,
        blocks_remaining: int | None,
        progress_percent: float | None,
        estimated_completion_seconds: float | None,
        tip_height: int | None,
        last_processed_height: int | None,
        sync_in_progress: bool,
    ) -> None:
        """Publish a sync status snapshot as gauges."""
        self._blocks_remaining.set(_gauge_value(blocks_remaining))
        self._progress_percent.set(_gauge_value(progress_percent))
        self._eta_seconds.set(_gauge_value(estimated_completion_seconds))
        self._tip_height.set(_gauge_value(tip_height))
        self._last_processed.set(_gauge_value(last_processed_height))
        self._sync_in_progress.set(1 if sync_in_progress else 0)
        for candidate in SYNC_STATES:
            self._state.labels(state=candidate).set(1 if candidate == state else 0)

    # -- Operation trackers (context managers) --

    @contextmanager
    def track_cron(self, job_name: str) -> Iterator[None]:
        """Track the duration of a cron job and record last execution time."""
        start = time.monotonic()
        try:
            yield
        finally:
            self._cron_histogram.labels(job_name=job_name).observe(time.monotonic() - start)
            self._cron_last.labels(job_name=job_name).set(time.time())
