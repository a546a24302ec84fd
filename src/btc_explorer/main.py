"""Entry point — run the address indexer as a standalone service.

Wires configuration, logging, Prometheus metrics, the RPC gateway, the
change feed, the node block notifier and the indexer together, then waits
for SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import TYPE_CHECKING

from prometheus_client import start_http_server

from btc_explorer.config.settings import AppConfig
from btc_explorer.events.feed import create_feed
from btc_explorer.events.notifier import BlockNotifier
from btc_explorer.indexer.engine import AddressIndexer
from btc_explorer.metrics.collector import IndexerMetrics
from btc_explorer.rpc.client import BitcoinRpcClient
from btc_explorer.services.address_service import AddressExplorerService
from btc_explorer.taskmanager.manager import CronJob, TaskManager

if TYPE_CHECKING:
    from collections.abc import Sequence

    from btc_explorer.config.settings import LoggingConfig

logger = logging.getLogger(__name__)

STATUS_JOB = "indexer_status"


def configure_logging(config: LoggingConfig) -> None:
    """Configure the root logger from ``config``."""
    logging.basicConfig(level=config.level.upper(), format=config.format, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def run(config: AppConfig) -> int:
    """Run the indexer until a termination signal arrives.

    Returns:
        Process exit code: 0 on a clean stop, 1 if the indexer failed.
    """
    metrics = IndexerMetrics()
    if config.metrics.enabled:
        start_http_server(config.metrics.port, registry=metrics.registry)
        logger.info("Metrics exposed on port %d", config.metrics.port)

    if not config.indexer.enabled:
        service = AddressExplorerService(None, enabled=False, metrics=metrics)
        await service.get_indexer_status()
        logger.info("Address indexer is disabled; nothing to run")
        return 0

    rpc = BitcoinRpcClient(config.rpc, metrics=metrics)
    await rpc.connect()
    feed = create_feed(config.feed)
    notifier = BlockNotifier.from_config(config.feed, feed)
    indexer = AddressIndexer(config.indexer, rpc, feed, metrics=metrics)
    service = AddressExplorerService(indexer, metrics=metrics)

    async def _refresh_status() -> None:
        status = await service.get_indexer_status(refresh_tip=True)
        logger.debug("Indexer status: %s", status["state"])

    tasks = TaskManager(metrics=metrics)
    tasks.register(
        STATUS_JOB,
        CronJob(handler=_refresh_status, period=config.metrics.status_refresh_period),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    exit_code = 0
    start_task = asyncio.create_task(indexer.start())
    stop_task = asyncio.create_task(stop.wait())
    try:
        if notifier is not None:
            await notifier.start()
        await tasks.start()
        await asyncio.wait({start_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if start_task.done() and start_task.exception() is not None:
            logger.error("Address indexer stopped: %s", indexer.error)
            exit_code = 1
        else:
            await stop_task
            logger.info("Termination signal received")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        stop_task.cancel()
        await indexer.shutdown()
        if not start_task.done():
            # shutdown() makes the backfill loop exit at its next block
            try:
                await start_task
            except Exception:
                logger.warning("Address indexer failed while stopping: %s", indexer.error)
                exit_code = 1
        await tasks.stop()
        if notifier is not None:
            await notifier.close()
        await feed.close()
        await rpc.close()
    return exit_code


def main(argv: Sequence[str] | None = None) -> None:
    """Console entry point."""
    parser = argparse.ArgumentParser(description="Bitcoin address indexer")
    parser.add_argument("--config", default="", help="Path to a YAML config file")
    args = parser.parse_args(argv)

    config = AppConfig(config_path=args.config) if args.config else AppConfig()
    configure_logging(config.logging)
    raise SystemExit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
