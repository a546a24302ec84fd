"""Tests for the btc_explorer.main entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from unittest.mock import patch

import pytest

from btc_explorer.config.settings import (
    AppConfig,
    LoggingConfig,
    LogLevel,
    MetricsConfig,
)
from btc_explorer.errors.rpc_errors import ServiceUnavailableError
from btc_explorer.main import configure_logging, main, run


class _RecordingNotifier:
    def __init__(self) -> None:
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True


class _ChainRpc:
    """Stands in for BitcoinRpcClient, answering from a fake chain."""

    def __init__(self, chain) -> None:
        self._chain = chain
        self.closed = False

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        self.closed = True

    async def call(self, method, params=None):
        return await self._chain.call(method, params)


@pytest.fixture
def app_config(indexer_config) -> AppConfig:
    return AppConfig(indexer=indexer_config, metrics=MetricsConfig(enabled=False))


class TestConfigureLogging:
    def test_basic_config_from_settings(self) -> None:
        config = LoggingConfig(level=LogLevel.DEBUG, format="%(levelname)s %(message)s")
        with patch("btc_explorer.main.logging.basicConfig") as basic_config:
            configure_logging(config)
        basic_config.assert_called_once_with(
            level="DEBUG", format="%(levelname)s %(message)s", force=True
        )
        assert logging.getLogger("httpx").level == logging.WARNING


class TestRun:
    async def test_disabled_indexer_exits_cleanly(self, app_config) -> None:
        config = app_config.model_copy(
            update={"indexer": app_config.indexer.model_copy(update={"enabled": False})}
        )
        with patch("btc_explorer.main.BitcoinRpcClient") as rpc_cls:
            assert await run(config) == 0
        rpc_cls.assert_not_called()

    async def test_start_failure_returns_error_code(self, app_config, chain) -> None:
        chain.add_empty_blocks(2)
        chain.fail_next("getblockcount", ServiceUnavailableError("node down"))
        rpc = _ChainRpc(chain)
        with patch("btc_explorer.main.BitcoinRpcClient", return_value=rpc):
            assert await run(app_config) == 1
        assert rpc.closed

    async def test_sigterm_stops_service(self, app_config, chain) -> None:
        chain.add_empty_blocks(3)
        rpc = _ChainRpc(chain)
        with patch("btc_explorer.main.BitcoinRpcClient", return_value=rpc):
            task = asyncio.create_task(run(app_config))
            await asyncio.sleep(0.3)
            os.kill(os.getpid(), signal.SIGTERM)
            async with asyncio.timeout(5):
                assert await task == 0
        assert rpc.closed

    async def test_block_notifier_follows_service_lifecycle(self, app_config, chain) -> None:
        chain.add_empty_blocks(2)
        chain.fail_next("getblockcount", ServiceUnavailableError("node down"))
        notifier = _RecordingNotifier()
        with (
            patch("btc_explorer.main.BitcoinRpcClient", return_value=_ChainRpc(chain)),
            patch(
                "btc_explorer.main.BlockNotifier.from_config", return_value=notifier
            ) as from_config,
        ):
            assert await run(app_config) == 1
        from_config.assert_called_once()
        assert notifier.started
        assert notifier.closed

    async def test_metrics_server_started(self, app_config) -> None:
        config = app_config.model_copy(
            update={
                "indexer": app_config.indexer.model_copy(update={"enabled": False}),
                "metrics": MetricsConfig(enabled=True, port=9321),
            }
        )
        with patch("btc_explorer.main.start_http_server") as start_server:
            assert await run(config) == 0
        start_server.assert_called_once()
        assert start_server.call_args[0][0] == 9321


class TestMain:
    def test_exit_code_from_run(self, tmp_path) -> None:
        config_file = tmp_path / "explorer.yaml"
        config_file.write_text("indexer:\n  enabled: false\nmetrics:\n  enabled: false\n")
        with patch("btc_explorer.main.configure_logging"), pytest.raises(SystemExit) as exc_info:
            main(["--config", str(config_file)])
        assert exc_info.value.code == 0
