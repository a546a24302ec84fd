"""Tests for the Bitcoin Core JSON-RPC client — uses httpx mock transport."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from btc_explorer.config.settings import RpcConfig
from btc_explorer.errors.rpc_errors import (
    BadRequestError,
    NotFoundError,
    ServiceUnavailableError,
)
from btc_explorer.rpc.client import BitcoinRpcClient, _map_rpc_error, read_cookie

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_URL = "http://127.0.0.1:18443"


def _inject_transport(client: BitcoinRpcClient, transport: httpx.MockTransport) -> None:
    """Replace the internal httpx client with one using mock transport."""
    client._client = httpx.AsyncClient(
        transport=transport,
        base_url=_URL,
        auth=client._resolve_auth(),
    )


def _result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"result": result, "error": None, "id": body["id"]})


def _basic(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


@pytest.fixture
def config() -> RpcConfig:
    return RpcConfig(url=_URL, username="alice", password="secret")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("code", "cls"),
        [
            (-5, NotFoundError),
            (-8, BadRequestError),
            (-32602, BadRequestError),
            (-28, ServiceUnavailableError),
            (-1, ServiceUnavailableError),
        ],
    )
    def test_codes(self, code: int, cls: type) -> None:
        err = _map_rpc_error({"code": code, "message": "node says no"})
        assert type(err) is cls
        assert err.message == "node says no"

    def test_malformed_error(self) -> None:
        assert isinstance(_map_rpc_error("oops"), ServiceUnavailableError)


# ---------------------------------------------------------------------------
# Lifecycle and auth
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_connect_and_close(self, config) -> None:
        rpc = BitcoinRpcClient(config)
        assert rpc.is_connected is False
        await rpc.connect()
        assert rpc.is_connected is True
        await rpc.close()
        assert rpc.is_connected is False

    async def test_call_before_connect(self, config) -> None:
        with pytest.raises(RuntimeError, match="not connected"):
            await BitcoinRpcClient(config).call("getblockcount")

    async def test_missing_credentials(self) -> None:
        rpc = BitcoinRpcClient(RpcConfig(url=_URL))
        with pytest.raises(ServiceUnavailableError, match="credentials"):
            await rpc.connect()

    def test_read_cookie(self, tmp_path) -> None:
        cookie = tmp_path / ".cookie"
        cookie.write_text("__cookie__:abc123\n")
        assert read_cookie(cookie) == ("__cookie__", "abc123")

    def test_read_missing_cookie(self, tmp_path) -> None:
        with pytest.raises(ServiceUnavailableError):
            read_cookie(tmp_path / "missing")


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


class TestCalls:
    async def test_request_shape_and_result(self, config, metrics) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert request.headers["authorization"] == _basic("alice", "secret")
            return _result(request, "00" * 32)

        rpc = BitcoinRpcClient(config, metrics=metrics)
        _inject_transport(rpc, httpx.MockTransport(handler))
        assert await rpc.get_block_hash(7) == "00" * 32
        assert seen[0]["method"] == "getblockhash"
        assert seen[0]["params"] == [7]
        assert seen[0]["jsonrpc"] == "2.0"
        assert (
            metrics.registry.get_sample_value(
                "explorer_rpc_requests_total", {"method": "getblockhash", "outcome": "success"}
            )
            == 1
        )
        await rpc.close()

    async def test_rpc_error_is_typed(self, config, metrics) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                500, json={"result": None, "error": {"code": -5, "message": "Block not found"}}
            )

        rpc = BitcoinRpcClient(config, metrics=metrics)
        _inject_transport(rpc, httpx.MockTransport(handler))
        with pytest.raises(NotFoundError, match="Block not found"):
            await rpc.get_block("ff" * 32)
        assert (
            metrics.registry.get_sample_value(
                "explorer_rpc_requests_total", {"method": "getblock", "outcome": "error"}
            )
            == 1
        )

    async def test_transport_failure_is_unavailable(self, config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        rpc = BitcoinRpcClient(config)
        _inject_transport(rpc, httpx.MockTransport(handler))
        with pytest.raises(ServiceUnavailableError, match="unreachable"):
            await rpc.get_block_count()

    async def test_non_json_response(self, config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="<html>bad gateway</html>")

        rpc = BitcoinRpcClient(config)
        _inject_transport(rpc, httpx.MockTransport(handler))
        with pytest.raises(ServiceUnavailableError, match="non-JSON"):
            await rpc.call("getblockcount")

    async def test_auth_failure_without_cookie(self, config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        rpc = BitcoinRpcClient(config)
        _inject_transport(rpc, httpx.MockTransport(handler))
        with pytest.raises(ServiceUnavailableError, match="authentication"):
            await rpc.call("getblockcount")

    async def test_cookie_reloaded_after_401(self, tmp_path) -> None:
        cookie = tmp_path / ".cookie"
        cookie.write_text("__cookie__:old")
        rpc = BitcoinRpcClient(RpcConfig(url=_URL, cookie_path=str(cookie)))
        headers: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers["authorization"])
            if request.headers["authorization"] == _basic("__cookie__", "old"):
                return httpx.Response(401)
            return _result(request, 812)

        _inject_transport(rpc, httpx.MockTransport(handler))
        # bitcoind restarted and rewrote its cookie
        cookie.write_text("__cookie__:new")

        assert await rpc.get_block_count() == 812
        assert headers == [_basic("__cookie__", "old"), _basic("__cookie__", "new")]
