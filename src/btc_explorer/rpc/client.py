"""Bitcoin Core JSON-RPC client — the indexer's only view of the chain.

Async HTTP client for bitcoind's JSON-RPC endpoint:
- POST / with ``{"jsonrpc": "2.0", "id": ..., "method": ..., "params": [...]}``
- Basic auth from username/password or the node's ``.cookie`` file

Node error codes are mapped onto the typed RPC errors so call sites can
distinguish "not found" (-5) from "bad request" (-8, -32602) from
"service unavailable" (everything else, including transport failures).
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from btc_explorer.errors.rpc_errors import (
    BadRequestError,
    NotFoundError,
    RpcError,
    ServiceUnavailableError,
)

if TYPE_CHECKING:
    from btc_explorer.config.settings import RpcConfig
    from btc_explorer.metrics.collector import IndexerMetrics

logger = logging.getLogger(__name__)

_COOKIE_USER = "__cookie__"


class RpcGateway(Protocol):
    """The call contract every chain data source must satisfy."""

    async def call(self, method: str, params: list[Any] | None = None) -> Any: ...


def _map_rpc_error(error: Any) -> RpcError:
    """Translate a JSON-RPC ``error`` object into a typed error."""
    if not isinstance(error, dict) or not isinstance(error.get("code"), int):
        return ServiceUnavailableError("Unexpected RPC error response")
    code = error["code"]
    message = error.get("message") or ""
    if code == -5:
        return NotFoundError(message or "Resource not found")
    if code in (-8, -32602):
        return BadRequestError(message or "Invalid parameters")
    return ServiceUnavailableError(message or "Bitcoin RPC error")


def read_cookie(path: str | Path) -> tuple[str, str]:
    """Read bitcoind's cookie file and return ``(username, password)``.

    Raises:
        ServiceUnavailableError: If the file is missing or empty.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ServiceUnavailableError(f"Bitcoin RPC cookie unreadable: {exc}") from exc
    if not raw:
        raise ServiceUnavailableError("Bitcoin RPC cookie file is empty")
    if ":" in raw:
        username, password = raw.split(":", 1)
        return username, password
    return _COOKIE_USER, raw


class BitcoinRpcClient:
    """Async JSON-RPC client for Bitcoin Core.

    Usage::

        rpc = BitcoinRpcClient(config.rpc)
        await rpc.connect()
        try:
            height = await rpc.call("getblockcount")
        finally:
            await rpc.close()
    """

    def __init__(self, config: RpcConfig, *, metrics: IndexerMetrics | None = None) -> None:
        """Initialize the RPC client.

        Args:
            config: RPC configuration (url, credentials, timeout).
            metrics: Optional metrics sink for per-call counters.
        """
        self._config = config
        self._metrics = metrics
        self._client: httpx.AsyncClient | None = None
        self._request_id = 0

    async def connect(self) -> None:
        """Create the underlying HTTP client.

        Raises:
            ServiceUnavailableError: If no credentials are configured.
        """
        self._client = httpx.AsyncClient(
            base_url=self._config.url.rstrip("/"),
            headers={"Content-Type": "application/json"},
            auth=self._resolve_auth(),
            timeout=self._config.timeout,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_connected(self) -> bool:
        """Check if the HTTP client is active."""
        return self._client is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Execute one RPC method and return its ``result``.

        Raises:
            NotFoundError: Unknown block/transaction (RPC code -5).
            BadRequestError: Invalid parameters.
            ServiceUnavailableError: Node unreachable, auth failure, other errors.
        """
        return await self._call(method, params or [], retry_auth=True)

    async def get_block_count(self) -> int:
        return int(await self.call("getblockcount"))

    async def get_block_hash(self, height: int) -> str:
        return str(await self.call("getblockhash", [height]))

    async def get_block(self, block_hash: str, verbosity: int = 2) -> dict[str, Any]:
        return await self.call("getblock", [block_hash, verbosity])

    async def get_raw_transaction(self, txid: str, *, verbose: bool = True) -> Any:
        return await self.call("getrawtransaction", [txid, verbose])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: list[Any], *, retry_auth: bool) -> Any:
        client = self._ensure_connected()
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        started = time.monotonic()
        try:
            response = await client.post("/", json=payload)
        except httpx.HTTPError as exc:
            error = ServiceUnavailableError(f"Bitcoin RPC unreachable or timed out: {exc}")
            self._fail(method, error, started)
            raise error from exc

        if response.status_code == 401 and retry_auth and self._config.cookie_path:
            # bitcoind rewrites the cookie on restart
            logger.warning("RPC auth rejected; reloading cookie and retrying %s", method)
            client.auth = self._resolve_auth()
            return await self._call(method, params, retry_auth=False)

        try:
            result = self._parse(response)
        except RpcError as exc:
            self._fail(method, exc, started)
            raise

        self._observe(method, "success", started)
        return result

    @staticmethod
    def _parse(response: httpx.Response) -> Any:
        if response.status_code == 401:
            raise ServiceUnavailableError("Bitcoin RPC authentication failed")
        try:
            body = response.json()
        except ValueError as exc:
            msg = f"Bitcoin RPC returned non-JSON response ({response.status_code})"
            raise ServiceUnavailableError(msg) from exc
        if not isinstance(body, dict):
            raise ServiceUnavailableError("Unexpected RPC response shape")
        if body.get("error"):
            raise _map_rpc_error(body["error"])
        return body.get("result")

    def _fail(self, method: str, error: RpcError, started: float) -> None:
        self._observe(method, "error", started)
        if isinstance(error, ServiceUnavailableError):
            logger.error("rpc.failure method=%s: %s", method, error.message)
        else:
            logger.warning("rpc.warning method=%s: %s", method, error.message)

    def _observe(self, method: str, outcome: str, started: float) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        logger.debug("rpc %s %s in %.1fms", method, outcome, duration_ms)
        if self._metrics is not None:
            self._metrics.observe_rpc_request(method, outcome=outcome, duration_ms=duration_ms)

    def _resolve_auth(self) -> httpx.BasicAuth:
        if self._config.cookie_path:
            username, password = read_cookie(self._config.cookie_path)
            return httpx.BasicAuth(username, password)
        if self._config.username and self._config.password:
            return httpx.BasicAuth(self._config.username, self._config.password)
        msg = "Bitcoin RPC credentials are not configured"
        raise ServiceUnavailableError(msg)

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "BitcoinRpcClient is not connected; call connect() first"
            raise RuntimeError(msg)
        return self._client
