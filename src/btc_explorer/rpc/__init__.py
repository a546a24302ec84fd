"""Bitcoin Core JSON-RPC gateway."""

from __future__ import annotations

from btc_explorer.rpc.client import BitcoinRpcClient, RpcGateway

__all__ = ["BitcoinRpcClient", "RpcGateway"]
