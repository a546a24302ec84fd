"""Bitcoin RPC errors — typed so call sites can tell retry from fatal."""

from __future__ import annotations

from btc_explorer.errors.explorer_errors import ExplorerError


class RpcError(ExplorerError):
    """Any failure surfaced by the RPC gateway."""

    def __init__(
        self, message: str, *, status_code: int = 503, code: str = "rpc-error"
    ) -> None:
        super().__init__(message, status_code=status_code, code=code)


class NotFoundError(RpcError):
    """The node does not know the requested block or transaction."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message, status_code=404, code="not-found")


class BadRequestError(RpcError):
    """The node rejected the call parameters."""

    def __init__(self, message: str = "Bad request") -> None:
        super().__init__(message, status_code=400, code="bad-request")


class ServiceUnavailableError(RpcError):
    """The node is unreachable, timed out, or refused our credentials."""

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(message, status_code=503, code="service-unavailable")
