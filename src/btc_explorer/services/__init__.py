"""Explorer-facing services built on the address index."""

from __future__ import annotations

from btc_explorer.services.address_service import AddressExplorerService

__all__ = ["AddressExplorerService"]
