"""Error definitions used by the indexer and the explorer service layer."""

from __future__ import annotations

from btc_explorer.errors.explorer_errors import ExplorerError


class StoreOpenError(ExplorerError):
    """The durable index store could not be opened or created."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=500, code="store-open-failed")


# -- Feature ---------------------------------------------------------------

ErrFeatureDisabled = ExplorerError(
    "address explorer feature is disabled", status_code=400, code="feature-disabled"
)
ErrIndexerNotStarted = ExplorerError(
    "address indexer is not running", status_code=503, code="indexer-not-started"
)

# -- Validation ------------------------------------------------------------

ErrAddressRequired = ExplorerError("address is required", status_code=400, code="missing-address")
ErrInvalidXPub = ExplorerError("invalid xpub key", status_code=400, code="invalid-xpub")

# -- Not Found -------------------------------------------------------------

ErrAddressNotFound = ExplorerError(
    "address not found in local index", status_code=404, code="address-not-found"
)
