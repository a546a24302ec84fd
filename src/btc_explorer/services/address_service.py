"""Address explorer service — address, xpub and indexer status lookups.

Read-only consumer of the indexer's query surface, shaped for the
explorer's views:
- Address details (summary, UTXOs, paginated history)
- Xpub details (gap-limit scan over receive/change branches, totals)
- Indexer status (always a dict, never an exception)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from btc_explorer.bitcoin.address import HRP_MAINNET, HRP_REGTEST, HRP_TESTNET, pubkey_to_p2wpkh
from btc_explorer.bitcoin.keys import ExtendedKey, KeyNetwork
from btc_explorer.errors.definitions import (
    ErrAddressNotFound,
    ErrAddressRequired,
    ErrFeatureDisabled,
    ErrIndexerNotStarted,
    ErrInvalidXPub,
)
from btc_explorer.indexer.engine import IndexerState
from btc_explorer.indexer.status import IndexerStatus, SyncState
from btc_explorer.indexer.store import XpubDerivation

if TYPE_CHECKING:
    from btc_explorer.indexer.engine import AddressIndexer
    from btc_explorer.indexer.store import AddressSummary
    from btc_explorer.metrics.collector import IndexerMetrics

logger = logging.getLogger(__name__)

RECEIVE_BRANCH = 0
CHANGE_BRANCH = 1

# Networks tried in order for each key family; the first one with indexed
# activity wins, otherwise the first candidate is used.
NETWORK_CANDIDATES: dict[KeyNetwork, tuple[tuple[str, str], ...]] = {
    KeyNetwork.MAINNET: (("mainnet", HRP_MAINNET),),
    KeyNetwork.TESTNET: (("regtest", HRP_REGTEST), ("testnet", HRP_TESTNET)),
}


class AddressExplorerService:
    """Explorer-facing queries over the address index.

    Args:
        indexer: Running indexer, or None when it failed to start.
        enabled: Whether the address explorer feature is on.
        metrics: Optional sink for status gauges on disabled/error paths.
    """

    def __init__(
        self,
        indexer: AddressIndexer | None,
        *,
        enabled: bool = True,
        metrics: IndexerMetrics | None = None,
    ) -> None:
        self._indexer = indexer
        self._enabled = enabled
        self._metrics = metrics

    def _require_indexer(self) -> AddressIndexer:
        if not self._enabled:
            raise ErrFeatureDisabled
        if self._indexer is None or not self._indexer.store.is_open:
            raise ErrIndexerNotStarted
        return self._indexer

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    async def get_address_details(
        self,
        address: str,
        *,
        page: int = 1,
        page_size: int = 25,
    ) -> dict[str, Any]:
        """Summary, UTXOs and one page of history for an address.

        Raises:
            ExplorerError: ``ErrAddressRequired``, ``ErrFeatureDisabled``,
                ``ErrIndexerNotStarted`` or ``ErrAddressNotFound``.
        """
        if not address or not isinstance(address, str):
            raise ErrAddressRequired
        indexer = self._require_indexer()
        address = address.strip()
        summary = await indexer.get_address_summary(address)
        if summary is None:
            raise ErrAddressNotFound
        history = await indexer.get_address_transactions(address, page, page_size)
        utxos = await indexer.get_address_utxos(address)
        page_dict = history.to_dict()
        return {
            "summary": summary.to_dict(),
            "utxos": [utxo.to_dict() for utxo in utxos],
            "transactions": page_dict["rows"],
            "pagination": page_dict["pagination"],
        }

    # ------------------------------------------------------------------
    # Xpubs
    # ------------------------------------------------------------------

    async def get_xpub_details(self, xpub: str) -> dict[str, Any]:
        """Scan an xpub's P2WPKH receive and change branches.

        Each branch is extended until ``gap_limit`` consecutive addresses
        have no indexed activity. The derived addresses are persisted.

        Raises:
            ExplorerError: ``ErrInvalidXPub``, ``ErrFeatureDisabled`` or
                ``ErrIndexerNotStarted``.
        """
        indexer = self._require_indexer()
        if not xpub or not isinstance(xpub, str):
            raise ErrInvalidXPub
        xpub = xpub.strip()
        try:
            key = ExtendedKey.from_string(xpub)
        except ValueError as exc:
            raise ErrInvalidXPub from exc

        gap_limit = indexer.gap_limit
        store = indexer.store
        known = await store.get_xpub(xpub)
        stored = await store.get_xpub_derivations(xpub)

        chosen: tuple[str, list[XpubDerivation], dict[str, AddressSummary]] | None = None
        for network, hrp in NETWORK_CANDIDATES[key.network]:
            cached = (
                {(entry.branch, entry.index): entry.address for entry in stored}
                if known is not None and known.network == network
                else {}
            )
            derived, summaries = await self._scan(indexer, key, hrp, gap_limit, cached)
            if chosen is None:
                chosen = (network, derived, summaries)
            if summaries:
                chosen = (network, derived, summaries)
                break
        if chosen is None:
            raise ErrInvalidXPub
        network, derived, summaries = chosen

        await store.save_xpub_derivations(
            xpub, gap_limit=gap_limit, network=network, entries=derived
        )

        addresses: list[dict[str, Any]] = []
        totals = {"balance_sat": 0, "total_received_sat": 0, "total_sent_sat": 0}
        for entry in derived:
            summary = summaries.get(entry.address)
            row = {
                "branch": entry.branch,
                "index": entry.index,
                "address": entry.address,
                "balance_sat": summary.balance_sat if summary else 0,
                "total_received_sat": summary.total_received_sat if summary else 0,
                "total_sent_sat": summary.total_sent_sat if summary else 0,
                "tx_count": summary.tx_count if summary else 0,
            }
            for field_name in totals:
                totals[field_name] += row[field_name]
            addresses.append(row)

        logger.debug(
            "Scanned xpub on %s: %d addresses, %d with activity",
            network,
            len(derived),
            len(summaries),
        )
        return {
            "xpub": xpub,
            "network": network,
            "gap_limit": gap_limit,
            "totals": totals,
            "addresses": addresses,
        }

    async def _scan(
        self,
        indexer: AddressIndexer,
        key: ExtendedKey,
        hrp: str,
        gap_limit: int,
        cached: dict[tuple[int, int], str],
    ) -> tuple[list[XpubDerivation], dict[str, AddressSummary]]:
        derived: list[XpubDerivation] = []
        active: dict[str, AddressSummary] = {}
        for branch in (RECEIVE_BRANCH, CHANGE_BRANCH):
            branch_key = key.derive_child(branch)
            index = 0
            unused = 0
            while unused < gap_limit:
                # Derive one gap window at a time and look it up in bulk
                window: list[XpubDerivation] = []
                for offset in range(gap_limit - unused):
                    child_index = index + offset
                    address = cached.get((branch, child_index))
                    if address is None:
                        child = branch_key.derive_child(child_index)
                        address = pubkey_to_p2wpkh(child.key, hrp)
                    window.append(XpubDerivation(branch, child_index, address))
                found = await indexer.store.get_address_summaries(
                    [entry.address for entry in window]
                )
                for entry in window:
                    derived.append(entry)
                    summary = found.get(entry.address)
                    if summary is not None and summary.tx_count > 0:
                        active[entry.address] = summary
                        unused = 0
                    else:
                        unused += 1
                index += len(window)
        return derived, active

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_indexer_status(self, *, refresh_tip: bool = False) -> dict[str, Any]:
        """Indexer status for the explorer; never raises."""
        if not self._enabled:
            status = IndexerStatus.disabled()
            self._publish(status)
            return {"feature_enabled": False, **status.to_dict()}

        indexer = self._indexer
        if indexer is None or indexer.state == IndexerState.CLOSED:
            message = indexer.error if indexer is not None and indexer.error else None
            status = IndexerStatus.failed(message or ErrIndexerNotStarted.message)
            self._publish(status)
            return {"feature_enabled": True, **status.to_dict()}

        try:
            status = await indexer.get_status(refresh_tip=refresh_tip)
        except Exception as exc:
            logger.exception("Failed to retrieve address indexer status")
            status = IndexerStatus.failed(str(exc) or "Failed to retrieve indexer status")
            self._publish(status)
        return {"feature_enabled": True, **status.to_dict()}

    def _publish(self, status: IndexerStatus) -> None:
        if self._metrics is None:
            return
        self._metrics.record_sync_status(
            state=str(status.state),
            blocks_remaining=None,
            progress_percent=None,
            estimated_completion_seconds=None,
            tip_height=None,
            last_processed_height=None,
            sync_in_progress=status.state == SyncState.STARTING,
        )
