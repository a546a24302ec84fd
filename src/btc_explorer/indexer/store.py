"""Durable Index Store — address balances, UTXOs, history and checkpoint.

All mutations for a block (or a batch of consecutive blocks) run inside a
single database transaction together with the ``last_processed_*``
checkpoint, so a crash never leaves the checkpoint pointing past data that
was not committed. History rows are insert-if-absent: re-applying a block
that is already recorded leaves every table unchanged.

The store is single-writer. Serializing ``apply_block`` calls is the
indexer engine's job; readers may query concurrently (SQLite WAL).
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, func, select

from btc_explorer.datastore.client import Datastore
from btc_explorer.indexer.models import (
    AddressRecord,
    AddressTx,
    AddressUtxo,
    Base,
    Direction,
    IndexMetadata,
    XpubAddress,
    XpubRecord,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from btc_explorer.config.settings import IndexerConfig

logger = logging.getLogger(__name__)

LAST_PROCESSED_HEIGHT = "last_processed_height"
LAST_PROCESSED_HASH = "last_processed_hash"

# Stay well below SQLite's bound-parameter limit for IN (...) lookups.
_IN_CHUNK = 500


# ---------------------------------------------------------------------------
# Write-side value types
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class OutputCredit:
    """An output paying ``address``."""

    address: str
    vout: int
    value_sat: int


@dataclass(slots=True)
class InputDebit:
    """An input spending ``prev_txid:prev_vout`` previously paid to ``address``."""

    address: str
    vin: int
    prev_txid: str
    prev_vout: int
    value_sat: int


@dataclass(slots=True)
class TransactionDelta:
    """Address-level effects of one transaction."""

    txid: str
    credits: list[OutputCredit] = field(default_factory=list)
    debits: list[InputDebit] = field(default_factory=list)

    def addresses(self) -> set[str]:
        touched = {credit.address for credit in self.credits}
        touched.update(debit.address for debit in self.debits)
        return touched


@dataclass(slots=True)
class BlockDelta:
    """Effects of one block, in transaction order."""

    height: int
    block_hash: str
    timestamp: int | None
    transactions: list[TransactionDelta] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Read-side value types
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class AddressSummary:
    address: str
    first_seen_height: int | None
    last_seen_height: int | None
    total_received_sat: int
    total_sent_sat: int
    balance_sat: int
    tx_count: int
    utxo_count: int
    utxo_value_sat: int

    @classmethod
    def from_row(cls, row: AddressRecord) -> AddressSummary:
        return cls(
            address=row.address,
            first_seen_height=row.first_seen_height,
            last_seen_height=row.last_seen_height,
            total_received_sat=row.total_received_sat,
            total_sent_sat=row.total_sent_sat,
            balance_sat=row.balance_sat,
            tx_count=row.tx_count,
            utxo_count=row.utxo_count,
            utxo_value_sat=row.utxo_value_sat,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class UtxoRecord:
    address: str
    txid: str
    vout: int
    value_sat: int
    height: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class AddressTxRecord:
    address: str
    txid: str
    height: int | None
    direction: str
    value_sat: int
    io_index: int
    timestamp: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TransactionPage:
    rows: list[AddressTxRecord]
    page: int
    page_size: int
    total_rows: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows": [row.to_dict() for row in self.rows],
            "pagination": {
                "page": self.page,
                "page_size": self.page_size,
                "total_rows": self.total_rows,
            },
        }


@dataclass(slots=True)
class XpubDerivation:
    branch: int
    index: int
    address: str


@dataclass(slots=True)
class XpubInfo:
    xpub: str
    gap_limit: int
    network: str
    last_scanned_receive: int
    last_scanned_change: int


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _widen_seen(summary: AddressRecord, height: int | None) -> None:
    if height is None:
        return
    if summary.first_seen_height is None or height < summary.first_seen_height:
        summary.first_seen_height = height
    if summary.last_seen_height is None or height > summary.last_seen_height:
        summary.last_seen_height = height


class IndexStore:
    """SQLite-backed address index.

    Usage::

        store = IndexStore(config.indexer)
        await store.open()
        await store.apply_block(height, block_hash, timestamp, deltas)
        summary = await store.get_address_summary(address)
        await store.close()
    """

    def __init__(self, config: IndexerConfig) -> None:
        self._config = config
        self._ds = Datastore(config, Base)

    @property
    def is_open(self) -> bool:
        return self._ds.is_open

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the store, creating the parent directory and schema if missing.

        Raises:
            StoreOpenError: The path is inaccessible or the schema can't be created.
        """
        await self._ds.open()

    async def close(self) -> None:
        await self._ds.close()

    # ------------------------------------------------------------------
    # Block application
    # ------------------------------------------------------------------

    async def apply_block(
        self,
        height: int,
        block_hash: str,
        timestamp: int | None,
        deltas: list[TransactionDelta],
    ) -> None:
        """Apply one block's deltas and advance the checkpoint atomically."""
        await self.apply_blocks([BlockDelta(height, block_hash, timestamp, deltas)])

    async def apply_blocks(self, blocks: Sequence[BlockDelta]) -> None:
        """Apply consecutive blocks in one transaction.

        The checkpoint is set to the last block of the batch. Transactions
        already recorded for an address are skipped for that address, which
        makes replays of committed blocks a no-op.
        """
        if not blocks:
            return
        async with self._ds.transaction() as session:
            txids = sorted({tx.txid for block in blocks for tx in block.transactions})
            addresses = sorted(
                {addr for block in blocks for tx in block.transactions for addr in tx.addresses()}
            )
            recorded = await self._recorded_pairs(session, txids, set(addresses))
            summaries = await self._load_summaries(session, addresses)

            new_utxos: dict[tuple[str, str, int], AddressUtxo] = {}
            spent: set[tuple[str, str, int]] = set()
            history: dict[tuple[str, str, str, int], AddressTx] = {}

            for block in blocks:
                for tx in block.transactions:
                    counted: set[str] = set()

                    # Outputs (inbound)
                    for credit in tx.credits:
                        if (credit.address, tx.txid) in recorded:
                            continue
                        summary = self._summary_for(session, summaries, credit.address)
                        if credit.address not in counted:
                            summary.tx_count += 1
                            counted.add(credit.address)
                        _widen_seen(summary, block.height)
                        summary.total_received_sat += credit.value_sat
                        summary.balance_sat += credit.value_sat
                        summary.utxo_count += 1
                        summary.utxo_value_sat += credit.value_sat
                        new_utxos[(credit.address, tx.txid, credit.vout)] = AddressUtxo(
                            address=credit.address,
                            txid=tx.txid,
                            vout=credit.vout,
                            value_sat=credit.value_sat,
                            height=block.height,
                        )
                        history[(credit.address, tx.txid, Direction.IN, credit.vout)] = AddressTx(
                            address=credit.address,
                            txid=tx.txid,
                            direction=Direction.IN,
                            io_index=credit.vout,
                            height=block.height,
                            value_sat=credit.value_sat,
                            timestamp=block.timestamp,
                        )

                    # Inputs (outbound)
                    for debit in tx.debits:
                        if (debit.address, tx.txid) in recorded:
                            continue
                        summary = self._summary_for(session, summaries, debit.address)
                        if debit.address not in counted:
                            summary.tx_count += 1
                            counted.add(debit.address)
                        _widen_seen(summary, block.height)
                        summary.total_sent_sat += debit.value_sat
                        summary.balance_sat -= debit.value_sat
                        summary.utxo_count = max(0, summary.utxo_count - 1)
                        summary.utxo_value_sat = max(0, summary.utxo_value_sat - debit.value_sat)
                        key = (debit.address, debit.prev_txid, debit.prev_vout)
                        if new_utxos.pop(key, None) is None:
                            spent.add(key)
                        history[(debit.address, tx.txid, Direction.OUT, debit.vin)] = AddressTx(
                            address=debit.address,
                            txid=tx.txid,
                            direction=Direction.OUT,
                            io_index=debit.vin,
                            height=block.height,
                            value_sat=debit.value_sat,
                            timestamp=block.timestamp,
                        )

                    recorded.update((address, tx.txid) for address in counted)

            for address, txid, vout in spent:
                await session.execute(
                    delete(AddressUtxo).where(
                        and_(
                            AddressUtxo.address == address,
                            AddressUtxo.txid == txid,
                            AddressUtxo.vout == vout,
                        )
                    )
                )
            session.add_all(new_utxos.values())
            session.add_all(history.values())

            last = blocks[-1]
            await self._put_metadata(session, LAST_PROCESSED_HEIGHT, last.height)
            await self._put_metadata(session, LAST_PROCESSED_HASH, last.block_hash)

        logger.debug(
            "Committed %d block(s) up to height %d: %d history rows, +%d/-%d utxos",
            len(blocks),
            blocks[-1].height,
            len(history),
            len(new_utxos),
            len(spent),
        )

    @staticmethod
    async def _recorded_pairs(
        session: AsyncSession, txids: Sequence[str], addresses: set[str]
    ) -> set[tuple[str, str]]:
        recorded: set[tuple[str, str]] = set()
        for chunk in _chunks(txids):
            stmt = (
                select(AddressTx.address, AddressTx.txid)
                .where(AddressTx.txid.in_(chunk))
                .distinct()
            )
            for address, txid in (await session.execute(stmt)).all():
                if address in addresses:
                    recorded.add((address, txid))
        return recorded

    @staticmethod
    async def _load_summaries(
        session: AsyncSession, addresses: Sequence[str]
    ) -> dict[str, AddressRecord]:
        loaded: dict[str, AddressRecord] = {}
        for chunk in _chunks(addresses):
            stmt = select(AddressRecord).where(AddressRecord.address.in_(chunk))
            for row in (await session.execute(stmt)).scalars():
                loaded[row.address] = row
        return loaded

    @staticmethod
    def _summary_for(
        session: AsyncSession, summaries: dict[str, AddressRecord], address: str
    ) -> AddressRecord:
        summary = summaries.get(address)
        if summary is None:
            summary = AddressRecord(
                address=address,
                first_seen_height=None,
                last_seen_height=None,
                total_received_sat=0,
                total_sent_sat=0,
                balance_sat=0,
                tx_count=0,
                utxo_count=0,
                utxo_value_sat=0,
            )
            session.add(summary)
            summaries[address] = summary
        return summary

    @staticmethod
    async def _put_metadata(session: AsyncSession, key: str, value: Any) -> None:
        await session.merge(IndexMetadata(key=key, value=json.dumps(value)))

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def get_metadata(self, key: str, fallback: Any = None) -> Any:
        """Return the decoded metadata value for *key*, or *fallback* if absent."""
        async with self._ds.session() as session:
            row = await session.get(IndexMetadata, key)
        if row is None:
            return fallback
        return json.loads(row.value)

    async def set_metadata(self, key: str, value: Any) -> None:
        async with self._ds.transaction() as session:
            await self._put_metadata(session, key, value)

    async def get_checkpoint(self) -> tuple[int, str | None]:
        """Return ``(last_processed_height, last_processed_hash)``; ``-1`` when not started."""
        height = await self.get_metadata(LAST_PROCESSED_HEIGHT, -1)
        block_hash = await self.get_metadata(LAST_PROCESSED_HASH)
        try:
            height = int(height)
        except (TypeError, ValueError):
            height = -1
        return height, block_hash

    async def set_checkpoint(self, height: int, block_hash: str | None) -> None:
        """Write both checkpoint keys in one transaction."""
        async with self._ds.transaction() as session:
            await self._put_metadata(session, LAST_PROCESSED_HEIGHT, height)
            await self._put_metadata(session, LAST_PROCESSED_HASH, block_hash)

    async def max_observed_height(self) -> int | None:
        """Highest block height present in the history or UTXO tables."""
        async with self._ds.session() as session:
            tx_max = (await session.execute(select(func.max(AddressTx.height)))).scalar()
            utxo_max = (await session.execute(select(func.max(AddressUtxo.height)))).scalar()
        observed = [value for value in (tx_max, utxo_max) if value is not None]
        return max(observed) if observed else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_address_summary(self, address: str) -> AddressSummary | None:
        async with self._ds.session() as session:
            row = await session.get(AddressRecord, address)
        return AddressSummary.from_row(row) if row is not None else None

    async def get_address_summaries(self, addresses: Sequence[str]) -> dict[str, AddressSummary]:
        """Bulk summary lookup; unknown addresses are absent from the result."""
        async with self._ds.session() as session:
            rows = await self._load_summaries(session, sorted(set(addresses)))
        return {address: AddressSummary.from_row(row) for address, row in rows.items()}

    async def get_address_transactions(
        self,
        address: str,
        page: int = 1,
        page_size: int = 25,
    ) -> TransactionPage:
        """Return one page of an address's history, newest first.

        Args:
            address: Address to look up.
            page: 1-based page number (clamped to >= 1).
            page_size: Rows per page (clamped to >= 1).
        """
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        async with self._ds.session() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(AddressTx).where(AddressTx.address == address)
                )
            ).scalar_one()
            stmt = (
                select(AddressTx)
                .where(AddressTx.address == address)
                .order_by(
                    AddressTx.height.desc(),
                    AddressTx.direction.desc(),
                    AddressTx.io_index.desc(),
                    AddressTx.txid.desc(),
                )
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return TransactionPage(
            rows=[
                AddressTxRecord(
                    address=row.address,
                    txid=row.txid,
                    height=row.height,
                    direction=row.direction,
                    value_sat=row.value_sat,
                    io_index=row.io_index,
                    timestamp=row.timestamp,
                )
                for row in rows
            ],
            page=page,
            page_size=page_size,
            total_rows=total,
        )

    async def get_address_utxos(self, address: str) -> list[UtxoRecord]:
        """Return every unspent output of an address, largest first."""
        async with self._ds.session() as session:
            stmt = (
                select(AddressUtxo)
                .where(AddressUtxo.address == address)
                .order_by(AddressUtxo.value_sat.desc(), AddressUtxo.txid, AddressUtxo.vout)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [
            UtxoRecord(
                address=row.address,
                txid=row.txid,
                vout=row.vout,
                value_sat=row.value_sat,
                height=row.height,
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Xpub derivations
    # ------------------------------------------------------------------

    async def get_xpub(self, xpub: str) -> XpubInfo | None:
        async with self._ds.session() as session:
            row = await session.get(XpubRecord, xpub)
        if row is None:
            return None
        return XpubInfo(
            xpub=row.xpub,
            gap_limit=row.gap_limit,
            network=row.network,
            last_scanned_receive=row.last_scanned_receive,
            last_scanned_change=row.last_scanned_change,
        )

    async def get_xpub_derivations(self, xpub: str) -> list[XpubDerivation]:
        async with self._ds.session() as session:
            stmt = (
                select(XpubAddress)
                .where(XpubAddress.xpub == xpub)
                .order_by(XpubAddress.branch, XpubAddress.derivation_index)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [XpubDerivation(row.branch, row.derivation_index, row.address) for row in rows]

    async def save_xpub_derivations(
        self,
        xpub: str,
        *,
        gap_limit: int,
        network: str,
        entries: Sequence[XpubDerivation],
    ) -> None:
        """Upsert derived addresses and the per-branch last-scanned index."""
        last_scanned = {0: -1, 1: -1}
        for entry in entries:
            last_scanned[entry.branch] = max(last_scanned.get(entry.branch, -1), entry.index)
        async with self._ds.transaction() as session:
            for entry in entries:
                await session.merge(
                    XpubAddress(
                        xpub=xpub,
                        branch=entry.branch,
                        derivation_index=entry.index,
                        address=entry.address,
                    )
                )
            record = await session.get(XpubRecord, xpub)
            if record is None:
                record = XpubRecord(xpub=xpub)
                session.add(record)
            record.gap_limit = gap_limit
            record.network = network
            record.last_scanned_receive = last_scanned[0]
            record.last_scanned_change = last_scanned[1]
