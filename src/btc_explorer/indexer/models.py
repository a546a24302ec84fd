"""Address index ORM models.

Four logical tables (``metadata``, ``addresses``, ``address_utxos``,
``address_txs``) plus the xpub derivation tables. Primary keys carry the
uniqueness constraints the indexer relies on for idempotent replays.
"""

from __future__ import annotations

import enum
from datetime import datetime  # noqa: TC003 - SQLAlchemy needs this at runtime for Mapped[datetime]

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the address index."""


class Direction(enum.StrEnum):
    """Side of a transaction an address appears on."""

    IN = "in"
    OUT = "out"


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------


class IndexMetadata(Base):
    """Key/value metadata; holds the ``last_processed_*`` checkpoint."""

    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, comment="JSON-encoded value")


# ---------------------------------------------------------------------------
# Address data
# ---------------------------------------------------------------------------


class AddressRecord(Base):
    """Aggregate per-address totals. Created on first sight, never deleted."""

    __tablename__ = "addresses"

    address: Mapped[str] = mapped_column(String(128), primary_key=True)
    first_seen_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_seen_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_received_sat: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_sent_sat: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance_sat: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tx_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    utxo_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    utxo_value_sat: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Address {self.address} balance={self.balance_sat} txs={self.tx_count}>"


class AddressUtxo(Base):
    """An unspent output paying an address."""

    __tablename__ = "address_utxos"

    address: Mapped[str] = mapped_column(String(128), primary_key=True)
    txid: Mapped[str] = mapped_column(String(64), primary_key=True)
    vout: Mapped[int] = mapped_column(Integer, primary_key=True)
    value_sat: Mapped[int] = mapped_column(BigInteger, nullable=False)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<AddressUtxo {self.address} {self.txid[:16]}:{self.vout} sats={self.value_sat}>"


class AddressTx(Base):
    """One history row per (address, transaction, direction, io index)."""

    __tablename__ = "address_txs"
    __table_args__ = (Index("ix_address_txs_address_height", "address", "height"),)

    address: Mapped[str] = mapped_column(String(128), primary_key=True)
    txid: Mapped[str] = mapped_column(String(64), primary_key=True)
    direction: Mapped[str] = mapped_column(String(3), primary_key=True)
    io_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    value_sat: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


# ---------------------------------------------------------------------------
# Xpub derivations
# ---------------------------------------------------------------------------


class XpubRecord(Base):
    """Scan bookkeeping for an extended public key."""

    __tablename__ = "xpubs"

    xpub: Mapped[str] = mapped_column(String(128), primary_key=True)
    gap_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    network: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    last_scanned_receive: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    last_scanned_change: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class XpubAddress(Base):
    """A derived address at ``(branch, derivation_index)`` of an xpub."""

    __tablename__ = "xpub_addresses"

    xpub: Mapped[str] = mapped_column(String(128), primary_key=True)
    branch: Mapped[int] = mapped_column(Integer, primary_key=True)
    derivation_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    address: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
