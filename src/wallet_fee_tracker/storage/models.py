"""SQLAlchemy models for persistent storage.

This module defines the database schema for transfer records, the wallet
ledger, the ingestion checkpoint, ingestion gaps and balance observations.

Token amounts and gas figures are uint256 on chain; they are stored as
decimal strings so no backend ever rounds them.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

UINT256_STRING = String(80)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransactionModel(Base):
    """One ERC-20 transfer touching the tracked wallet. Immutable once written."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    token_contract: Mapped[str] = mapped_column(String(42), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)

    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    transaction_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    token_symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    token_name: Mapped[str] = mapped_column(String(128), nullable=False)
    token_decimals: Mapped[int] = mapped_column(Integer, nullable=False)

    value_raw: Mapped[str] = mapped_column(UINT256_STRING, nullable=False)
    # Display only; never used for ledger arithmetic.
    value_formatted: Mapped[float] = mapped_column(nullable=False)

    gas_used: Mapped[str] = mapped_column(UINT256_STRING, nullable=False, default="0")
    gas_price: Mapped[str] = mapped_column(UINT256_STRING, nullable=False, default="0")
    gas_fee: Mapped[str] = mapped_column(UINT256_STRING, nullable=False, default="0")

    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    is_fee_collection: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fee_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "tx_hash",
            "token_contract",
            "from_address",
            "to_address",
            name="uq_transactions_natural_key",
        ),
        Index("idx_transactions_wallet_ts", "wallet_address", "timestamp"),
        Index("idx_transactions_wallet_block", "wallet_address", "block_number"),
        Index("idx_transactions_fee", "wallet_address", "is_fee_collection", "timestamp"),
    )


class WalletLedgerModel(Base):
    """Aggregated ledger for one wallet on one chain.

    Per-token totals and day buckets are kept as JSON text with integers
    encoded as strings; the scalar columns are a queryable summary.
    """

    __tablename__ = "wallet_ledgers"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True, nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True, nullable=False)

    as_of_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_fee_collections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_transaction_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_transaction_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    first_fee_collection_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_fee_collection_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    tokens_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    daily_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class CheckpointModel(Base):
    """Highest fully processed block for one wallet on one chain."""

    __tablename__ = "ingest_checkpoints"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True, nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True, nullable=False)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class IngestionGapModel(Base):
    """Block range the pipeline could not fetch (strict, non-silent failures)."""

    __tablename__ = "ingestion_gaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_contract: Mapped[str | None] = mapped_column(String(42), nullable=True)
    from_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    to_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_error: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_ingestion_gaps_wallet_open", "wallet_address", "chain_id", "resolved_at"),
    )


class BalanceObservationModel(Base):
    """On-chain balance compared with the ledger balance at one block."""

    __tablename__ = "balance_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_contract: Mapped[str] = mapped_column(String(42), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chain_balance: Mapped[str] = mapped_column(UINT256_STRING, nullable=False)
    ledger_balance: Mapped[str] = mapped_column(UINT256_STRING, nullable=False)
    delta: Mapped[str] = mapped_column(UINT256_STRING, nullable=False)
    matched: Mapped[bool] = mapped_column(Boolean, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index(
            "idx_balance_observations_token_block",
            "wallet_address",
            "chain_id",
            "token_contract",
            "block_number",
        ),
    )
