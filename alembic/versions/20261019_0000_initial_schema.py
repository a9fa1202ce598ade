"""Initial schema: transactions, wallet ledgers, checkpoints, gaps, balance observations.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("token_contract", sa.String(42), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=True),
        sa.Column("transaction_index", sa.Integer(), nullable=True),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("token_symbol", sa.String(64), nullable=False),
        sa.Column("token_name", sa.String(128), nullable=False),
        sa.Column("token_decimals", sa.Integer(), nullable=False),
        sa.Column("value_raw", sa.String(80), nullable=False),
        sa.Column("value_formatted", sa.Float(), nullable=False),
        sa.Column("gas_used", sa.String(80), nullable=False),
        sa.Column("gas_price", sa.String(80), nullable=False),
        sa.Column("gas_fee", sa.String(80), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("is_fee_collection", sa.Boolean(), nullable=False),
        sa.Column("fee_type", sa.String(16), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tx_hash",
            "token_contract",
            "from_address",
            "to_address",
            name="uq_transactions_natural_key",
        ),
    )
    op.create_index("idx_transactions_wallet_ts", "transactions", ["wallet_address", "timestamp"])
    op.create_index("idx_transactions_wallet_block", "transactions", ["wallet_address", "block_number"])
    op.create_index(
        "idx_transactions_fee", "transactions", ["wallet_address", "is_fee_collection", "timestamp"]
    )

    op.create_table(
        "wallet_ledgers",
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("as_of_block", sa.BigInteger(), nullable=False),
        sa.Column("total_transactions", sa.Integer(), nullable=False),
        sa.Column("total_fee_collections", sa.Integer(), nullable=False),
        sa.Column("first_transaction_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_transaction_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_fee_collection_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_fee_collection_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tokens_json", sa.Text(), nullable=False),
        sa.Column("daily_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address", "chain_id"),
    )

    op.create_table(
        "ingest_checkpoints",
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address", "chain_id"),
    )

    op.create_table(
        "ingestion_gaps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("token_contract", sa.String(42), nullable=True),
        sa.Column("from_block", sa.BigInteger(), nullable=False),
        sa.Column("to_block", sa.BigInteger(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_ingestion_gaps_wallet_open", "ingestion_gaps", ["wallet_address", "chain_id", "resolved_at"]
    )

    op.create_table(
        "balance_observations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("token_contract", sa.String(42), nullable=False),
        sa.Column("token_symbol", sa.String(64), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("chain_balance", sa.String(80), nullable=False),
        sa.Column("ledger_balance", sa.String(80), nullable=False),
        sa.Column("delta", sa.String(80), nullable=False),
        sa.Column("matched", sa.Boolean(), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_balance_observations_token_block",
        "balance_observations",
        ["wallet_address", "chain_id", "token_contract", "block_number"],
    )


def downgrade() -> None:
    op.drop_index("idx_balance_observations_token_block", table_name="balance_observations")
    op.drop_table("balance_observations")
    op.drop_index("idx_ingestion_gaps_wallet_open", table_name="ingestion_gaps")
    op.drop_table("ingestion_gaps")
    op.drop_table("ingest_checkpoints")
    op.drop_table("wallet_ledgers")
    op.drop_index("idx_transactions_fee", table_name="transactions")
    op.drop_index("idx_transactions_wallet_block", table_name="transactions")
    op.drop_index("idx_transactions_wallet_ts", table_name="transactions")
    op.drop_table("transactions")
