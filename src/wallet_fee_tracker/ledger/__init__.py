"""Wallet ledger: exact aggregation, reconciliation and analytics."""

from wallet_fee_tracker.ledger.models import (
    DayBucket,
    LedgerDiscrepancy,
    LedgerError,
    LedgerInvariantError,
    TokenLedger,
    WalletLedger,
)

__all__ = [
    "DayBucket",
    "LedgerDiscrepancy",
    "LedgerError",
    "LedgerInvariantError",
    "TokenLedger",
    "WalletLedger",
]
