"""Storage layer - Database schemas and repositories."""

from wallet_fee_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from wallet_fee_tracker.storage.models import (
    BalanceObservationModel,
    Base,
    CheckpointModel,
    IngestionGapModel,
    TransactionModel,
    WalletLedgerModel,
)
from wallet_fee_tracker.storage.repos import (
    BalanceObservationDTO,
    BalanceObservationRepository,
    CheckpointDTO,
    CheckpointRepository,
    IngestionGapDTO,
    IngestionGapRepository,
    TransactionDTO,
    TransactionRepository,
    WalletLedgerRepository,
)

__all__ = [
    "BalanceObservationDTO",
    "BalanceObservationModel",
    "BalanceObservationRepository",
    "Base",
    "CheckpointDTO",
    "CheckpointModel",
    "CheckpointRepository",
    "DatabaseManager",
    "IngestionGapDTO",
    "IngestionGapModel",
    "IngestionGapRepository",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "WalletLedgerModel",
    "WalletLedgerRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
