"""Repository pattern implementations for data access.

This module provides data access abstractions for transfer records, the
wallet ledger, the ingestion checkpoint, ingestion gaps and balance
observations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from wallet_fee_tracker.ledger.models import WalletLedger
from wallet_fee_tracker.storage.models import (
    BalanceObservationModel,
    CheckpointModel,
    IngestionGapModel,
    TransactionModel,
    WalletLedgerModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _insert_for(session: AsyncSession, model: Any) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


@dataclass
class TransactionDTO:
    """Data transfer object for a stored transfer record."""

    tx_hash: str
    token_contract: str
    from_address: str
    to_address: str
    wallet_address: str
    chain_id: int
    block_number: int
    log_index: int
    timestamp: datetime
    token_symbol: str
    token_name: str
    token_decimals: int
    value_raw: int
    value_formatted: float
    transaction_type: str
    is_fee_collection: bool
    status: str
    fee_type: str | None = None
    block_hash: str | None = None
    transaction_index: int | None = None
    gas_used: int = 0
    gas_price: int = 0
    gas_fee: int = 0
    created_at: datetime | None = None

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        return (self.tx_hash, self.token_contract, self.from_address, self.to_address)

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            tx_hash=model.tx_hash,
            token_contract=model.token_contract,
            from_address=model.from_address,
            to_address=model.to_address,
            wallet_address=model.wallet_address,
            chain_id=model.chain_id,
            block_number=model.block_number,
            log_index=model.log_index,
            timestamp=_as_utc(model.timestamp),  # type: ignore[arg-type]
            token_symbol=model.token_symbol,
            token_name=model.token_name,
            token_decimals=model.token_decimals,
            value_raw=int(model.value_raw),
            value_formatted=model.value_formatted,
            transaction_type=model.transaction_type,
            is_fee_collection=model.is_fee_collection,
            status=model.status,
            fee_type=model.fee_type,
            block_hash=model.block_hash,
            transaction_index=model.transaction_index,
            gas_used=int(model.gas_used),
            gas_price=int(model.gas_price),
            gas_fee=int(model.gas_fee),
            created_at=_as_utc(model.created_at),
        )

    def to_values(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash.lower(),
            "token_contract": self.token_contract.lower(),
            "from_address": self.from_address.lower(),
            "to_address": self.to_address.lower(),
            "wallet_address": self.wallet_address.lower(),
            "chain_id": self.chain_id,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "transaction_index": self.transaction_index,
            "log_index": self.log_index,
            "timestamp": self.timestamp,
            "token_symbol": self.token_symbol,
            "token_name": self.token_name,
            "token_decimals": self.token_decimals,
            "value_raw": str(self.value_raw),
            "value_formatted": self.value_formatted,
            "gas_used": str(self.gas_used),
            "gas_price": str(self.gas_price),
            "gas_fee": str(self.gas_fee),
            "transaction_type": self.transaction_type,
            "is_fee_collection": self.is_fee_collection,
            "fee_type": self.fee_type,
            "status": self.status,
        }


class TransactionRepository:
    """Repository for transfer records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(
        self,
        *,
        tx_hash: str,
        token_contract: str,
        from_address: str,
        to_address: str,
    ) -> bool:
        result = await self.session.execute(
            select(TransactionModel.id).where(
                TransactionModel.tx_hash == tx_hash.lower(),
                TransactionModel.token_contract == token_contract.lower(),
                TransactionModel.from_address == from_address.lower(),
                TransactionModel.to_address == to_address.lower(),
            )
        )
        return result.first() is not None

    async def insert_if_absent(self, dto: TransactionDTO) -> bool:
        """Insert a record unless its natural key is already stored.

        Returns:
            True if a new row was written, False on conflict.
        """
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, TransactionModel).values(**dto.to_values(), created_at=now)
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["tx_hash", "token_contract", "from_address", "to_address"]
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        inserted = bool(result.rowcount)
        if inserted:
            dto.created_at = now
        return inserted

    async def latest_block_for_wallet(self, wallet_address: str, *, chain_id: int) -> int | None:
        result = await self.session.execute(
            select(func.max(TransactionModel.block_number)).where(
                TransactionModel.wallet_address == wallet_address.lower(),
                TransactionModel.chain_id == chain_id,
            )
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def list_for_wallet(
        self,
        wallet_address: str,
        *,
        chain_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        fee_only: bool = False,
        token_symbol: str | None = None,
    ) -> list[TransactionDTO]:
        """List records in ascending (timestamp, block, log index) order."""
        stmt = select(TransactionModel).where(
            TransactionModel.wallet_address == wallet_address.lower(),
            TransactionModel.chain_id == chain_id,
        )
        if start is not None:
            stmt = stmt.where(TransactionModel.timestamp >= start)
        if end is not None:
            stmt = stmt.where(TransactionModel.timestamp <= end)
        if fee_only:
            stmt = stmt.where(TransactionModel.is_fee_collection.is_(True))
        if token_symbol is not None:
            stmt = stmt.where(TransactionModel.token_symbol == token_symbol)
        stmt = stmt.order_by(
            TransactionModel.timestamp.asc(),
            TransactionModel.block_number.asc(),
            TransactionModel.log_index.asc(),
        )
        result = await self.session.execute(stmt)
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]

    async def recent(
        self,
        wallet_address: str,
        *,
        chain_id: int,
        limit: int = 10,
        offset: int = 0,
        fee_only: bool = False,
    ) -> list[TransactionDTO]:
        """Newest records first."""
        stmt = select(TransactionModel).where(
            TransactionModel.wallet_address == wallet_address.lower(),
            TransactionModel.chain_id == chain_id,
        )
        if fee_only:
            stmt = stmt.where(TransactionModel.is_fee_collection.is_(True))
        stmt = (
            stmt.order_by(
                TransactionModel.block_number.desc(),
                TransactionModel.log_index.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_wallet(self, wallet_address: str, *, chain_id: int) -> int:
        result = await self.session.execute(
            select(func.count(TransactionModel.id)).where(
                TransactionModel.wallet_address == wallet_address.lower(),
                TransactionModel.chain_id == chain_id,
            )
        )
        return int(result.scalar_one())


class WalletLedgerRepository:
    """Repository for the aggregated wallet ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, wallet_address: str, *, chain_id: int) -> WalletLedger | None:
        model = await self.session.get(WalletLedgerModel, (wallet_address.lower(), chain_id))
        if model is None:
            return None
        return WalletLedger(
            wallet_address=model.wallet_address,
            chain_id=model.chain_id,
            tokens=WalletLedger.tokens_from_json(model.tokens_json),
            daily=WalletLedger.daily_from_json(model.daily_json),
            total_transactions=model.total_transactions,
            total_fee_collections=model.total_fee_collections,
            first_transaction_at=_as_utc(model.first_transaction_at),
            last_transaction_at=_as_utc(model.last_transaction_at),
            first_fee_collection_at=_as_utc(model.first_fee_collection_at),
            last_fee_collection_at=_as_utc(model.last_fee_collection_at),
            as_of_block=model.as_of_block,
        )

    async def save(self, ledger: WalletLedger) -> None:
        """Write the full ledger state (insert or replace)."""
        now = datetime.now(UTC)
        wallet = ledger.wallet_address.lower()
        model = await self.session.get(WalletLedgerModel, (wallet, ledger.chain_id))
        if model is None:
            model = WalletLedgerModel(wallet_address=wallet, chain_id=ledger.chain_id)
            self.session.add(model)
        model.as_of_block = ledger.as_of_block
        model.total_transactions = ledger.total_transactions
        model.total_fee_collections = ledger.total_fee_collections
        model.first_transaction_at = ledger.first_transaction_at
        model.last_transaction_at = ledger.last_transaction_at
        model.first_fee_collection_at = ledger.first_fee_collection_at
        model.last_fee_collection_at = ledger.last_fee_collection_at
        model.tokens_json = ledger.tokens_to_json()
        model.daily_json = ledger.daily_to_json()
        model.updated_at = now
        await self.session.flush()


@dataclass
class CheckpointDTO:
    wallet_address: str
    chain_id: int
    last_processed_block: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: CheckpointModel) -> CheckpointDTO:
        return cls(
            wallet_address=model.wallet_address,
            chain_id=model.chain_id,
            last_processed_block=model.last_processed_block,
            updated_at=_as_utc(model.updated_at),
        )


class CheckpointRepository:
    """Durable ingestion cursor. Never moves backwards."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, wallet_address: str, *, chain_id: int) -> CheckpointDTO | None:
        model = await self.session.get(CheckpointModel, (wallet_address.lower(), chain_id))
        return CheckpointDTO.from_model(model) if model else None

    async def seed(self, wallet_address: str, *, chain_id: int, block_number: int) -> CheckpointDTO:
        """Create the checkpoint if absent; an existing one wins."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")
        existing = await self.get(wallet_address, chain_id=chain_id)
        if existing is not None:
            return existing
        now = datetime.now(UTC)
        model = CheckpointModel(
            wallet_address=wallet_address.lower(),
            chain_id=chain_id,
            last_processed_block=block_number,
            updated_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        logger.info("Seeded checkpoint for %s at block %d", wallet_address, block_number)
        return CheckpointDTO.from_model(model)

    async def advance(self, wallet_address: str, *, chain_id: int, block_number: int) -> CheckpointDTO:
        """Move the checkpoint forward to `block_number`.

        A target below the stored value is refused and the stored checkpoint
        is returned unchanged.
        """
        existing = await self.get(wallet_address, chain_id=chain_id)
        if existing is None:
            return await self.seed(wallet_address, chain_id=chain_id, block_number=block_number)
        if block_number < existing.last_processed_block:
            logger.warning(
                "Refusing to move checkpoint for %s backwards (%d -> %d)",
                wallet_address,
                existing.last_processed_block,
                block_number,
            )
            return existing
        if block_number == existing.last_processed_block:
            return existing

        now = datetime.now(UTC)
        await self.session.execute(
            update(CheckpointModel)
            .where(
                CheckpointModel.wallet_address == wallet_address.lower(),
                CheckpointModel.chain_id == chain_id,
                CheckpointModel.last_processed_block <= block_number,
            )
            .values(last_processed_block=block_number, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.flush()
        return CheckpointDTO(
            wallet_address=existing.wallet_address,
            chain_id=chain_id,
            last_processed_block=block_number,
            updated_at=now,
        )


@dataclass
class IngestionGapDTO:
    id: int
    wallet_address: str
    chain_id: int
    token_contract: str | None
    from_block: int
    to_block: int
    last_error: str
    attempts: int
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IngestionGapModel) -> IngestionGapDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            chain_id=model.chain_id,
            token_contract=model.token_contract,
            from_block=model.from_block,
            to_block=model.to_block,
            last_error=model.last_error,
            attempts=model.attempts,
            first_seen_at=_as_utc(model.first_seen_at),
            last_seen_at=_as_utc(model.last_seen_at),
            resolved_at=_as_utc(model.resolved_at),
        )


class IngestionGapRepository:
    """Repository for block ranges that could not be fetched."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        wallet_address: str,
        *,
        chain_id: int,
        token_contract: str | None,
        from_block: int,
        to_block: int,
        error: str,
        attempts: int = 1,
    ) -> IngestionGapDTO:
        """Record a gap, or bump the open gap for the same range."""
        now = datetime.now(UTC)
        token = token_contract.lower() if token_contract else None
        stmt = select(IngestionGapModel).where(
            IngestionGapModel.wallet_address == wallet_address.lower(),
            IngestionGapModel.chain_id == chain_id,
            IngestionGapModel.from_block == from_block,
            IngestionGapModel.to_block == to_block,
            IngestionGapModel.resolved_at.is_(None),
        )
        if token is None:
            stmt = stmt.where(IngestionGapModel.token_contract.is_(None))
        else:
            stmt = stmt.where(IngestionGapModel.token_contract == token)
        result = await self.session.execute(stmt)
        model = result.scalars().first()
        if model is None:
            model = IngestionGapModel(
                wallet_address=wallet_address.lower(),
                chain_id=chain_id,
                token_contract=token,
                from_block=from_block,
                to_block=to_block,
                last_error=error,
                attempts=attempts,
                first_seen_at=now,
                last_seen_at=now,
            )
            self.session.add(model)
        else:
            model.attempts = model.attempts + attempts
            model.last_error = error
            model.last_seen_at = now
        await self.session.flush()
        return IngestionGapDTO.from_model(model)

    async def resolve_covered(
        self,
        wallet_address: str,
        *,
        chain_id: int,
        from_block: int,
        to_block: int,
    ) -> int:
        """Mark open gaps lying inside [from_block, to_block] as resolved."""
        result = await self.session.execute(
            update(IngestionGapModel)
            .where(
                IngestionGapModel.wallet_address == wallet_address.lower(),
                IngestionGapModel.chain_id == chain_id,
                IngestionGapModel.resolved_at.is_(None),
                IngestionGapModel.from_block >= from_block,
                IngestionGapModel.to_block <= to_block,
            )
            .values(resolved_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def list_open(self, wallet_address: str, *, chain_id: int) -> list[IngestionGapDTO]:
        result = await self.session.execute(
            select(IngestionGapModel)
            .where(
                IngestionGapModel.wallet_address == wallet_address.lower(),
                IngestionGapModel.chain_id == chain_id,
                IngestionGapModel.resolved_at.is_(None),
            )
            .order_by(IngestionGapModel.from_block.asc())
        )
        return [IngestionGapDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class BalanceObservationDTO:
    wallet_address: str
    chain_id: int
    token_contract: str
    token_symbol: str
    block_number: int
    chain_balance: int
    ledger_balance: int
    observed_at: datetime | None = None

    @property
    def delta(self) -> int:
        return self.chain_balance - self.ledger_balance

    @property
    def matched(self) -> bool:
        return self.delta == 0

    @classmethod
    def from_model(cls, model: BalanceObservationModel) -> BalanceObservationDTO:
        return cls(
            wallet_address=model.wallet_address,
            chain_id=model.chain_id,
            token_contract=model.token_contract,
            token_symbol=model.token_symbol,
            block_number=model.block_number,
            chain_balance=int(model.chain_balance),
            ledger_balance=int(model.ledger_balance),
            observed_at=_as_utc(model.observed_at),
        )


class BalanceObservationRepository:
    """Repository for reconciliation results."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: BalanceObservationDTO) -> BalanceObservationDTO:
        now = dto.observed_at or datetime.now(UTC)
        model = BalanceObservationModel(
            wallet_address=dto.wallet_address.lower(),
            chain_id=dto.chain_id,
            token_contract=dto.token_contract.lower(),
            token_symbol=dto.token_symbol,
            block_number=dto.block_number,
            chain_balance=str(dto.chain_balance),
            ledger_balance=str(dto.ledger_balance),
            delta=str(dto.delta),
            matched=dto.matched,
            observed_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        dto.observed_at = now
        return dto

    async def latest_for_token(
        self,
        wallet_address: str,
        *,
        chain_id: int,
        token_contract: str,
    ) -> BalanceObservationDTO | None:
        result = await self.session.execute(
            select(BalanceObservationModel)
            .where(
                BalanceObservationModel.wallet_address == wallet_address.lower(),
                BalanceObservationModel.chain_id == chain_id,
                BalanceObservationModel.token_contract == token_contract.lower(),
            )
            .order_by(
                BalanceObservationModel.block_number.desc(),
                BalanceObservationModel.id.desc(),
            )
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return BalanceObservationDTO.from_model(model) if model else None
