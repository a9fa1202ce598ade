"""Turn decoded Transfer events into stored transaction records.

Materializing a transfer looks up its natural key first, so replaying a
range that was already processed issues no RPC. New transfers are enriched
with the transaction, receipt, block timestamp and token metadata and
inserted with insert-if-absent semantics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from wallet_fee_tracker.chain.client import ChainClientError, LogRangeError
from wallet_fee_tracker.ingest.models import TransferDecodeError, TransferEvent
from wallet_fee_tracker.ledger.models import format_units
from wallet_fee_tracker.retry import ErrorClass, RetryExhaustedError, retry_async
from wallet_fee_tracker.storage.repos import TransactionDTO, TransactionRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from wallet_fee_tracker.chain.client import ChainClient

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_MAX_ATTEMPTS = 3
DEFAULT_RECEIPT_RETRY_DELAY_SECONDS = 1.0

TRANSACTION_TYPE_INCOMING = "incoming"
TRANSACTION_TYPE_OUTGOING = "outgoing"
TRANSACTION_TYPE_INTERNAL = "internal"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"


class OutcomeKind(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class MaterializeOutcome:
    """Result of materializing one transfer."""

    kind: OutcomeKind
    event: TransferEvent
    record: TransactionDTO | None = None
    error: str | None = None

    @classmethod
    def stored(cls, event: TransferEvent, record: TransactionDTO) -> MaterializeOutcome:
        return cls(kind=OutcomeKind.STORED, event=event, record=record)

    @classmethod
    def duplicate(cls, event: TransferEvent) -> MaterializeOutcome:
        return cls(kind=OutcomeKind.DUPLICATE, event=event)

    @classmethod
    def failed(cls, event: TransferEvent, error: str) -> MaterializeOutcome:
        return cls(kind=OutcomeKind.FAILED, event=event, error=error)

    @classmethod
    def skipped(cls, event: TransferEvent, error: str) -> MaterializeOutcome:
        return cls(kind=OutcomeKind.SKIPPED, event=event, error=error)


def classify_transfer(from_address: str, to_address: str, wallet_address: str) -> str:
    """incoming / outgoing / internal relative to the tracked wallet."""
    wallet = wallet_address.lower()
    sender = from_address.lower()
    recipient = to_address.lower()
    if recipient == wallet and sender != wallet:
        return TRANSACTION_TYPE_INCOMING
    if sender == wallet and recipient != wallet:
        return TRANSACTION_TYPE_OUTGOING
    return TRANSACTION_TYPE_INTERNAL


def receipt_status(receipt: dict[str, Any]) -> str:
    status = receipt.get("status")
    if status is None:
        return STATUS_PENDING
    try:
        code = int(status, 0) if isinstance(status, str) else int(status)
    except (TypeError, ValueError) as e:
        raise TransferDecodeError(f"receipt has unusable status {status!r}") from e
    return STATUS_SUCCESS if code == 1 else STATUS_FAILED


def _receipt_error_class(exc: BaseException) -> ErrorClass:
    if isinstance(exc, ChainClientError) and not isinstance(exc, LogRangeError):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def _hex_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value).lower()


class TransactionMaterializer:
    """Enrich and persist Transfer events for one wallet."""

    def __init__(
        self,
        chain: ChainClient,
        *,
        wallet_address: str,
        chain_id: int,
        fee_type: str = "LP_FEE",
        receipt_max_attempts: int = DEFAULT_RECEIPT_MAX_ATTEMPTS,
        receipt_retry_delay_seconds: float = DEFAULT_RECEIPT_RETRY_DELAY_SECONDS,
    ) -> None:
        self._chain = chain
        self._wallet = wallet_address.lower()
        self._chain_id = chain_id
        self._fee_type = fee_type
        self._receipt_max_attempts = receipt_max_attempts
        self._receipt_retry_delay = receipt_retry_delay_seconds

    async def materialize(self, session: AsyncSession, event: TransferEvent) -> MaterializeOutcome:
        """Store `event` unless it is already stored.

        Chain failures are returned as `failed` and malformed receipts as
        `skipped`; database errors propagate to the caller, which owns the
        transaction.
        """
        outcome = await self.resolve(session, event)
        if outcome.kind is not OutcomeKind.STORED or outcome.record is None:
            return outcome
        return await self.persist(session, outcome)

    async def resolve(self, session: AsyncSession, event: TransferEvent) -> MaterializeOutcome:
        """Dedupe and enrich `event` without writing anything.

        A `stored` outcome from here carries a record that still has to be
        handed to `persist`. Callers that must keep a whole block
        all-or-nothing resolve every transfer of the block first.
        """
        repo = TransactionRepository(session)
        if await repo.exists(
            tx_hash=event.tx_hash,
            token_contract=event.token_contract,
            from_address=event.from_address,
            to_address=event.to_address,
        ):
            return MaterializeOutcome.duplicate(event)

        try:
            record = await self._build_record(event)
        except TransferDecodeError as e:
            # Malformed chain data will not improve on retry.
            logger.warning(
                "Skipping malformed transfer %s (block=%d, log=%d): %s",
                event.tx_hash,
                event.block_number,
                event.log_index,
                e,
            )
            return MaterializeOutcome.skipped(event, str(e))
        except (ChainClientError, RetryExhaustedError) as e:
            logger.error(
                "Failed to materialize transfer %s (token=%s, block=%d, log=%d): %s",
                event.tx_hash,
                event.token_contract,
                event.block_number,
                event.log_index,
                e,
            )
            return MaterializeOutcome.failed(event, str(e))
        return MaterializeOutcome.stored(event, record)

    async def persist(self, session: AsyncSession, outcome: MaterializeOutcome) -> MaterializeOutcome:
        """Insert a resolved record; a conflicting row turns it into `duplicate`."""
        record = outcome.record
        if record is None:
            raise ValueError("only resolved outcomes with a record can be persisted")
        if not await TransactionRepository(session).insert_if_absent(record):
            logger.info("Transfer %s was stored concurrently; treating as duplicate", record.tx_hash)
            return MaterializeOutcome.duplicate(outcome.event)

        logger.info(
            "Saved %s %s transfer %s (block %d)",
            record.token_symbol,
            record.transaction_type,
            record.tx_hash,
            record.block_number,
        )
        return outcome

    async def _build_record(self, event: TransferEvent) -> TransactionDTO:
        tx = await self._chain.get_transaction(event.tx_hash)
        receipt = await retry_async(
            lambda: self._chain.get_transaction_receipt(event.tx_hash),
            classify=_receipt_error_class,
            max_attempts=self._receipt_max_attempts,
            base_delay=self._receipt_retry_delay,
            description=f"receipt {event.tx_hash}",
        )
        block = await self._chain.get_block(event.block_number)
        meta = await self._chain.get_token_metadata(event.token_contract)

        try:
            gas_used = int(receipt["gasUsed"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransferDecodeError(f"receipt for {event.tx_hash} has no usable gasUsed") from e
        try:
            timestamp = datetime.fromtimestamp(int(block["timestamp"]), tz=UTC)
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
            raise TransferDecodeError(f"block {event.block_number} has no usable timestamp") from e
        status = receipt_status(receipt)
        price = receipt.get("effectiveGasPrice")
        if price is None:
            price = tx.get("gasPrice")
        try:
            gas_price = int(price) if price is not None else 0
        except (TypeError, ValueError) as e:
            raise TransferDecodeError(f"transaction {event.tx_hash} has unusable gas price {price!r}") from e

        tx_index = tx.get("transactionIndex", receipt.get("transactionIndex"))
        transaction_type = classify_transfer(event.from_address, event.to_address, self._wallet)
        is_fee_collection = event.to_address == self._wallet

        return TransactionDTO(
            tx_hash=event.tx_hash,
            token_contract=event.token_contract,
            from_address=event.from_address,
            to_address=event.to_address,
            wallet_address=self._wallet,
            chain_id=self._chain_id,
            block_number=event.block_number,
            block_hash=_hex_or_none(block.get("hash") or tx.get("blockHash")),
            transaction_index=int(tx_index) if tx_index is not None else None,
            log_index=event.log_index,
            timestamp=timestamp,
            token_symbol=meta.symbol,
            token_name=meta.name,
            token_decimals=meta.decimals,
            value_raw=event.value,
            value_formatted=format_units(event.value, meta.decimals),
            gas_used=gas_used,
            gas_price=gas_price,
            gas_fee=gas_used * gas_price,
            transaction_type=transaction_type,
            is_fee_collection=is_fee_collection,
            fee_type=self._fee_type if is_fee_collection else None,
            status=status,
        )
