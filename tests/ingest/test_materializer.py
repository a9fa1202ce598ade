"""Tests for transfer materialization."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import OTHER, TOKEN, WALLET, FakeChain, block_timestamp

from wallet_fee_tracker.ingest.fetcher import decode_transfer_log
from wallet_fee_tracker.ingest.materializer import (
    OutcomeKind,
    TransactionMaterializer,
    classify_transfer,
    receipt_status,
)
from wallet_fee_tracker.ingest.models import TransferDecodeError
from wallet_fee_tracker.storage.repos import TransactionRepository


def _materializer(chain: FakeChain, **kwargs) -> TransactionMaterializer:
    kwargs.setdefault("receipt_max_attempts", 2)
    kwargs.setdefault("receipt_retry_delay_seconds", 0)
    return TransactionMaterializer(chain, wallet_address=WALLET, chain_id=8453, **kwargs)


def _event(chain: FakeChain):
    return decode_transfer_log(chain.logs[-1], token_contract=TOKEN)


class TestClassification:
    @pytest.mark.parametrize(
        ("sender", "recipient", "expected"),
        [
            (OTHER, WALLET, "incoming"),
            (WALLET, OTHER, "outgoing"),
            (WALLET, WALLET, "internal"),
            (WALLET.upper().replace("0X", "0x"), OTHER, "outgoing"),
        ],
    )
    def test_classify_transfer(self, sender: str, recipient: str, expected: str) -> None:
        assert classify_transfer(sender, recipient, WALLET) == expected

    @pytest.mark.parametrize(
        ("status", "expected"),
        [(1, "success"), (0, "failed"), (None, "pending"), ("0x1", "success"), ("0x0", "failed")],
    )
    def test_receipt_status(self, status, expected: str) -> None:
        assert receipt_status({"status": status}) == expected

    @pytest.mark.parametrize("status", ["ok", [], object()])
    def test_unusable_receipt_status(self, status) -> None:
        with pytest.raises(TransferDecodeError):
            receipt_status({"status": status})


class TestTransactionMaterializer:
    async def test_incoming_transfer_is_stored(self, fake_chain: FakeChain, async_session) -> None:
        tx_hash = fake_chain.add_transfer(block_number=500, value=10**18, log_index=4)

        outcome = await _materializer(fake_chain, fee_type="PROTOCOL_FEE").materialize(
            async_session, _event(fake_chain)
        )

        assert outcome.kind is OutcomeKind.STORED
        record = outcome.record
        assert record is not None
        assert record.tx_hash == tx_hash
        assert record.transaction_type == "incoming"
        assert record.is_fee_collection is True
        assert record.fee_type == "PROTOCOL_FEE"
        assert record.token_symbol == "USDC"
        assert record.value_formatted == 1.0
        assert record.timestamp == datetime.fromtimestamp(block_timestamp(500), tz=UTC)
        # gasUsed * effectiveGasPrice from the receipt
        assert record.gas_fee == 50_000 * 2 * 10**9
        assert record.status == "success"

        stored = await TransactionRepository(async_session).list_for_wallet(WALLET, chain_id=8453)
        assert [r.natural_key for r in stored] == [record.natural_key]

    async def test_outgoing_transfer_is_not_a_fee(self, fake_chain: FakeChain, async_session) -> None:
        fake_chain.add_transfer(block_number=500, value=5, from_address=WALLET, to_address=OTHER)
        outcome = await _materializer(fake_chain).materialize(async_session, _event(fake_chain))
        assert outcome.record is not None
        assert outcome.record.transaction_type == "outgoing"
        assert outcome.record.is_fee_collection is False
        assert outcome.record.fee_type is None

    async def test_duplicate_issues_no_rpc(self, fake_chain: FakeChain, async_session) -> None:
        fake_chain.add_transfer(block_number=500, value=5)
        materializer = _materializer(fake_chain)
        event = _event(fake_chain)
        await materializer.materialize(async_session, event)
        fake_chain.calls.clear()

        outcome = await materializer.materialize(async_session, event)

        assert outcome.kind is OutcomeKind.DUPLICATE
        assert fake_chain.calls == []
        assert await TransactionRepository(async_session).count_for_wallet(WALLET, chain_id=8453) == 1

    async def test_resolve_does_not_write(self, fake_chain: FakeChain, async_session) -> None:
        fake_chain.add_transfer(block_number=500, value=5)
        materializer = _materializer(fake_chain)

        outcome = await materializer.resolve(async_session, _event(fake_chain))
        assert outcome.kind is OutcomeKind.STORED
        assert await TransactionRepository(async_session).count_for_wallet(WALLET, chain_id=8453) == 0

        persisted = await materializer.persist(async_session, outcome)
        assert persisted.kind is OutcomeKind.STORED
        again = await materializer.persist(async_session, outcome)
        assert again.kind is OutcomeKind.DUPLICATE

    async def test_missing_receipt_fails_after_retries(self, fake_chain: FakeChain, async_session) -> None:
        tx_hash = fake_chain.add_transfer(block_number=500, value=5)
        fake_chain.failing_receipts.add(tx_hash)

        outcome = await _materializer(fake_chain, receipt_max_attempts=3).materialize(
            async_session, _event(fake_chain)
        )

        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.error
        assert fake_chain.calls.count("get_transaction_receipt") == 3
        assert await TransactionRepository(async_session).count_for_wallet(WALLET, chain_id=8453) == 0

    async def test_gas_price_falls_back_to_transaction(self, fake_chain: FakeChain, async_session) -> None:
        fake_chain.add_transfer(block_number=500, value=5)
        original = fake_chain.get_transaction_receipt

        async def receipt_without_price(tx_hash: str):
            receipt = await original(tx_hash)
            del receipt["effectiveGasPrice"]
            return receipt

        fake_chain.get_transaction_receipt = receipt_without_price  # type: ignore[method-assign]
        outcome = await _materializer(fake_chain).materialize(async_session, _event(fake_chain))
        assert outcome.record is not None
        assert outcome.record.gas_price == 10**9
        assert outcome.record.gas_fee == 50_000 * 10**9

    async def test_malformed_receipt_is_skipped(self, fake_chain: FakeChain, async_session) -> None:
        fake_chain.add_transfer(block_number=500, value=5)
        original = fake_chain.get_transaction_receipt

        async def receipt_without_gas(tx_hash: str):
            receipt = await original(tx_hash)
            del receipt["gasUsed"]
            return receipt

        fake_chain.get_transaction_receipt = receipt_without_gas  # type: ignore[method-assign]
        outcome = await _materializer(fake_chain).materialize(async_session, _event(fake_chain))

        assert outcome.kind is OutcomeKind.SKIPPED
        assert "gasUsed" in (outcome.error or "")
        assert await TransactionRepository(async_session).count_for_wallet(WALLET, chain_id=8453) == 0

    async def test_block_without_timestamp_is_skipped(self, fake_chain: FakeChain, async_session) -> None:
        fake_chain.add_transfer(block_number=500, value=5)
        original = fake_chain.get_block

        async def block_without_timestamp(block_number: int):
            block = await original(block_number)
            block["timestamp"] = None
            return block

        fake_chain.get_block = block_without_timestamp  # type: ignore[method-assign]
        outcome = await _materializer(fake_chain).materialize(async_session, _event(fake_chain))

        assert outcome.kind is OutcomeKind.SKIPPED
        assert "timestamp" in (outcome.error or "")
        assert await TransactionRepository(async_session).count_for_wallet(WALLET, chain_id=8453) == 0

    async def test_garbage_receipt_status_is_skipped(self, fake_chain: FakeChain, async_session) -> None:
        fake_chain.add_transfer(block_number=500, value=5)
        original = fake_chain.get_transaction_receipt

        async def receipt_with_bad_status(tx_hash: str):
            receipt = await original(tx_hash)
            receipt["status"] = "ok"
            return receipt

        fake_chain.get_transaction_receipt = receipt_with_bad_status  # type: ignore[method-assign]
        outcome = await _materializer(fake_chain).materialize(async_session, _event(fake_chain))

        assert outcome.kind is OutcomeKind.SKIPPED
        assert "status" in (outcome.error or "")
