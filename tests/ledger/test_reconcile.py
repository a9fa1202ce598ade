"""Tests for balance reconciliation against balanceOf."""

from __future__ import annotations

import logging

from conftest import OTHER, TOKEN, WALLET, FakeChain, make_record

from wallet_fee_tracker.chain.client import RPCError
from wallet_fee_tracker.ledger import aggregator
from wallet_fee_tracker.ledger.models import WalletLedger
from wallet_fee_tracker.ledger.reconcile import LedgerReconciler
from wallet_fee_tracker.storage.repos import (
    BalanceObservationRepository,
    CheckpointRepository,
    WalletLedgerRepository,
)


async def _store_ledger(db, *, balance: int, as_of_block: int) -> None:
    ledger = WalletLedger(wallet_address=WALLET, chain_id=8453)
    aggregator.apply(ledger, make_record(value=balance))
    ledger.as_of_block = as_of_block
    async with db.get_async_session() as session:
        await WalletLedgerRepository(session).save(ledger)


def _reconciler(chain: FakeChain, db) -> LedgerReconciler:
    return LedgerReconciler(chain, db, wallet_address=WALLET, chain_id=8453, token_contracts=[TOKEN])


class TestLedgerReconciler:
    async def test_nothing_to_compare_yet(self, fake_chain: FakeChain, db) -> None:
        assert await _reconciler(fake_chain, db).reconcile() == []
        assert "get_token_balance_at_block" not in fake_chain.calls

    async def test_matched_balance(self, fake_chain: FakeChain, db, caplog) -> None:
        await _store_ledger(db, balance=600, as_of_block=900)
        fake_chain.balances[TOKEN] = 600

        with caplog.at_level(logging.INFO):
            results = await _reconciler(fake_chain, db).reconcile()

        assert len(results) == 1
        result = results[0]
        assert result.matched
        assert result.block_number == 900
        assert not result.drifted
        assert "Balance matched" in caplog.text

    async def test_first_offset_is_an_anomaly(self, fake_chain: FakeChain, db, caplog) -> None:
        await _store_ledger(db, balance=600, as_of_block=900)
        fake_chain.balances[TOKEN] = 1_000

        with caplog.at_level(logging.WARNING):
            first = (await _reconciler(fake_chain, db).reconcile())[0]

        assert first.previous_delta is None
        assert first.anomalous
        assert first.to_dict()["anomaly"] is True
        assert "Balance anomaly" in caplog.text
        assert "first observation" in caplog.text

    async def test_constant_offset_is_quiet_after_first_pass(self, fake_chain: FakeChain, db, caplog) -> None:
        await _store_ledger(db, balance=600, as_of_block=900)
        fake_chain.balances[TOKEN] = 1_000
        reconciler = _reconciler(fake_chain, db)

        await reconciler.reconcile()
        caplog.clear()
        with caplog.at_level(logging.WARNING):
            second = (await reconciler.reconcile())[0]

        assert second.delta == 400
        assert second.previous_delta == 400
        assert not second.drifted
        assert not second.anomalous
        assert "anomaly" not in caplog.text

    async def test_changing_delta_is_an_anomaly(self, fake_chain: FakeChain, db, caplog) -> None:
        await _store_ledger(db, balance=600, as_of_block=900)
        fake_chain.balances[TOKEN] = 600
        reconciler = _reconciler(fake_chain, db)
        await reconciler.reconcile()

        fake_chain.balances[TOKEN] = 650
        with caplog.at_level(logging.WARNING):
            result = (await reconciler.reconcile())[0]

        assert result.drifted
        assert result.to_dict()["delta"] == "50"
        assert "Balance anomaly" in caplog.text

    async def test_negative_ledger_balance_is_an_anomaly(self, fake_chain: FakeChain, db, caplog) -> None:
        ledger = WalletLedger(wallet_address=WALLET, chain_id=8453)
        aggregator.apply(ledger, make_record(from_address=WALLET, to_address=OTHER, value=100))
        ledger.as_of_block = 900
        async with db.get_async_session() as session:
            await WalletLedgerRepository(session).save(ledger)
        fake_chain.balances[TOKEN] = 0

        with caplog.at_level(logging.WARNING):
            result = (await _reconciler(fake_chain, db).reconcile())[0]

        assert result.ledger_balance == -100
        assert result.anomalous
        assert "negative ledger balance -100" in caplog.text

    async def test_reconcile_never_writes_ledger(self, fake_chain: FakeChain, db) -> None:
        await _store_ledger(db, balance=600, as_of_block=900)
        fake_chain.balances[TOKEN] = 999
        await _reconciler(fake_chain, db).reconcile()

        async with db.get_async_session() as session:
            ledger = await WalletLedgerRepository(session).get(WALLET, chain_id=8453)
            observation = await BalanceObservationRepository(session).latest_for_token(
                WALLET, chain_id=8453, token_contract=TOKEN
            )
        assert ledger is not None
        assert ledger.tokens["USDC"].current_balance == 600
        assert observation is not None
        assert observation.chain_balance == 999

    async def test_untouched_token_compares_against_zero(self, fake_chain: FakeChain, db) -> None:
        async with db.get_async_session() as session:
            await CheckpointRepository(session).seed(WALLET, chain_id=8453, block_number=700)
        fake_chain.balances[TOKEN] = 5

        result = (await _reconciler(fake_chain, db).reconcile())[0]

        assert result.block_number == 700
        assert result.ledger_balance == 0
        assert result.token_symbol == "USDC"

    async def test_rpc_failure_skips_token(self, fake_chain: FakeChain, db) -> None:
        await _store_ledger(db, balance=600, as_of_block=900)

        async def failing(*_args, **_kwargs):
            raise RPCError("down")

        fake_chain.get_token_balance_at_block = failing  # type: ignore[method-assign]
        assert await _reconciler(fake_chain, db).reconcile() == []
