"""Read-only comparison of ledger balances with on-chain balances.

The ledger only knows transfers since its seed block, so a difference
against `balanceOf` can come from history before the seed. The first
mismatch for a token is reported as an anomaly so that offset gets looked
at once; after that a constant offset is logged quietly. A difference that
changes between passes means transfers were missed or double counted, and
a negative ledger balance can never be right; both are anomalies.
Reconciliation never writes ledger totals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from wallet_fee_tracker.chain.client import ChainClientError
from wallet_fee_tracker.storage.repos import (
    BalanceObservationDTO,
    BalanceObservationRepository,
    CheckpointRepository,
    WalletLedgerRepository,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from wallet_fee_tracker.chain.client import ChainClient
    from wallet_fee_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    token_contract: str
    token_symbol: str
    block_number: int
    chain_balance: int
    ledger_balance: int
    previous_delta: int | None

    @property
    def delta(self) -> int:
        return self.chain_balance - self.ledger_balance

    @property
    def matched(self) -> bool:
        return self.delta == 0

    @property
    def drifted(self) -> bool:
        """True when the delta moved since the previous observation."""
        return self.previous_delta is not None and self.previous_delta != self.delta

    @property
    def anomalous(self) -> bool:
        if self.ledger_balance < 0:
            return True
        if self.matched:
            return False
        return self.previous_delta is None or self.drifted

    def to_dict(self) -> dict[str, object]:
        return {
            "token_contract": self.token_contract,
            "token_symbol": self.token_symbol,
            "block_number": self.block_number,
            "chain_balance": str(self.chain_balance),
            "ledger_balance": str(self.ledger_balance),
            "delta": str(self.delta),
            "matched": self.matched,
            "drifted": self.drifted,
            "anomaly": self.anomalous,
        }


class LedgerReconciler:
    """Compare each tracked token's ledger balance with `balanceOf`."""

    def __init__(
        self,
        chain: ChainClient,
        db: DatabaseManager,
        *,
        wallet_address: str,
        chain_id: int,
        token_contracts: Sequence[str],
    ) -> None:
        self._chain = chain
        self._db = db
        self._wallet = wallet_address.lower()
        self._chain_id = chain_id
        self._tokens = [t.lower() for t in token_contracts]

    async def reconcile(self) -> list[ReconciliationResult]:
        """Run one pass and persist an observation per token.

        The comparison block is the block the stored ledger reflects, so
        balances are compared at the same height.
        """
        async with self._db.get_async_session() as session:
            ledger = await WalletLedgerRepository(session).get(self._wallet, chain_id=self._chain_id)
            checkpoint = await CheckpointRepository(session).get(self._wallet, chain_id=self._chain_id)

        if ledger is not None and ledger.as_of_block > 0:
            block = ledger.as_of_block
        elif checkpoint is not None:
            block = checkpoint.last_processed_block
        else:
            logger.info("No ledger or checkpoint yet for %s; skipping reconciliation", self._wallet)
            return []

        by_contract = {t.token_contract: t for t in ledger.tokens.values()} if ledger else {}

        results: list[ReconciliationResult] = []
        for token in self._tokens:
            token_ledger = by_contract.get(token)
            try:
                if token_ledger is not None:
                    symbol = token_ledger.symbol
                else:
                    symbol = (await self._chain.get_token_metadata(token)).symbol
                chain_balance = await self._chain.get_token_balance_at_block(
                    self._wallet, token, block_number=block
                )
            except ChainClientError as e:
                logger.warning("Reconciliation skipped for %s at block %d: %s", token, block, e)
                continue

            ledger_balance = token_ledger.current_balance if token_ledger else 0
            async with self._db.get_async_session() as session:
                repo = BalanceObservationRepository(session)
                previous = await repo.latest_for_token(self._wallet, chain_id=self._chain_id, token_contract=token)
                result = ReconciliationResult(
                    token_contract=token,
                    token_symbol=symbol,
                    block_number=block,
                    chain_balance=chain_balance,
                    ledger_balance=ledger_balance,
                    previous_delta=previous.delta if previous else None,
                )
                await repo.insert(
                    BalanceObservationDTO(
                        wallet_address=self._wallet,
                        chain_id=self._chain_id,
                        token_contract=token,
                        token_symbol=symbol,
                        block_number=block,
                        chain_balance=chain_balance,
                        ledger_balance=ledger_balance,
                    )
                )
            self._log_result(result)
            results.append(result)
        return results

    def _log_result(self, result: ReconciliationResult) -> None:
        if result.ledger_balance < 0:
            logger.warning(
                "Balance anomaly for %s at block %d: negative ledger balance %d (chain=%d)",
                result.token_symbol,
                result.block_number,
                result.ledger_balance,
                result.chain_balance,
            )
        elif result.matched:
            logger.info(
                "Balance matched for %s at block %d: %d",
                result.token_symbol,
                result.block_number,
                result.chain_balance,
            )
        elif result.previous_delta is None:
            logger.warning(
                "Balance anomaly for %s at block %d: chain=%d ledger=%d delta=%d (first observation)",
                result.token_symbol,
                result.block_number,
                result.chain_balance,
                result.ledger_balance,
                result.delta,
            )
        elif result.drifted:
            logger.warning(
                "Balance anomaly for %s at block %d: chain=%d ledger=%d delta=%d (was %d)",
                result.token_symbol,
                result.block_number,
                result.chain_balance,
                result.ledger_balance,
                result.delta,
                result.previous_delta,
            )
        else:
            logger.info(
                "Balance offset for %s at block %d: chain=%d ledger=%d delta=%d",
                result.token_symbol,
                result.block_number,
                result.chain_balance,
                result.ledger_balance,
                result.delta,
            )
