"""Exact ledger aggregation over stored transfer records.

`apply` folds one new record into a WalletLedger; `recompute` replays a
full history into a fresh ledger; `verify` compares the two. All amounts
are ints, so a ledger built incrementally and its recompute must agree
exactly.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from wallet_fee_tracker.ledger.models import (
    DayBucket,
    LedgerDiscrepancy,
    TokenLedger,
    WalletLedger,
)

if TYPE_CHECKING:
    from wallet_fee_tracker.storage.repos import TransactionDTO

logger = logging.getLogger(__name__)


def _earlier(a: datetime | None, b: datetime) -> datetime:
    return b if a is None or b < a else a


def _later(a: datetime | None, b: datetime) -> datetime:
    return b if a is None or b > a else a


def apply(ledger: WalletLedger, record: TransactionDTO) -> bool:
    """Fold one record into `ledger`.

    Returns:
        False (ledger untouched) when the wallet is neither sender nor
        recipient, True otherwise.
    """
    wallet = ledger.wallet_address.lower()
    received = record.to_address.lower() == wallet
    sent = record.from_address.lower() == wallet
    if not received and not sent:
        logger.warning(
            "Ignoring transfer %s: wallet %s is neither sender nor recipient",
            record.tx_hash,
            wallet,
        )
        return False

    symbol = record.token_symbol
    token = ledger.tokens.get(symbol)
    if token is None:
        token = TokenLedger(
            symbol=symbol,
            token_contract=record.token_contract.lower(),
            decimals=record.token_decimals,
        )
        ledger.tokens[symbol] = token

    value = record.value_raw
    if received:
        token.total_received += value
        token.current_balance += value
    if sent:
        token.total_sent += value
        token.current_balance -= value
    token.transaction_count += 1

    ts = record.timestamp
    day = ts.date()
    bucket = ledger.daily.get(day)
    if bucket is None:
        bucket = DayBucket(day=day)
        ledger.daily[day] = bucket
    bucket.transactions[symbol] = bucket.transactions.get(symbol, 0) + 1

    if record.is_fee_collection:
        token.fee_collection_count += 1
        token.total_fees_collected += value
        ledger.total_fee_collections += 1
        ledger.first_fee_collection_at = _earlier(ledger.first_fee_collection_at, ts)
        ledger.last_fee_collection_at = _later(ledger.last_fee_collection_at, ts)
        bucket.fee_collections[symbol] = bucket.fee_collections.get(symbol, 0) + 1
        bucket.fees_collected[symbol] = bucket.fees_collected.get(symbol, 0) + value

    ledger.total_transactions += 1
    ledger.first_transaction_at = _earlier(ledger.first_transaction_at, ts)
    ledger.last_transaction_at = _later(ledger.last_transaction_at, ts)
    ledger.as_of_block = max(ledger.as_of_block, record.block_number)
    return True


def recompute(
    records: Iterable[TransactionDTO],
    *,
    wallet_address: str,
    chain_id: int,
    as_of_block: int = 0,
) -> WalletLedger:
    """Replay `records` in (timestamp, block, log index) order into a new ledger."""
    ledger = WalletLedger(wallet_address=wallet_address.lower(), chain_id=chain_id)
    ordered = sorted(records, key=lambda r: (r.timestamp, r.block_number, r.log_index))
    for record in ordered:
        apply(ledger, record)
    ledger.as_of_block = max(ledger.as_of_block, as_of_block)
    return ledger


_TOKEN_FIELDS = (
    "token_contract",
    "decimals",
    "total_received",
    "total_sent",
    "current_balance",
    "transaction_count",
    "fee_collection_count",
    "total_fees_collected",
)

_WALLET_FIELDS = (
    "total_transactions",
    "total_fee_collections",
    "first_transaction_at",
    "last_transaction_at",
    "first_fee_collection_at",
    "last_fee_collection_at",
)


def diff(stored: WalletLedger, recomputed: WalletLedger) -> list[LedgerDiscrepancy]:
    """Field-by-field differences between two ledgers."""
    out: list[LedgerDiscrepancy] = []

    for name in _WALLET_FIELDS:
        a, b = getattr(stored, name), getattr(recomputed, name)
        if a != b:
            out.append(LedgerDiscrepancy(scope="wallet", field=name, stored=a, recomputed=b))

    for symbol in sorted(set(stored.tokens) | set(recomputed.tokens)):
        scope = f"token:{symbol}"
        a_tok = stored.tokens.get(symbol)
        b_tok = recomputed.tokens.get(symbol)
        if a_tok is None or b_tok is None:
            out.append(
                LedgerDiscrepancy(
                    scope=scope,
                    field="present",
                    stored=a_tok is not None,
                    recomputed=b_tok is not None,
                )
            )
            continue
        for name in _TOKEN_FIELDS:
            a, b = getattr(a_tok, name), getattr(b_tok, name)
            if a != b:
                out.append(LedgerDiscrepancy(scope=scope, field=name, stored=a, recomputed=b))

    for day in sorted(set(stored.daily) | set(recomputed.daily)):
        scope = f"day:{day.isoformat()}"
        a_day = stored.daily.get(day)
        b_day = recomputed.daily.get(day)
        a_dict = a_day.to_dict() if a_day else None
        b_dict = b_day.to_dict() if b_day else None
        if a_dict != b_dict:
            out.append(LedgerDiscrepancy(scope=scope, field="bucket", stored=a_dict, recomputed=b_dict))

    return out


def verify(ledger: WalletLedger, records: Iterable[TransactionDTO]) -> list[LedgerDiscrepancy]:
    """Compare `ledger` with a recompute from `records`.

    Discrepancies are logged as anomalies and returned; nothing is corrected.
    """
    recomputed = recompute(records, wallet_address=ledger.wallet_address, chain_id=ledger.chain_id)
    discrepancies = diff(ledger, recomputed)
    for d in discrepancies:
        logger.warning(
            "Ledger anomaly for %s [%s] %s: stored=%s recomputed=%s",
            ledger.wallet_address,
            d.scope,
            d.field,
            d.stored,
            d.recomputed,
        )
    return discrepancies
