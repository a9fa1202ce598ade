"""Dashboard views derived from stored records and the ledger.

Everything here is read-only and computed in integers; clamping negative
running balances to zero is a display option and never changes the
numbers the ledger keeps.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from wallet_fee_tracker.ledger.models import WalletLedger
    from wallet_fee_tracker.storage.repos import TransactionDTO

Interval = Literal["day", "hour"]


@dataclass
class BalancePoint:
    """Running per-token balances at the end of one period."""

    period_start: datetime
    balances: dict[str, int]
    transactions: int

    def to_dict(self) -> dict[str, object]:
        return {
            "period_start": self.period_start.isoformat(),
            "balances": {k: str(v) for k, v in sorted(self.balances.items())},
            "transactions": self.transactions,
        }


def _period_start(ts: datetime, interval: Interval) -> datetime:
    ts = ts.astimezone(UTC)
    if interval == "hour":
        return ts.replace(minute=0, second=0, microsecond=0)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def balance_history(
    records: Iterable[TransactionDTO],
    *,
    wallet_address: str,
    interval: Interval = "day",
    start: datetime | None = None,
    clamp: bool = False,
) -> list[BalancePoint]:
    """Running balance per token at the end of each active period.

    Records before `start` still move the running balance; they just do
    not produce points. With `clamp=True` negative balances are shown as 0.
    """
    if interval not in ("day", "hour"):
        raise ValueError(f"unsupported interval: {interval}")

    wallet = wallet_address.lower()
    ordered = sorted(records, key=lambda r: (r.timestamp, r.block_number, r.log_index))

    running: dict[str, int] = {}
    points: list[BalancePoint] = []
    current: BalancePoint | None = None
    for record in ordered:
        symbol = record.token_symbol
        delta = 0
        if record.to_address.lower() == wallet:
            delta += record.value_raw
        if record.from_address.lower() == wallet:
            delta -= record.value_raw
        running[symbol] = running.get(symbol, 0) + delta

        if start is not None and record.timestamp < start:
            continue
        period = _period_start(record.timestamp, interval)
        if current is None or current.period_start != period:
            current = BalancePoint(period_start=period, balances={}, transactions=0)
            points.append(current)
        current.transactions += 1
        current.balances = dict(running)

    if clamp:
        for point in points:
            point.balances = {k: max(0, v) for k, v in point.balances.items()}
    return points


@dataclass
class PerformanceSummary:
    total_days: int
    avg_transactions_per_day: float
    avg_fees_per_day: float
    avg_collection_interval_minutes: float
    fee_efficiency: dict[str, float] = field(default_factory=dict)
    overall_fee_efficiency: float = 0.0
    avg_fee_size: dict[str, int] = field(default_factory=dict)
    avg_gas_fee: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_days": self.total_days,
            "avg_transactions_per_day": self.avg_transactions_per_day,
            "avg_fees_per_day": self.avg_fees_per_day,
            "avg_collection_interval_minutes": self.avg_collection_interval_minutes,
            "fee_efficiency": dict(self.fee_efficiency),
            "overall_fee_efficiency": self.overall_fee_efficiency,
            "avg_fee_size": {k: str(v) for k, v in self.avg_fee_size.items()},
            "avg_gas_fee": str(self.avg_gas_fee),
        }


def performance_summary(
    ledger: WalletLedger,
    records: Iterable[TransactionDTO] = (),
) -> PerformanceSummary:
    """Activity rates and fee-collection ratios for the dashboard.

    `total_days` is the activity span rounded up to whole days. Fee
    efficiency is the percentage of transfers that were fee collections.
    `avg_gas_fee` is the floor mean over `records` (0 when none given).
    """
    total_days = 0
    if ledger.first_transaction_at is not None and ledger.last_transaction_at is not None:
        span = (ledger.last_transaction_at - ledger.first_transaction_at).total_seconds()
        total_days = math.ceil(span / 86_400)

    fee_efficiency = {
        symbol: (t.fee_collection_count / t.transaction_count * 100.0) if t.transaction_count else 0.0
        for symbol, t in ledger.tokens.items()
    }
    overall = (
        ledger.total_fee_collections / ledger.total_transactions * 100.0
        if ledger.total_transactions
        else 0.0
    )

    gas_fees = [r.gas_fee for r in records]
    avg_gas_fee = sum(gas_fees) // len(gas_fees) if gas_fees else 0

    return PerformanceSummary(
        total_days=total_days,
        avg_transactions_per_day=ledger.total_transactions / total_days if total_days else 0.0,
        avg_fees_per_day=ledger.total_fee_collections / total_days if total_days else 0.0,
        avg_collection_interval_minutes=ledger.average_collection_interval_minutes,
        fee_efficiency=fee_efficiency,
        overall_fee_efficiency=overall,
        avg_fee_size={symbol: t.average_fee_size for symbol, t in ledger.tokens.items()},
        avg_gas_fee=avg_gas_fee,
    )
