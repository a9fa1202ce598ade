"""Tests for balance history and performance figures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import OTHER, WALLET, make_record

from wallet_fee_tracker.ledger import aggregator
from wallet_fee_tracker.ledger.analytics import balance_history, performance_summary
from wallet_fee_tracker.ledger.models import TokenLedger, WalletLedger, format_units

START = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)


def _records():
    return [
        make_record(tx_hash="0x01", value=100, timestamp=START),
        make_record(tx_hash="0x02", value=50, timestamp=START + timedelta(minutes=40)),
        make_record(tx_hash="0x03", value=400, from_address=WALLET, to_address=OTHER, timestamp=START + timedelta(days=1)),
        make_record(tx_hash="0x04", value=300, timestamp=START + timedelta(days=3, hours=2)),
    ]


class TestFormatUnits:
    def test_scales_by_decimals(self) -> None:
        assert format_units(1_500_000, 6) == 1.5
        assert format_units(0, 18) == 0.0

    def test_token_views(self) -> None:
        token = TokenLedger(symbol="USDC", token_contract="0x" + "1" * 40, decimals=6, total_fees_collected=7, fee_collection_count=2)
        assert token.average_fee_size == 3
        assert TokenLedger(symbol="X", token_contract="0x" + "1" * 40, decimals=0).average_fee_size == 0


class TestBalanceHistory:
    def test_daily_running_balances(self) -> None:
        points = balance_history(_records(), wallet_address=WALLET)

        assert [p.period_start.date().isoformat() for p in points] == ["2024-05-01", "2024-05-02", "2024-05-04"]
        assert [p.balances["USDC"] for p in points] == [150, -250, 50]
        assert [p.transactions for p in points] == [2, 1, 1]

    def test_hourly_buckets(self) -> None:
        points = balance_history(_records()[:2], wallet_address=WALLET, interval="hour")
        assert [p.period_start for p in points] == [
            START.replace(minute=0),
            START.replace(hour=10, minute=0),
        ]

    def test_clamp_is_display_only(self) -> None:
        records = _records()
        clamped = balance_history(records, wallet_address=WALLET, clamp=True)
        assert [p.balances["USDC"] for p in clamped] == [150, 0, 50]

        ledger = aggregator.recompute(records, wallet_address=WALLET, chain_id=8453)
        assert ledger.tokens["USDC"].current_balance == 50

    def test_start_filters_points_but_not_balance(self) -> None:
        points = balance_history(_records(), wallet_address=WALLET, start=START + timedelta(days=2))
        assert len(points) == 1
        assert points[0].balances["USDC"] == 50

    def test_unknown_interval(self) -> None:
        with pytest.raises(ValueError):
            balance_history([], wallet_address=WALLET, interval="week")  # type: ignore[arg-type]

    def test_to_dict_uses_strings_for_amounts(self) -> None:
        point = balance_history([make_record(value=2**70)], wallet_address=WALLET)[0]
        assert point.to_dict()["balances"] == {"USDC": str(2**70)}


class TestPerformanceSummary:
    def test_summary(self) -> None:
        records = _records()
        records[0].gas_fee = 10
        records[1].gas_fee = 21
        ledger = aggregator.recompute(records, wallet_address=WALLET, chain_id=8453)

        summary = performance_summary(ledger, records)

        # 3 days 2h 0m of activity rounds up to 4 days.
        assert summary.total_days == 4
        assert summary.avg_transactions_per_day == 1.0
        assert summary.avg_fees_per_day == 0.75
        assert summary.fee_efficiency == {"USDC": 75.0}
        assert summary.overall_fee_efficiency == 75.0
        assert summary.avg_fee_size == {"USDC": 150}
        assert summary.avg_gas_fee == 7
        first, last = START, START + timedelta(days=3, hours=2)
        assert summary.avg_collection_interval_minutes == (last - first).total_seconds() / 2 / 60

    def test_empty_ledger(self) -> None:
        summary = performance_summary(WalletLedger(wallet_address=WALLET, chain_id=8453))
        assert summary.total_days == 0
        assert summary.avg_transactions_per_day == 0.0
        assert summary.overall_fee_efficiency == 0.0
        assert summary.to_dict()["avg_gas_fee"] == "0"
