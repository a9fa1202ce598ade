"""Data models for the wallet ledger.

All amounts are Python ints in the token's smallest unit. Float views are
derived on access and never accumulated.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    """Base exception for ledger errors."""


class LedgerInvariantError(LedgerError):
    """Raised when a ledger violates `balance == received - sent`."""


def format_units(raw: int, decimals: int) -> float:
    """Scale a raw integer amount by `decimals` for display."""
    return float(Decimal(raw).scaleb(-decimals))


@dataclass
class TokenLedger:
    """Per-token running totals."""

    symbol: str
    token_contract: str
    decimals: int
    total_received: int = 0
    total_sent: int = 0
    current_balance: int = 0
    transaction_count: int = 0
    fee_collection_count: int = 0
    total_fees_collected: int = 0

    @property
    def total_received_formatted(self) -> float:
        return format_units(self.total_received, self.decimals)

    @property
    def total_sent_formatted(self) -> float:
        return format_units(self.total_sent, self.decimals)

    @property
    def current_balance_formatted(self) -> float:
        return format_units(self.current_balance, self.decimals)

    @property
    def total_fees_collected_formatted(self) -> float:
        return format_units(self.total_fees_collected, self.decimals)

    @property
    def average_fee_size(self) -> int:
        """Mean raw fee per collection (floor division), 0 when none."""
        if self.fee_collection_count == 0:
            return 0
        return self.total_fees_collected // self.fee_collection_count

    def check_invariant(self) -> None:
        if self.current_balance != self.total_received - self.total_sent:
            raise LedgerInvariantError(
                f"{self.symbol}: balance {self.current_balance} != "
                f"received {self.total_received} - sent {self.total_sent}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "token_contract": self.token_contract,
            "decimals": self.decimals,
            "total_received": str(self.total_received),
            "total_sent": str(self.total_sent),
            "current_balance": str(self.current_balance),
            "transaction_count": self.transaction_count,
            "fee_collection_count": self.fee_collection_count,
            "total_fees_collected": str(self.total_fees_collected),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenLedger:
        return cls(
            symbol=str(data["symbol"]),
            token_contract=str(data["token_contract"]),
            decimals=int(data["decimals"]),
            total_received=int(data["total_received"]),
            total_sent=int(data["total_sent"]),
            current_balance=int(data["current_balance"]),
            transaction_count=int(data["transaction_count"]),
            fee_collection_count=int(data["fee_collection_count"]),
            total_fees_collected=int(data["total_fees_collected"]),
        )


@dataclass
class DayBucket:
    """Activity for one UTC calendar day."""

    day: date
    transactions: dict[str, int] = field(default_factory=dict)
    fee_collections: dict[str, int] = field(default_factory=dict)
    fees_collected: dict[str, int] = field(default_factory=dict)

    @property
    def transaction_count(self) -> int:
        return sum(self.transactions.values())

    @property
    def fee_collection_count(self) -> int:
        return sum(self.fee_collections.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactions": dict(self.transactions),
            "fee_collections": dict(self.fee_collections),
            "fees_collected": {k: str(v) for k, v in self.fees_collected.items()},
        }

    @classmethod
    def from_dict(cls, day: date, data: dict[str, Any]) -> DayBucket:
        return cls(
            day=day,
            transactions={k: int(v) for k, v in data.get("transactions", {}).items()},
            fee_collections={k: int(v) for k, v in data.get("fee_collections", {}).items()},
            fees_collected={k: int(v) for k, v in data.get("fees_collected", {}).items()},
        )


@dataclass
class WalletLedger:
    """Aggregated state for one wallet on one chain."""

    wallet_address: str
    chain_id: int
    tokens: dict[str, TokenLedger] = field(default_factory=dict)
    daily: dict[date, DayBucket] = field(default_factory=dict)
    total_transactions: int = 0
    total_fee_collections: int = 0
    first_transaction_at: datetime | None = None
    last_transaction_at: datetime | None = None
    as_of_block: int = 0
    first_fee_collection_at: datetime | None = None
    last_fee_collection_at: datetime | None = None

    @property
    def average_collection_interval_minutes(self) -> float:
        """Mean minutes between consecutive fee collections, 0 with fewer than two.

        The mean of consecutive gaps telescopes to (last - first) / (n - 1).
        """
        if (
            self.total_fee_collections < 2
            or self.first_fee_collection_at is None
            or self.last_fee_collection_at is None
        ):
            return 0.0
        span = (self.last_fee_collection_at - self.first_fee_collection_at).total_seconds()
        return span / (self.total_fee_collections - 1) / 60.0

    def check_invariants(self) -> None:
        for token in self.tokens.values():
            token.check_invariant()

    def tokens_to_json(self) -> str:
        return json.dumps({sym: t.to_dict() for sym, t in sorted(self.tokens.items())})

    def daily_to_json(self) -> str:
        return json.dumps({d.isoformat(): b.to_dict() for d, b in sorted(self.daily.items())})

    @staticmethod
    def tokens_from_json(raw: str) -> dict[str, TokenLedger]:
        data = json.loads(raw or "{}")
        return {sym: TokenLedger.from_dict(v) for sym, v in data.items()}

    @staticmethod
    def daily_from_json(raw: str) -> dict[date, DayBucket]:
        data = json.loads(raw or "{}")
        return {date.fromisoformat(k): DayBucket.from_dict(date.fromisoformat(k), v) for k, v in data.items()}


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """One field where a stored ledger differs from its recompute."""

    scope: str  # "token:<symbol>", "day:<date>" or "wallet"
    field: str
    stored: Any
    recomputed: Any
