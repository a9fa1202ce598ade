"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wallet_fee_tracker.chain.client import ChainClientError, NotFoundError, TokenMetadata
from wallet_fee_tracker.ingest.fetcher import TRANSFER_EVENT_SIGNATURE
from wallet_fee_tracker.storage.database import DatabaseManager
from wallet_fee_tracker.storage.models import Base
from wallet_fee_tracker.storage.repos import TransactionDTO

WALLET = "0x1234567890abcdef1234567890abcdef12345678"
TOKEN = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
OTHER = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
GENESIS_TS = 1_700_000_000
ONE_TOKEN = 10**18


@pytest.fixture
def wallet() -> str:
    return WALLET


@pytest.fixture
def token() -> str:
    return TOKEN


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


def block_timestamp(block_number: int) -> int:
    return GENESIS_TS + block_number * 2


def make_record(
    *,
    tx_hash: str = "0x" + "a" * 64,
    from_address: str = OTHER,
    to_address: str = WALLET,
    value: int = ONE_TOKEN,
    block_number: int = 100,
    log_index: int = 0,
    timestamp: datetime | None = None,
    symbol: str = "USDC",
    token_contract: str = TOKEN,
    decimals: int = 18,
    gas_fee: int = 0,
    wallet_address: str = WALLET,
) -> TransactionDTO:
    """Build a stored-record DTO relative to `wallet_address`."""
    is_fee = to_address == wallet_address
    if is_fee and from_address != wallet_address:
        transaction_type = "incoming"
    elif from_address == wallet_address and to_address != wallet_address:
        transaction_type = "outgoing"
    else:
        transaction_type = "internal"
    return TransactionDTO(
        tx_hash=tx_hash,
        token_contract=token_contract,
        from_address=from_address,
        to_address=to_address,
        wallet_address=wallet_address,
        chain_id=8453,
        block_number=block_number,
        log_index=log_index,
        timestamp=timestamp or datetime.fromtimestamp(block_timestamp(block_number), tz=UTC),
        token_symbol=symbol,
        token_name=f"{symbol} Token",
        token_decimals=decimals,
        value_raw=value,
        value_formatted=value / 10**decimals,
        transaction_type=transaction_type,
        is_fee_collection=is_fee,
        fee_type="LP_FEE" if is_fee else None,
        status="success",
        gas_used=21_000 if gas_fee else 0,
        gas_price=gas_fee // 21_000 if gas_fee else 0,
        gas_fee=gas_fee,
    )


def _topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address.removeprefix("0x"))


def make_log(
    *,
    token_contract: str = TOKEN,
    from_address: str = OTHER,
    to_address: str = WALLET,
    value: int = ONE_TOKEN,
    block_number: int = 100,
    log_index: int = 0,
    tx_hash: str = "0x" + "a" * 64,
    removed: bool = False,
) -> dict[str, Any]:
    """Raw `eth_getLogs` entry for a Transfer, shaped like web3's AttributeDict."""
    return {
        "address": token_contract,
        "topics": [
            bytes.fromhex(TRANSFER_EVENT_SIGNATURE.removeprefix("0x")),
            _topic(from_address),
            _topic(to_address),
        ],
        "data": value.to_bytes(32, "big"),
        "blockNumber": block_number,
        "transactionHash": bytes.fromhex(tx_hash.removeprefix("0x")),
        "logIndex": log_index,
        "removed": removed,
    }


class FakeChain:
    """In-memory stand-in for ChainClient.

    Transfers added with `add_transfer` are served by `get_logs` and the
    per-transaction lookups. Failure hooks let tests simulate provider
    errors per call.
    """

    def __init__(self, *, head: int = 1000, decimals: int = 18) -> None:
        self.head = head
        self.logs: list[dict[str, Any]] = []
        self.metadata = {TOKEN: TokenMetadata(address=TOKEN, name="USD Coin", symbol="USDC", decimals=decimals)}
        self.balances: dict[str, int] = {}
        self.calls: list[str] = []
        self.log_error: Any = None
        self.failing_receipts: set[str] = set()
        self.healthy = True
        self._next_tx = 1

    def add_transfer(
        self,
        *,
        block_number: int,
        value: int,
        from_address: str = OTHER,
        to_address: str = WALLET,
        log_index: int = 0,
        token_contract: str = TOKEN,
        tx_hash: str | None = None,
    ) -> str:
        if tx_hash is None:
            tx_hash = "0x" + f"{self._next_tx:064x}"
            self._next_tx += 1
        self.logs.append(
            make_log(
                token_contract=token_contract,
                from_address=from_address,
                to_address=to_address,
                value=value,
                block_number=block_number,
                log_index=log_index,
                tx_hash=tx_hash,
            )
        )
        return tx_hash

    def _find_log(self, tx_hash: str) -> dict[str, Any]:
        for log in self.logs:
            if "0x" + log["transactionHash"].hex() == tx_hash:
                return log
        raise NotFoundError(f"Transaction {tx_hash} not found")

    async def get_latest_block_number(self) -> int:
        self.calls.append("get_latest_block_number")
        if not self.healthy:
            raise ChainClientError("connection refused")
        return self.head

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append("get_logs")
        start, end = filter_params["fromBlock"], filter_params["toBlock"]
        if self.log_error is not None:
            error = self.log_error(start, end)
            if error is not None:
                raise error
        address = filter_params["address"].lower()
        return [
            dict(log)
            for log in self.logs
            if log["address"] == address and start <= log["blockNumber"] <= end
        ]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        self.calls.append("get_transaction")
        log = self._find_log(tx_hash)
        return {"hash": tx_hash, "blockNumber": log["blockNumber"], "transactionIndex": 0, "gasPrice": 10**9}

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        self.calls.append("get_transaction_receipt")
        if tx_hash in self.failing_receipts:
            raise NotFoundError(f"Receipt for {tx_hash} not found")
        self._find_log(tx_hash)
        return {"status": 1, "gasUsed": 50_000, "effectiveGasPrice": 2 * 10**9, "transactionIndex": 0}

    async def get_block(self, block_number: int) -> dict[str, Any]:
        self.calls.append("get_block")
        return {
            "number": block_number,
            "hash": "0x" + f"{block_number:064x}",
            "timestamp": block_timestamp(block_number),
            "baseFeePerGas": None,
        }

    async def get_token_metadata(self, token_address: str) -> TokenMetadata:
        self.calls.append("get_token_metadata")
        return self.metadata[token_address.lower()]

    async def get_token_balance_at_block(self, address: str, token_address: str, *, block_number: int) -> int:
        self.calls.append("get_token_balance_at_block")
        return self.balances.get(token_address.lower(), 0)

    async def health_check(self) -> bool:
        return self.healthy

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
async def db(tmp_path):
    """DatabaseManager over a temporary SQLite file with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
