"""EVM chain client with rate limiting, retry/failover and caching.

This module provides the chain client used by the ingestion pipeline:
- Rate limiting to respect provider limits
- Bounded retry with exponential backoff on transient failures
- Failover to a secondary RPC URL
- Per-call timeouts
- Optional Redis caching for immutable data (blocks, token metadata,
  historical balances)

Provider errors that mean "the requested log range is too large" are never
retried here; they are raised as `LogRangeError` carrying the provider text
so the caller can narrow the request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from wallet_fee_tracker.retry import ErrorClass, RetryExhaustedError, retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0

# Immutable data (blocks by number, token metadata, balances at a block)
IMMUTABLE_CACHE_TTL_SECONDS = 3600

# Provider messages meaning "ask for fewer blocks"
RANGE_LIMIT_MARKERS = (
    "retry with the range",
    "range is too large",
    "block range",
    "exceeds max results",
    "query returned more than",
    "response size exceeded",
    "log response size",
    "too many results",
    "max is 1k blocks",
    "block range limit exceeded",
    "-32005",
)

# Provider messages meaning "slow down". Checked before the range markers,
# some providers reuse -32005 for throttling.
RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "request rate",
    "throttl",
)

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

# Some older tokens return name/symbol as bytes32.
ERC20_BYTES32_METADATA_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "bytes32"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "bytes32"}],
        "type": "function",
    },
]


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after retries and failover."""


class LogRangeError(ChainClientError):
    """Raised when the provider rejects a log query as too large.

    The provider's message is kept verbatim so a suggested range can be
    parsed out of it.
    """


class NotFoundError(ChainClientError):
    """Raised when a transaction or receipt is not (yet) known to the node."""


class ChainUnavailableError(ChainClientError):
    """Raised when no configured RPC endpoint answers."""


@dataclass(frozen=True)
class TokenMetadata:
    """ERC-20 token metadata."""

    address: str
    name: str
    symbol: str
    decimals: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "address": self.address,
                "name": self.name,
                "symbol": self.symbol,
                "decimals": self.decimals,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> TokenMetadata:
        data = json.loads(raw)
        return cls(
            address=str(data["address"]),
            name=str(data["name"]),
            symbol=str(data["symbol"]),
            decimals=int(data["decimals"]),
        )


@dataclass(frozen=True)
class FeeData:
    """Current gas pricing, all values in wei."""

    gas_price: int
    max_fee_per_gas: int | None
    max_priority_fee_per_gas: int | None


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


def is_rate_limit_error(exc: BaseException) -> bool:
    """Return True if the provider is throttling us."""
    if isinstance(exc, aiohttp.ClientResponseError) and exc.status == 429:
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in RATE_LIMIT_MARKERS)


def is_range_limit_error(exc: BaseException) -> bool:
    """Return True if the provider rejected the request for its size."""
    if is_rate_limit_error(exc):
        return False
    msg = str(exc).lower()
    return any(marker in msg for marker in RANGE_LIMIT_MARKERS)


def classify_rpc_error(exc: BaseException) -> ErrorClass:
    """Map an exception raised by a web3 call to an ErrorClass."""
    if isinstance(exc, aiohttp.ClientResponseError):
        # 429 and 5xx clear up on their own; other 4xx will not
        if exc.status == 429 or exc.status >= 500:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL
    if is_rate_limit_error(exc):
        return ErrorClass.TRANSIENT
    if is_range_limit_error(exc):
        return ErrorClass.NARROW
    if isinstance(exc, aiohttp.ClientError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, TransactionNotFound):
        return ErrorClass.FATAL
    if isinstance(exc, (Web3Exception, TimeoutError, ConnectionError, OSError)):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def _decode_text(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).rstrip(b"\x00").decode("utf-8", errors="replace")
    return str(value)


class ChainClient:
    """EVM chain client with caching and rate limiting.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://mainnet.base.org",
            fallback_rpc_url="https://base.publicnode.com",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        head = await client.get_latest_block_number()
        meta = await client.get_token_metadata("0x...")
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        poa_middleware: bool = False,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        cache_prefix: str = "chain:",
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            poa_middleware: Inject the extraData PoA middleware.
            cache_ttl_seconds: Default cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per endpoint on transient failures.
            retry_delay_seconds: Initial delay between retries.
            request_timeout_seconds: Timeout applied to every call.
            cache_prefix: Redis key prefix (include the chain id to share
                one Redis between chains).
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._poa_middleware = poa_middleware
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._timeout = request_timeout_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = cache_prefix
        self._token_metadata: dict[str, TokenMetadata] = {}

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        if self._poa_middleware:
            try:
                client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            except Exception as e:
                logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    def _cache_key(self, *parts: object) -> str:
        return self._cache_prefix + ":".join(str(p).lower() for p in parts)

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        await self._rate_limiter.acquire()
        return await asyncio.wait_for(call(w3), timeout=self._timeout)

    async def _execute(
        self,
        description: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Run `call` against the primary RPC, then the fallback.

        Raises:
            LogRangeError: The provider rejected the request for its size.
            NotFoundError: The node does not know the transaction.
            RPCError: All retries and failover failed, or a fatal error.
        """
        endpoints: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        if self._should_try_primary():
            endpoints.append(("primary", self._w3))
        if self._w3_fallback is not None:
            endpoints.append(("fallback", self._w3_fallback))

        last_error: BaseException | None = None
        for label, w3 in endpoints:
            try:
                result = await retry_async(
                    lambda w3=w3: self._attempt(w3, call),
                    classify=classify_rpc_error,
                    max_attempts=self._max_retries,
                    base_delay=self._retry_delay,
                    description=f"{label} RPC {description}",
                )
            except RetryExhaustedError as e:
                last_error = e.last_exception
                if label == "primary":
                    self._primary_healthy = False
                    self._last_primary_check = time.monotonic()
                continue
            except TransactionNotFound as e:
                raise NotFoundError(str(e)) from e
            except Exception as e:
                if is_range_limit_error(e):
                    raise LogRangeError(str(e)) from e
                raise RPCError(f"RPC call {description} failed: {e}") from e

            if label == "primary":
                self._primary_healthy = True
            else:
                logger.info("Fallback RPC succeeded for %s", description)
            return result

        raise RPCError(f"RPC call {description} failed after all retries: {last_error}")

    async def _execute_eth(self, func_name: str, *args: Any) -> Any:
        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            return await getattr(w3.eth, func_name)(*args)

        return await self._execute(func_name, call)

    async def get_latest_block_number(self) -> int:
        """Get the current chain head."""
        number = await self._execute_eth("get_block_number")
        return int(number)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs`.

        Raises:
            LogRangeError: The provider refused the block range.
        """
        logs = await self._execute_eth("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        tx = await self._execute_eth("get_transaction", tx_hash)
        if tx is None:
            raise NotFoundError(f"Transaction {tx_hash} not found")
        return dict(tx)

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Get a transaction receipt.

        Raises:
            NotFoundError: The receipt is not available yet.
        """
        receipt = await self._execute_eth("get_transaction_receipt", tx_hash)
        if receipt is None:
            raise NotFoundError(f"Receipt for {tx_hash} not found")
        return dict(receipt)

    async def get_block(self, block_number: int) -> dict[str, Any]:
        """Get the header fields of a block by number.

        Returns:
            Dictionary with `number`, `hash`, `timestamp` and
            `baseFeePerGas` (None before London).
        """
        cache_key = self._cache_key("block", block_number)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            data: dict[str, Any] = json.loads(cached)
            return data

        block = await self._execute_eth("get_block", block_number)
        block_hash = block.get("hash")
        base_fee = block.get("baseFeePerGas")
        header = {
            "number": int(block["number"]),
            "hash": block_hash.to_0x_hex() if hasattr(block_hash, "to_0x_hex") else block_hash,
            "timestamp": int(block["timestamp"]),
            "baseFeePerGas": int(base_fee) if base_fee is not None else None,
        }
        await self._set_cached(cache_key, json.dumps(header), ttl=IMMUTABLE_CACHE_TTL_SECONDS)
        return header

    async def get_fee_data(self) -> FeeData:
        """Get current gas pricing.

        `max_fee_per_gas` follows the common wallet heuristic
        `2 * baseFee + priorityFee`; both EIP-1559 fields are None on
        chains without a base fee.
        """
        async def read_gas_price(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.gas_price)

        async def read_priority_fee(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.max_priority_fee)

        gas_price = await self._execute("gas_price", read_gas_price)
        latest = await self._execute_eth("get_block", "latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return FeeData(gas_price=gas_price, max_fee_per_gas=None, max_priority_fee_per_gas=None)
        priority = await self._execute("max_priority_fee", read_priority_fee)
        return FeeData(
            gas_price=gas_price,
            max_fee_per_gas=2 * int(base_fee) + priority,
            max_priority_fee_per_gas=priority,
        )

    async def _call_contract(
        self,
        token_address: str,
        fn_name: str,
        *args: Any,
        abi: list[dict[str, Any]] = ERC20_ABI,
        block_identifier: int | str = "latest",
    ) -> Any:
        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(token_address), abi=abi)
            fn = getattr(contract.functions, fn_name)
            return await fn(*args).call(block_identifier=block_identifier)

        return await self._execute(f"{fn_name}@{token_address}", call)

    async def get_token_balance(self, address: str, token_address: str) -> int:
        """Get latest ERC-20 balance in the token's smallest unit."""
        balance = await self._call_contract(
            token_address, "balanceOf", AsyncWeb3.to_checksum_address(address)
        )
        return int(balance)

    async def get_token_balance_at_block(
        self,
        address: str,
        token_address: str,
        *,
        block_number: int,
    ) -> int:
        """Get ERC-20 balance as-of a specific block."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        cache_key = self._cache_key("balance", token_address, address, block_number)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        balance = int(
            await self._call_contract(
                token_address,
                "balanceOf",
                AsyncWeb3.to_checksum_address(address),
                block_identifier=block_number,
            )
        )
        await self._set_cached(cache_key, str(balance), ttl=IMMUTABLE_CACHE_TTL_SECONDS)
        return balance

    async def get_token_metadata(self, token_address: str) -> TokenMetadata:
        """Get name, symbol and decimals of an ERC-20 contract.

        Cached in-process for the client's lifetime and in Redis when
        configured.
        """
        token = token_address.lower()
        meta = self._token_metadata.get(token)
        if meta is not None:
            return meta

        cache_key = self._cache_key("token_meta", token)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            meta = TokenMetadata.from_json(cached)
            self._token_metadata[token] = meta
            return meta

        decimals = int(await self._call_contract(token, "decimals"))
        try:
            name = await self._call_contract(token, "name")
            symbol = await self._call_contract(token, "symbol")
        except RPCError:
            logger.debug("String metadata call failed for %s, trying bytes32", token)
            name = await self._call_contract(token, "name", abi=ERC20_BYTES32_METADATA_ABI)
            symbol = await self._call_contract(token, "symbol", abi=ERC20_BYTES32_METADATA_ABI)

        meta = TokenMetadata(
            address=token,
            name=_decode_text(name),
            symbol=_decode_text(symbol),
            decimals=decimals,
        )
        self._token_metadata[token] = meta
        await self._set_cached(cache_key, meta.to_json(), ttl=IMMUTABLE_CACHE_TTL_SECONDS)
        return meta

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self.get_latest_block_number()
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
