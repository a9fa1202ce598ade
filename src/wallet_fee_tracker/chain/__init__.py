"""Chain access: async web3 client with rate limiting, retry and caching."""

from wallet_fee_tracker.chain.client import (
    ChainClient,
    ChainClientError,
    ChainUnavailableError,
    FeeData,
    LogRangeError,
    NotFoundError,
    RPCError,
    TokenMetadata,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ChainUnavailableError",
    "FeeData",
    "LogRangeError",
    "NotFoundError",
    "RPCError",
    "TokenMetadata",
]
