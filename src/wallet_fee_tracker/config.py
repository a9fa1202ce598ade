"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
wallet fee tracker, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

FeeType = Literal["LP_FEE", "PROTOCOL_FEE", "OTHER"]


def _validate_address(value: str, *, name: str) -> str:
    value = value.strip()
    if not _ADDRESS_RE.match(value):
        raise ValueError(f"{name} must be a 0x-prefixed 20-byte hex address")
    return value.lower()


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or aiosqlite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (RPC cache and event forwarding)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """EVM chain RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://mainnet.base.org",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    chain_id: int = Field(
        default=8453,
        alias="CHAIN_ID",
        ge=1,
        description="Chain ID of the tracked network (Base=8453)",
    )
    poa_middleware: bool = Field(
        default=False,
        alias="CHAIN_POA_MIDDLEWARE",
        description="Inject the extraData PoA middleware (Polygon/BSC style chains)",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side RPC rate limit",
    )
    max_retries: int = Field(
        default=3,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per RPC call on transient errors",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Per-call RPC timeout",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class TrackerSettings(BaseSettings):
    """Tracked wallet, tracked tokens and ingestion pacing."""

    model_config = SettingsConfigDict(env_prefix="TRACKER_", extra="ignore")

    wallet_address: str = Field(
        alias="TRACKER_WALLET_ADDRESS",
        description="Wallet whose ERC-20 transfers are tracked",
    )
    token_contracts: Annotated[tuple[str, ...], NoDecode] = Field(
        alias="TRACKER_TOKEN_CONTRACTS",
        description="Tracked ERC-20 contract addresses (comma-separated)",
    )
    poll_interval_seconds: float = Field(
        default=30.0,
        alias="TRACKER_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Delay between ingestion cycles",
    )
    stats_interval_seconds: float = Field(
        default=300.0,
        alias="TRACKER_STATS_INTERVAL_SECONDS",
        gt=0.0,
        le=86_400.0,
        description="Delay between balance reconciliation passes",
    )
    max_blocks_per_poll: int = Field(
        default=100,
        alias="TRACKER_MAX_BLOCKS_PER_POLL",
        ge=1,
        le=1_000_000,
        description="Upper bound on the block range scanned in one cycle",
    )
    lookback_blocks: int = Field(
        default=1000,
        alias="TRACKER_LOOKBACK_BLOCKS",
        ge=0,
        le=10_000_000,
        description="Cold-start lookback window below the chain head",
    )
    confirmations: int = Field(
        default=0,
        alias="TRACKER_CONFIRMATIONS",
        ge=0,
        le=1000,
        description="Blocks kept behind the head to approximate finality",
    )
    chunk_concurrency: int = Field(
        default=2,
        alias="TRACKER_CHUNK_CONCURRENCY",
        ge=1,
        le=32,
        description="Chunk log queries allowed in flight at once",
    )
    inter_chunk_delay_seconds: float = Field(
        default=0.2,
        alias="TRACKER_INTER_CHUNK_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause between applied chunks to respect provider limits",
    )
    max_narrowings: int = Field(
        default=6,
        alias="TRACKER_MAX_NARROWINGS",
        ge=0,
        le=64,
        description="How many times a failing chunk may be split before it is a gap",
    )
    receipt_max_attempts: int = Field(
        default=3,
        alias="TRACKER_RECEIPT_MAX_ATTEMPTS",
        ge=1,
        le=10,
        description="Attempts for fetching a transaction receipt",
    )
    fee_type: FeeType = Field(
        default="LP_FEE",
        alias="TRACKER_FEE_TYPE",
        description="Fee-type tag stored on fee-collection transfers",
    )

    @field_validator("wallet_address")
    @classmethod
    def validate_wallet_address(cls, v: str) -> str:
        return _validate_address(v, name="TRACKER_WALLET_ADDRESS")

    @field_validator("token_contracts", mode="before")
    @classmethod
    def _parse_token_contracts(cls, v: object) -> tuple[str, ...]:
        if v is None:
            raise ValueError("TRACKER_TOKEN_CONTRACTS must be set")
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
        elif isinstance(v, (list, tuple)):
            parts = [str(x).strip() for x in v]
        else:
            raise TypeError("Invalid TRACKER_TOKEN_CONTRACTS type")
        if not parts:
            raise ValueError("TRACKER_TOKEN_CONTRACTS must list at least one contract")
        normalized = tuple(_validate_address(p, name="TRACKER_TOKEN_CONTRACTS") for p in parts)
        # Keep configured order, drop repeats.
        return tuple(dict.fromkeys(normalized))


class EventSettings(BaseSettings):
    """Event fan-out settings."""

    model_config = SettingsConfigDict(env_prefix="EVENTS_", extra="ignore")

    redis_enabled: bool = Field(
        default=False,
        alias="EVENTS_REDIS_ENABLED",
        description="Forward events to Redis pub/sub (requires REDIS_URL)",
    )
    redis_channel_prefix: str = Field(
        default="wallet_fee_tracker:events",
        alias="EVENTS_REDIS_CHANNEL_PREFIX",
        description="Channel prefix; the event type is appended",
    )
    subscriber_queue_size: int = Field(
        default=1000,
        alias="EVENTS_SUBSCRIBER_QUEUE_SIZE",
        ge=1,
        le=1_000_000,
        description="Per-subscriber buffer; oldest events are dropped when full",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from wallet_fee_tracker.config import get_settings

        settings = get_settings()
        print(settings.tracker.wallet_address)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tracker: TrackerSettings = Field(
        default_factory=lambda: TrackerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    events: EventSettings = Field(
        default_factory=lambda: EventSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Keep events in-process (no external forwarding)",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "chain_id": str(self.chain.chain_id),
            },
            "tracker": {
                "wallet_address": self.tracker.wallet_address,
                "token_contracts": ",".join(self.tracker.token_contracts),
                "poll_interval_seconds": str(self.tracker.poll_interval_seconds),
                "stats_interval_seconds": str(self.tracker.stats_interval_seconds),
                "max_blocks_per_poll": str(self.tracker.max_blocks_per_poll),
                "lookback_blocks": str(self.tracker.lookback_blocks),
                "confirmations": str(self.tracker.confirmations),
            },
            "events_redis_enabled": str(self.events.redis_enabled),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["run", "sync-once", "reconcile"]) -> None:
        """Validate command-specific requirements.

        If a capability is required for a command and not configured, the
        application must refuse to run.
        """
        if command in ("run", "sync-once") and self.events.redis_enabled and not self.redis.url:
            raise ValueError("REDIS_URL is required when EVENTS_REDIS_ENABLED=true")
        if self.tracker.wallet_address in self.tracker.token_contracts:
            raise ValueError("TRACKER_WALLET_ADDRESS must not be one of TRACKER_TOKEN_CONTRACTS")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
