"""Data models for the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field


class IngestError(Exception):
    """Base exception for ingestion errors."""


class TransferDecodeError(IngestError):
    """Raised when a Transfer log or the chain data enriching it is malformed."""


@dataclass(frozen=True, order=True)
class BlockRange:
    """Inclusive block interval."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError("start must be >= 0")
        if self.start > self.end:
            raise ValueError(f"empty block range {self.start}-{self.end}")

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class TransferEvent:
    """One decoded ERC-20 Transfer log. Addresses are lowercase."""

    token_contract: str
    from_address: str
    to_address: str
    value: int
    block_number: int
    tx_hash: str
    log_index: int

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        return (self.tx_hash, self.token_contract, self.from_address, self.to_address)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class ChunkGap:
    """A sub-range of a chunk that could not be fetched for one token."""

    range: BlockRange
    token_contract: str
    error: str
    attempts: int


@dataclass
class ChunkResult:
    """Everything collected for one chunk across all tracked tokens."""

    chunk: BlockRange
    transfers: list[TransferEvent] = field(default_factory=list)
    gaps: list[ChunkGap] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.gaps
