"""Ingestion pipeline: chunk planning, log fetching and materialization."""

from wallet_fee_tracker.ingest.models import (
    BlockRange,
    ChunkGap,
    ChunkResult,
    IngestError,
    TransferDecodeError,
    TransferEvent,
)

__all__ = [
    "BlockRange",
    "ChunkGap",
    "ChunkResult",
    "IngestError",
    "TransferDecodeError",
    "TransferEvent",
]
