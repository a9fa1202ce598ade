"""Block range planning for `eth_getLogs`.

Providers cap the block span (and result count) of a log query. The
planner splits a range into conservative chunks up front and, when a chunk
is still refused, derives narrower replacement ranges from the provider's
error message or by bisection.
"""

from __future__ import annotations

import logging
import re

from wallet_fee_tracker.ingest.models import BlockRange

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 100

# "... retry with the range 33772881-33773212" (also bare "range 100-200")
_DECIMAL_RANGE_RE = re.compile(r"(?:retry with the )?range (\d+)-(\d+)", re.IGNORECASE)
# "... [0x2034b51, 0x2034c9c]" style hints
_HEX_RANGE_RE = re.compile(r"0x([a-fA-F0-9]+)\s*-\s*0x([a-fA-F0-9]+)")


def chunk_size_for(total: int) -> int:
    """Chunk size for a range spanning `total` blocks beyond its start.

    Wider ranges get smaller chunks: they are more likely to hit busy
    blocks and trip the provider's result limit.
    """
    if total > 1000:
        return 50
    if total > 500:
        return 100
    if total > 200:
        return 150
    return max(1, min(MAX_CHUNK_SIZE, total))


def plan(from_block: int, to_block: int) -> list[BlockRange]:
    """Split [from_block, to_block] into ordered, contiguous chunks.

    Raises:
        ValueError: If from_block > to_block or from_block < 0.
    """
    if from_block > to_block:
        raise ValueError(f"from_block {from_block} is after to_block {to_block}")
    if from_block < 0:
        raise ValueError("from_block must be >= 0")

    size = chunk_size_for(to_block - from_block)
    chunks: list[BlockRange] = []
    current = from_block
    while current <= to_block:
        end = min(current + size - 1, to_block)
        chunks.append(BlockRange(current, end))
        current = end + 1
    return chunks


def parse_suggested_range(text: str) -> BlockRange | None:
    """Extract a provider-suggested block range from an error message."""
    if not text:
        return None

    match = _DECIMAL_RANGE_RE.search(text)
    if match:
        start, end = int(match.group(1)), int(match.group(2))
    else:
        match = _HEX_RANGE_RE.search(text)
        if not match:
            return None
        start, end = int(match.group(1), 16), int(match.group(2), 16)

    if start > end:
        logger.debug("Ignoring reversed suggested range %d-%d", start, end)
        return None
    return BlockRange(start, end)


def bisect(chunk: BlockRange) -> list[BlockRange] | None:
    if chunk.size < 2:
        return None
    mid = (chunk.start + chunk.end) // 2
    return [BlockRange(chunk.start, mid), BlockRange(mid + 1, chunk.end)]


def narrow(chunk: BlockRange, error_text: str) -> list[BlockRange] | None:
    """Replacement ranges for a refused chunk.

    The result always covers exactly `chunk`. A usable suggestion (one that
    overlaps the chunk and is strictly smaller than it) is clipped to the
    chunk and surrounded by the uncovered pieces; otherwise the chunk is
    bisected.

    Returns:
        Ordered ranges, or None when `chunk` is a single block.
    """
    if chunk.size < 2:
        return None

    suggested = parse_suggested_range(error_text)
    if suggested is not None:
        start = max(suggested.start, chunk.start)
        end = min(suggested.end, chunk.end)
        if start <= end and (start, end) != (chunk.start, chunk.end):
            pieces: list[BlockRange] = []
            if start > chunk.start:
                pieces.append(BlockRange(chunk.start, start - 1))
            pieces.append(BlockRange(start, end))
            if end < chunk.end:
                pieces.append(BlockRange(end + 1, chunk.end))
            return pieces

    return bisect(chunk)
