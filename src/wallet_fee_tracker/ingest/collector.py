"""Chunk collection across all tracked tokens.

For each token the chunk is fetched as one request; a refused or failing
request is replaced by narrower ranges from the planner until the
narrowing budget is spent, at which point the remaining piece becomes a
gap.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from wallet_fee_tracker.chain.client import ChainClientError, LogRangeError
from wallet_fee_tracker.ingest import planner
from wallet_fee_tracker.ingest.models import BlockRange, ChunkGap, ChunkResult, TransferEvent

if TYPE_CHECKING:
    from collections.abc import Sequence

    from wallet_fee_tracker.ingest.fetcher import TransferFetcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_NARROWINGS = 6


class ChunkCollector:
    """Drive a TransferFetcher over every tracked token for one chunk."""

    def __init__(
        self,
        fetcher: TransferFetcher,
        token_contracts: Sequence[str],
        *,
        max_narrowings: int = DEFAULT_MAX_NARROWINGS,
    ) -> None:
        if max_narrowings < 0:
            raise ValueError("max_narrowings must be >= 0")
        self._fetcher = fetcher
        self._tokens = [t.lower() for t in token_contracts]
        self._max_narrowings = max_narrowings

    async def collect(self, chunk: BlockRange) -> ChunkResult:
        """Fetch all tracked tokens for `chunk`.

        The result holds either every matching transfer, sorted by
        (block, log index), or at least one gap. Collection stops at the
        first gap since the chunk cannot be committed anyway.
        """
        result = ChunkResult(chunk=chunk)
        for token in self._tokens:
            transfers, gap = await self._collect_token(chunk, token)
            result.transfers.extend(transfers)
            if gap is not None:
                result.gaps.append(gap)
                break
        result.transfers.sort(key=lambda t: t.sort_key)
        return result

    async def _collect_token(
        self,
        chunk: BlockRange,
        token: str,
    ) -> tuple[list[TransferEvent], ChunkGap | None]:
        transfers: list[TransferEvent] = []
        # Work stack of (range, narrowing depth); popped in ascending block order.
        stack: list[tuple[BlockRange, int]] = [(chunk, 0)]
        attempts = 0
        while stack:
            piece, depth = stack.pop()
            attempts += 1
            try:
                transfers.extend(await self._fetcher.fetch(piece, token))
                continue
            except ChainClientError as e:
                error_text = str(e)
                pieces = planner.narrow(piece, error_text) if depth < self._max_narrowings else None
                if pieces is None:
                    logger.error(
                        "Giving up on blocks %s for token %s after %d requests: %s",
                        piece,
                        token,
                        attempts,
                        error_text,
                    )
                    return transfers, ChunkGap(
                        range=piece, token_contract=token, error=error_text, attempts=attempts
                    )
                level = logging.INFO if isinstance(e, LogRangeError) else logging.WARNING
                logger.log(
                    level,
                    "Narrowing blocks %s for token %s into %s: %s",
                    piece,
                    token,
                    ", ".join(str(p) for p in pieces),
                    error_text,
                )
                for p in reversed(pieces):
                    stack.append((p, depth + 1))
        return transfers, None
