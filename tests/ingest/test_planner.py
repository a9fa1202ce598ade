"""Tests for block range planning and narrowing."""

import pytest

from wallet_fee_tracker.ingest import planner
from wallet_fee_tracker.ingest.models import BlockRange


def _assert_covers(pieces: list[BlockRange], start: int, end: int) -> None:
    assert pieces[0].start == start
    assert pieces[-1].end == end
    for prev, nxt in zip(pieces, pieces[1:]):
        assert nxt.start == prev.end + 1


class TestBlockRange:
    def test_size_and_str(self) -> None:
        r = BlockRange(100, 199)
        assert r.size == 100
        assert str(r) == "100-199"

    def test_rejects_reversed(self) -> None:
        with pytest.raises(ValueError):
            BlockRange(10, 9)

    def test_rejects_negative(self) -> None:
        with pytest.raises(ValueError):
            BlockRange(-1, 5)


class TestChunkSize:
    @pytest.mark.parametrize(
        ("total", "expected"),
        [(5000, 50), (1001, 50), (1000, 100), (501, 100), (500, 150), (201, 150), (200, 100), (40, 40), (0, 1)],
    )
    def test_tiers(self, total: int, expected: int) -> None:
        assert planner.chunk_size_for(total) == expected


class TestPlan:
    def test_single_block(self) -> None:
        assert planner.plan(42, 42) == [BlockRange(42, 42)]

    def test_chunks_cover_range_without_overlap(self) -> None:
        chunks = planner.plan(1_000, 3_456)
        _assert_covers(chunks, 1_000, 3_456)
        assert all(c.size <= 50 for c in chunks)

    def test_medium_range_uses_larger_chunks(self) -> None:
        chunks = planner.plan(0, 300)
        _assert_covers(chunks, 0, 300)
        assert chunks[0].size == 150

    def test_reversed_range_raises(self) -> None:
        with pytest.raises(ValueError):
            planner.plan(10, 5)


class TestParseSuggestedRange:
    def test_decimal_suggestion(self) -> None:
        assert planner.parse_suggested_range("retry with the range 100-200") == BlockRange(100, 200)

    def test_decimal_suggestion_inside_provider_text(self) -> None:
        text = "query returned more than 10000 results. Try with this block range [0x64, 0xc8], or retry with the range 100-200"
        assert planner.parse_suggested_range(text) == BlockRange(100, 200)

    def test_hex_suggestion(self) -> None:
        assert planner.parse_suggested_range("0x64-0xc8") == BlockRange(100, 200)

    def test_no_suggestion(self) -> None:
        assert planner.parse_suggested_range("rate limited") is None
        assert planner.parse_suggested_range("") is None

    def test_reversed_suggestion_ignored(self) -> None:
        assert planner.parse_suggested_range("retry with the range 200-100") is None


class TestNarrow:
    def test_uses_suggestion_and_keeps_coverage(self) -> None:
        chunk = BlockRange(0, 999)
        pieces = planner.narrow(chunk, "retry with the range 100-200")
        assert pieces == [BlockRange(0, 99), BlockRange(100, 200), BlockRange(201, 999)]

    def test_suggestion_at_chunk_start(self) -> None:
        pieces = planner.narrow(BlockRange(100, 999), "retry with the range 100-200")
        assert pieces == [BlockRange(100, 200), BlockRange(201, 999)]

    def test_suggestion_is_clipped_to_chunk(self) -> None:
        pieces = planner.narrow(BlockRange(150, 300), "retry with the range 100-200")
        assert pieces == [BlockRange(150, 200), BlockRange(201, 300)]

    def test_unusable_suggestion_bisects(self) -> None:
        # Suggestion equal to the chunk itself would loop forever.
        pieces = planner.narrow(BlockRange(100, 200), "retry with the range 100-200")
        assert pieces == [BlockRange(100, 150), BlockRange(151, 200)]

    def test_disjoint_suggestion_bisects(self) -> None:
        pieces = planner.narrow(BlockRange(0, 9), "retry with the range 500-600")
        assert pieces == [BlockRange(0, 4), BlockRange(5, 9)]

    def test_no_suggestion_bisects(self) -> None:
        pieces = planner.narrow(BlockRange(0, 10), "timeout")
        assert pieces is not None
        _assert_covers(pieces, 0, 10)
        assert len(pieces) == 2

    def test_single_block_cannot_narrow(self) -> None:
        assert planner.narrow(BlockRange(7, 7), "retry with the range 7-7") is None
