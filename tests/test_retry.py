"""Tests for the classifier-driven retry helper."""

from unittest.mock import AsyncMock, patch

import pytest

from wallet_fee_tracker.retry import ErrorClass, RetryExhaustedError, retry_async


class TestRetryAsync:
    async def test_returns_first_success(self) -> None:
        func = AsyncMock(return_value=7)
        assert await retry_async(func, max_attempts=3, base_delay=0) == 7
        assert func.await_count == 1

    async def test_retries_transient_then_succeeds(self) -> None:
        func = AsyncMock(side_effect=[TimeoutError("slow"), TimeoutError("slow"), "ok"])
        with patch("wallet_fee_tracker.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await retry_async(func, max_attempts=3, base_delay=1.0) == "ok"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    async def test_delay_is_capped(self) -> None:
        func = AsyncMock(side_effect=[OSError(), OSError(), OSError(), "ok"])
        with patch("wallet_fee_tracker.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_async(func, max_attempts=4, base_delay=10.0, max_delay=15.0)
        assert [c.args[0] for c in sleep.await_args_list] == [10.0, 15.0, 15.0]

    async def test_exhaustion_keeps_last_exception(self) -> None:
        last = TimeoutError("third")
        func = AsyncMock(side_effect=[TimeoutError("first"), TimeoutError("second"), last])
        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_async(func, max_attempts=3, base_delay=0)
        assert exc_info.value.last_exception is last

    @pytest.mark.parametrize("kind", [ErrorClass.NARROW, ErrorClass.FATAL])
    async def test_non_transient_is_raised_immediately(self, kind: ErrorClass) -> None:
        func = AsyncMock(side_effect=ValueError("too big"))
        with pytest.raises(ValueError, match="too big"):
            await retry_async(func, classify=lambda _e: kind, max_attempts=5, base_delay=0)
        assert func.await_count == 1

    async def test_invalid_attempts(self) -> None:
        with pytest.raises(ValueError):
            await retry_async(AsyncMock(), max_attempts=0)
