"""Bounded retry with exponential backoff, driven by an error classifier.

Callers decide per exception whether it is worth another attempt
(`TRANSIENT`), should be handed back immediately so the caller can shrink the
request (`NARROW`), or is not recoverable at all (`FATAL`).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0


class ErrorClass(str, Enum):
    """How a failed attempt should be treated."""

    TRANSIENT = "transient"
    NARROW = "narrow"
    FATAL = "fatal"


Classifier = Callable[[BaseException], ErrorClass]


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a transient error."""

    def __init__(self, message: str, last_exception: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def always_transient(_exc: BaseException) -> ErrorClass:
    return ErrorClass.TRANSIENT


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    classify: Classifier = always_transient,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    description: str = "operation",
) -> T:
    """Run `func` until it succeeds or the attempt budget is spent.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        classify: Maps an exception to an ErrorClass.
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt; doubles afterwards.
        max_delay: Upper bound for a single delay.
        description: Used in log lines.

    Returns:
        Whatever `func` returns on the first successful attempt.

    Raises:
        RetryExhaustedError: All attempts failed with transient errors.
        Exception: A NARROW or FATAL error is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delay = base_delay
    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify(e)
            if kind is not ErrorClass.TRANSIENT:
                raise
            last_error = e
            if attempt == max_attempts:
                break
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                description,
                attempt,
                max_attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)

    raise RetryExhaustedError(
        f"All {max_attempts} attempts failed for {description}: {last_error}",
        last_exception=last_error,
    )
