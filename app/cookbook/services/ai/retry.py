"""
Bounded retry with exponential backoff for AI calls.

Each attempt carries its own timeout. Only transient failures are retried;
anything else propagates on the first occurrence.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import openai

from .exceptions import AIUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.InternalServerError,
    httpx.TransportError,
    TimeoutError,
    asyncio.TimeoutError,
)


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """
    Delay before retry number `attempt` (1-indexed): full jitter over an
    exponentially growing window, capped at `maximum`.
    """
    window = min(maximum, base * (2 ** (attempt - 1)))
    return random.uniform(window / 2, window)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    timeout: float = 90.0,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    label: str = "AI call",
) -> T:
    """
    Run `operation` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        attempts: Total attempts, including the first.
        timeout: Per-attempt timeout in seconds.
        base_delay: Backoff window for the first retry.
        max_delay: Upper bound of the backoff window.
        label: Name used in log lines.

    Returns:
        The operation's result.

    Raises:
        AIUnavailableError: Every attempt failed with a transient error.
    """
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except RETRYABLE_EXCEPTIONS as e:
            last_error = e
            logger.warning(
                "%s failed (retryable): %s - %s. Attempt %d/%d",
                label,
                type(e).__name__,
                e,
                attempt,
                attempts,
            )
            if attempt >= attempts:
                break
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    logger.error("%s failed after %d attempts", label, attempts)
    raise AIUnavailableError(
        f"{label} failed after {attempts} attempts: {type(last_error).__name__}: {last_error}"
    ) from last_error
