"""Retry wrapper for rate-limited GitHub calls.

Only rate-limit failures are retried. Anything else raised by the wrapped
operation propagates on the first attempt. Callers must only wrap calls that
are safe to repeat (field updates, reads); issue and PR creation are never
wrapped.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from src.devpipeline.github.client import RateLimitError


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 60.0


def calculate_backoff(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: bool = False,
) -> float:
    """Calculate the exponential backoff delay for an attempt.

    Args:
        attempt: The failed attempt (0-indexed).
        base_delay: Delay after the first failure.
        max_delay: Upper bound on the delay.
        jitter: Apply full jitter to spread concurrent retries.

    Returns:
        Delay in seconds: base_delay * 2**attempt, capped at max_delay.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    if jitter:
        return random.uniform(0, delay)
    return delay


async def with_rate_limit_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: Optional[str] = None,
) -> T:
    """Run ``operation``, retrying it when GitHub reports a rate limit.

    Args:
        operation: Zero-argument coroutine factory for the call.
        max_attempts: Total attempts including the first one.
        base_delay: Backoff before the second attempt; doubles each time.
        sleep: Awaitable sleep, injectable for tests.
        description: Label for log messages.

    Returns:
        The operation's result.

    Raises:
        RateLimitError: If every attempt was rate limited.
        Exception: Any non-rate-limit error from the operation, unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except RateLimitError as e:
            attempt += 1
            if attempt >= max_attempts:
                logger.error(
                    "Rate limit retries exhausted",
                    extra={"operation": description, "attempts": attempt, "error": e.message},
                )
                raise
            delay = calculate_backoff(attempt - 1, base_delay)
            logger.warning(
                "Rate limited by GitHub, retrying",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay": delay,
                },
            )
            await sleep(delay)
