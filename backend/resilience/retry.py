"""Retry with exponential backoff for transient agent and transport failures.

Only errors accepted by the retryable classifier are retried. Everything else
(authentication, bad request, programmer errors) propagates on the first
occurrence so that callers fail fast.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from litellm.exceptions import (
    APIConnectionError,
    InternalServerError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    RateLimitError,
    ServiceUnavailableError,
    InternalServerError,
    APIConnectionError,
    Timeout,
    TimeoutError,
    ConnectionError,
)

# Matched case-insensitively against the exception type name and message.
RETRYABLE_MARKERS: tuple[str, ...] = (
    "rate_limit",
    "ratelimit",
    "timeout",
    "network",
    "econnreset",
    "etimedout",
)


def is_retryable_error(
    error: BaseException,
    markers: tuple[str, ...] = RETRYABLE_MARKERS,
) -> bool:
    """Classify an error as transient (worth retrying) or permanent.

    Args:
        error: The exception raised by the wrapped call.
        markers: Substrings that mark an error as transient when found in
            the exception's type name or message.

    Returns:
        True for rate-limit, timeout and transient network errors.
    """
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True
    name = type(error).__name__.lower()
    message = str(error).lower()
    return any(marker in name or marker in message for marker in markers)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff configuration.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        initial_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        backoff_multiplier: Factor applied to the delay after each retry.
        classifier: Predicate deciding which errors are retried.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    classifier: Callable[[BaseException], bool] = is_retryable_error

    def delay_for(self, retry_index: int) -> float:
        """Return the capped delay before retry number ``retry_index`` (0-based)."""
        delay = self.initial_delay * (self.backoff_multiplier ** retry_index)
        return min(delay, self.max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: SleepFn = asyncio.sleep,
    target: str | None = None,
) -> T:
    """Await ``fn`` with exponential backoff on retryable errors.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        policy: Backoff configuration (defaults to ``RetryPolicy()``).
        sleep: Awaitable sleep used between attempts (injectable for tests).
        target: Optional label for log events.

    Returns:
        The first successful result.

    Raises:
        Exception: The first non-retryable error, or the last error once
            retries are exhausted.
    """
    policy = policy or RetryPolicy()
    attempts = policy.max_retries + 1

    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            if not policy.classifier(e):
                logger.warning(
                    "retry_non_retryable_error",
                    target=target,
                    attempt=attempt + 1,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            if attempt == attempts - 1:
                logger.error(
                    "retry_attempts_exhausted",
                    target=target,
                    attempts=attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                target=target,
                attempt=attempt + 1,
                max_attempts=attempts,
                error_type=type(e).__name__,
                error=str(e),
                retry_delay=delay,
            )
            await sleep(delay)

    # range(attempts) always returns or raises above
    raise RuntimeError("retry loop exited without a result")
