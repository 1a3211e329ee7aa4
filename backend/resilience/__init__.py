"""Resilience layer: retry with backoff composed inside a per-target circuit breaker.

The breaker wraps the retried call, so one breaker failure corresponds to a
call that already exhausted its retries.

Usage:
    >>> layer = ResilienceLayer(CircuitBreakerRegistry(), RetryPolicy())
    >>> reply = await layer.execute("claude", lambda: agent.respond(history, prompt))
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from resilience.retry import (
    RetryPolicy,
    SleepFn,
    is_retryable_error,
    retry_with_backoff,
)

T = TypeVar("T")


class ResilienceLayer:
    """Executes fallible async calls with retry and circuit breaking.

    Attributes:
        breakers: Registry of per-target breakers (shared across conversations).
        retry_policy: Backoff configuration applied inside the breaker.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def execute(self, target: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` for ``target`` through the breaker and the retry loop.

        Raises:
            CircuitOpenError: If the target's circuit is open.
            Exception: The final error after retries are exhausted, or the
                first non-retryable error.
        """
        breaker = self.breakers.get(target)
        return await breaker.execute(
            lambda: retry_with_backoff(
                fn,
                self.retry_policy,
                sleep=self._sleep,
                target=target,
            )
        )


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ResilienceLayer",
    "RetryPolicy",
    "is_retryable_error",
    "retry_with_backoff",
]
