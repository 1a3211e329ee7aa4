"""Sliding-window rate limiting for outbound calls.

This module provides admission control for calls to rate-limited
collaborators: agent providers (requests per minute) and the chat transport
(requests per second). Limiters are keyed per target and held by an
injected ``RateLimiterRegistry`` so tests can build isolated instances.

Admission is a sliding window rather than a token bucket: a limiter admits a
burst of up to ``max_calls`` at once, and capacity comes back one call at a
time as each admitted call ages out of the window, instead of refilling at
a fixed rate. Over any window the admitted rate is the same bound a bucket
of ``max_calls`` refilled every ``window_seconds`` would give.

Usage:
    >>> registry = RateLimiterRegistry(max_calls=30, window_seconds=60.0)
    >>> limiter = registry.get("claude")
    >>> await limiter.acquire(estimated_tokens=1500)
    >>> # ... make the call ...
    >>> limiter.record_usage(tokens_used=1234)
"""

import asyncio
import threading
import time
from collections import deque
from collections.abc import Callable

import structlog

from errors import RateLimitExceededError

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Sliding-window limiter for one target.

    Enforces two independent limits over the window:
    - Calls: maximum number of calls within ``window_seconds``.
    - Tokens: maximum estimated/actual tokens within ``window_seconds``
      (``None`` disables the token limit).

    When a limit would be exceeded, ``acquire()`` waits until enough capacity
    is available, up to a deadline.

    Attributes:
        target: Label for log events.
        max_calls: Maximum calls per window.
        window_seconds: Length of the sliding window.
        max_tokens: Maximum tokens per window, or None.
    """

    def __init__(
        self,
        target: str,
        max_calls: int = 30,
        window_seconds: float = 60.0,
        max_tokens: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.max_tokens = max_tokens
        self._clock = clock

        # Sliding window tracking: deque of (timestamp, token_count)
        self._call_log: deque[tuple[float, int]] = deque()
        self._lock = asyncio.Lock()

        logger.debug(
            "rate_limiter_initialized",
            target=target,
            max_calls=max_calls,
            window_seconds=window_seconds,
            max_tokens=max_tokens,
        )

    def _prune_old_entries(self, now: float) -> None:
        """Remove entries older than the window.

        Args:
            now: The current clock reading.
        """
        cutoff = now - self.window_seconds
        while self._call_log and self._call_log[0][0] <= cutoff:
            self._call_log.popleft()

    def _current_calls(self) -> int:
        return len(self._call_log)

    def _current_tokens(self) -> int:
        return sum(tokens for _, tokens in self._call_log)

    def _has_capacity(self, estimated_tokens: int) -> bool:
        if self._current_calls() >= self.max_calls:
            return False
        if self.max_tokens is None:
            return True
        return self._current_tokens() + estimated_tokens <= self.max_tokens

    def can_acquire(self, estimated_tokens: int = 0) -> bool:
        """Return True if a call could be admitted right now (no reservation)."""
        self._prune_old_entries(self._clock())
        return self._has_capacity(estimated_tokens)

    def time_until_available(self) -> float:
        """Seconds until the oldest call leaves the window (0 if capacity exists)."""
        now = self._clock()
        self._prune_old_entries(now)
        if self._has_capacity(0) or not self._call_log:
            return 0.0
        return max(0.0, self._call_log[0][0] + self.window_seconds - now)

    async def acquire(
        self,
        estimated_tokens: int = 0,
        max_wait_seconds: float = 120.0,
    ) -> None:
        """Wait until the limiter allows a new call, then reserve a slot.

        Args:
            estimated_tokens: Estimated tokens for the upcoming call.
            max_wait_seconds: Maximum time to wait before raising.

        Raises:
            RateLimitExceededError: If the deadline is exceeded.
        """
        deadline = self._clock() + max_wait_seconds

        while True:
            async with self._lock:
                now = self._clock()
                self._prune_old_entries(now)

                if self._has_capacity(estimated_tokens):
                    self._call_log.append((now, estimated_tokens))
                    logger.debug(
                        "rate_limiter_acquired",
                        target=self.target,
                        current_calls=self._current_calls(),
                        estimated_tokens=estimated_tokens,
                    )
                    return

                if now >= deadline:
                    raise RateLimitExceededError(
                        f"Rate limiter for '{self.target}' wait exceeded "
                        f"{max_wait_seconds}s deadline"
                    )

                wait_seconds = self._calculate_wait(now)
                wait_seconds = min(wait_seconds, deadline - now)

            logger.info(
                "rate_limiter_waiting",
                target=self.target,
                wait_seconds=round(wait_seconds, 3),
                current_calls=self._current_calls(),
            )
            await asyncio.sleep(wait_seconds)

    def _calculate_wait(self, now: float) -> float:
        """Calculate how long to wait before the next call can proceed.

        Returns:
            Seconds to wait (at least 10ms to avoid busy-spinning).
        """
        if not self._call_log:
            return 0.01
        oldest_timestamp = self._call_log[0][0]
        wait = (oldest_timestamp + self.window_seconds) - now
        return max(wait, 0.01)

    def record_usage(self, tokens_used: int) -> None:
        """Replace the most recent reservation's estimate with actual usage.

        Args:
            tokens_used: The actual number of tokens consumed by the call.
        """
        if not self._call_log:
            return
        timestamp, _estimated = self._call_log[-1]
        self._call_log[-1] = (timestamp, tokens_used)

    def reset(self) -> None:
        """Forget all recorded calls."""
        self._call_log.clear()

    def get_status(self) -> dict[str, object]:
        """Return current limiter status for diagnostics."""
        self._prune_old_entries(self._clock())
        return {
            "target": self.target,
            "current_calls": self._current_calls(),
            "current_tokens": self._current_tokens(),
            "max_calls": self.max_calls,
            "window_seconds": self.window_seconds,
            "max_tokens": self.max_tokens,
        }


class RateLimiterRegistry:
    """Creates and holds one limiter per target, with shared limits.

    Limiters are created lazily under a threading.Lock and shared across all
    conversations, so one busy conversation cannot exceed a provider quota
    on behalf of all others.
    """

    def __init__(
        self,
        max_calls: int = 30,
        window_seconds: float = 60.0,
        max_tokens: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.max_tokens = max_tokens
        self._clock = clock
        self._limiters: dict[str, RateLimiter] = {}
        self._lock = threading.Lock()

    def get(self, target: str) -> RateLimiter:
        """Return the limiter for ``target``, creating it on first use."""
        with self._lock:
            limiter = self._limiters.get(target)
            if limiter is None:
                limiter = RateLimiter(
                    target,
                    max_calls=self.max_calls,
                    window_seconds=self.window_seconds,
                    max_tokens=self.max_tokens,
                    clock=self._clock,
                )
                self._limiters[target] = limiter
            return limiter

    def get_status(self) -> list[dict[str, object]]:
        with self._lock:
            limiters = list(self._limiters.values())
        return [limiter.get_status() for limiter in limiters]
