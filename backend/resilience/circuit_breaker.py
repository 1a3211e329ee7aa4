"""Per-target circuit breakers.

A breaker stops calling a target that keeps failing. After ``reset_timeout``
seconds it lets a single trial call through (half-open). A successful trial call
closes the circuit; failed trial calls re-open it once ``half_open_max_attempts``
is reached. While a trial call is in flight every other caller fails fast.

Breakers are created lazily by ``CircuitBreakerRegistry`` and live for the
lifetime of the registry, so a failing agent is penalised across all
conversations.
"""

import threading
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TypeVar

import structlog

from errors import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Failure isolation for one call target.

    Attributes:
        target: The key this breaker protects (e.g. an agent id).
        failure_threshold: Failures that open a closed circuit.
        reset_timeout: Seconds an open circuit waits before probing.
        half_open_max_attempts: Failed trial calls that re-open the circuit.
    """

    def __init__(
        self,
        target: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = max(1, half_open_max_attempts)
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        self._half_open_attempts = 0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> float | None:
        return self._last_failure_at

    @property
    def half_open_attempts(self) -> int:
        return self._half_open_attempts

    def retry_after(self) -> float:
        """Seconds until an open circuit admits a trial call (0 when not open)."""
        if self._state != CircuitState.OPEN or self._last_failure_at is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_at
        return max(0.0, self.reset_timeout - elapsed)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn`` under breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open (``fn`` is not called).
            Exception: Whatever ``fn`` raised; the failure is recorded first.
        """
        is_trial = self._admit()
        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False
        self._on_success()
        return result

    def reset(self) -> None:
        """Force the circuit closed and clear all counters."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_attempts = 0
        self._last_failure_at = None
        self._trial_in_flight = False
        logger.info("circuit_breaker_reset", target=self.target)

    def _admit(self) -> bool:
        """Raise if the call must fail fast; return True if it is the trial call."""
        if self._state == CircuitState.OPEN:
            if self.retry_after() > 0:
                raise CircuitOpenError(self.target, self.retry_after())
            self._state = CircuitState.HALF_OPEN
            self._half_open_attempts = 0
            logger.info(
                "circuit_breaker_half_open",
                target=self.target,
            )

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.target, 0.0)
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self) -> None:
        self._failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._half_open_attempts = 0
            logger.info("circuit_breaker_closed", target=self.target)

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            self._half_open_attempts += 1
            if self._half_open_attempts >= self.half_open_max_attempts:
                self._state = CircuitState.OPEN
                self._half_open_attempts = 0
                logger.warning(
                    "circuit_breaker_reopened",
                    target=self.target,
                    failure_count=self._failure_count,
                )
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            logger.warning(
                "circuit_breaker_opened",
                target=self.target,
                failure_count=self._failure_count,
                threshold=self.failure_threshold,
            )


class CircuitBreakerRegistry:
    """Lazily creates and holds one breaker per target.

    Thread Safety:
        Breaker creation is guarded by a threading.Lock so two callers never
        end up with different breakers for the same target.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, target: str) -> CircuitBreaker:
        """Return the breaker for ``target``, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(target)
            if breaker is None:
                breaker = CircuitBreaker(
                    target,
                    failure_threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    half_open_max_attempts=self.half_open_max_attempts,
                    clock=self._clock,
                )
                self._breakers[target] = breaker
                logger.debug("circuit_breaker_created", target=target)
            return breaker

    def open_targets(self) -> list[str]:
        """Targets whose circuit is currently not closed."""
        with self._lock:
            return [
                target
                for target, breaker in self._breakers.items()
                if breaker.state != CircuitState.CLOSED
            ]

    def reset(self, target: str) -> None:
        """Reset one target's breaker (no-op if it was never created)."""
        with self._lock:
            breaker = self._breakers.get(target)
        if breaker is not None:
            breaker.reset()
