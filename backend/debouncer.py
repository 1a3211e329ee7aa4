"""Per-key debounced side effects.

A burst of ``notify(key)`` calls produces one action run, ``delay_seconds``
after the last call. ``immediate(key)`` drops any pending timer and runs
the action now, for callers that must wait for it. Action failures are
logged and swallowed: a side effect must never block a conversation turn.

Usage:
    >>> debouncer = Debouncer(scribe.update, delay_seconds=60.0, name="scribe")
    >>> debouncer.notify("conv_abc123")   # returns immediately
    >>> await debouncer.immediate("conv_abc123")
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

DebouncedAction = Callable[[str], Awaitable[None]]


class Debouncer:
    """Cancellable timer per key.

    Timers are held in an explicit ``dict[str, asyncio.Task]``. A timer is
    removed from the map before its action starts, so a later ``notify``
    schedules a new run instead of cancelling one that is in progress.

    Attributes:
        delay_seconds: Quiet period before the action fires.
        name: Label for log events.
    """

    def __init__(
        self,
        action: DebouncedAction,
        delay_seconds: float,
        name: str = "debouncer",
    ) -> None:
        self._action = action
        self.delay_seconds = delay_seconds
        self.name = name
        self._timers: dict[str, asyncio.Task[None]] = {}

    def notify(self, key: str) -> None:
        """Cancel any pending timer for ``key`` and schedule a new one."""
        self._cancel_timer(key)
        self._timers[key] = asyncio.create_task(
            self._fire_later(key), name=f"{self.name}_{key}"
        )

    async def immediate(self, key: str) -> None:
        """Cancel any pending timer for ``key`` and run the action now."""
        self._cancel_timer(key)
        await self._run(key)

    def is_pending(self, key: str) -> bool:
        timer = self._timers.get(key)
        return timer is not None and not timer.done()

    async def cancel_all(self) -> None:
        """Cancel every pending timer and wait for the cancellations to settle."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            with contextlib.suppress(asyncio.CancelledError):
                await timer
        if timers:
            logger.info("debouncer_cancelled_all", name=self.name, count=len(timers))

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None and not timer.done():
            timer.cancel()

    async def _fire_later(self, key: str) -> None:
        await asyncio.sleep(self.delay_seconds)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        await self._run(key)

    async def _run(self, key: str) -> None:
        try:
            await self._action(key)
        except Exception as e:
            logger.error(
                "debounced_action_failed",
                name=self.name,
                key=key,
                error_type=type(e).__name__,
                error=str(e),
            )
