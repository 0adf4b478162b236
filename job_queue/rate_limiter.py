"""
Rate Limiter — keeps coordinator requests at least `interval` seconds apart.

The wrapped function is an async callable returning True when more work
remains. One background task owns the schedule:

    IDLE ──trigger()──▶ WAITING ──interval elapsed──▶ RUNNING
      ▲                    ▲                             │
      │                    └──────── fn() → True ────────┤
      └──────────────────────────── fn() → False / error ┘

Triggers that arrive while WAITING or RUNNING are remembered, so a push that
races the end of a drain is still picked up.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Awaitable, Callable, Optional

from models.schemas import LimiterState

logger = structlog.get_logger()

DEFAULT_EPSILON = 0.01


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(drain.drain_step, interval=5.0, name="profile")
        await limiter.start()
        limiter.trigger()           # from any callback on the loop
        await limiter.stop()
    """

    def __init__(
        self,
        fn: Callable[[], Awaitable[bool]],
        interval: float,
        *,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
        epsilon: float = DEFAULT_EPSILON,
    ):
        self.fn = fn
        self.interval = interval
        self.name = name
        self._clock = clock
        self._epsilon = epsilon
        self._last_start: Optional[float] = None
        self._wake = asyncio.Event()
        self._state = LimiterState.IDLE
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def state(self) -> LimiterState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> asyncio.Task:
        """Start the scheduling task. Returns the task handle."""
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=f"rate_limiter:{self.name}")
            logger.info("rate_limiter_started", limiter=self.name, interval=self.interval)
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._state = LimiterState.IDLE
        logger.info("rate_limiter_stopped", limiter=self.name, runs=self.runs)

    def trigger(self):
        """Request a run. Safe to call any number of times."""
        self._wake.set()

    def remaining_wait(self) -> float:
        """Seconds until the next run may start (0 when it may start now)."""
        if self._last_start is None:
            return 0.0
        elapsed = self._clock() - self._last_start
        if elapsed > self.interval:
            return 0.0
        return self.interval - elapsed + self._epsilon

    async def _run(self):
        while True:
            self._state = LimiterState.IDLE
            await self._wake.wait()
            self._wake.clear()

            more = True
            while more:
                delay = self.remaining_wait()
                if delay > 0:
                    self._state = LimiterState.WAITING
                    await asyncio.sleep(delay)
                    continue

                self._state = LimiterState.RUNNING
                self._last_start = self._clock()
                self.runs += 1
                try:
                    more = bool(await self.fn())
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("rate_limited_call_failed",
                                 limiter=self.name,
                                 error=str(e),
                                 exc_info=True)
                    more = False
