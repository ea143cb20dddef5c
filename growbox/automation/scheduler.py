"""Scheduler loop: drives one engine tick per interval.

Ticks never overlap: the loop awaits each tick before scheduling the next.
When a tick overruns its interval, the slots it covered are skipped rather
than queued, so a slow tick never turns into a burst of catch-up ticks.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from loguru import logger

from growbox.automation.engine import AutomationEngine


def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
) -> asyncio.Task:
    """Wrap ``asyncio.create_task`` with an error-logging callback.

    If the task raises an exception (other than ``CancelledError``),
    it is logged as an error instead of becoming an unhandled exception.
    """
    task = asyncio.create_task(coro, name=name or None)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("[Scheduler] supervised task {!r} failed: {!r}", t.get_name(), exc)

    task.add_done_callback(_on_done)
    return task


class AutomationScheduler:
    """Runs ``engine.tick()`` at a fixed cadence in a background task.

    Parameters
    ----------
    engine:
        The automation engine to drive.
    interval:
        Seconds between tick starts.
    stop_grace:
        Seconds ``stop()`` waits for an in-flight tick before cancelling it.
    """

    def __init__(
        self,
        engine: AutomationEngine,
        interval: float = 5.0,
        stop_grace: float = 5.0,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.engine = engine
        self.interval = interval
        self.stop_grace = stop_grace
        self.overrun_skips = 0
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_tick(self) -> None:
        try:
            await self.engine.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[Scheduler] tick failed")

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info("[Scheduler] started (interval={:.1f}s)", self.interval)
        next_at = loop.time()
        while not self._stopping.is_set():
            await self._run_tick()
            next_at += self.interval
            now = loop.time()
            if now > next_at:
                missed = int((now - next_at) // self.interval) + 1
                self.overrun_skips += missed
                next_at += missed * self.interval
                logger.warning(
                    "[Scheduler] tick overran its interval, skipping {} tick(s)", missed,
                )
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, next_at - now))
            except asyncio.TimeoutError:
                pass
        logger.info("[Scheduler] stopped")

    def start(self) -> None:
        """Start the loop as a background task."""
        if self.running:
            logger.warning("[Scheduler] already running")
            return
        self._stopping.clear()
        self._task = supervised_task(self._loop(), name="automation-scheduler")

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight tick finish within the grace period.

        A tick still running after ``stop_grace`` seconds is cancelled; its
        unfinished dispatches are recorded with an ``unknown`` outcome.
        """
        if self._task is None:
            return
        self._stopping.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.stop_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "[Scheduler] tick still running after {:.1f}s, cancelling", self.stop_grace,
            )
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except asyncio.CancelledError:
            if not task.done():
                raise
        finally:
            self._task = None
