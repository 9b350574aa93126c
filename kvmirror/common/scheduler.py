"""
Interval Scheduler

Provides ScheduledLoop, which fires an async callback at fixed
wall-clock intervals, accounting for callback execution time.

- Fires at interval boundaries, not "sleep after work"
- Skips missed intervals instead of queueing them
- Never overlaps two callback runs
- Stopping never interrupts a running callback: stop() wakes the
  sleeper, and an in-flight callback finishes before the loop exits

Usage:
    async def tick():
        ...

    scheduler = ScheduledLoop(5.0, tick, name="watch")
    await scheduler.start()

    # Later:
    scheduler.stop()
    await scheduler.wait_stopped()
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")

# Returns True to keep the loop running after a callback error
ErrorHook = Callable[[BaseException], Awaitable[bool]]


class ScheduledLoop:
    """
    Precise interval scheduler that accounts for execution time.

    Attributes:
        interval: The interval in seconds between executions
        callback: Async function to call each interval
        on_error: Optional async hook deciding whether to continue after an error
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        on_error: ErrorHook | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.on_error = on_error

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

        # Observability metrics
        self._drift_total: float = 0
        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0
        self._last_drift_ms: float = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduled loop in a background task."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"scheduler:{self.name}")

    def stop(self) -> None:
        """Request the loop to stop. A callback already running is left to finish."""
        self._running = False
        self._stop_event.set()

    async def wait_stopped(self) -> None:
        """Wait until the background task has exited."""
        task = self._task
        if task is None:
            return
        if task is asyncio.current_task():
            # Called from inside the callback: the task exits once it returns
            return
        await task
        self._task = None

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep that wakes early on stop().

        Returns:
            True if the full duration elapsed, False if stop() was requested
        """
        if seconds <= 0:
            return self._running
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return False
        except asyncio.TimeoutError:
            return self._running

    async def _run(self) -> None:
        """Main loop that fires callback at exact intervals."""
        now = time.time()
        self._next_run = ((now // self.interval) + 1) * self.interval

        while self._running:
            if not await self.sleep(self._next_run - time.time()):
                break

            actual_time = time.time()
            drift = actual_time - self._next_run

            if drift > 30:
                # Clock jump (suspend/resume, NTP correction), not real drift
                logger.info(
                    f"Scheduler '{self.name}' clock jump detected ({drift:.0f}s), realigning"
                )
                self._last_drift_ms = 0
            else:
                self._drift_total += max(0, drift)
                self._last_drift_ms = drift * 1000

            try:
                start = time.time()
                await self.callback()
                self._last_execution_time = time.time() - start
                self._execution_count += 1
            except Exception as e:
                self._error_count += 1
                keep_running = True
                if self.on_error is not None:
                    keep_running = await self.on_error(e)
                else:
                    logger.error(f"Scheduled callback '{self.name}' error: {e}")
                if not keep_running:
                    self._running = False
                    break

            # Skip missed intervals to catch up
            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

        self._running = False

    @property
    def drift_seconds(self) -> float:
        """Total accumulated drift in seconds."""
        return self._drift_total

    @property
    def skipped_count(self) -> int:
        """Number of intervals skipped to catch up."""
        return self._skipped_count

    @property
    def execution_count(self) -> int:
        """Total number of successful executions."""
        return self._execution_count

    @property
    def error_count(self) -> int:
        return self._error_count

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self._running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
