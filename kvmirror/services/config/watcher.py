"""
Watch Loop

Polls a namespace of the key-value store and turns the difference
between consecutive scans into Put/Delete events.

Lifecycle: IDLE -> STARTING -> RUNNING -> STOPPED. A watcher runs once;
a new listen() creates a new watcher. stop() during STARTING wins: the
baseline finishes dispatching but the timer is never armed.

Ticks are single-flight: the timer tick and any out-of-band tick
requested by sync share one lock, so one tick's scan, diff and
dispatch completes before the next begins.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum

from ...common.config import FailurePolicy, WatchSettings
from ...common.exceptions import AlreadyActiveError, RemoteUnavailableError
from ...common.logging_setup import get_service_logger, log_change_event
from ...common.scheduler import ScheduledLoop
from ...kv.client import KVClient
from ...kv.snapshot import EMPTY_SNAPSHOT, Snapshot, filter_namespace
from .diff import SnapshotDiff, compute_diff
from .events import DeleteEvent, EventDispatcher, PutEvent, dispatch_event

logger = get_service_logger("config.watcher")


class WatchState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class Watcher:
    """
    Diff-based polling watcher.

    Detection latency is bounded by settings.interval_s.
    """

    def __init__(
        self,
        client: KVClient,
        namespace: str,
        dispatcher: EventDispatcher,
        settings: WatchSettings | None = None,
    ):
        self.client = client
        self.namespace = namespace
        self.dispatcher = dispatcher
        self.settings = settings or WatchSettings(namespace=namespace)
        if self.settings.interval_s < 1:
            raise ValueError("interval_s must be >= 1")

        self._state = WatchState.IDLE
        self._last_known: Snapshot = EMPTY_SNAPSHOT
        self._tick_lock = asyncio.Lock()
        self._tick_owner: asyncio.Task | None = None
        self._scheduler: ScheduledLoop | None = None

        # Observability
        self._tick_count = 0
        self._failure_count = 0
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._last_tick_at: datetime | None = None
        self._started_at: datetime | None = None

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == WatchState.RUNNING

    @property
    def last_known(self) -> Snapshot:
        return self._last_known

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def start(self) -> None:
        """
        Emit the baseline and arm the timer.

        Raises:
            AlreadyActiveError: watcher is not IDLE
            RemoteUnavailableError: baseline scan failed (watcher goes back to IDLE)
        """
        if self._state != WatchState.IDLE or self._tick_lock.locked():
            raise AlreadyActiveError(self.namespace)

        self._state = WatchState.STARTING
        try:
            async with self._tick_lock:
                baseline = await self._scan()
                for key in sorted(baseline):
                    event = PutEvent(key, baseline[key])
                    await dispatch_event(self.dispatcher, event)
                    log_change_event(logger, event)
                self._last_known = baseline
        except BaseException:
            if self._state == WatchState.STARTING:
                self._state = WatchState.IDLE
            raise

        if self._state == WatchState.STOPPED:
            logger.info(
                f"Stopped watching {self.namespace} during baseline",
                extra={"namespace": self.namespace},
            )
            return

        self._state = WatchState.RUNNING
        self._started_at = datetime.now(timezone.utc)
        self._scheduler = ScheduledLoop(
            self.settings.interval_s,
            self._scheduled_tick,
            name=f"watch:{self.namespace}",
            on_error=self._handle_tick_error,
        )
        await self._scheduler.start()

        logger.info(
            f"Watching {self.namespace}: baseline {len(baseline)} keys, "
            f"interval {self.settings.interval_s}s",
            extra={
                "namespace": self.namespace,
                "key_count": len(baseline),
                "interval_s": self.settings.interval_s,
            },
        )

    async def stop(self) -> None:
        """
        Stop future ticks. An in-flight tick completes its dispatch first.

        Safe to call more than once, and from inside a dispatcher.
        """
        if self._state == WatchState.STOPPED:
            return
        if self._state in (WatchState.IDLE, WatchState.STARTING):
            # No timer yet; start() sees STOPPED and never arms it
            self._state = WatchState.STOPPED
            return

        self._state = WatchState.STOPPED
        if self._scheduler is not None:
            self._scheduler.stop()
            # Stopping from inside our own tick must not wait on ourselves
            if self._tick_owner is not asyncio.current_task():
                await self._scheduler.wait_stopped()

        logger.info(f"Stopped watching {self.namespace}", extra={"namespace": self.namespace})

    async def tick(self, require_running: bool = False) -> SnapshotDiff:
        """
        One scan-diff-dispatch cycle.

        A failed scan raises before anything is dispatched and leaves
        the last known snapshot untouched. With require_running, a tick
        that acquires the lock after stop() does nothing.
        """
        async with self._tick_lock:
            if require_running and not self.is_running:
                return SnapshotDiff()
            self._tick_owner = asyncio.current_task()
            try:
                diff = await self._tick_locked()
            finally:
                self._tick_owner = None

        if not diff.is_empty:
            logger.info(
                f"Tick {self.namespace}: {len(diff.puts)} puts, {len(diff.deletes)} deletes",
                extra={
                    "namespace": self.namespace,
                    "put_count": len(diff.puts),
                    "delete_count": len(diff.deletes),
                },
            )
        return diff

    async def trigger(self) -> SnapshotDiff | None:
        """
        Out-of-band tick. Waits for an in-flight tick instead of
        interleaving with it. No-op unless RUNNING.
        """
        if not self.is_running:
            return None
        return await self.tick(require_running=True)

    async def _tick_locked(self) -> SnapshotDiff:
        current = await self._scan()
        diff = compute_diff(self._last_known, current)

        for key in sorted(diff.puts):
            event = PutEvent(key, diff.puts[key])
            await dispatch_event(self.dispatcher, event)
            log_change_event(logger, event)

        for key in sorted(diff.deletes):
            if key in diff.puts:
                continue
            event = DeleteEvent(key)
            await dispatch_event(self.dispatcher, event)
            log_change_event(logger, event)

        self._last_known = current
        self._tick_count += 1
        self._consecutive_failures = 0
        self._last_tick_at = datetime.now(timezone.utc)
        return diff

    async def _scan(self) -> Snapshot:
        snapshot = await self.client.get_keys_with_prefix(self.namespace)
        snapshot, rejected = filter_namespace(snapshot, self.namespace)
        if rejected:
            logger.warning(
                f"Dropped {len(rejected)} keys outside {self.namespace}",
                extra={"namespace": self.namespace, "rejected": rejected[:10]},
            )
        return snapshot

    async def _scheduled_tick(self) -> None:
        """Timer callback: tick, retrying a failed scan per settings"""
        if not self.is_running:
            return

        attempt = 0
        while True:
            try:
                await self.tick(require_running=True)
                return
            except RemoteUnavailableError as e:
                if attempt >= self.settings.max_retries or not self.is_running:
                    raise
                delays = self.settings.retry_backoff or [1.0]
                delay = delays[min(attempt, len(delays) - 1)]
                attempt += 1
                logger.warning(
                    f"Scan of {self.namespace} failed ({e}), retry {attempt}/"
                    f"{self.settings.max_retries} in {delay:.1f}s",
                    extra={"namespace": self.namespace, "attempt": attempt},
                )
                if self._scheduler is None or not await self._scheduler.sleep(delay):
                    return

    async def _handle_tick_error(self, error: BaseException) -> bool:
        """Apply the failure policy. Returns True to keep ticking."""
        self._failure_count += 1
        self._consecutive_failures += 1
        self._last_error = str(error)

        if self.settings.failure_policy == FailurePolicy.STOP:
            logger.error(
                f"Tick failed, stopping watch of {self.namespace}: {error}",
                extra={"namespace": self.namespace},
            )
            self._state = WatchState.STOPPED
            return False

        logger.error(
            f"Tick failed, will retry next interval: {error}",
            extra={
                "namespace": self.namespace,
                "consecutive_failures": self._consecutive_failures,
            },
        )
        return True

    def stats(self) -> dict:
        """Watcher statistics for health endpoints"""
        return {
            "namespace": self.namespace,
            "state": self._state.value,
            "tick_count": self._tick_count,
            "failure_count": self._failure_count,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "key_count": len(self._last_known),
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "scheduler": self._scheduler.get_stats() if self._scheduler else None,
        }
