"""
Connection Pool

Bounded pool of lazily-dialed database connections:
- Reuses idle connections, dialing only when none is idle
- Never lends more than max_active connections at once
- Keeps at most max_idle connections cached; extras are closed
- Borrow/release and the active/idle counters share one asyncio.Condition
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from ...common.config import ExhaustedPolicy, PoolSettings
from ...common.exceptions import PoolError, PoolExhaustedError
from ...common.logging_setup import get_service_logger

logger = get_service_logger("database.pool")


@dataclass
class ExecResult:
    """Outcome of a write statement"""
    row_count: int = 0
    last_insert_id: int | None = None


@runtime_checkable
class Driver(Protocol):
    """One live database connection"""

    async def execute(self, sql: str, params: list[Any]) -> ExecResult:
        ...

    async def fetch_all(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        ...

    async def begin(self) -> None:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...

    async def close(self) -> None:
        ...

    def is_alive(self) -> bool:
        ...


@runtime_checkable
class Dialer(Protocol):
    """Opens new driver connections"""

    async def dial(self) -> Driver:
        ...


@dataclass
class _IdleDriver:
    driver: Driver
    driver_id: int
    created_at: datetime
    use_count: int


@dataclass
class PooledHandle:
    """
    Exclusive lease on one driver.

    A fresh handle is issued per borrow, so a released handle can never
    reach a driver that has since been lent to someone else.
    """
    _driver: Driver
    driver_id: int
    created_at: datetime
    use_count: int = 1
    borrowed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    in_transaction: bool = False
    released: bool = False

    @property
    def driver(self) -> Driver:
        if self.released:
            raise PoolError(f"connection #{self.driver_id} used after release")
        return self._driver


class ConnectionPool:
    """
    Database connection pool.

    When all max_active connections are lent out, borrow() either waits
    for a release (BLOCK, optionally bounded by wait_timeout_s) or raises
    PoolExhaustedError immediately (FAIL).
    """

    def __init__(
        self,
        dialer: Dialer,
        max_idle: int = 5,
        max_active: int = 5,
        exhausted_policy: ExhaustedPolicy = ExhaustedPolicy.BLOCK,
        wait_timeout_s: float | None = None,
    ):
        if max_idle < 0:
            raise ValueError("max_idle cannot be negative")
        if max_active < 1:
            raise ValueError("max_active must be >= 1")

        self.dialer = dialer
        self.max_idle = max_idle
        self.max_active = max_active
        self.exhausted_policy = exhausted_policy
        self.wait_timeout_s = wait_timeout_s

        self._idle: list[_IdleDriver] = []
        self._active = 0
        self._condition = asyncio.Condition()
        self._closed = False
        self._ids = itertools.count(1)

        # Observability
        self._dial_count = 0
        self._borrow_count = 0
        self._wait_count = 0
        self._exhausted_count = 0

    @classmethod
    def from_settings(cls, dialer: Dialer, settings: PoolSettings) -> "ConnectionPool":
        return cls(
            dialer,
            max_idle=settings.max_idle,
            max_active=settings.max_active,
            exhausted_policy=settings.exhausted_policy,
            wait_timeout_s=settings.wait_timeout_s,
        )

    @property
    def active_count(self) -> int:
        """Connections currently lent out (or being dialed)"""
        return self._active

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def closed(self) -> bool:
        return self._closed

    async def borrow(self) -> PooledHandle:
        """
        Borrow a connection.

        Raises:
            PoolExhaustedError: FAIL policy, or BLOCK wait timed out
            PoolError: pool is closed
        """
        dead: list[_IdleDriver] = []
        reserved = False
        try:
            async with self._condition:
                started = time.monotonic()
                while True:
                    if self._closed:
                        raise PoolError("pool is closed")

                    while self._idle:
                        entry = self._idle.pop()
                        if not entry.driver.is_alive():
                            dead.append(entry)
                            continue
                        self._active += 1
                        self._borrow_count += 1
                        return PooledHandle(
                            entry.driver,
                            entry.driver_id,
                            entry.created_at,
                            use_count=entry.use_count + 1,
                        )

                    if self._active < self.max_active:
                        # Reserve the slot, dial outside the lock
                        self._active += 1
                        reserved = True
                        break

                    if self.exhausted_policy == ExhaustedPolicy.FAIL:
                        self._exhausted_count += 1
                        raise PoolExhaustedError(self.max_active)

                    self._wait_count += 1
                    if self.wait_timeout_s is None:
                        await self._condition.wait()
                        continue

                    remaining = self.wait_timeout_s - (time.monotonic() - started)
                    try:
                        if remaining <= 0:
                            raise asyncio.TimeoutError
                        await asyncio.wait_for(self._condition.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        self._exhausted_count += 1
                        raise PoolExhaustedError(
                            self.max_active, waited_s=time.monotonic() - started
                        ) from None
        finally:
            try:
                for entry in dead:
                    await self._close_driver(entry.driver, entry.driver_id, "failed health check")
            except BaseException:
                # Cancelled while closing: hand back the slot reserved for the dial
                if reserved:
                    await self._free_slot()
                raise

        return await self._dial()

    async def _free_slot(self) -> None:
        async with self._condition:
            self._active -= 1
            self._condition.notify()

    async def _dial(self) -> PooledHandle:
        try:
            driver = await self.dialer.dial()
        except BaseException:
            await self._free_slot()
            raise

        driver_id = next(self._ids)
        self._dial_count += 1
        self._borrow_count += 1
        logger.debug(f"Dialed connection #{driver_id}", extra={"driver_id": driver_id})
        return PooledHandle(driver, driver_id, datetime.now(timezone.utc))

    async def release(self, handle: PooledHandle, discard: bool = False) -> None:
        """
        Return a borrowed connection.

        Kept idle if there is room under max_idle, otherwise closed.
        A handle released inside an open transaction is always closed.

        Raises:
            PoolError: handle was already released
        """
        if handle.released:
            raise PoolError(f"connection #{handle.driver_id} already released")
        handle.released = True
        driver = handle._driver

        to_close = False
        async with self._condition:
            self._active -= 1
            if (
                discard
                or self._closed
                or handle.in_transaction
                or len(self._idle) >= self.max_idle
                or not driver.is_alive()
            ):
                to_close = True
            else:
                self._idle.append(
                    _IdleDriver(driver, handle.driver_id, handle.created_at, handle.use_count)
                )
            self._condition.notify()

        if to_close:
            await self._close_driver(driver, handle.driver_id, "released over max_idle" if not discard else "discarded")

    async def _close_driver(self, driver: Driver, driver_id: int, reason: str) -> None:
        try:
            await driver.close()
        except Exception as e:
            logger.warning(f"Error closing connection #{driver_id}: {e}")
        else:
            logger.debug(f"Closed connection #{driver_id} ({reason})", extra={"driver_id": driver_id})

    async def close(self) -> None:
        """Close idle connections and refuse new borrows. Lent connections close on release."""
        async with self._condition:
            self._closed = True
            idle, self._idle = self._idle, []
            self._condition.notify_all()

        for entry in idle:
            await self._close_driver(entry.driver, entry.driver_id, "pool closed")

        logger.info(f"Connection pool closed ({len(idle)} idle connections)")

    def get_stats(self) -> dict:
        """Get connection pool statistics"""
        return {
            "max_idle": self.max_idle,
            "max_active": self.max_active,
            "active": self._active,
            "idle": len(self._idle),
            "closed": self._closed,
            "dial_count": self._dial_count,
            "borrow_count": self._borrow_count,
            "wait_count": self._wait_count,
            "exhausted_count": self._exhausted_count,
            "policy": self.exhausted_policy.value,
        }
