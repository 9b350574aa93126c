"""Shared fixtures for kvmirror tests."""

import asyncio

import pytest

from kvmirror.common.config import WatchSettings
from kvmirror.common.exceptions import RemoteUnavailableError
from kvmirror.kv.client import InMemoryKVClient
from kvmirror.services.database.pool import ExecResult

NAMESPACE = "ns/"


class RecordingDispatcher:
    """Dispatcher that records every event it receives."""

    def __init__(self):
        self.events = []

    def dispatch(self, event):
        self.events.append(event)


class FailingKVClient(InMemoryKVClient):
    """InMemoryKVClient whose scans fail while fail_scans is set."""

    def __init__(self, data=None):
        super().__init__(data)
        self.fail_scans = False
        self.scan_count = 0

    async def get_keys_with_prefix(self, prefix):
        self.scan_count += 1
        if self.fail_scans:
            raise RemoteUnavailableError("scan refused", operation="range", key=prefix)
        return await super().get_keys_with_prefix(prefix)


class FakeDriver:
    """Driver that records calls instead of talking to a database."""

    def __init__(self, driver_no):
        self.driver_no = driver_no
        self.calls = []
        self.alive = True
        self.closed = False
        self.fail_rollback = False
        self.close_delay = 0
        self.rows = []

    async def execute(self, sql, params):
        self.calls.append(("execute", sql, list(params)))
        return ExecResult(row_count=1, last_insert_id=42)

    async def fetch_all(self, sql, params):
        self.calls.append(("fetch_all", sql, list(params)))
        return list(self.rows)

    async def begin(self):
        self.calls.append(("begin",))

    async def commit(self):
        self.calls.append(("commit",))

    async def rollback(self):
        self.calls.append(("rollback",))
        if self.fail_rollback:
            raise RuntimeError("rollback failed")

    async def close(self):
        self.calls.append(("close",))
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True

    def is_alive(self):
        return self.alive and not self.closed


class FakeDialer:
    """Dialer handing out FakeDrivers, keeping every one it made."""

    def __init__(self):
        self.drivers = []
        self.fail = False

    async def dial(self):
        await asyncio.sleep(0)
        if self.fail:
            raise ConnectionError("dial refused")
        driver = FakeDriver(len(self.drivers) + 1)
        self.drivers.append(driver)
        return driver


@pytest.fixture
def kv_client():
    """In-memory store with two keys in the namespace and one outside it."""
    return FailingKVClient({"ns/a": "1", "ns/b": "2", "other/x": "9"})


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def watch_settings():
    """Long interval so the timer never fires during a test."""
    return WatchSettings(namespace=NAMESPACE, interval_s=3600)


@pytest.fixture
def dialer():
    return FakeDialer()
