"""
SQLite Driver

Blocking sqlite3 calls run in the default executor so the event loop
never waits on disk. Transactions are explicit (isolation_level=None,
BEGIN/COMMIT/ROLLBACK issued by the caller).
"""

import asyncio
import itertools
import sqlite3
from pathlib import Path
from typing import Any

from ...common.logging_setup import get_service_logger
from .pool import ExecResult

logger = get_service_logger("database.sqlite")

_memory_ids = itertools.count(1)


class SQLiteDriver:
    """One sqlite3 connection"""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self._closed = False

    async def _run_db(self, func, *args):
        """Run a blocking sqlite3 call in a thread"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _execute(self, sql: str, params: list[Any]) -> ExecResult:
        cursor = self._conn.execute(sql, params)
        try:
            return ExecResult(row_count=cursor.rowcount, last_insert_id=cursor.lastrowid)
        finally:
            cursor.close()

    def _fetch_all(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        cursor = self._conn.execute(sql, params)
        try:
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    async def execute(self, sql: str, params: list[Any]) -> ExecResult:
        return await self._run_db(self._execute, sql, params)

    async def fetch_all(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        return await self._run_db(self._fetch_all, sql, params)

    async def begin(self) -> None:
        await self._run_db(self._conn.execute, "BEGIN")

    async def commit(self) -> None:
        await self._run_db(self._conn.execute, "COMMIT")

    async def rollback(self) -> None:
        await self._run_db(self._conn.execute, "ROLLBACK")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._run_db(self._conn.close)

    def is_alive(self) -> bool:
        if self._closed:
            return False
        try:
            self._conn.execute("SELECT 1").close()
        except sqlite3.Error:
            return False
        return True


class SQLiteDialer:
    """
    Opens SQLiteDriver connections to one database.

    ":memory:" becomes a named shared-cache in-memory database so every
    pooled connection sees the same data. It lives while at least one
    connection to it is open.
    """

    def __init__(self, path: str | Path = ":memory:", timeout: float = 10.0):
        self.timeout = timeout
        if str(path) == ":memory:":
            self.database = f"file:kvmirror_mem_{next(_memory_ids)}?mode=memory&cache=shared"
            self.uri = True
        else:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            self.database = str(path)
            self.uri = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
            uri=self.uri,
        )
        conn.row_factory = sqlite3.Row
        if not self.uri:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    async def dial(self) -> SQLiteDriver:
        loop = asyncio.get_running_loop()
        conn = await loop.run_in_executor(None, self._connect)
        return SQLiteDriver(conn)
