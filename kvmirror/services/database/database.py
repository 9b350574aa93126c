"""
Database Facade

Pool-backed entry point. Every statement helper borrows a fresh
connection and hands it to the caller, who owns it until release().
transaction() is the one helper that borrows and releases itself.
"""

from collections.abc import Mapping, Sequence
from typing import Any, Awaitable, Callable, TypeVar

from ...common.config import DatabaseSettings, PoolSettings
from ...common.logging_setup import get_service_logger
from .connection import Connection
from .pool import ConnectionPool, Dialer
from .query_builder import Expression, QueryBuilder, Where
from .sqlite import SQLiteDialer

logger = get_service_logger("database")

T = TypeVar("T")


class Database:
    """
    Usage:
        db = Database.from_settings(config.database)
        conn = await db.insert("events", {"key": "a", "at": Database.raw("CURRENT_TIMESTAMP")})
        await conn.execute()
        await conn.release()

        await db.transaction(lambda conn: ...)
    """

    def __init__(self, dialer: Dialer, settings: PoolSettings | None = None):
        self.pool = ConnectionPool.from_settings(dialer, settings or PoolSettings())

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        return cls(SQLiteDialer(settings.path), settings.pool)

    async def borrow(self) -> Connection:
        handle = await self.pool.borrow()
        return Connection(self.pool, handle)

    async def prepare(self, sql: str, params: Sequence[Any] | None = None) -> Connection:
        return await self._borrowed(lambda conn: conn.prepare(sql, params))

    async def insert(self, table: str, data: Mapping[str, Any]) -> Connection:
        return await self._borrowed(lambda conn: conn.insert(table, data))

    async def batch_insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> Connection:
        return await self._borrowed(lambda conn: conn.batch_insert(table, rows))

    async def update(self, table: str, data: Mapping[str, Any], where: Where) -> Connection:
        return await self._borrowed(lambda conn: conn.update(table, data, where))

    async def delete(self, table: str, where: Where) -> Connection:
        return await self._borrowed(lambda conn: conn.delete(table, where))

    async def table(self, table: str) -> QueryBuilder:
        """Query builder on a borrowed connection; release it via builder.connection.release()"""
        conn = await self.borrow()
        try:
            return conn.table(table)
        except Exception:
            await conn.release()
            raise

    async def begin_transaction(self) -> Connection:
        """Borrow a connection with a transaction already open"""
        conn = await self.borrow()
        try:
            return await conn.begin_transaction()
        except Exception:
            await conn.release(discard=True)
            raise

    async def transaction(self, fn: Callable[[Connection], Awaitable[T] | T]) -> T:
        """
        Run fn(conn) in a transaction on a freshly borrowed connection.

        Commits on success. On error rolls back before the error
        propagates. The connection is released exactly once either way.
        """
        conn = await self.borrow()
        try:
            return await conn.transaction(fn)
        finally:
            await conn.release()

    @staticmethod
    def raw(value: str) -> Expression:
        """SQL fragment inlined verbatim, e.g. Database.raw("CURRENT_TIMESTAMP")"""
        return Expression(value)

    async def _borrowed(self, build: Callable[[Connection], Connection]) -> Connection:
        # Statement build errors must not leak the borrowed connection
        conn = await self.borrow()
        try:
            return build(conn)
        except Exception:
            await conn.release()
            raise

    async def close(self) -> None:
        await self.pool.close()

    def get_stats(self) -> dict:
        return self.pool.get_stats()
