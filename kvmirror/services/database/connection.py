"""
Pooled Connection

One borrowed connection, exclusively owned by the caller until
release(). Statement builders (prepare, insert, update, ...) return
the connection itself so calls chain:

    conn = await db.insert("users", {"name": "ada"})
    result = await conn.execute()
    await conn.release()
"""

import inspect
from collections.abc import Mapping, Sequence
from typing import Any, Awaitable, Callable, TypeVar

from ...common.exceptions import PoolError, TransactionError
from ...common.logging_setup import get_service_logger
from .pool import ConnectionPool, Driver, ExecResult, PooledHandle
from .query_builder import (
    QueryBuilder,
    Where,
    build_batch_insert,
    build_delete,
    build_insert,
    build_update,
)

logger = get_service_logger("database.connection")

T = TypeVar("T")


class Connection:
    """Exclusive unit of work over one pooled connection"""

    def __init__(self, pool: ConnectionPool, handle: PooledHandle):
        self._pool = pool
        self._handle = handle
        self._sql: str | None = None
        self._params: list[Any] = []
        # Set when a rollback fails; the driver may still hold a transaction
        self._discard = False

        self.row_count = 0
        self.last_insert_id: int | None = None

    @property
    def released(self) -> bool:
        return self._handle.released

    @property
    def in_transaction(self) -> bool:
        return self._handle.in_transaction

    @property
    def driver(self) -> Driver:
        return self._handle.driver

    @property
    def statement(self) -> tuple[str | None, list[Any]]:
        """The prepared (sql, params)"""
        return self._sql, list(self._params)

    # ============================================
    # STATEMENT BUILDERS
    # ============================================

    def prepare(self, sql: str, params: Sequence[Any] | None = None) -> "Connection":
        if self.released:
            raise PoolError("connection used after release")
        self._sql = sql
        self._params = list(params or [])
        return self

    def insert(self, table: str, data: Mapping[str, Any]) -> "Connection":
        return self.prepare(*build_insert(table, data))

    def batch_insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> "Connection":
        return self.prepare(*build_batch_insert(table, rows))

    def update(self, table: str, data: Mapping[str, Any], where: Where) -> "Connection":
        return self.prepare(*build_update(table, data, where))

    def delete(self, table: str, where: Where) -> "Connection":
        return self.prepare(*build_delete(table, where))

    def table(self, table: str) -> QueryBuilder:
        """Start a query builder on this connection"""
        return QueryBuilder(self, table)

    # ============================================
    # EXECUTION
    # ============================================

    def _require_statement(self) -> tuple[str, list[Any]]:
        if self._sql is None:
            raise PoolError("no statement prepared")
        return self._sql, self._params

    async def execute(self) -> ExecResult:
        sql, params = self._require_statement()
        result = await self.driver.execute(sql, params)
        self.row_count = result.row_count
        self.last_insert_id = result.last_insert_id
        logger.debug(f"Executed: {sql}", extra={"row_count": result.row_count})
        return result

    async def query_all(self) -> list[dict[str, Any]]:
        sql, params = self._require_statement()
        rows = await self.driver.fetch_all(sql, params)
        self.row_count = len(rows)
        return rows

    async def query_one(self) -> dict[str, Any] | None:
        rows = await self.query_all()
        return rows[0] if rows else None

    async def query_scalar(self) -> Any:
        row = await self.query_one()
        if not row:
            return None
        return next(iter(row.values()))

    # ============================================
    # TRANSACTIONS
    # ============================================

    async def begin_transaction(self) -> "Connection":
        if self.in_transaction:
            raise TransactionError("transaction already active")
        await self.driver.begin()
        self._handle.in_transaction = True
        return self

    async def commit(self) -> None:
        if not self.in_transaction:
            raise TransactionError("commit without active transaction")
        await self.driver.commit()
        self._handle.in_transaction = False

    async def rollback(self) -> None:
        if not self.in_transaction:
            raise TransactionError("rollback without active transaction")
        try:
            await self.driver.rollback()
        except BaseException:
            self._discard = True
            raise
        finally:
            self._handle.in_transaction = False

    async def transaction(self, fn: Callable[["Connection"], Awaitable[T] | T]) -> T:
        """
        Run fn inside a transaction on this connection.

        Commits on normal return. On any error rolls back, then re-raises
        the original error; a failing rollback is logged, never raised
        in its place, and the connection is discarded on release. Does
        not release the connection.
        """
        await self.begin_transaction()
        try:
            result = fn(self)
            if inspect.isawaitable(result):
                result = await result
        except BaseException as e:
            try:
                await self.rollback()
            except Exception as rollback_error:
                logger.error(
                    f"Rollback failed after {type(e).__name__}: {rollback_error}",
                    exc_info=True,
                )
            raise
        await self.commit()
        return result

    # ============================================
    # OWNERSHIP
    # ============================================

    async def release(self, discard: bool = False) -> None:
        """
        Return the connection to the pool.

        An open transaction is rolled back first. A connection whose
        rollback ever failed is discarded instead of reused.
        """
        if self.in_transaction and not self.released:
            try:
                await self.rollback()
            except Exception as e:
                logger.warning(f"Rollback on release failed, discarding connection: {e}")
        await self._pool.release(self._handle, discard=discard or self._discard)

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if not self.released:
            await self.release()
        return False
