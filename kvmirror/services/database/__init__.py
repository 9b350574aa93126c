"""
Database facade: bounded connection pool, chainable connections,
transactions and a small query builder.
"""

from .connection import Connection
from .database import Database
from .pool import ConnectionPool, Dialer, Driver, ExecResult, PooledHandle
from .query_builder import Expression, QueryBuilder
from .sqlite import SQLiteDialer, SQLiteDriver

__all__ = [
    "Connection",
    "ConnectionPool",
    "Database",
    "Dialer",
    "Driver",
    "ExecResult",
    "Expression",
    "PooledHandle",
    "QueryBuilder",
    "SQLiteDialer",
    "SQLiteDriver",
]
