"""
SQL Statement Building

Expression marks a value that is inlined verbatim instead of being
bound as a parameter (database functions such as NOW()).
QueryBuilder assembles SELECT statements and runs them on the
connection that created it.
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .connection import Connection

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

OPERATORS = frozenset((
    "=", "!=", "<>", "<", "<=", ">", ">=",
    "LIKE", "NOT LIKE", "IN", "NOT IN", "IS", "IS NOT",
))

# A where clause: mapping of column -> value, or (column, operator, value) tuples
Where = Mapping[str, Any] | Sequence[tuple[str, str, Any]]


class Expression:
    """Raw SQL fragment, never parameter-bound"""

    def __init__(self, value: str):
        self.value = value

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"Expression({self.value!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Expression) and other.value == self.value

    def __hash__(self) -> int:
        return hash(self.value)


def identifier(name: str) -> str:
    """Validate a table or column name"""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def placeholder(value: Any, params: list[Any]) -> str:
    """Inline an Expression, otherwise bind value and return '?'"""
    if isinstance(value, Expression):
        return value.value
    params.append(value)
    return "?"


def compile_condition(column: str, operator: str, value: Any, params: list[Any]) -> str:
    op = operator.upper().strip()
    if op not in OPERATORS:
        raise ValueError(f"Unsupported operator: {operator!r}")
    column = identifier(column)

    if op in ("IN", "NOT IN"):
        if isinstance(value, Expression):
            return f"{column} {op} ({value.value})"
        values = list(value)
        if not values:
            # Empty IN matches nothing, empty NOT IN matches everything
            return "1 = 0" if op == "IN" else "1 = 1"
        marks = ", ".join(placeholder(v, params) for v in values)
        return f"{column} {op} ({marks})"

    if value is None and op in ("=", "IS"):
        return f"{column} IS NULL"
    if value is None and op in ("!=", "<>", "IS NOT"):
        return f"{column} IS NOT NULL"

    return f"{column} {op} {placeholder(value, params)}"


def compile_where(where: Where, params: list[Any]) -> str:
    """Compile a where clause into 'a = ? AND b > ?' (no WHERE keyword)"""
    if isinstance(where, Mapping):
        conditions = [(column, "=", value) for column, value in where.items()]
    else:
        conditions = list(where)
    if not conditions:
        raise ValueError("Empty where clause")
    return " AND ".join(compile_condition(c, op, v, params) for c, op, v in conditions)


def build_insert(table: str, data: Mapping[str, Any]) -> tuple[str, list[Any]]:
    if not data:
        raise ValueError("Insert needs at least one column")
    params: list[Any] = []
    columns = ", ".join(identifier(c) for c in data)
    values = ", ".join(placeholder(v, params) for v in data.values())
    return f"INSERT INTO {identifier(table)} ({columns}) VALUES ({values})", params


def build_batch_insert(table: str, rows: Sequence[Mapping[str, Any]]) -> tuple[str, list[Any]]:
    if not rows:
        raise ValueError("Batch insert needs at least one row")
    keys = list(rows[0].keys())
    if not keys:
        raise ValueError("Insert needs at least one column")
    params: list[Any] = []
    groups = []
    for row in rows:
        if list(row.keys()) != keys:
            raise ValueError("Every row of a batch insert must have the same columns")
        groups.append("(" + ", ".join(placeholder(row[k], params) for k in keys) + ")")
    columns = ", ".join(identifier(c) for c in keys)
    return f"INSERT INTO {identifier(table)} ({columns}) VALUES {', '.join(groups)}", params


def build_update(table: str, data: Mapping[str, Any], where: Where) -> tuple[str, list[Any]]:
    if not data:
        raise ValueError("Update needs at least one column")
    params: list[Any] = []
    sets = ", ".join(f"{identifier(c)} = {placeholder(v, params)}" for c, v in data.items())
    return f"UPDATE {identifier(table)} SET {sets} WHERE {compile_where(where, params)}", params


def build_delete(table: str, where: Where) -> tuple[str, list[Any]]:
    params: list[Any] = []
    return f"DELETE FROM {identifier(table)} WHERE {compile_where(where, params)}", params


class QueryBuilder:
    """
    SELECT builder bound to one connection.

    Usage:
        rows = await (
            conn.table("users")
            .select("id", "name")
            .where("age", ">", 18)
            .order_by("name")
            .limit(10)
            .get()
        )
    """

    def __init__(self, connection: "Connection", table: str):
        self.connection = connection
        self._table = identifier(table)
        self._columns: list[str] = []
        self._joins: list[str] = []
        self._wheres: list[tuple[str, str, list[Any]]] = []  # (AND|OR, sql, params)
        self._group_by: list[str] = []
        self._order_by: list[str] = []
        self._limit: int | None = None
        self._offset: int | None = None

    def select(self, *columns: str) -> "QueryBuilder":
        """Columns are taken verbatim so aggregates and aliases work"""
        self._columns.extend(columns)
        return self

    def where(self, column: str, operator: str, value: Any) -> "QueryBuilder":
        params: list[Any] = []
        self._wheres.append(("AND", compile_condition(column, operator, value, params), params))
        return self

    def or_where(self, column: str, operator: str, value: Any) -> "QueryBuilder":
        params: list[Any] = []
        self._wheres.append(("OR", compile_condition(column, operator, value, params), params))
        return self

    def where_in(self, column: str, values: Iterable[Any]) -> "QueryBuilder":
        return self.where(column, "IN", list(values))

    def join(self, table: str, on: str, kind: str = "INNER") -> "QueryBuilder":
        kind = kind.upper()
        if kind not in ("INNER", "LEFT", "RIGHT", "CROSS"):
            raise ValueError(f"Unsupported join: {kind}")
        self._joins.append(f"{kind} JOIN {identifier(table)} ON {on}")
        return self

    def left_join(self, table: str, on: str) -> "QueryBuilder":
        return self.join(table, on, "LEFT")

    def group_by(self, *columns: str) -> "QueryBuilder":
        self._group_by.extend(identifier(c) for c in columns)
        return self

    def order_by(self, column: str, direction: str = "ASC") -> "QueryBuilder":
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise ValueError(f"Invalid sort direction: {direction}")
        self._order_by.append(f"{identifier(column)} {direction}")
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._limit = int(count)
        return self

    def offset(self, count: int) -> "QueryBuilder":
        self._offset = int(count)
        return self

    def build(self, columns: str | None = None) -> tuple[str, list[Any]]:
        """Return (sql, params)"""
        params: list[Any] = []
        select = columns or (", ".join(self._columns) if self._columns else "*")
        parts = [f"SELECT {select} FROM {self._table}"]
        parts.extend(self._joins)

        if self._wheres:
            clause = ""
            for i, (glue, sql, where_params) in enumerate(self._wheres):
                clause += sql if i == 0 else f" {glue} {sql}"
                params.extend(where_params)
            parts.append(f"WHERE {clause}")

        if self._group_by:
            parts.append("GROUP BY " + ", ".join(self._group_by))
        if self._order_by:
            parts.append("ORDER BY " + ", ".join(self._order_by))
        if self._limit is not None:
            parts.append(f"LIMIT {self._limit}")
            if self._offset is not None:
                parts.append(f"OFFSET {self._offset}")
        elif self._offset is not None:
            parts.append(f"LIMIT -1 OFFSET {self._offset}")

        return " ".join(parts), params

    async def get(self) -> list[dict[str, Any]]:
        sql, params = self.build()
        return await self.connection.prepare(sql, params).query_all()

    async def first(self) -> dict[str, Any] | None:
        saved = self._limit
        self._limit = 1
        try:
            sql, params = self.build()
        finally:
            self._limit = saved
        return await self.connection.prepare(sql, params).query_one()

    def build_count(self) -> tuple[str, list[Any]]:
        """COUNT(*) over the query; grouped queries count their groups"""
        if self._group_by:
            sql, params = self.build()
            return f"SELECT COUNT(*) AS count FROM ({sql}) AS grouped", params
        return self.build(columns="COUNT(*) AS count")

    async def count(self) -> int:
        sql, params = self.build_count()
        value = await self.connection.prepare(sql, params).query_scalar()
        return int(value or 0)
