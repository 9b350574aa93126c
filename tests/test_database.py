"""Tests for the database facade, connections and SQLite driver."""

from unittest.mock import patch

import pytest
import pytest_asyncio

from kvmirror.common.config import DatabaseSettings, ExhaustedPolicy, PoolSettings
from kvmirror.common.exceptions import PoolError, PoolExhaustedError, TransactionError
from kvmirror.services.database import Database, Expression
from kvmirror.services.database.pool import ConnectionPool
from kvmirror.services.database.sqlite import SQLiteDialer


@pytest.fixture
def fake_db(dialer):
    return Database(dialer, PoolSettings(max_idle=2, max_active=2))


@pytest_asyncio.fixture
async def sqlite_db(tmp_path):
    db = Database.from_settings(DatabaseSettings(path=str(tmp_path / "test.db")))
    conn = await db.prepare(
        "CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, "
        "name TEXT NOT NULL, age INTEGER, created TEXT)"
    )
    await conn.execute()
    await conn.release()
    yield db
    await db.close()


class TestFacadeWithFakeDriver:
    """Tests for Database/Connection against a recording driver."""

    @pytest.mark.asyncio
    async def test_insert_builds_statement(self, fake_db, dialer):
        """Test insert() prepares a parameterized INSERT."""
        conn = await fake_db.insert("users", {"name": "ada", "created": Database.raw("NOW()")})
        result = await conn.execute()
        await conn.release()

        assert dialer.drivers[0].calls[0] == (
            "execute",
            "INSERT INTO users (name, created) VALUES (?, NOW())",
            ["ada"],
        )
        assert result.last_insert_id == 42
        assert conn.last_insert_id == 42
        assert conn.row_count == 1

    @pytest.mark.asyncio
    async def test_helpers_chain_on_borrowed_connection(self, fake_db, dialer):
        """Test statement helpers can be chained on one connection."""
        conn = await fake_db.borrow()
        await conn.update("users", {"age": 37}, {"name": "ada"}).execute()
        await conn.delete("users", [("age", "<", 18)]).execute()
        await conn.release()

        sqls = [call[1] for call in dialer.drivers[0].calls]
        assert sqls == [
            "UPDATE users SET age = ? WHERE name = ?",
            "DELETE FROM users WHERE age < ?",
        ]

    @pytest.mark.asyncio
    async def test_transaction_commits(self, fake_db, dialer):
        """Test a successful transaction commits and releases."""
        async def work(conn):
            await conn.insert("users", {"name": "ada"}).execute()
            return "done"

        assert await fake_db.transaction(work) == "done"

        calls = [call[0] for call in dialer.drivers[0].calls]
        assert calls == ["begin", "execute", "commit"]
        assert fake_db.pool.active_count == 0
        assert fake_db.pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_before_propagating(self, fake_db, dialer):
        """Test an error rolls back, releases exactly once and re-raises."""
        order = []

        async def work(conn):
            await conn.insert("users", {"name": "ada"}).execute()
            raise ValueError("bad row")

        original_release = ConnectionPool.release

        async def spy_release(pool, handle, discard=False):
            order.append("release")
            await original_release(pool, handle, discard)

        with patch.object(ConnectionPool, "release", spy_release):
            with pytest.raises(ValueError, match="bad row"):
                await fake_db.transaction(work)

        calls = [call[0] for call in dialer.drivers[0].calls]
        assert calls == ["begin", "execute", "rollback"]
        assert order == ["release"]
        assert fake_db.pool.active_count == 0

    @pytest.mark.asyncio
    async def test_rollback_failure_keeps_original_error(self, fake_db, dialer):
        """Test a failing rollback never masks the original error."""
        conn = await fake_db.borrow()
        conn.driver.fail_rollback = True
        await conn.release()

        def work(conn):
            raise KeyError("original")

        with pytest.raises(KeyError, match="original"):
            await fake_db.transaction(work)
        assert fake_db.pool.active_count == 0

    @pytest.mark.asyncio
    async def test_failed_rollback_discards_connection(self, fake_db, dialer):
        """Test a connection whose rollback failed is closed, never lent again."""
        def work(conn):
            conn.driver.fail_rollback = True
            raise RuntimeError("body failed")

        with pytest.raises(RuntimeError, match="body failed"):
            await fake_db.transaction(work)

        assert fake_db.pool.idle_count == 0
        assert dialer.drivers[0].closed

        conn = await fake_db.borrow()
        assert conn.driver is dialer.drivers[1]
        await conn.release()

    @pytest.mark.asyncio
    async def test_sync_callable_transaction(self, fake_db):
        """Test transaction() accepts a plain function."""
        assert await fake_db.transaction(lambda conn: 7) == 7

    @pytest.mark.asyncio
    async def test_nested_begin_raises(self, fake_db):
        """Test begin inside an open transaction is refused."""
        conn = await fake_db.begin_transaction()

        with pytest.raises(TransactionError):
            await conn.begin_transaction()
        await conn.release()

    @pytest.mark.asyncio
    async def test_commit_without_begin_raises(self, fake_db):
        """Test commit/rollback need an open transaction."""
        conn = await fake_db.borrow()

        with pytest.raises(TransactionError):
            await conn.commit()
        with pytest.raises(TransactionError):
            await conn.rollback()
        await conn.release()

    @pytest.mark.asyncio
    async def test_release_rolls_back_open_transaction(self, fake_db, dialer):
        """Test releasing mid-transaction rolls back and keeps the connection."""
        conn = await fake_db.begin_transaction()

        await conn.release()

        assert dialer.drivers[0].calls[-1] == ("rollback",)
        assert fake_db.pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_use_after_release(self, fake_db):
        """Test a released connection refuses further statements."""
        conn = await fake_db.borrow()
        await conn.release()

        with pytest.raises(PoolError):
            conn.prepare("SELECT 1")
        with pytest.raises(PoolError):
            await conn.release()

    @pytest.mark.asyncio
    async def test_context_manager_releases(self, fake_db):
        """Test async with releases the connection once."""
        async with await fake_db.borrow() as conn:
            assert fake_db.pool.active_count == 1
        assert conn.released
        assert fake_db.pool.active_count == 0

    @pytest.mark.asyncio
    async def test_bad_statement_does_not_leak(self, fake_db):
        """Test a statement build error releases the borrowed connection."""
        with pytest.raises(ValueError):
            await fake_db.insert("users", {})

        assert fake_db.pool.active_count == 0

    @pytest.mark.asyncio
    async def test_fail_policy_through_facade(self, dialer):
        """Test the facade surfaces pool exhaustion."""
        db = Database(dialer, PoolSettings(max_active=1, exhausted_policy=ExhaustedPolicy.FAIL))
        conn = await db.borrow()

        with pytest.raises(PoolExhaustedError):
            await db.borrow()
        await conn.release()


class TestSQLite:
    """Tests against a real SQLite file."""

    @pytest.mark.asyncio
    async def test_insert_and_query(self, sqlite_db):
        """Test rows written through the facade can be read back."""
        conn = await sqlite_db.batch_insert("users", [
            {"name": "ada", "age": 36},
            {"name": "bob", "age": 17},
            {"name": "cy", "age": 52},
        ])
        result = await conn.execute()
        assert result.row_count == 3

        adults = await conn.table("users").where("age", ">=", 18).order_by("name").get()
        youngest = await conn.table("users").order_by("age").first()
        total = await conn.table("users").count()
        await conn.release()

        assert [row["name"] for row in adults] == ["ada", "cy"]
        assert youngest["name"] == "bob"
        assert total == 3

    @pytest.mark.asyncio
    async def test_grouped_count_counts_groups(self, sqlite_db):
        """Test count() on a grouped query returns the number of groups."""
        conn = await sqlite_db.batch_insert("users", [
            {"name": "ada", "age": 36},
            {"name": "bob", "age": 36},
            {"name": "cy", "age": 52},
            {"name": "di", "age": 17},
        ])
        await conn.execute()

        groups = await conn.table("users").select("age").group_by("age").count()
        adult_groups = await (
            conn.table("users").select("age").where("age", ">=", 18).group_by("age").count()
        )
        await conn.release()

        assert groups == 3
        assert adult_groups == 2

    @pytest.mark.asyncio
    async def test_last_insert_id(self, sqlite_db):
        """Test the generated key is reported."""
        conn = await sqlite_db.insert("users", {"name": "ada"})
        await conn.execute()
        first_id = conn.last_insert_id
        await conn.insert("users", {"name": "bob"}).execute()
        await conn.release()

        assert conn.last_insert_id == first_id + 1

    @pytest.mark.asyncio
    async def test_raw_expression(self, sqlite_db):
        """Test raw expressions are evaluated by the database."""
        conn = await sqlite_db.insert("users", {"name": "ada", "created": Database.raw("CURRENT_TIMESTAMP")})
        await conn.execute()
        row = await conn.prepare("SELECT created FROM users WHERE name = ?", ["ada"]).query_one()
        await conn.release()

        assert row["created"] is not None
        assert row["created"] != "CURRENT_TIMESTAMP"

    @pytest.mark.asyncio
    async def test_transaction_rollback(self, sqlite_db):
        """Test a failed transaction leaves no rows behind."""
        async def work(conn):
            await conn.insert("users", {"name": "ada"}).execute()
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await sqlite_db.transaction(work)

        query = await sqlite_db.table("users")
        count = await query.count()
        await query.connection.release()
        assert count == 0

    @pytest.mark.asyncio
    async def test_transaction_commit(self, sqlite_db):
        """Test a committed transaction is visible to other connections."""
        async def work(conn):
            await conn.insert("users", {"name": "ada"}).execute()
            await conn.update("users", {"age": 36}, {"name": "ada"}).execute()

        await sqlite_db.transaction(work)

        conn = await sqlite_db.prepare("SELECT age FROM users WHERE name = ?", ["ada"])
        age = await conn.query_scalar()
        await conn.release()
        assert age == 36

    @pytest.mark.asyncio
    async def test_memory_database_is_shared(self):
        """Test pooled connections to ':memory:' see the same database."""
        db = Database(SQLiteDialer(":memory:"), PoolSettings(max_idle=2, max_active=2))
        first = await db.prepare("CREATE TABLE t (v TEXT)")
        await first.execute()
        await first.insert("t", {"v": "x"}).execute()

        second = await db.borrow()
        rows = await second.prepare("SELECT v FROM t").query_all()

        await second.release()
        await first.release()
        await db.close()
        assert rows == [{"v": "x"}]


class TestQueryBuilder:
    """Tests for SQL generation."""

    @pytest.mark.asyncio
    async def test_select_build(self, fake_db):
        """Test a full SELECT is assembled in clause order."""
        conn = await fake_db.borrow()
        sql, params = (
            conn.table("users")
            .select("id", "name")
            .left_join("teams", "teams.id = users.team_id")
            .where("age", ">", 18)
            .or_where("name", "=", None)
            .where_in("id", [1, 2])
            .group_by("team_id")
            .order_by("name", "desc")
            .limit(10)
            .offset(20)
            .build()
        )
        await conn.release()

        assert sql == (
            "SELECT id, name FROM users LEFT JOIN teams ON teams.id = users.team_id "
            "WHERE age > ? OR name IS NULL AND id IN (?, ?) "
            "GROUP BY team_id ORDER BY name DESC LIMIT 10 OFFSET 20"
        )
        assert params == [18, 1, 2]

    @pytest.mark.asyncio
    async def test_empty_in_matches_nothing(self, fake_db):
        """Test an empty IN list compiles to a false condition."""
        conn = await fake_db.borrow()
        sql, params = conn.table("users").where_in("id", []).build()
        await conn.release()

        assert sql == "SELECT * FROM users WHERE 1 = 0"
        assert params == []

    @pytest.mark.asyncio
    async def test_invalid_identifier(self, fake_db):
        """Test unsafe identifiers are rejected."""
        conn = await fake_db.borrow()
        try:
            with pytest.raises(ValueError):
                conn.table("users; DROP TABLE users")
            with pytest.raises(ValueError):
                conn.table("users").where("age", "~", 1)
        finally:
            await conn.release()

    @pytest.mark.asyncio
    async def test_count_wraps_grouped_query(self, fake_db):
        """Test a grouped count selects from the grouped query."""
        conn = await fake_db.borrow()
        plain = conn.table("users").where("age", ">", 18).build_count()
        grouped = conn.table("users").select("age").where("age", ">", 18).group_by("age").build_count()
        await conn.release()

        assert plain == ("SELECT COUNT(*) AS count FROM users WHERE age > ?", [18])
        assert grouped == (
            "SELECT COUNT(*) AS count FROM "
            "(SELECT age FROM users WHERE age > ? GROUP BY age) AS grouped",
            [18],
        )

    def test_expression_equality(self):
        """Test expressions compare by text."""
        assert Expression("NOW()") == Database.raw("NOW()")
