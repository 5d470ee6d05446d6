"""Tests for the engine connections."""

from __future__ import annotations

from typing import Any

import pytest

from dbnav import connections as connections_module
from dbnav.connections import (
    AiomysqlConnection,
    AsyncpgConnection,
    ConnectionBackendError,
    DatabaseConnection,
    DemoConnection,
    QueryExecutionError,
    create_connection,
)
from dbnav.models import ConnectionNode, DatabaseType


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeRecord(dict):
    def __getitem__(self, key: Any) -> Any:
        if isinstance(key, int):
            return list(self.values())[key]
        return super().__getitem__(key)


class _FakePgConnection:
    def __init__(self) -> None:
        self.closed = False
        self.statements: list[str] = []

    async def fetch(self, query: str) -> list[_FakeRecord]:
        self.statements.append(query)
        return [_FakeRecord(id=1, email="a@example.com"), _FakeRecord(id=2, email="b@example.com")]

    async def execute(self, query: str) -> str:
        self.statements.append(query)
        if "broken" in query:
            raise RuntimeError("syntax error")
        return "CREATE TABLE"

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True


def _pg_node(**overrides: Any) -> ConnectionNode:
    values: dict[str, Any] = {
        "host": "pg",
        "port": 5432,
        "user": "app",
        "database": "sales",
        "password": "secret",
        "db_type": DatabaseType.POSTGRES,
    }
    values.update(overrides)
    return ConnectionNode(**values)


@pytest.mark.anyio
async def test_asyncpg_connection_passes_node_coordinates(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}
    fake = _FakePgConnection()

    async def _connect(**kwargs: Any) -> _FakePgConnection:
        captured.update(kwargs)
        return fake

    monkeypatch.setattr(connections_module.asyncpg, "connect", _connect)
    conn = AsyncpgConnection(_pg_node())

    await conn.connect()

    assert captured == {
        "host": "pg",
        "port": 5432,
        "user": "app",
        "timeout": 5.0,
        "password": "secret",
        "database": "sales",
    }
    assert conn.is_alive()


@pytest.mark.anyio
async def test_asyncpg_connection_fetches_rows(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakePgConnection()

    async def _connect(**_: Any) -> _FakePgConnection:
        return fake

    monkeypatch.setattr(connections_module.asyncpg, "connect", _connect)
    conn = AsyncpgConnection(_pg_node())
    await conn.connect()

    result = await conn.execute("SELECT id, email FROM accounts")
    status = await conn.execute("CREATE TABLE t (id int)")

    assert result.columns == ("id", "email")
    assert result.rows == ((1, "a@example.com"), (2, "b@example.com"))
    assert result.row_count == 2
    assert status.status == "CREATE TABLE"
    with pytest.raises(QueryExecutionError):
        await conn.execute("broken statement")

    await conn.close()
    assert not conn.is_alive()
    with pytest.raises(ConnectionBackendError):
        await conn.execute("SELECT 1")


@pytest.mark.anyio
async def test_asyncpg_connect_failure_is_wrapped(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _connect(**_: Any) -> None:
        raise OSError("connection refused")

    monkeypatch.setattr(connections_module.asyncpg, "connect", _connect)
    conn = AsyncpgConnection(_pg_node())

    with pytest.raises(ConnectionBackendError, match="connection refused"):
        await conn.connect()
    assert not conn.is_alive()


class _FakeCursor:
    def __init__(self, owner: "_FakeMysqlConnection") -> None:
        self._owner = owner
        self.description: tuple[tuple[str, ...], ...] | None = None
        self.rowcount = 0

    async def __aenter__(self) -> "_FakeCursor":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def execute(self, statement: str) -> None:
        self._owner.statements.append(statement)
        if statement.upper().startswith("SHOW"):
            self.description = (("Database",),)
        else:
            self.rowcount = 3

    async def fetchall(self) -> list[tuple[str]]:
        return [("demo",), ("shop",)]


class _FakeMysqlConnection:
    def __init__(self) -> None:
        self.closed = False
        self.statements: list[str] = []

    def cursor(self) -> _FakeCursor:
        return _FakeCursor(self)

    def close(self) -> None:
        self.closed = True


@pytest.mark.anyio
async def test_aiomysql_connection_runs_statements(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}
    fake = _FakeMysqlConnection()

    async def _connect(**kwargs: Any) -> _FakeMysqlConnection:
        captured.update(kwargs)
        return fake

    monkeypatch.setattr(connections_module.aiomysql, "connect", _connect)
    conn = AiomysqlConnection(ConnectionNode(host="db", port=3306, user="root", database="shop"))
    await conn.connect()

    listing = await conn.execute("SHOW DATABASES")
    update = await conn.execute("UPDATE accounts SET active = 1")

    assert captured["db"] == "shop"
    assert captured["autocommit"] is True
    assert "password" not in captured
    assert listing.columns == ("Database",)
    assert listing.rows == (("demo",), ("shop",))
    assert update.row_count == 3
    await conn.close()
    assert fake.closed is True
    assert not conn.is_alive()


@pytest.mark.anyio
async def test_demo_connection_answers_catalog_statements() -> None:
    conn = DemoConnection(ConnectionNode(host="demo", port=0, user="demo", db_type=DatabaseType.DEMO))
    await conn.connect()

    databases = await conn.execute("SHOW DATABASES")
    tables = await conn.execute("SHOW TABLES FROM `demo`")
    await conn.execute("USE `analytics`")

    assert [row[0] for row in databases.rows] == ["demo", "analytics"]
    assert [row[0] for row in tables.rows] == ["accounts", "orders", "payments"]
    assert conn.database == "analytics"
    with pytest.raises(QueryExecutionError):
        await conn.execute("USE `missing`")


@pytest.mark.anyio
async def test_demo_connection_creates_and_drops_databases() -> None:
    conn = DemoConnection(ConnectionNode(host="demo", port=0, user="demo", db_type=DatabaseType.DEMO))
    await conn.connect()

    await conn.execute("CREATE DATABASE `scratch`")
    assert ("scratch",) in (await conn.execute("SHOW DATABASES")).rows
    with pytest.raises(QueryExecutionError):
        await conn.execute("CREATE DATABASE `scratch`")

    await conn.execute("DROP DATABASE `scratch`")
    assert ("scratch",) not in (await conn.execute("SHOW DATABASES")).rows


@pytest.mark.anyio
async def test_demo_connection_manages_procedures() -> None:
    conn = DemoConnection(ConnectionNode(host="demo", port=0, user="demo", db_type=DatabaseType.DEMO))
    await conn.connect()

    listing = await conn.execute("SHOW PROCEDURES FROM `demo` LIMIT 1")
    source = await conn.execute("SHOW CREATE PROCEDURE `demo`.`refresh_totals`")
    await conn.execute("DROP PROCEDURE `demo`.`refresh_totals`")
    missing = await conn.execute("DROP PROCEDURE IF EXISTS `demo`.`refresh_totals`")

    assert listing.rows == (("archive_orders",),)
    assert source.columns == ("Procedure", "sql_mode", "Create Procedure")
    assert source.rows[0][2].startswith("CREATE PROCEDURE `refresh_totals`()")
    assert missing.row_count == 0
    assert (await conn.execute("SHOW PROCEDURES FROM `demo`")).rows == (("archive_orders",),)
    with pytest.raises(QueryExecutionError, match="does not exist"):
        await conn.execute("SHOW CREATE PROCEDURE `demo`.`refresh_totals`")


@pytest.mark.anyio
async def test_demo_connection_rejects_unknown_database() -> None:
    conn = DemoConnection(ConnectionNode(host="demo", port=0, user="demo", database="nope", db_type=DatabaseType.DEMO))

    with pytest.raises(ConnectionBackendError):
        await conn.connect()


@pytest.mark.anyio
async def test_demo_connection_returns_sample_rows_for_other_sql() -> None:
    conn = DemoConnection(ConnectionNode(host="demo", port=0, user="demo", db_type=DatabaseType.DEMO))
    await conn.connect()

    result = await conn.execute("SELECT * FROM accounts")

    assert result.columns == ("id", "value")
    assert result.row_count == 5


@pytest.mark.parametrize(
    ("db_type", "expected"),
    [
        (DatabaseType.POSTGRES, AsyncpgConnection),
        (DatabaseType.MYSQL, AiomysqlConnection),
        (DatabaseType.DEMO, DemoConnection),
    ],
)
def test_create_connection_dispatches_on_engine(db_type: DatabaseType, expected: type) -> None:
    conn = create_connection(ConnectionNode(host="h", port=1, user="u", db_type=db_type))

    assert isinstance(conn, expected)
    assert isinstance(conn, DatabaseConnection)
