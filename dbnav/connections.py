"""Transport-level connections for each supported engine."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence, runtime_checkable

import aiomysql
import asyncpg

from .models import ConnectionNode, DatabaseType

LOG = logging.getLogger(__name__)


class ConnectionBackendError(RuntimeError):
    """Raised when a connection cannot be established or is no longer usable."""


class QueryExecutionError(RuntimeError):
    """Raised when a statement fails to execute."""


@dataclass(frozen=True, slots=True)
class StatementResult:
    """Raw output of a single statement."""

    columns: tuple[str, ...]
    rows: tuple[tuple[object, ...], ...]
    status: str
    row_count: int | None = None


@runtime_checkable
class DatabaseConnection(Protocol):
    """Capability interface the connection manager relies on."""

    async def connect(self) -> None:
        """Open the connection; raises :class:`ConnectionBackendError` on failure."""

    def is_alive(self) -> bool:
        """Whether the connection is open and usable."""

    async def close(self) -> None:
        """Close the connection."""

    async def execute(self, sql: str) -> StatementResult:
        """Run one statement; raises :class:`QueryExecutionError` on failure."""


ConnectionFactory = Callable[[ConnectionNode], DatabaseConnection]


class AsyncpgConnection:
    """PostgreSQL connection backed by asyncpg."""

    def __init__(self, node: ConnectionNode) -> None:
        self._node = node
        self._conn: asyncpg.Connection | None = None

    async def connect(self) -> None:
        try:
            self._conn = await asyncpg.connect(**self._connect_kwargs())
        except Exception as exc:
            raise ConnectionBackendError(f"Failed to connect to '{self._node.label}': {exc}") from exc

    def is_alive(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()

    async def execute(self, sql: str) -> StatementResult:
        conn = self._require_conn()
        statement = sql.strip()
        try:
            if _returns_rows(statement):
                records = await conn.fetch(statement)
                columns, rows = _records_to_rows(records)
                return StatementResult(columns=columns, rows=rows, status=f"{len(rows)} row(s)", row_count=len(rows))
            status = await conn.execute(statement)
        except Exception as exc:
            raise QueryExecutionError(str(exc)) from exc
        return StatementResult(columns=(), rows=(), status=status)

    def _require_conn(self) -> asyncpg.Connection:
        if not self.is_alive():
            raise ConnectionBackendError(f"Connection to '{self._node.label}' is closed.")
        assert self._conn is not None
        return self._conn

    def _connect_kwargs(self) -> dict[str, object]:
        node = self._node
        kwargs: dict[str, object] = {
            "host": node.host or "localhost",
            "port": node.port,
            "user": node.user,
            "timeout": node.connect_timeout,
        }
        if node.password:
            kwargs["password"] = node.password
        if node.database:
            kwargs["database"] = node.database
        return kwargs


class AiomysqlConnection:
    """MySQL connection backed by aiomysql."""

    def __init__(self, node: ConnectionNode) -> None:
        self._node = node
        self._conn: aiomysql.Connection | None = None

    async def connect(self) -> None:
        try:
            self._conn = await aiomysql.connect(**self._connect_kwargs())
        except Exception as exc:
            raise ConnectionBackendError(f"Failed to connect to '{self._node.label}': {exc}") from exc

    def is_alive(self) -> bool:
        return self._conn is not None and not self._conn.closed

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    async def execute(self, sql: str) -> StatementResult:
        if not self.is_alive():
            raise ConnectionBackendError(f"Connection to '{self._node.label}' is closed.")
        assert self._conn is not None
        statement = sql.strip()
        try:
            async with self._conn.cursor() as cursor:
                await cursor.execute(statement)
                if cursor.description:
                    columns = tuple(str(desc[0]) for desc in cursor.description)
                    rows = tuple(tuple(row) for row in await cursor.fetchall())
                    return StatementResult(
                        columns=columns,
                        rows=rows,
                        status=f"{len(rows)} row(s)",
                        row_count=len(rows),
                    )
                affected = cursor.rowcount
        except Exception as exc:
            raise QueryExecutionError(str(exc)) from exc
        return StatementResult(columns=(), rows=(), status=f"OK, {affected} row(s) affected", row_count=affected)

    def _connect_kwargs(self) -> dict[str, object]:
        node = self._node
        kwargs: dict[str, object] = {
            "host": node.host or "localhost",
            "port": node.port,
            "user": node.user,
            "connect_timeout": node.connect_timeout,
            "autocommit": True,
        }
        if node.password:
            kwargs["password"] = node.password
        if node.database:
            kwargs["db"] = node.database
        return kwargs


DEMO_CATALOG: Mapping[str, Mapping[str, Sequence[str]]] = {
    "demo": {
        "tables": ("accounts", "orders", "payments"),
        "views": ("active_accounts",),
        "procedures": ("archive_orders", "refresh_totals"),
    },
    "analytics": {
        "tables": ("sessions", "events"),
        "views": (),
        "procedures": (),
    },
}

_DEMO_USERS = ("root", "analytics")
_DEMO_NAME = r"`(?:[^`]|``)+`"
_DEMO_STATEMENT = re.compile(
    r"^(?P<verb>SHOW DATABASES|SHOW USERS|USE|SHOW TABLES FROM|SHOW VIEWS FROM|SHOW PROCEDURES FROM"
    r"|SHOW CREATE PROCEDURE|CREATE DATABASE|DROP DATABASE|DROP PROCEDURE(?:\s+IF EXISTS)?)"
    rf"(?:\s+(?P<name>{_DEMO_NAME})(?:\.(?P<member>{_DEMO_NAME}))?)?"
    r"(?:\s+LIMIT\s+(?P<limit>\d+))?\s*;?$",
    re.IGNORECASE,
)
_DEMO_LISTINGS = {
    "SHOW TABLES FROM": "tables",
    "SHOW VIEWS FROM": "views",
    "SHOW PROCEDURES FROM": "procedures",
}


class DemoConnection:
    """In-memory connection that answers the demo dialect's statements."""

    def __init__(
        self,
        node: ConnectionNode,
        catalog: Mapping[str, Mapping[str, Sequence[str]]] | None = None,
    ) -> None:
        self._node = node
        self._catalog: dict[str, dict[str, tuple[str, ...]]] = {
            name: {kind: tuple(entries) for kind, entries in objects.items()}
            for name, objects in (catalog or DEMO_CATALOG).items()
        }
        self._open = False
        self.database = node.database

    async def connect(self) -> None:
        if self._node.database and self._node.database not in self._catalog:
            raise ConnectionBackendError(f"Unknown database '{self._node.database}'.")
        self._open = True

    def is_alive(self) -> bool:
        return self._open

    async def close(self) -> None:
        self._open = False

    async def execute(self, sql: str) -> StatementResult:
        if not self._open:
            raise ConnectionBackendError(f"Connection to '{self._node.label}' is closed.")
        match = _DEMO_STATEMENT.match(sql.strip())
        if match is None:
            return self._sample_rows()
        verb = " ".join(match.group("verb").upper().split())
        name = _unquote(match.group("name"))
        member = _unquote(match.group("member"))
        if verb == "SHOW DATABASES":
            return _single_column("Database", self._catalog)
        if verb == "SHOW USERS":
            return _single_column("user", _DEMO_USERS)
        if verb in {"CREATE DATABASE", "DROP DATABASE"}:
            return self._mutate(verb, name)
        objects = self._lookup(name)
        if verb == "USE":
            self.database = name
            return StatementResult(columns=(), rows=(), status="OK")
        if verb in _DEMO_LISTINGS:
            entries = objects.get(_DEMO_LISTINGS[verb], ())
            if match.group("limit"):
                entries = entries[: int(match.group("limit"))]
            return _single_column("TABLE_NAME", entries)
        procedures = objects.get("procedures", ())
        if member not in procedures:
            if verb == "DROP PROCEDURE IF EXISTS":
                return StatementResult(columns=(), rows=(), status="OK, 0 row(s) affected", row_count=0)
            raise QueryExecutionError(f"PROCEDURE {name}.{member} does not exist")
        if verb == "SHOW CREATE PROCEDURE":
            source = f"CREATE PROCEDURE `{member}`()\nBEGIN\n  SELECT 1;\nEND"
            return StatementResult(
                columns=("Procedure", "sql_mode", "Create Procedure"),
                rows=((member, "", source),),
                status="1 row(s)",
                row_count=1,
            )
        objects["procedures"] = tuple(entry for entry in procedures if entry != member)
        return StatementResult(columns=(), rows=(), status="OK, 0 row(s) affected", row_count=0)

    def _lookup(self, name: str) -> dict[str, tuple[str, ...]]:
        try:
            return self._catalog[name]
        except KeyError as exc:
            raise QueryExecutionError(f"Unknown database '{name}'.") from exc

    def _mutate(self, verb: str, name: str) -> StatementResult:
        if verb == "CREATE DATABASE":
            if name in self._catalog:
                raise QueryExecutionError(f"Database '{name}' already exists.")
            self._catalog[name] = {"tables": (), "views": (), "procedures": ()}
        else:
            self._lookup(name)
            del self._catalog[name]
        return StatementResult(columns=(), rows=(), status="OK, 1 row(s) affected", row_count=1)

    def _sample_rows(self) -> StatementResult:
        rows = tuple((idx, f"value_{idx}") for idx in range(5))
        return StatementResult(columns=("id", "value"), rows=rows, status="Demo result", row_count=len(rows))


_FACTORIES: dict[DatabaseType, ConnectionFactory] = {
    DatabaseType.POSTGRES: AsyncpgConnection,
    DatabaseType.MYSQL: AiomysqlConnection,
    DatabaseType.DEMO: DemoConnection,
}


def create_connection(node: ConnectionNode) -> DatabaseConnection:
    """Build an unopened connection for the node's engine."""

    try:
        factory = _FACTORIES[DatabaseType(node.db_type)]
    except (KeyError, ValueError) as exc:
        raise ConnectionBackendError(f"Unsupported database type '{node.db_type}'.") from exc
    return factory(node)


def _returns_rows(statement: str) -> bool:
    token = statement.lstrip().split(None, 1)
    if not token:
        return False
    head = token[0].lower()
    return head in {"select", "with", "show", "values", "explain", "table"}


def _records_to_rows(records: Iterable[Any]) -> tuple[tuple[str, ...], tuple[tuple[object, ...], ...]]:
    rows: list[tuple[object, ...]] = []
    columns: tuple[str, ...] = ()
    for record in records:
        if not columns:
            keys = tuple(record.keys()) if hasattr(record, "keys") else tuple(range(len(record)))
            columns = tuple(str(key) for key in keys)
        rows.append(tuple(record[idx] for idx in range(len(columns))))
    return columns, tuple(rows)


def _unquote(token: str | None) -> str:
    if not token:
        return ""
    return token[1:-1].replace("``", "`")


def _single_column(column: str, values: Iterable[str]) -> StatementResult:
    rows = tuple((value,) for value in values)
    return StatementResult(columns=(column,), rows=rows, status=f"{len(rows)} row(s)", row_count=len(rows))


__all__ = [
    "AiomysqlConnection",
    "AsyncpgConnection",
    "ConnectionBackendError",
    "ConnectionFactory",
    "DEMO_CATALOG",
    "DatabaseConnection",
    "DemoConnection",
    "QueryExecutionError",
    "StatementResult",
    "create_connection",
]
