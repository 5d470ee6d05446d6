"""Per-engine statement producers used by the manager and the explorer."""

from __future__ import annotations

from typing import Protocol

from sqlglot import exp

from .models import DatabaseType

MAX_TABLE_COUNT = 200


class Dialect(Protocol):
    """Statements the connection core and schema explorer need from an engine."""

    name: str
    can_switch_database: bool

    def switch_database(self, database: str) -> str | None:
        """Statement re-pointing a live session, or ``None`` when none is needed."""

    def show_databases(self) -> str: ...

    def show_tables(self, database: str, limit: int = MAX_TABLE_COUNT) -> str: ...

    def show_views(self, database: str, limit: int = MAX_TABLE_COUNT) -> str: ...

    def show_procedures(self, database: str, limit: int = MAX_TABLE_COUNT) -> str: ...

    def show_procedure_source(self, database: str, name: str) -> str:
        """Statement returning ``Procedure`` and ``Create Procedure`` columns."""

    def show_users(self) -> str: ...

    def create_database(self, name: str) -> str: ...

    def drop_database(self, name: str) -> str: ...

    def drop_procedure(self, database: str, name: str, *, if_exists: bool = False) -> str: ...


class _QuotingDialect:
    """Quotes identifiers and literals with sqlglot's generator for ``sqlglot_dialect``."""

    sqlglot_dialect = "mysql"

    def _ident(self, name: str) -> str:
        return exp.to_identifier(name, quoted=True).sql(dialect=self.sqlglot_dialect)

    def _literal(self, value: str) -> str:
        return exp.Literal.string(value).sql(dialect=self.sqlglot_dialect)

    def _qualified(self, database: str, name: str) -> str:
        return f"{self._ident(database)}.{self._ident(name)}"


class MySQLDialect(_QuotingDialect):
    name = DatabaseType.MYSQL.value
    can_switch_database = True
    sqlglot_dialect = "mysql"

    def switch_database(self, database: str) -> str | None:
        return f"USE {self._ident(database)}"

    def show_databases(self) -> str:
        return "SHOW DATABASES"

    def show_tables(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return (
            "SELECT TABLE_NAME FROM information_schema.TABLES "
            f"WHERE TABLE_SCHEMA = {self._literal(database)} AND TABLE_TYPE = 'BASE TABLE' "
            f"ORDER BY TABLE_NAME LIMIT {int(limit)}"
        )

    def show_views(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return (
            "SELECT TABLE_NAME FROM information_schema.VIEWS "
            f"WHERE TABLE_SCHEMA = {self._literal(database)} ORDER BY TABLE_NAME LIMIT {int(limit)}"
        )

    def show_procedures(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return (
            "SELECT ROUTINE_NAME FROM information_schema.ROUTINES "
            f"WHERE ROUTINE_SCHEMA = {self._literal(database)} AND ROUTINE_TYPE = 'PROCEDURE' "
            f"ORDER BY ROUTINE_NAME LIMIT {int(limit)}"
        )

    def show_procedure_source(self, database: str, name: str) -> str:
        return f"SHOW CREATE PROCEDURE {self._qualified(database, name)}"

    def show_users(self) -> str:
        return "SELECT DISTINCT user FROM mysql.user ORDER BY user"

    def create_database(self, name: str) -> str:
        return f"CREATE DATABASE {self._ident(name)} DEFAULT CHARACTER SET utf8mb4"

    def drop_database(self, name: str) -> str:
        return f"DROP DATABASE {self._ident(name)}"

    def drop_procedure(self, database: str, name: str, *, if_exists: bool = False) -> str:
        guard = "IF EXISTS " if if_exists else ""
        return f"DROP PROCEDURE {guard}{self._qualified(database, name)}"


class PostgresDialect(_QuotingDialect):
    """PostgreSQL sessions are bound to one database for their lifetime.

    Procedure names are listed schema-qualified (``schema.name``).
    """

    name = DatabaseType.POSTGRES.value
    can_switch_database = False
    sqlglot_dialect = "postgres"

    _SYSTEM_SCHEMAS = "('pg_catalog', 'information_schema')"

    def switch_database(self, database: str) -> str | None:
        return None

    def show_databases(self) -> str:
        return "SELECT datname FROM pg_database WHERE NOT datistemplate ORDER BY datname"

    def show_tables(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return (
            "SELECT table_schema || '.' || table_name FROM information_schema.tables "
            f"WHERE table_catalog = {self._literal(database)} AND table_type = 'BASE TABLE' "
            f"AND table_schema NOT IN {self._SYSTEM_SCHEMAS} ORDER BY 1 LIMIT {int(limit)}"
        )

    def show_views(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return (
            "SELECT table_schema || '.' || table_name FROM information_schema.views "
            f"WHERE table_catalog = {self._literal(database)} "
            f"AND table_schema NOT IN {self._SYSTEM_SCHEMAS} ORDER BY 1 LIMIT {int(limit)}"
        )

    def show_procedures(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return (
            "SELECT routine_schema || '.' || routine_name FROM information_schema.routines "
            f"WHERE routine_catalog = {self._literal(database)} AND routine_type = 'PROCEDURE' "
            f"AND routine_schema NOT IN {self._SYSTEM_SCHEMAS} ORDER BY 1 LIMIT {int(limit)}"
        )

    def show_procedure_source(self, database: str, name: str) -> str:
        schema, _, routine = name.rpartition(".")
        return (
            "SELECT p.proname AS \"Procedure\", pg_get_functiondef(p.oid) AS \"Create Procedure\" "
            "FROM pg_proc p JOIN pg_namespace n ON n.oid = p.pronamespace "
            f"WHERE p.prokind = 'p' AND n.nspname = {self._literal(schema or 'public')} "
            f"AND p.proname = {self._literal(routine)}"
        )

    def show_users(self) -> str:
        return "SELECT usename FROM pg_user ORDER BY usename"

    def create_database(self, name: str) -> str:
        return f"CREATE DATABASE {self._ident(name)}"

    def drop_database(self, name: str) -> str:
        return f"DROP DATABASE {self._ident(name)}"

    def drop_procedure(self, database: str, name: str, *, if_exists: bool = False) -> str:
        schema, _, routine = name.rpartition(".")
        guard = "IF EXISTS " if if_exists else ""
        return f"DROP PROCEDURE {guard}{self._qualified(schema or 'public', routine)}"


class DemoDialect(_QuotingDialect):
    """Statements understood by :class:`dbnav.connections.DemoConnection`."""

    name = DatabaseType.DEMO.value
    can_switch_database = True

    def switch_database(self, database: str) -> str | None:
        return f"USE {self._ident(database)}"

    def show_databases(self) -> str:
        return "SHOW DATABASES"

    def show_tables(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return f"SHOW TABLES FROM {self._ident(database)} LIMIT {int(limit)}"

    def show_views(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return f"SHOW VIEWS FROM {self._ident(database)} LIMIT {int(limit)}"

    def show_procedures(self, database: str, limit: int = MAX_TABLE_COUNT) -> str:
        return f"SHOW PROCEDURES FROM {self._ident(database)} LIMIT {int(limit)}"

    def show_procedure_source(self, database: str, name: str) -> str:
        return f"SHOW CREATE PROCEDURE {self._qualified(database, name)}"

    def show_users(self) -> str:
        return "SHOW USERS"

    def create_database(self, name: str) -> str:
        return f"CREATE DATABASE {self._ident(name)}"

    def drop_database(self, name: str) -> str:
        return f"DROP DATABASE {self._ident(name)}"

    def drop_procedure(self, database: str, name: str, *, if_exists: bool = False) -> str:
        guard = "IF EXISTS " if if_exists else ""
        return f"DROP PROCEDURE {guard}{self._qualified(database, name)}"


_DIALECTS: dict[DatabaseType, Dialect] = {
    DatabaseType.MYSQL: MySQLDialect(),
    DatabaseType.POSTGRES: PostgresDialect(),
    DatabaseType.DEMO: DemoDialect(),
}


def get_dialect(db_type: DatabaseType) -> Dialect:
    """Return the dialect for an engine."""

    try:
        return _DIALECTS[DatabaseType(db_type)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unsupported database type '{db_type}'.") from exc


__all__ = [
    "MAX_TABLE_COUNT",
    "DemoDialect",
    "Dialect",
    "MySQLDialect",
    "PostgresDialect",
    "get_dialect",
]
