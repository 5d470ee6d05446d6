"""Shared dataclasses used across the connection modules."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class DatabaseType(str, Enum):
    """Engines a connection node can point at."""

    MYSQL = "mysql"
    POSTGRES = "postgres"
    DEMO = "demo"


class NodeKind(str, Enum):
    """Kinds of entries discovered underneath a connection."""

    CONNECTION = "connection"
    DATABASE = "database"
    USER_GROUP = "userGroup"
    USER = "user"
    TABLE_GROUP = "tableGroup"
    TABLE = "table"
    VIEW_GROUP = "viewGroup"
    VIEW = "view"
    PROCEDURE_GROUP = "procedureGroup"
    PROCEDURE = "procedure"
    INFO = "info"


class ExpansionState(str, Enum):
    """Last known expand/collapse state of a tree entry."""

    COLLAPSED = "collapsed"
    EXPANDED = "expanded"


@dataclass(frozen=True, slots=True)
class SshConfig:
    """SSH jump host used to forward a local port to the database."""

    host: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None
    local_port: int = 0
    strict_host_key: bool = True
    connect_timeout: float = 10.0


@dataclass(frozen=True, slots=True)
class ConnectionNode:
    """Coordinates of a server (and optionally one database on it)."""

    host: str
    port: int
    user: str
    database: str | None = None
    password: str | None = None
    db_type: DatabaseType = DatabaseType.MYSQL
    name: str | None = None
    ssh: SshConfig | None = None
    include_databases: str | None = None
    connect_timeout: float = 5.0

    @property
    def using_ssh(self) -> bool:
        return self.ssh is not None

    @property
    def label(self) -> str:
        return self.name or f"{self.user}@{self.host}:{self.port}"

    def with_database(self, database: str | None) -> ConnectionNode:
        """Return a copy pointing at another database on the same server."""

        return replace(self, database=database)

    def with_endpoint(self, host: str, port: int) -> ConnectionNode:
        """Return a copy whose network endpoint is replaced (used for tunnels)."""

        return replace(self, host=host, port=port)


@dataclass(frozen=True, slots=True)
class NodeDescriptor:
    """A child entry discovered underneath a connection or database."""

    label: str
    kind: NodeKind
    database: str | None = None


__all__ = [
    "ConnectionNode",
    "DatabaseType",
    "ExpansionState",
    "NodeDescriptor",
    "NodeKind",
    "SshConfig",
]
