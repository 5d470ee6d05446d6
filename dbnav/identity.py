"""Identity keys for connection slots and query document names."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePath

from .models import ConnectionNode, NodeKind

_SUFFIX_PATTERN = re.compile(r"#.+$")


@dataclass(frozen=True, slots=True)
class QueryFileTarget:
    """Connection coordinates recovered from a query document name."""

    mode: str
    host: str
    port: int
    user: str
    database: str | None = None

    def connection_id(self, *, with_db: bool = False) -> str:
        return _join(self.host, self.port, self.user, self.database if with_db else None)


def connection_id(node: ConnectionNode, *, with_db: bool = False) -> str:
    """Server-level key, optionally qualified by the node's database."""

    return _join(node.host, node.port, node.user, node.database if with_db else None)


def identity(node: ConnectionNode, session_id: str | None = None, *, with_db: bool = True) -> str:
    """Key of the connection serving ``node``; an explicit session id wins."""

    if session_id:
        return session_id
    return connection_id(node, with_db=with_db)


def child_id(node: ConnectionNode, kind: NodeKind) -> str:
    """Key of a grouping entry (tables, views, users) underneath ``node``."""

    return f"{connection_id(node, with_db=True)}_{kind.value}"


def query_filename(node: ConnectionNode, mode: str | None = None) -> str:
    """Document name encoding the node's coordinates."""

    prefix = mode or node.db_type.value
    return f"{prefix}_{connection_id(node, with_db=True)}.sql"


def parse_query_filename(filename: str) -> QueryFileTarget | None:
    """Recover ``<mode>_<host>_<port>_<user>[_<database>]`` from a document name.

    Everything after the user segment is the database, so names containing
    underscores are joined back together.
    """

    path = PurePath(filename)
    stem = path.name[: -len(path.suffix)] if path.suffix else path.name
    parts = _SUFFIX_PATTERN.sub("", stem).split("_")
    if len(parts) < 4:
        return None
    mode, host, port, user = parts[:4]
    if not port.isdigit():
        return None
    database = "_".join(parts[4:]) or None
    return QueryFileTarget(mode=mode, host=host, port=int(port), user=user, database=database)


def _join(host: str, port: int, user: str, database: str | None) -> str:
    key = f"{host}_{port}_{user}"
    if database:
        key = f"{key}_{database}"
    return key


__all__ = [
    "QueryFileTarget",
    "child_id",
    "connection_id",
    "identity",
    "parse_query_filename",
    "query_filename",
]
