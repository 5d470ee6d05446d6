"""Cached schema discovery for the connection tree."""

from __future__ import annotations

import logging

from .connections import ConnectionBackendError, QueryExecutionError
from .dialects import MAX_TABLE_COUNT, Dialect
from .identity import child_id, connection_id, query_filename
from .manager import ConnectionManager
from .models import ConnectionNode, NodeDescriptor, NodeKind
from .query import QueryGateway, QueryResult

LOG = logging.getLogger(__name__)

USER_GROUP_LABEL = "USER"
DATABASE_GROUPS = (
    NodeDescriptor(label="TABLE", kind=NodeKind.TABLE_GROUP),
    NodeDescriptor(label="VIEW", kind=NodeKind.VIEW_GROUP),
    NodeDescriptor(label="PROCEDURE", kind=NodeKind.PROCEDURE_GROUP),
)

# group -> (leaf kind, noun shown for an empty group)
_GROUP_LEAVES = {
    NodeKind.TABLE_GROUP: (NodeKind.TABLE, "table"),
    NodeKind.VIEW_GROUP: (NodeKind.VIEW, "view"),
    NodeKind.PROCEDURE_GROUP: (NodeKind.PROCEDURE, "procedure"),
}


class SchemaExplorer:
    """Lists databases, tables, views, procedures and users, memoized in the manager's cache."""

    def __init__(
        self,
        manager: ConnectionManager,
        gateway: QueryGateway | None = None,
        *,
        max_table_count: int = MAX_TABLE_COUNT,
    ) -> None:
        self._manager = manager
        self._gateway = gateway or QueryGateway(manager)
        self._max_table_count = max_table_count

    async def databases(self, node: ConnectionNode, *, refresh: bool = False) -> list[NodeDescriptor]:
        """Databases on the node's server, preceded by the user group."""

        cache = self._manager.cache
        server_id = connection_id(node)
        cached = cache.get_children(server_id)
        if cached is not None and not refresh:
            return list(cached)
        try:
            result = await self._gateway.execute(node, self._manager.dialect_for(node).show_databases())
        except (ConnectionBackendError, QueryExecutionError) as exc:
            LOG.warning("Listing databases failed", extra={"connection": server_id, "error": str(exc)})
            return [NodeDescriptor(label=str(exc), kind=NodeKind.INFO)]
        names = _first_column(result)
        include = _include_filter(node.include_databases)
        if include:
            names = [name for name in names if name.lower() in include]
        children = [NodeDescriptor(label=USER_GROUP_LABEL, kind=NodeKind.USER_GROUP)]
        for name in names:
            children.append(NodeDescriptor(label=name, kind=NodeKind.DATABASE, database=name))
            database_node = node.with_database(name)
            database_id = connection_id(database_node, with_db=True)
            cache.remember_node(database_id, database_node)
            cache.link(database_id, server_id)
        cache.remember_node(server_id, node)
        cache.set_children(server_id, children)
        return children

    def groups(self, node: ConnectionNode) -> list[NodeDescriptor]:
        """Fixed groupings shown underneath a database."""

        return [
            NodeDescriptor(label=group.label, kind=group.kind, database=node.database)
            for group in DATABASE_GROUPS
        ]

    async def tables(self, node: ConnectionNode, *, refresh: bool = False) -> list[NodeDescriptor]:
        return await self._database_objects(node, NodeKind.TABLE_GROUP, refresh=refresh)

    async def views(self, node: ConnectionNode, *, refresh: bool = False) -> list[NodeDescriptor]:
        return await self._database_objects(node, NodeKind.VIEW_GROUP, refresh=refresh)

    async def procedures(self, node: ConnectionNode, *, refresh: bool = False) -> list[NodeDescriptor]:
        return await self._database_objects(node, NodeKind.PROCEDURE_GROUP, refresh=refresh)

    async def users(self, node: ConnectionNode, *, refresh: bool = False) -> list[NodeDescriptor]:
        server = node.with_database(None)
        key = child_id(server, NodeKind.USER_GROUP)
        cache = self._manager.cache
        cached = cache.get_children(key)
        if cached is None or refresh:
            try:
                result = await self._gateway.execute(node, self._manager.dialect_for(node).show_users())
            except (ConnectionBackendError, QueryExecutionError) as exc:
                return [NodeDescriptor(label=str(exc), kind=NodeKind.INFO)]
            cached = tuple(NodeDescriptor(label=name, kind=NodeKind.USER) for name in _first_column(result))
            cache.set_children(key, cached, parent=connection_id(server))
        return list(cached)

    async def procedure_source(self, node: ConnectionNode, name: str) -> str:
        """Script that recreates procedure ``name``: a guarded drop, then its definition."""

        database = _require_database(node)
        dialect = self._manager.dialect_for(node)
        result = await self._gateway.execute(node, dialect.show_procedure_source(database, name))
        if not result.rows:
            raise QueryExecutionError(f"Procedure '{name}' not found.")
        row = dict(zip(result.columns, result.rows[0]))
        create = row.get("Create Procedure") or ""
        return f"{dialect.drop_procedure(database, name, if_exists=True)};\n\n{create}"

    async def drop_procedure(self, node: ConnectionNode, name: str) -> QueryResult:
        """Drop ``name`` and clear only the database's procedure listing."""

        database = _require_database(node)
        dialect = self._manager.dialect_for(node)
        result = await self._gateway.execute(node, dialect.drop_procedure(database, name))
        self._manager.cache.invalidate(child_id(node, NodeKind.PROCEDURE_GROUP))
        self._manager.request_refresh(node)
        LOG.info("Procedure dropped", extra={"connection": connection_id(node, with_db=True), "procedure": name})
        return result

    async def create_database(self, node: ConnectionNode, name: str) -> QueryResult:
        result = await self._gateway.execute(node, self._manager.dialect_for(node).create_database(name))
        self._invalidate_server(node)
        LOG.info("Database created", extra={"connection": connection_id(node), "database": name})
        return result

    async def drop_database(self, node: ConnectionNode, name: str) -> QueryResult:
        result = await self._gateway.execute(node, self._manager.dialect_for(node).drop_database(name))
        self._manager.cache.forget_node(connection_id(node.with_database(name), with_db=True))
        self._invalidate_server(node)
        LOG.info("Database dropped", extra={"connection": connection_id(node), "database": name})
        return result

    def activate_database(self, node: ConnectionNode, database: str | None = None) -> str:
        """Make ``database`` the active target; returns the query document name for it."""

        target = node.with_database(database) if database else node
        self._manager.change_active(target)
        return query_filename(target)

    async def _database_objects(
        self,
        node: ConnectionNode,
        group: NodeKind,
        *,
        refresh: bool,
    ) -> list[NodeDescriptor]:
        database = _require_database(node)
        leaf, noun = _GROUP_LEAVES[group]
        cache = self._manager.cache
        key = child_id(node, group)
        cached = cache.get_children(key)
        if cached is None or refresh:
            statement = self._listing(self._manager.dialect_for(node), group, database)
            try:
                result = await self._gateway.execute(node, statement)
            except (ConnectionBackendError, QueryExecutionError) as exc:
                return [NodeDescriptor(label=str(exc), kind=NodeKind.INFO)]
            cached = tuple(NodeDescriptor(label=name, kind=leaf, database=database) for name in _first_column(result))
            database_id = connection_id(node, with_db=True)
            cache.set_children(key, cached, parent=database_id)
            cache.link(database_id, connection_id(node))
        if not cached:
            return [NodeDescriptor(label=f"This database has no {noun}", kind=NodeKind.INFO)]
        return list(cached)

    def _listing(self, dialect: Dialect, group: NodeKind, database: str) -> str:
        if group is NodeKind.TABLE_GROUP:
            return dialect.show_tables(database, self._max_table_count)
        if group is NodeKind.VIEW_GROUP:
            return dialect.show_views(database, self._max_table_count)
        return dialect.show_procedures(database, self._max_table_count)

    def _invalidate_server(self, node: ConnectionNode) -> None:
        self._manager.cache.invalidate_tree(connection_id(node))
        self._manager.request_refresh(node.with_database(None))


def _require_database(node: ConnectionNode) -> str:
    if not node.database:
        raise ValueError(f"Connection '{node.label}' has no database selected.")
    return node.database


def _first_column(result: QueryResult) -> list[str]:
    return [str(row[0]) for row in result.rows if row]


def _include_filter(value: str | None) -> set[str]:
    if not value:
        return set()
    return {part.strip().lower() for part in value.split(",") if part.strip()}


__all__ = ["DATABASE_GROUPS", "SchemaExplorer", "USER_GROUP_LABEL"]
