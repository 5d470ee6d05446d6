"""Connection lifecycle manager: owns live connections and the active node."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from .cache import MetadataCache
from .connections import ConnectionBackendError, ConnectionFactory, DatabaseConnection, create_connection
from .dialects import Dialect, get_dialect
from .identity import connection_id, identity, parse_query_filename
from .models import ConnectionNode, DatabaseType, SshConfig
from .tunnel import SshTunnelService, TunnelError

LOG = logging.getLogger(__name__)

MAX_CONNECT_ATTEMPTS = 2

RefreshListener = Callable[[ConnectionNode | None], None]
ActiveDocumentResolver = Callable[[], str | None]
DialectResolver = Callable[[DatabaseType], Dialect]


class NoActiveConnectionError(RuntimeError):
    """Raised when an ambient request has no connection to run against."""


class ConnectionRemovedError(ConnectionBackendError):
    """Raised when the slot was removed while its connect was in flight."""


class ConnectionState(str, Enum):
    """Lifecycle of a live connection slot."""

    CONNECTING = "connecting"
    LIVE = "live"
    REPOINTING = "repointing"
    DEAD = "dead"


@dataclass(slots=True)
class LiveConnection:
    """A transport handle plus the database it currently points at."""

    connection: DatabaseConnection
    server_id: str
    ssh: SshConfig | None = None
    database: str | None = None
    state: ConnectionState = ConnectionState.CONNECTING


@dataclass(slots=True)
class GetRequest:
    """Per-request options; ``retry_count`` counts attempts made so far."""

    retry_count: int = 1
    session_id: str | None = None


class ConnectionManager:
    """Single owner of the live connection table and the active node.

    Requests for one slot key are serialized, so concurrent callers share
    the connection the first one opened instead of racing a second connect.
    """

    def __init__(
        self,
        *,
        cache: MetadataCache | None = None,
        tunnel_service: SshTunnelService | None = None,
        connection_factory: ConnectionFactory = create_connection,
        dialect_resolver: DialectResolver = get_dialect,
        active_document: ActiveDocumentResolver | None = None,
        max_attempts: int = MAX_CONNECT_ATTEMPTS,
    ) -> None:
        self._cache = cache or MetadataCache()
        self._tunnels = tunnel_service or SshTunnelService()
        self._factory = connection_factory
        self._dialects = dialect_resolver
        self._active_document = active_document
        self._max_attempts = max(1, max_attempts)
        self._live: dict[str, LiveConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._active: ConnectionNode | None = None
        self._listeners: set[RefreshListener] = set()

    @property
    def cache(self) -> MetadataCache:
        return self._cache

    @property
    def active_node(self) -> ConnectionNode | None:
        """Node the user is currently working against."""

        return self._active

    def dialect_for(self, node: ConnectionNode) -> Dialect:
        return self._dialects(node.db_type)

    def slot_key(self, node: ConnectionNode, session_id: str | None = None) -> str:
        """Key of the live-table slot serving ``node``.

        Engines that can switch databases on a live session share one slot per
        server; the others get one slot per database.
        """

        with_db = not self.dialect_for(node).can_switch_database
        return identity(node, session_id, with_db=with_db)

    def get_active_connection_by_key(self, key: str) -> LiveConnection | None:
        return self._live.get(key)

    def live_keys(self) -> tuple[str, ...]:
        return tuple(self._live)

    def subscribe(self, listener: RefreshListener) -> Callable[[], None]:
        """Subscribe to tree refresh notifications; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def request_refresh(self, node: ConnectionNode | None = None) -> None:
        """Ask the presentation layer to re-render (``None`` means everything)."""

        for listener in tuple(self._listeners):
            try:
                listener(node)
            except Exception:
                LOG.exception("Refresh listener failed")

    def change_active(self, node: ConnectionNode) -> None:
        """Record ``node`` as the target of ambient requests."""

        self._active = node
        self._cache.remember_node(connection_id(node, with_db=True), node)
        LOG.info("Active connection changed", extra={"connection": connection_id(node, with_db=True)})
        self.request_refresh(node)

    def get_last_connection_option(self, check_active_file: bool = True) -> ConnectionNode | None:
        """Resolve the connection an ambient request applies to."""

        if check_active_file:
            node = self.get_by_active_file()
            if node is not None:
                return node
        node = self._active
        if node is None and check_active_file:
            LOG.warning("No active database connection found")
            raise NoActiveConnectionError("No active database connection found!")
        return node

    def get_by_active_file(self) -> ConnectionNode | None:
        """Node encoded in the focused document's name, if it is a known one."""

        if self._active_document is None:
            return None
        filename = self._active_document()
        if not filename:
            return None
        target = parse_query_filename(filename)
        if target is None:
            return None
        node = self._cache.lookup_node(target.connection_id(with_db=True))
        if node is not None:
            return node
        server = self._cache.lookup_node(target.connection_id())
        if server is not None and target.database:
            return server.with_database(target.database)
        return server

    async def get_connection(
        self,
        node: ConnectionNode | None,
        request: GetRequest | None = None,
    ) -> DatabaseConnection:
        """Return a live connection for ``node``, reusing or re-pointing when possible."""

        if node is None:
            raise ConnectionBackendError("Connection is dead!")
        request = request or GetRequest()
        request.retry_count = max(1, request.retry_count)
        key = self.slot_key(node, request.session_id)
        lock = self._lock_for(key)
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._acquire(key, node, request)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._prune_lock(key)

    async def remove_connection(self, uid: str) -> None:
        """Tear down everything owned by ``uid`` and clear its cached metadata."""

        active = self._active
        if active is not None and uid in {connection_id(active), connection_id(active, with_db=True)}:
            self._active = None
        removed = [
            (key, entry)
            for key, entry in self._live.items()
            if key == uid or entry.server_id == uid
        ]
        for key, _ in removed:
            del self._live[key]
        self._cache.invalidate_tree(uid)
        self.request_refresh(None)
        for key, entry in removed:
            await self._end(key, entry)
            self._prune_lock(key)
        if removed:
            LOG.info("Connection removed", extra={"connection": uid, "slots": len(removed)})

    async def close_all(self) -> None:
        """Tear down every live connection (application shutdown)."""

        entries = list(self._live.items())
        self._live.clear()
        for key, entry in entries:
            await self._end(key, entry)
            self._prune_lock(key)
        await self._tunnels.close_all()

    async def _acquire(self, key: str, node: ConnectionNode, request: GetRequest) -> DatabaseConnection:
        entry = self._live.get(key)
        if entry is not None:
            if entry.connection.is_alive():
                if entry.database == node.database:
                    return entry.connection
                if await self._repoint(key, entry, node):
                    return entry.connection
            else:
                LOG.debug("Discarding dead connection", extra={"connection": key})
                await self._end(key, entry)
        while True:
            try:
                return await self._connect(key, node)
            except (TunnelError, ConnectionRemovedError):
                raise
            except ConnectionBackendError as exc:
                if request.retry_count >= self._max_attempts:
                    LOG.warning(
                        "Connect failed, giving up",
                        extra={"connection": key, "attempts": request.retry_count},
                    )
                    raise
                LOG.info("Connect failed, retrying", extra={"connection": key, "error": str(exc)})
                request.retry_count += 1

    async def _repoint(self, key: str, entry: LiveConnection, node: ConnectionNode) -> bool:
        dialect = self.dialect_for(node)
        if not dialect.can_switch_database:
            await self._end(key, entry)
            return False
        entry.state = ConnectionState.REPOINTING
        statement = dialect.switch_database(node.database) if node.database else None
        try:
            if statement:
                await entry.connection.execute(statement)
        except Exception as exc:
            LOG.info(
                "Switching database failed, reconnecting",
                extra={"connection": key, "database": node.database, "error": str(exc)},
            )
            await self._end(key, entry)
            return False
        entry.database = node.database
        entry.state = ConnectionState.LIVE
        return True

    async def _connect(self, key: str, node: ConnectionNode) -> DatabaseConnection:
        target = node
        if node.using_ssh:
            target = await self._tunnels.create_tunnel(key, node)
        connection = self._factory(target)
        entry = LiveConnection(
            connection=connection,
            server_id=connection_id(node),
            ssh=node.ssh,
            database=node.database,
        )
        self._live[key] = entry
        try:
            await connection.connect()
        except Exception:
            await self._end(key, entry)
            raise
        if entry.state is ConnectionState.DEAD or self._live.get(key) is not entry:
            # Removed while connecting; the tunnel went with the removal.
            await _quietly(connection.close(), key)
            LOG.info("Connection removed while connecting", extra={"connection": key})
            raise ConnectionRemovedError(f"Connection '{node.label}' was closed while connecting.")
        entry.state = ConnectionState.LIVE
        LOG.info("Connection established", extra={"connection": key, "database": node.database})
        return connection

    async def _end(self, key: str, entry: LiveConnection) -> None:
        entry.state = ConnectionState.DEAD
        if self._live.get(key) is entry:
            del self._live[key]
        await _quietly(self._tunnels.close_tunnel(key), key)
        await _quietly(entry.connection.close(), key)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _prune_lock(self, key: str) -> None:
        if key not in self._lock_users and key not in self._live:
            self._locks.pop(key, None)


async def _quietly(operation: Awaitable[None], key: str) -> None:
    try:
        await operation
    except Exception:
        LOG.debug("Ignoring teardown failure", exc_info=True, extra={"connection": key})


__all__ = [
    "ConnectionManager",
    "ConnectionRemovedError",
    "ConnectionState",
    "GetRequest",
    "LiveConnection",
    "MAX_CONNECT_ATTEMPTS",
    "NoActiveConnectionError",
]
