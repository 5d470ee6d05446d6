"""Tests for the connection lifecycle manager."""

from __future__ import annotations

import asyncio
import errno
from typing import Any

import pytest

from dbnav import tunnel as tunnel_module
from dbnav.cache import MetadataCache
from dbnav.connections import ConnectionBackendError, StatementResult
from dbnav.identity import connection_id
from dbnav.manager import (
    ConnectionManager,
    ConnectionRemovedError,
    ConnectionState,
    GetRequest,
    NoActiveConnectionError,
)
from dbnav.models import ConnectionNode, DatabaseType, NodeDescriptor, NodeKind, SshConfig
from dbnav.tunnel import SshTunnelService, TunnelError


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeConnection:
    def __init__(self, node: ConnectionNode, *, fail_connect: bool = False, fail_switch: bool = False) -> None:
        self.node = node
        self.fail_connect = fail_connect
        self.fail_switch = fail_switch
        self.alive = False
        self.closed = False
        self.statements: list[str] = []
        self.gate: asyncio.Event | None = None

    async def connect(self) -> None:
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_connect:
            raise ConnectionBackendError("refused")
        self.alive = True

    def is_alive(self) -> bool:
        return self.alive

    async def close(self) -> None:
        self.alive = False
        self.closed = True

    async def execute(self, sql: str) -> StatementResult:
        self.statements.append(sql)
        if self.fail_switch and sql.startswith("USE"):
            raise RuntimeError("switch failed")
        return StatementResult(columns=(), rows=(), status="OK")


class _Factory:
    def __init__(self, *, fail_connect: bool = False, fail_switch: bool = False) -> None:
        self.created: list[_FakeConnection] = []
        self.fail_connect = fail_connect
        self.fail_switch = fail_switch
        self.gate: asyncio.Event | None = None

    def __call__(self, node: ConnectionNode) -> _FakeConnection:
        conn = _FakeConnection(node, fail_connect=self.fail_connect, fail_switch=self.fail_switch)
        conn.gate = self.gate
        self.created.append(conn)
        return conn


class _FakeTunnels:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.created: list[str] = []
        self.closed: list[str] = []

    async def create_tunnel(self, key: str, node: ConnectionNode) -> ConnectionNode:
        self.created.append(key)
        if self.fail:
            raise TunnelError("ssh down")
        return node.with_endpoint("127.0.0.1", 40000)

    async def close_tunnel(self, key: str) -> None:
        self.closed.append(key)

    async def close_all(self) -> None:
        return None


def _mysql(database: str | None = "db1") -> ConnectionNode:
    return ConnectionNode(host="localhost", port=3306, user="root", database=database)


def _manager(factory: _Factory, **kwargs) -> ConnectionManager:  # type: ignore[no-untyped-def]
    kwargs.setdefault("tunnel_service", _FakeTunnels())
    return ConnectionManager(connection_factory=factory, **kwargs)


@pytest.mark.anyio
async def test_get_connection_reuses_live_entry() -> None:
    factory = _Factory()
    manager = _manager(factory)

    first = await manager.get_connection(_mysql())
    second = await manager.get_connection(_mysql())

    assert first is second
    assert len(factory.created) == 1
    entry = manager.get_active_connection_by_key("localhost_3306_root")
    assert entry is not None
    assert entry.state is ConnectionState.LIVE
    assert entry.database == "db1"


@pytest.mark.anyio
async def test_concurrent_requests_share_one_connection() -> None:
    factory = _Factory()
    manager = _manager(factory)

    results = await asyncio.gather(*(manager.get_connection(_mysql()) for _ in range(5)))

    assert len(factory.created) == 1
    assert all(result is results[0] for result in results)
    assert manager.live_keys() == ("localhost_3306_root",)


@pytest.mark.anyio
async def test_repoint_switches_database_on_live_connection() -> None:
    factory = _Factory()
    manager = _manager(factory)

    first = await manager.get_connection(_mysql("db1"))
    second = await manager.get_connection(_mysql("db2"))

    assert first is second
    assert factory.created[0].statements == ["USE `db2`"]
    entry = manager.get_active_connection_by_key("localhost_3306_root")
    assert entry is not None
    assert entry.database == "db2"


@pytest.mark.anyio
async def test_failed_repoint_reconnects() -> None:
    factory = _Factory(fail_switch=True)
    manager = _manager(factory)

    first = await manager.get_connection(_mysql("db1"))
    second = await manager.get_connection(_mysql("db2"))

    assert first is not second
    assert factory.created[0].closed is True
    entry = manager.get_active_connection_by_key("localhost_3306_root")
    assert entry is not None
    assert entry.connection is second
    assert entry.database == "db2"


@pytest.mark.anyio
async def test_dead_entry_is_replaced() -> None:
    factory = _Factory()
    manager = _manager(factory)
    first = await manager.get_connection(_mysql())
    factory.created[0].alive = False

    second = await manager.get_connection(_mysql())

    assert second is not first
    assert len(factory.created) == 2


@pytest.mark.anyio
async def test_connect_is_retried_once_then_raises() -> None:
    factory = _Factory(fail_connect=True)
    manager = _manager(factory)
    request = GetRequest()

    with pytest.raises(ConnectionBackendError):
        await manager.get_connection(_mysql(), request)

    assert len(factory.created) == 2
    assert request.retry_count == 2
    assert manager.live_keys() == ()
    assert all(conn.closed for conn in factory.created)


@pytest.mark.anyio
async def test_zero_retry_count_still_allows_a_retry() -> None:
    factory = _Factory(fail_connect=True)
    manager = _manager(factory)

    with pytest.raises(ConnectionBackendError):
        await manager.get_connection(_mysql(), GetRequest(retry_count=0))

    assert len(factory.created) == 2


@pytest.mark.anyio
async def test_slot_locks_are_released_after_failure() -> None:
    manager = _manager(_Factory(fail_connect=True))

    with pytest.raises(ConnectionBackendError):
        await manager.get_connection(_mysql())

    assert manager._locks == {}


@pytest.mark.anyio
async def test_tunnel_failure_is_not_retried() -> None:
    factory = _Factory()
    tunnels = _FakeTunnels(fail=True)
    manager = _manager(factory, tunnel_service=tunnels)
    node = ConnectionNode(host="10.0.0.5", port=3306, user="root", ssh=SshConfig(host="bastion"))

    with pytest.raises(TunnelError):
        await manager.get_connection(node)

    assert tunnels.created == ["10.0.0.5_3306_root"]
    assert factory.created == []


@pytest.mark.anyio
async def test_ssh_node_connects_through_local_endpoint() -> None:
    factory = _Factory()
    tunnels = _FakeTunnels()
    manager = _manager(factory, tunnel_service=tunnels)
    node = ConnectionNode(host="10.0.0.5", port=3306, user="root", ssh=SshConfig(host="bastion"))

    await manager.get_connection(node)

    assert factory.created[0].node.host == "127.0.0.1"
    assert factory.created[0].node.port == 40000
    entry = manager.get_active_connection_by_key("10.0.0.5_3306_root")
    assert entry is not None
    assert entry.server_id == "10.0.0.5_3306_root"


@pytest.mark.anyio
async def test_get_connection_rejects_missing_node() -> None:
    manager = _manager(_Factory())

    with pytest.raises(ConnectionBackendError, match="dead"):
        await manager.get_connection(None)


@pytest.mark.anyio
async def test_session_id_gets_its_own_slot() -> None:
    factory = _Factory()
    manager = _manager(factory)

    shared = await manager.get_connection(_mysql())
    private = await manager.get_connection(_mysql(), GetRequest(session_id="tab-1"))

    assert shared is not private
    assert set(manager.live_keys()) == {"localhost_3306_root", "tab-1"}


@pytest.mark.anyio
async def test_postgres_uses_one_slot_per_database() -> None:
    factory = _Factory()
    manager = _manager(factory)
    base = ConnectionNode(host="pg", port=5432, user="app", db_type=DatabaseType.POSTGRES)

    first = await manager.get_connection(base.with_database("sales"))
    second = await manager.get_connection(base.with_database("hr"))

    assert first is not second
    assert set(manager.live_keys()) == {"pg_5432_app_sales", "pg_5432_app_hr"}
    assert factory.created[0].statements == []


@pytest.mark.anyio
async def test_remove_connection_clears_everything_owned() -> None:
    factory = _Factory()
    tunnels = _FakeTunnels()
    cache = MetadataCache()
    manager = _manager(factory, tunnel_service=tunnels, cache=cache)
    node = _mysql()
    server_id = connection_id(node)
    cache.set_children(server_id, [NodeDescriptor(label="db1", kind=NodeKind.DATABASE, database="db1")])
    cache.set_children("localhost_3306_root_db1_tableGroup", [], parent="localhost_3306_root_db1")
    cache.link("localhost_3306_root_db1", server_id)
    await manager.get_connection(node)
    await manager.get_connection(node, GetRequest(session_id="tab-1"))
    manager.change_active(node)
    refreshed: list[ConnectionNode | None] = []
    manager.subscribe(refreshed.append)

    await manager.remove_connection(server_id)

    assert manager.live_keys() == ()
    assert manager.active_node is None
    assert cache.get_children(server_id) is None
    assert cache.get_children("localhost_3306_root_db1_tableGroup") is None
    assert all(conn.closed for conn in factory.created)
    assert refreshed == [None]
    assert set(tunnels.closed) == {"localhost_3306_root", "tab-1"}

    await manager.remove_connection(server_id)

    assert manager.live_keys() == ()


@pytest.mark.anyio
async def test_remove_connection_keeps_other_servers() -> None:
    factory = _Factory()
    manager = _manager(factory)
    other = ConnectionNode(host="replica", port=3306, user="root")
    await manager.get_connection(_mysql())
    await manager.get_connection(other)
    manager.change_active(other)

    await manager.remove_connection("localhost_3306_root")

    assert manager.live_keys() == ("replica_3306_root",)
    assert manager.active_node == other


@pytest.mark.anyio
async def test_remove_during_connect_closes_the_late_connection() -> None:
    factory = _Factory()
    factory.gate = asyncio.Event()
    tunnels = _FakeTunnels()
    manager = _manager(factory, tunnel_service=tunnels)
    pending = asyncio.create_task(manager.get_connection(_mysql()))
    while not factory.created:
        await asyncio.sleep(0)

    await manager.remove_connection("localhost_3306_root")
    factory.gate.set()

    with pytest.raises(ConnectionRemovedError):
        await pending
    late = factory.created[0]
    assert late.closed is True
    assert late.is_alive() is False
    assert manager.live_keys() == ()
    assert manager._locks == {}

    factory.gate = None
    replacement = await manager.get_connection(_mysql())

    assert replacement is factory.created[1]
    assert manager.live_keys() == ("localhost_3306_root",)


@pytest.mark.anyio
async def test_remove_connection_releases_slot_locks() -> None:
    manager = _manager(_Factory())
    await manager.get_connection(_mysql())
    assert "localhost_3306_root" in manager._locks

    await manager.remove_connection("localhost_3306_root")

    assert manager._locks == {}


class _BusyPortSsh:
    def __init__(self) -> None:
        self.closed = False

    async def forward_local_port(self, *args: Any) -> None:
        raise OSError(errno.EADDRINUSE, "Address already in use")

    def close(self) -> None:
        self.closed = True


@pytest.mark.anyio
async def test_busy_tunnel_port_connects_through_existing_forward(monkeypatch: pytest.MonkeyPatch) -> None:
    ssh = _BusyPortSsh()

    async def _connect(host: str, **kwargs: Any) -> _BusyPortSsh:
        return ssh

    monkeypatch.setattr(tunnel_module.asyncssh, "connect", _connect)
    factory = _Factory()
    tunnels = SshTunnelService()
    manager = _manager(factory, tunnel_service=tunnels)
    node = ConnectionNode(
        host="10.0.0.5",
        port=3306,
        user="root",
        ssh=SshConfig(host="bastion", local_port=13306),
    )

    first = await manager.get_connection(node)
    second = await manager.get_connection(node)

    assert first is second
    assert len(factory.created) == 1
    assert (factory.created[0].node.host, factory.created[0].node.port) == ("127.0.0.1", 13306)
    assert ssh.closed is True
    assert not tunnels.has_tunnel("10.0.0.5_3306_root")

    await manager.remove_connection("10.0.0.5_3306_root")

    assert manager.live_keys() == ()
    assert factory.created[0].closed is True


def test_change_active_notifies_and_registers_node() -> None:
    manager = _manager(_Factory())
    seen: list[ConnectionNode | None] = []
    unsubscribe = manager.subscribe(seen.append)
    node = _mysql("shop")

    manager.change_active(node)
    unsubscribe()
    manager.change_active(_mysql("other"))

    assert seen == [node]
    assert manager.active_node == _mysql("other")
    assert manager.cache.lookup_node("localhost_3306_root_shop") == node


def test_refresh_listener_errors_do_not_stop_others() -> None:
    manager = _manager(_Factory())
    seen: list[ConnectionNode | None] = []

    def _broken(_node: ConnectionNode | None) -> None:
        raise RuntimeError("boom")

    manager.subscribe(_broken)
    manager.subscribe(seen.append)
    manager.request_refresh(None)

    assert seen == [None]


def test_last_connection_option_requires_active_node() -> None:
    manager = _manager(_Factory())

    with pytest.raises(NoActiveConnectionError):
        manager.get_last_connection_option()
    assert manager.get_last_connection_option(check_active_file=False) is None


def test_active_file_wins_over_active_node() -> None:
    document = {"name": "mysql_localhost_3306_root_shop.sql"}
    manager = _manager(_Factory(), active_document=lambda: document["name"])
    server = _mysql(None)
    manager.cache.remember_node(connection_id(server), server)
    manager.change_active(ConnectionNode(host="replica", port=3306, user="root"))

    resolved = manager.get_last_connection_option()

    assert resolved == server.with_database("shop")

    document["name"] = "notes.sql"
    assert manager.get_last_connection_option().host == "replica"


def test_active_file_prefers_registered_database_node() -> None:
    registered = ConnectionNode(host="localhost", port=3306, user="root", database="shop", name="Shop")
    manager = _manager(_Factory(), active_document=lambda: "mysql_localhost_3306_root_shop.sql")
    manager.cache.remember_node("localhost_3306_root_shop", registered)

    assert manager.get_by_active_file() is registered


def test_unknown_active_file_falls_back_to_none() -> None:
    manager = _manager(_Factory(), active_document=lambda: "mysql_elsewhere_3306_root_shop.sql")

    assert manager.get_by_active_file() is None
