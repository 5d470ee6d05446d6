"""SSH local port forwarding for tunneled connection nodes."""

from __future__ import annotations

import asyncio
import errno
import logging
from dataclasses import dataclass

import asyncssh

from .connections import ConnectionBackendError
from .models import ConnectionNode, SshConfig

LOG = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"


class TunnelError(ConnectionBackendError):
    """Raised when an SSH tunnel cannot be established."""


@dataclass(slots=True)
class _Tunnel:
    ssh: asyncssh.SSHClientConnection
    listener: asyncssh.SSHListener
    local_port: int


class SshTunnelService:
    """Opens at most one forward per identity key and tears it down on request."""

    def __init__(self) -> None:
        self._tunnels: dict[str, _Tunnel] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def has_tunnel(self, key: str) -> bool:
        return key in self._tunnels

    def local_port(self, key: str) -> int | None:
        tunnel = self._tunnels.get(key)
        return tunnel.local_port if tunnel else None

    async def create_tunnel(self, key: str, node: ConnectionNode) -> ConnectionNode:
        """Return ``node`` rewritten to reach the database through a local forward."""

        if node.ssh is None:
            raise ValueError(f"Connection '{node.label}' is not configured for SSH.")
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            existing = self._tunnels.get(key)
            if existing is not None:
                return node.with_endpoint(LOCAL_HOST, existing.local_port)
            return await self._open(key, node, node.ssh)

    async def close_tunnel(self, key: str) -> None:
        """Close the forward for ``key``; a no-op when none is open."""

        tunnel = self._tunnels.pop(key, None)
        self._locks.pop(key, None)
        if tunnel is None:
            return
        tunnel.listener.close()
        tunnel.ssh.close()
        await tunnel.ssh.wait_closed()
        LOG.info("SSH tunnel closed", extra={"tunnel": key, "local_port": tunnel.local_port})

    async def close_all(self) -> None:
        for key in tuple(self._tunnels):
            try:
                await self.close_tunnel(key)
            except Exception:  # pragma: no cover - best effort cleanup
                LOG.debug("Ignoring tunnel close failure", exc_info=True, extra={"tunnel": key})

    async def _open(self, key: str, node: ConnectionNode, ssh: SshConfig) -> ConnectionNode:
        try:
            conn = await asyncssh.connect(ssh.host, **_connect_options(ssh))
        except (OSError, asyncssh.Error) as exc:
            raise TunnelError(f"Failed to open SSH connection to '{ssh.host}': {exc}") from exc
        try:
            listener = await conn.forward_local_port(LOCAL_HOST, ssh.local_port, node.host, node.port)
        except OSError as exc:
            conn.close()
            if exc.errno == errno.EADDRINUSE and ssh.local_port:
                LOG.warning(
                    "Local tunnel port already in use; assuming the existing forward is serviceable",
                    extra={"tunnel": key, "local_port": ssh.local_port},
                )
                return node.with_endpoint(LOCAL_HOST, ssh.local_port)
            raise TunnelError(f"Failed to forward local port for '{node.label}': {exc}") from exc
        except asyncssh.Error as exc:
            conn.close()
            raise TunnelError(f"Failed to forward local port for '{node.label}': {exc}") from exc
        local_port = listener.get_port()
        self._tunnels[key] = _Tunnel(ssh=conn, listener=listener, local_port=local_port)
        LOG.info(
            "SSH tunnel established",
            extra={"tunnel": key, "local_port": local_port, "remote": f"{node.host}:{node.port}"},
        )
        return node.with_endpoint(LOCAL_HOST, local_port)


def _connect_options(ssh: SshConfig) -> dict[str, object]:
    options: dict[str, object] = {
        "port": ssh.port,
        "connect_timeout": ssh.connect_timeout,
    }
    if ssh.username:
        options["username"] = ssh.username
    if ssh.password:
        options["password"] = ssh.password
    if ssh.private_key_path:
        options["client_keys"] = [ssh.private_key_path]
        if ssh.passphrase:
            options["passphrase"] = ssh.passphrase
    if not ssh.strict_host_key:
        options["known_hosts"] = None
    return options


__all__ = ["LOCAL_HOST", "SshTunnelService", "TunnelError"]
