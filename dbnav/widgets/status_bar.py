"""Status bar widget that mirrors the connection manager."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from dbnav.manager import ConnectionManager
from dbnav.models import ConnectionNode


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, manager: ConnectionManager) -> None:
        super().__init__("", id="status-bar")
        self._manager = manager
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._manager.subscribe(self._handle_refresh)
        self.update(self.describe())

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def describe(self) -> str:
        active = self._manager.active_node
        parts = [
            f"Active: {_active_label(active)}",
            f"Live connections: {len(self._manager.live_keys())}",
        ]
        if active is not None and active.using_ssh:
            parts.append("SSH")
        return " | ".join(parts)

    def _handle_refresh(self, _node: ConnectionNode | None) -> None:
        self.update(self.describe())


def _active_label(node: ConnectionNode | None) -> str:
    if node is None:
        return "none"
    if node.database:
        return f"{node.label} / {node.database}"
    return node.label


__all__ = ["StatusBar"]
