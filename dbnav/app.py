"""Textual application entry point for dbnav."""

from __future__ import annotations

import logging

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import Footer, Header

from .config import AppConfig, configure_logging, load_config, save_config
from .connections import ConnectionBackendError
from .explorer import SchemaExplorer
from .identity import connection_id
from .manager import ConnectionManager, NoActiveConnectionError
from .models import ConnectionNode
from .providers import (
    CloseConnectionProvider,
    ConnectionSwitchProvider,
    CreateDatabaseProvider,
    TreeRefreshProvider,
)
from .query import QueryExecutionError, QueryGateway, QueryResult
from .tunnel import SshTunnelService
from .widgets import ConfirmScreen, ConnectionTree, PromptScreen, QueryPad, StatusBar

LOG = logging.getLogger(__name__)


def _load_app_config() -> AppConfig:
    """Load configuration with a small wrapper for test overrides."""

    return load_config()


class DbnavApp(App[None]):
    """Connection tree, query pad and status bar around one connection manager."""

    COMMANDS = App.COMMANDS | {
        ConnectionSwitchProvider,
        CloseConnectionProvider,
        CreateDatabaseProvider,
        TreeRefreshProvider,
    }
    CSS = """
    Screen {
        layout: vertical;
    }
    #content {
        layout: horizontal;
        height: 1fr;
    }
    #main-column {
        layout: vertical;
        padding: 1 2;
        height: 1fr;
        border-left: solid $surface-darken-1;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
        ("ctrl+r", "refresh", "Refresh Tree"),
        ("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(self) -> None:
        super().__init__()
        self._config = _load_app_config()
        if self._config.theme == "light":
            self.theme = "textual-light"
        self._profiles = tuple(profile.to_node() for profile in self._config.profiles)
        self._query_pad: QueryPad | None = None
        self._manager = ConnectionManager(
            tunnel_service=SshTunnelService(),
            active_document=self._active_document,
            max_attempts=self._config.max_connect_attempts,
        )
        self._gateway = QueryGateway(self._manager)
        self._explorer = SchemaExplorer(
            self._manager,
            self._gateway,
            max_table_count=self._config.max_table_count,
        )
        for node in self._profiles:
            self._manager.cache.remember_node(connection_id(node), node)
        if self._config.active_profile:
            node = self._find_profile(self._config.active_profile)
            if node is None:
                LOG.warning("Configured active profile is missing", extra={"profile": self._config.active_profile})
            else:
                self._manager.change_active(node)

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        tree = ConnectionTree(
            self._manager,
            self._explorer,
            self._profiles,
            on_activate=self.activate_database,
        )
        query_pad = QueryPad(self._gateway)
        self._query_pad = query_pad
        yield Horizontal(tree, Container(query_pad, id="main-column"), id="content")
        yield StatusBar(self._manager)
        yield Footer()

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def connection_manager(self) -> ConnectionManager:
        """Expose the connection manager for tests."""

        return self._manager

    @property
    def explorer(self) -> SchemaExplorer:
        return self._explorer

    @property
    def profiles(self) -> tuple[ConnectionNode, ...]:
        return self._profiles

    def action_refresh(self) -> None:
        for node in self._profiles:
            self._manager.cache.invalidate_tree(connection_id(node))
        self._manager.request_refresh(None)

    def switch_profile(self, name: str) -> None:
        """Activate the requested connection profile and persist the choice."""

        node = self._find_profile(name)
        if node is None:
            self.notify(f"Profile '{name}' not found.", severity="error")
            return
        self._manager.change_active(node)
        self._config = self._config.with_active_profile(node.label)
        save_config(self._config)
        self.notify(f"Switched to: {node.label}", severity="information")

    def activate_database(self, node: ConnectionNode, database: str | None = None) -> None:
        """Point the active target and the query pad at ``database``."""

        filename = self._explorer.activate_database(node, database)
        if self._query_pad is not None:
            self._query_pad.open_document(filename)

    async def close_active_connection(self) -> None:
        node = self._manager.active_node
        if node is None:
            self.notify("No active connection to close.", severity="warning")
            return
        await self._manager.remove_connection(connection_id(node))
        if self._query_pad is not None:
            self._query_pad.document_name = None
        self.notify(f"Closed: {node.label}", severity="information")

    async def create_database(self, name: str | None = None) -> bool:
        """Create ``name`` on the active server, prompting for it when omitted."""

        node = self._manager.active_node
        if node is None:
            self.notify("No active connection to create a database on.", severity="warning")
            return False
        if name is None:
            self.push_screen(PromptScreen(f"New database on {node.label}", "database name"), self._on_database_named)
            return False
        try:
            await self._explorer.create_database(node.with_database(None), name)
        except (NoActiveConnectionError, ConnectionBackendError, QueryExecutionError) as exc:
            self.notify(str(exc), severity="error")
            return False
        self.notify(f"Created database: {name}", severity="information")
        return True

    async def show_procedure(self, node: ConnectionNode, name: str) -> None:
        try:
            script = await self._explorer.procedure_source(node, name)
        except (ConnectionBackendError, QueryExecutionError) as exc:
            self.notify(str(exc), severity="error")
            return
        if self._query_pad is not None:
            self._query_pad.show_script(script)

    async def drop_procedure(self, node: ConnectionNode, name: str) -> bool:
        try:
            await self._explorer.drop_procedure(node, name)
        except (ConnectionBackendError, QueryExecutionError) as exc:
            self.notify(str(exc), severity="error")
            return False
        self.notify(f"Dropped procedure: {name}", severity="information")
        return True

    async def on_connection_tree_procedure_selected(self, event: ConnectionTree.ProcedureSelected) -> None:
        await self.show_procedure(event.node, event.procedure)

    def on_connection_tree_procedure_drop_requested(self, event: ConnectionTree.ProcedureDropRequested) -> None:
        node, name = event.node, event.procedure

        async def _confirmed(answer: bool | None) -> None:
            if answer:
                await self.drop_procedure(node, name)

        self.push_screen(ConfirmScreen(f"Drop procedure {name} from {node.database}?"), _confirmed)

    async def _on_database_named(self, name: str | None) -> None:
        if name:
            await self.create_database(name)

    async def run_query(self, sql: str) -> QueryResult | None:
        """Run ``sql`` on the active connection, reporting failures as notifications."""

        try:
            return await self._gateway.execute(None, sql)
        except (NoActiveConnectionError, ConnectionBackendError, QueryExecutionError) as exc:
            self.notify(str(exc), severity="error")
            return None

    def _active_document(self) -> str | None:
        if self._query_pad is None:
            return None
        return self._query_pad.document_name

    def _find_profile(self, name: str) -> ConnectionNode | None:
        for node in self._profiles:
            if node.label == name:
                return node
        return None

    async def _shutdown(self) -> None:
        await self._manager.close_all()
        await super()._shutdown()


def main() -> None:
    """Invoke the Textual application."""

    app = DbnavApp()
    configure_logging(app.config)
    app.run()


if __name__ == "__main__":
    main()
