"""Query pad widget that runs statements on the active connection."""

from __future__ import annotations

from typing import Callable

from textual import events
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal
from textual.message import Message
from textual.widgets import Button, DataTable, Input, Static

from dbnav.connections import ConnectionBackendError
from dbnav.manager import NoActiveConnectionError
from dbnav.query import QueryExecutionError, QueryGateway, QueryResult


class QueryPad(Container):
    """Single statement editor; its document name encodes the target connection."""

    DEFAULT_CSS = """
    QueryPad {
        layout: vertical;
        border: round $primary 40%;
        padding: 1 2;
        height: 1fr;
        background: $surface;
    }

    QueryPad .panel-title {
        text-style: bold;
    }

    QueryPad Input {
        border: heavy $primary;
    }

    QueryPad:focus-within {
        border: round $primary;
        background: $surface-lighten-1;
    }

    QueryPad .query-actions {
        margin-top: 1;
        align-horizontal: left;
    }

    QueryPad .query-actions > * {
        margin-right: 1;
    }

    QueryPad #query-script {
        margin-top: 1;
        color: $text-muted;
    }

    QueryPad #query-results {
        height: 1fr;
        margin-top: 1;
        border-top: solid $surface-darken-2;
    }
    """

    BINDINGS = Container.BINDINGS + [
        Binding("ctrl+enter", "run_query", "Run query", show=False, priority=True),
    ]

    def __init__(self, gateway: QueryGateway) -> None:
        super().__init__(id="query-pad")
        self._gateway = gateway
        self._title: Static | None = None
        self._status_panel: Static | None = None
        self._input: Input | None = None
        self._result_table: DataTable | None = None
        self._script_panel: Static | None = None
        self._result_limit = 200
        self.document_name: str | None = None

    def compose(self) -> ComposeResult:
        yield Static("Query Pad", id="query-title", classes="panel-title")
        yield _QueryInput(
            placeholder="Type SQL, e.g. SELECT * FROM accounts WHERE id = 1;",
            id="query-input",
            on_query=self._request_query_run,
        )
        yield Horizontal(
            Button("Run query", id="run-query", variant="primary"),
            Static("", id="query-status"),
            classes="query-actions",
        )
        yield Static("", id="query-script", markup=False)
        yield DataTable(id="query-results", zebra_stripes=True)

    async def on_mount(self) -> None:
        self._title = self.query_one("#query-title", Static)
        self._input = self.query_one("#query-input", _QueryInput)
        self._status_panel = self.query_one("#query-status", Static)
        self._result_table = self.query_one("#query-results", DataTable)
        self._script_panel = self.query_one("#query-script", Static)
        self._script_panel.display = False
        self._result_table.cursor_type = "row"
        self._render_title()

    def open_document(self, name: str) -> None:
        """Point the pad at a new query document."""

        self.document_name = name
        self._render_title()

    def show_script(self, script: str) -> None:
        """Display a generated script, such as a procedure definition."""

        if self._script_panel:
            self._script_panel.update(script)
            self._script_panel.display = bool(script)

    async def action_run_query(self) -> None:
        await self._execute_current_query()

    async def on_query_run_requested(self, event: "QueryRunRequested") -> None:
        await self._execute_current_query()
        event.stop()

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "run-query":
            await self._execute_current_query()

    def _request_query_run(self) -> None:
        self.post_message(QueryRunRequested())

    async def _execute_current_query(self) -> None:
        if not self._input:
            return
        sql = self._input.value.strip()
        if not sql:
            self._set_status("Enter SQL to run.", severity="warning")
            return
        self._set_status("Executing…", severity="information")
        try:
            result = await self._gateway.execute(None, sql)
        except (NoActiveConnectionError, ConnectionBackendError, QueryExecutionError) as exc:
            self._set_status(f"Error: {exc}", severity="error")
            self._render_query_result(None)
            return
        self._render_query_result(result)
        self._set_status(f"{result.status} · {result.elapsed_ms} ms", severity="success")

    def _render_title(self) -> None:
        if self._title:
            self._title.update(f"Query Pad · {self.document_name}" if self.document_name else "Query Pad")

    def _render_query_result(self, result: QueryResult | None) -> None:
        if not self._result_table:
            return
        self._result_table.clear(columns=True)
        if not result or not result.columns:
            return
        columns = result.columns[: self._result_limit]
        self._result_table.add_columns(*columns)
        for row in result.rows[: self._result_limit]:
            values = list(row[: len(columns)])
            values.extend([""] * (len(columns) - len(values)))
            self._result_table.add_row(*(self._format_cell(value) for value in values))

    def _set_status(self, message: str, *, severity: str) -> None:
        if not self._status_panel:
            return
        prefix = {
            "information": "ℹ",
            "warning": "⚠",
            "error": "✖",
            "success": "✔",
        }.get(severity, "•")
        self._status_panel.update(f"{prefix} {message}")

    @staticmethod
    def _format_cell(value: object) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        return str(value)


class QueryRunRequested(Message):
    """Message fired when the input requests a query run."""


class _QueryInput(Input):
    """Input wrapper that detects Ctrl+Enter/newline chords."""

    _TRIGGER_KEYS = {"ctrl+enter", "ctrl+j", "newline"}

    def __init__(
        self,
        *args: object,
        on_query: Callable[[], None] | None = None,
        **kwargs: object,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._on_query = on_query

    def _on_key(self, event: events.Key) -> None:
        key = event.key or ""
        if key in self._TRIGGER_KEYS and self._on_query:
            self._on_query()
            event.stop()
            return
        super()._on_key(event)


__all__ = ["QueryPad", "QueryRunRequested"]
