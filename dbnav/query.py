"""Query execution gateway for the query pad and the schema explorer."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from .connections import QueryExecutionError
from .manager import ConnectionManager, GetRequest
from .models import ConnectionNode

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Normalized query output returned to the UI."""

    columns: tuple[str, ...]
    rows: tuple[tuple[object, ...], ...]
    status: str
    elapsed_ms: int
    row_count: int | None = None


class QueryGateway:
    """Runs statements on connections owned by the connection manager."""

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager

    async def execute(
        self,
        node: ConnectionNode | None,
        sql: str,
        *,
        session_id: str | None = None,
    ) -> QueryResult:
        """Run ``sql`` against ``node`` (or the active connection when omitted).

        Statement failures are not retried; only the connect step is.
        """

        statement = sql.strip()
        if not statement:
            raise QueryExecutionError("Provide SQL to execute.")
        target = node or self._manager.get_last_connection_option()
        connection = await self._manager.get_connection(target, GetRequest(session_id=session_id))
        started = time.perf_counter()
        result = await connection.execute(statement)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        LOG.debug("Statement executed", extra={"elapsed_ms": elapsed_ms, "status": result.status})
        return QueryResult(
            columns=result.columns,
            rows=result.rows,
            status=result.status,
            elapsed_ms=elapsed_ms,
            row_count=result.row_count,
        )


__all__ = ["QueryExecutionError", "QueryGateway", "QueryResult"]
