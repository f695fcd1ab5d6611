"""Statement execution over a ready connection."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Iterable, Protocol

import asyncpg

from .formatting import format_value


class QueryExecutionError(RuntimeError):
    """Raised when a statement fails to execute."""


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Normalized statement output."""

    columns: tuple[str, ...]
    rows: tuple[tuple[object, ...], ...]
    status: str
    elapsed_ms: int
    row_count: int | None = None

    def text_rows(self) -> tuple[tuple[str, ...], ...]:
        """Rows with every value rendered as text."""

        return tuple(tuple(format_value(value) for value in row) for row in self.rows)


class StatementRunner(Protocol):
    """Subset of the asyncpg connection API used to run statements."""

    async def fetch(self, query: str, *args: object) -> list[asyncpg.Record]: ...

    async def execute(self, query: str, *args: object) -> str: ...


async def run_statement(conn: StatementRunner, sql: str) -> QueryResult:
    """Run one statement, fetching rows only when the statement returns them."""

    statement = sql.strip()
    if not statement:
        raise QueryExecutionError("Provide SQL to execute.")
    started = time.perf_counter()
    try:
        if _returns_rows(statement):
            records = await conn.fetch(statement)
            columns, rows = _records_to_rows(records)
            row_count: int | None = len(rows)
            status = f"{row_count} row(s)"
        else:
            status = await conn.execute(statement)
            columns, rows, row_count = (), (), None
    except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        raise QueryExecutionError(str(exc)) from exc
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    return QueryResult(
        columns=columns,
        rows=rows,
        status=status,
        elapsed_ms=elapsed_ms,
        row_count=row_count,
    )


def _returns_rows(statement: str) -> bool:
    token = statement.lstrip().split(None, 1)
    if not token:
        return False
    head = token[0].lower()
    return head in {"select", "with", "show", "values", "table"}


def _records_to_rows(
    records: Iterable[asyncpg.Record],
) -> tuple[tuple[str, ...], tuple[tuple[object, ...], ...]]:
    rows: list[tuple[object, ...]] = []
    columns: tuple[str, ...] = ()
    for record in records:
        if not columns:
            columns = tuple(str(key) for key in record.keys())
        # By position: duplicate column names such as ?column? share one key.
        rows.append(tuple(record.values()))
    return columns, tuple(rows)


__all__ = ["QueryExecutionError", "QueryResult", "StatementRunner", "run_statement"]
