"""Table lookups against DuckDB's catalog.

The workspace keeps its bookkeeping tables under a leading underscore
(``_trace``, ``_rejects``, ...) next to the employee table and the
``report_*`` outputs; callers pick which of those they want by prefix.
"""

from __future__ import annotations

from typing import Iterable

import duckdb

INFRA_PREFIX = "_"


def quote_ident(name: str) -> str:
    """Quote an identifier for DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def _user_tables(
    conn: duckdb.DuckDBPyConnection,
    *,
    name: str | None = None,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    # Prefix filtering happens in SQL so every caller shares one query
    clauses: list[str] = []
    params: list[str] = []
    if not include_internal:
        clauses.append("NOT internal")
    if name is not None:
        clauses.append("table_name = ?")
        params.append(name)
    for prefix in exclude_prefixes:
        if prefix:
            clauses.append("NOT starts_with(table_name, ?)")
            params.append(prefix)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT table_name FROM duckdb_tables() {where} ORDER BY table_name",
        params,
    ).fetchall()
    return [r[0] for r in rows]


def list_tables(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return sorted table names, minus any starting with an excluded prefix.

    Pass ``exclude_prefixes=(INFRA_PREFIX,)`` to hide the bookkeeping tables.
    """
    return _user_tables(
        conn, include_internal=include_internal, exclude_prefixes=exclude_prefixes
    )


def table_exists(conn: duckdb.DuckDBPyConnection, table_name: str) -> bool:
    """True if ``table_name`` is a user table. Views do not count."""
    return bool(_user_tables(conn, name=table_name))


def count_rows(conn: duckdb.DuckDBPyConnection, table_name: str) -> int | None:
    """Row count of a table, or None when it cannot be read."""
    try:
        (n,) = conn.execute(
            f"SELECT COUNT(*) FROM {quote_ident(table_name)}"
        ).fetchone()
    except duckdb.Error:
        return None
    return int(n)


def count_rows_display(conn: duckdb.DuckDBPyConnection, table_name: str) -> str:
    n = count_rows(conn, table_name)
    return "error" if n is None else str(n)
