"""Workspace infrastructure tables.

Centralizes creation and persistence for workspace-internal tables:
- _trace
- _workspace_meta
- _rejects
- _report_meta
"""

from __future__ import annotations

import importlib.metadata
import json
import platform
import sys
import time
from typing import Any

import duckdb

from .sql_utils import get_column_schema


def init_infra(conn: duckdb.DuckDBPyConnection) -> None:
    """Ensure all workspace infra tables exist."""
    ensure_trace(conn)
    ensure_workspace_meta(conn)
    ensure_rejects(conn)
    ensure_report_meta(conn)


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


def ensure_trace(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the _trace table."""
    conn.execute("CREATE SEQUENCE IF NOT EXISTS _trace_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _trace (
            id INTEGER DEFAULT nextval('_trace_seq'),
            timestamp TIMESTAMP DEFAULT current_timestamp,
            phase VARCHAR,
            query VARCHAR NOT NULL,
            success BOOLEAN NOT NULL,
            error VARCHAR,
            row_count INTEGER,
            elapsed_ms DOUBLE
        )
        """
    )


def log_trace(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    success: bool,
    *,
    error: str | None = None,
    row_count: int | None = None,
    elapsed_ms: float | None = None,
    phase: str | None = None,
) -> None:
    """Log a SQL query execution to the _trace table."""
    conn.execute(
        """
        INSERT INTO _trace (phase, query, success, error, row_count, elapsed_ms)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [phase, query, success, error, row_count, elapsed_ms],
    )


def run_sql(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    params: list[Any] | None = None,
    *,
    phase: str | None = None,
) -> list[tuple[Any, ...]]:
    """Execute one statement, record it in _trace and re-raise on failure.

    Returns the fetched rows (empty for statements without a result set).
    """
    start_time = time.perf_counter()
    rows: list[tuple[Any, ...]] = []
    row_count: int | None = None
    try:
        if params is None:
            cursor = conn.execute(query)
        else:
            cursor = conn.execute(query, params)
        if cursor.description:
            rows = cursor.fetchall()
            # Plain DML reports a single "Count" row
            if len(rows) == 1 and cursor.description[0][0] == "Count":
                row_count = int(rows[0][0])
            else:
                row_count = len(rows)
    except duckdb.Error as e:
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        log_trace(
            conn, query, success=False, error=str(e), elapsed_ms=elapsed_ms, phase=phase
        )
        raise

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    log_trace(
        conn,
        query,
        success=True,
        row_count=row_count,
        elapsed_ms=elapsed_ms,
        phase=phase,
    )
    return rows


# ---------------------------------------------------------------------------
# Workspace metadata
# ---------------------------------------------------------------------------


def ensure_workspace_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _workspace_meta (
            key VARCHAR PRIMARY KEY,
            value VARCHAR
        )
        """
    )


def persist_workspace_meta(
    conn: duckdb.DuckDBPyConnection,
    *,
    table: str,
    source: str | None = None,
    input_row_count: int | None = None,
) -> None:
    """Write workspace-level metadata to _workspace_meta (fresh run)."""
    ensure_workspace_meta(conn)
    conn.execute("DELETE FROM _workspace_meta")

    try:
        version = importlib.metadata.version("hrgraph")
    except importlib.metadata.PackageNotFoundError:
        version = "unknown"

    rows: list[tuple[str, str]] = [
        ("meta_version", "1"),
        ("created_at_utc", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
        ("hrgraph_version", version),
        ("python_version", sys.version.split()[0]),
        ("platform", platform.platform()),
        ("table", table),
    ]
    if source:
        rows.append(("source", source))
    if input_row_count is not None:
        rows.append(("input_row_count", str(input_row_count)))
        schema = [{"name": n, "type": t} for n, t in get_column_schema(conn, table)]
        rows.append(("input_schema", json.dumps(schema)))

    conn.executemany("INSERT INTO _workspace_meta (key, value) VALUES (?, ?)", rows)


def read_workspace_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, str]:
    """Read workspace metadata. Returns empty dict if table doesn't exist."""
    try:
        return dict(conn.execute("SELECT key, value FROM _workspace_meta").fetchall())
    except duckdb.Error:
        return {}


def upsert_workspace_meta(
    conn: duckdb.DuckDBPyConnection, rows: list[tuple[str, str]]
) -> None:
    """Upsert additional workspace metadata rows."""
    ensure_workspace_meta(conn)
    conn.executemany(
        """
        INSERT INTO _workspace_meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        rows,
    )


# ---------------------------------------------------------------------------
# Data-quality rejects
# ---------------------------------------------------------------------------


def ensure_rejects(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _rejects (
            row_id      INTEGER,
            emp_id      VARCHAR,
            column_name VARCHAR NOT NULL,
            value       VARCHAR,
            kind        VARCHAR NOT NULL,
            severity    VARCHAR NOT NULL
        )
        """
    )


def reject_counts(conn: duckdb.DuckDBPyConnection) -> dict[str, int]:
    """Return kind -> number of recorded rejects."""
    try:
        rows = conn.execute(
            "SELECT kind, COUNT(*) FROM _rejects GROUP BY kind ORDER BY kind"
        ).fetchall()
    except duckdb.Error:
        return {}
    return {kind: int(n) for kind, n in rows}


# ---------------------------------------------------------------------------
# Report metadata
# ---------------------------------------------------------------------------


def ensure_report_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _report_meta (
            report VARCHAR PRIMARY KEY,
            meta_json VARCHAR NOT NULL
        )
        """
    )


def persist_report_meta(
    conn: duckdb.DuckDBPyConnection, report_name: str, meta: dict[str, Any]
) -> None:
    """Persist per-report run metadata in _report_meta (overwrite per report)."""
    ensure_report_meta(conn)
    conn.execute("DELETE FROM _report_meta WHERE report = ?", [report_name])
    conn.execute(
        "INSERT INTO _report_meta (report, meta_json) VALUES (?, ?)",
        [report_name, json.dumps(meta, sort_keys=True)],
    )


def read_report_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, dict[str, Any]]:
    """Read report metadata. Returns empty dict if table doesn't exist."""
    try:
        rows = conn.execute(
            "SELECT report, meta_json FROM _report_meta ORDER BY report"
        ).fetchall()
    except duckdb.Error:
        return {}
    return {name: json.loads(raw) for name, raw in rows}
