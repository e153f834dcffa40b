"""Shared fixtures and helpers for the hrgraph test suite."""

import datetime
from pathlib import Path

import duckdb
import pytest

from hrgraph.infra import init_infra
from hrgraph.ingest import ingest_table
from hrgraph.normalize import CORRUPTED_ID_COLUMNS

AS_OF = datetime.date(2024, 6, 15)
GARBLED_ID = CORRUPTED_ID_COLUMNS[0]

RAW_HEADER = [
    GARBLED_ID,
    "first_name",
    "last_name",
    "birthdate",
    "gender",
    "race",
    "department",
    "jobtitle",
    "location",
    "hire_date",
    "termdate",
    "location_city",
    "location_state",
]


@pytest.fixture
def conn():
    """In-memory DuckDB connection for each test."""
    c = duckdb.connect(":memory:")
    init_infra(c)
    yield c
    c.close()


def _raw_row(**kwargs) -> dict:
    """Helper to create a raw (pre-normalization) employee row with defaults."""
    row = {
        GARBLED_ID: "00-0000001",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "birthdate": "01/01/2000",
        "gender": "Female",
        "race": "White",
        "department": "Engineering",
        "jobtitle": "Engineer",
        "location": "Headquarters",
        "hire_date": "03/01/2020",
        "termdate": "",
        "location_city": "Cleveland",
        "location_state": "Ohio",
    }
    row.update(kwargs)
    return row


def _load_raw(conn: duckdb.DuckDBPyConnection, rows: list[dict], table: str = "hr"):
    """Ingest raw rows as the employee table."""
    ingest_table(conn, rows, table)


def _write_csv(path: Path, rows: list[dict]) -> Path:
    """Write raw rows to a CSV file with the garbled id header."""
    lines = [",".join(RAW_HEADER)]
    for row in rows:
        lines.append(",".join(str(row.get(c) or "") for c in RAW_HEADER))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _column(conn: duckdb.DuckDBPyConnection, column: str, table: str = "hr") -> list:
    """Return one column's values in load order."""
    return [
        r[0]
        for r in conn.execute(
            f'SELECT "{column}" FROM "{table}" ORDER BY "_row_id"'
        ).fetchall()
    ]


def _tables(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of user-defined table names."""
    rows = conn.execute(
        "SELECT table_name FROM duckdb_tables() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}
