"""Ingestion module: load the raw employee table into DuckDB.

Accepts Polars DataFrames, list[dict] (array of structs), or dict[str, list]
(struct of arrays). All are coerced to DataFrame before writing.

Also supports file-based inputs (csv, parquet). CSV columns are read as
text so that the normalizer sees the raw date strings rather than whatever
the reader's type sniffing would make of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import duckdb
import polars as pl

from .catalog import count_rows, quote_ident

log = logging.getLogger(__name__)

# Type alias for in-memory tabular data
TableData = Any  # pl.DataFrame | list[dict] | dict[str, list]


SUPPORTED_FILE_EXTENSIONS = {
    ".csv": "csv",
    ".parquet": "parquet",
}


@dataclass(frozen=True)
class FileInput:
    path: Path
    format: str


def coerce_to_dataframe(data: TableData) -> pl.DataFrame:
    """Convert supported tabular formats to a Polars DataFrame.

    Accepted formats:
    - pl.DataFrame: returned as-is
    - list[dict]: array of structs, e.g. [{"a": 1, "b": 2}, ...]
    - dict[str, list]: struct of arrays, e.g. {"a": [1, 2], "b": [3, 4]}

    Raises TypeError for unsupported formats.
    """
    if isinstance(data, pl.DataFrame):
        return data
    if isinstance(data, list):
        return pl.DataFrame(data)
    if isinstance(data, dict):
        return pl.DataFrame(data)
    raise TypeError(
        f"Unsupported data type: {type(data).__name__}. "
        f"Expected DataFrame, list[dict], or dict[str, list]."
    )


def _normalize_path(path: Path, base_dir: Path | None = None) -> Path:
    """Resolve path against base_dir (or cwd) and expand user/symlinks."""
    if not path.is_absolute():
        if base_dir is None:
            base_dir = Path.cwd()
        path = base_dir / path
    return path.expanduser().resolve()


def parse_file_path(path: Path | str, base_dir: Path | None = None) -> FileInput:
    """Parse a path into a FileInput, checking the extension."""
    normalized = _normalize_path(Path(path), base_dir=base_dir)
    suffix = normalized.suffix.lower()
    if suffix not in SUPPORTED_FILE_EXTENSIONS:
        raise ValueError(f"Unsupported file extension: {suffix}")
    fmt = SUPPORTED_FILE_EXTENSIONS[suffix]
    return FileInput(path=normalized, format=fmt)


def _write_table(
    conn: duckdb.DuckDBPyConnection, df: pl.DataFrame, table_name: str
) -> None:
    """Write a DataFrame to DuckDB with a leading _row_id INTEGER column.

    Uses DuckDB's native DataFrame scan for bulk ingestion.
    """
    conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table_name)}")
    conn.register("_df", df)
    try:
        conn.execute(
            f"CREATE TABLE {quote_ident(table_name)} AS "
            'SELECT CAST(row_number() OVER () AS INTEGER) AS "_row_id", * '
            "FROM _df"
        )
    finally:
        conn.unregister("_df")


def write_frame(
    conn: duckdb.DuckDBPyConnection, df: pl.DataFrame, table_name: str
) -> None:
    """Write a DataFrame to DuckDB as-is (no _row_id), replacing any table."""
    conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table_name)}")
    conn.register("_df", df)
    try:
        conn.execute(f"CREATE TABLE {quote_ident(table_name)} AS SELECT * FROM _df")
    finally:
        conn.unregister("_df")


def _write_table_from_query(
    conn: duckdb.DuckDBPyConnection,
    table_name: str,
    query: str,
    params: list[Any] | None = None,
) -> None:
    """Write query results to a DuckDB table with a given name."""
    conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table_name)}")
    if params is None:
        conn.execute(f"CREATE TABLE {quote_ident(table_name)} AS {query}")
    else:
        conn.execute(f"CREATE TABLE {quote_ident(table_name)} AS {query}", params)


def ingest_table(
    conn: duckdb.DuckDBPyConnection, data: TableData, table_name: str
) -> None:
    """Ingest tabular data into the database as a named table.

    Accepts DataFrame, list[dict], or dict[str, list].
    Creates a table with a _row_id INTEGER column (1-based, load order).
    """
    df = coerce_to_dataframe(data)
    _write_table(conn, df, table_name)


def _ensure_file_exists(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")


def ingest_csv(conn: duckdb.DuckDBPyConnection, path: Path, table_name: str) -> None:
    _ensure_file_exists(path)
    query = (
        "SELECT CAST(row_number() OVER () AS INTEGER) AS _row_id, * "
        "FROM read_csv(?, header = true, all_varchar = true)"
    )
    _write_table_from_query(conn, table_name, query, [str(path)])


def ingest_parquet(
    conn: duckdb.DuckDBPyConnection, path: Path, table_name: str
) -> None:
    _ensure_file_exists(path)
    query = (
        "SELECT CAST(row_number() OVER () AS INTEGER) AS _row_id, * "
        "FROM read_parquet(?)"
    )
    _write_table_from_query(conn, table_name, query, [str(path)])


def ingest_file(
    conn: duckdb.DuckDBPyConnection, file_input: FileInput, table_name: str
) -> None:
    fmt = file_input.format
    if fmt == "csv":
        ingest_csv(conn, file_input.path, table_name)
    elif fmt == "parquet":
        ingest_parquet(conn, file_input.path, table_name)
    else:
        raise ValueError(f"Unsupported file format: {fmt}")


def ingest_source(
    conn: duckdb.DuckDBPyConnection, source: Any, table_name: str
) -> int:
    """Ingest a path, FileInput or in-memory table. Returns the row count."""
    if isinstance(source, (str, Path)):
        source = parse_file_path(source)
    if isinstance(source, FileInput):
        ingest_file(conn, source, table_name)
    else:
        ingest_table(conn, source, table_name)

    count = count_rows(conn, table_name) or 0
    if count == 0:
        log.warning("  %s: 0 rows (empty table)", table_name)
    else:
        log.info("  %s: %d rows", table_name, count)
    return count
