import duckdb


def get_column_names(conn: duckdb.DuckDBPyConnection, table_name: str) -> set[str]:
    """Get the set of column names for a table or view."""
    rows = conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_name = ?
        """,
        [table_name],
    ).fetchall()
    return {row[0] for row in rows}


def get_column_schema(
    conn: duckdb.DuckDBPyConnection, table_name: str
) -> list[tuple[str, str]]:
    """Get the column names and data types for a table or view."""
    rows = conn.execute(
        """
        SELECT column_name, data_type
        FROM information_schema.columns
        WHERE table_name = ?
        ORDER BY ordinal_position
        """,
        [table_name],
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def get_column_type(
    conn: duckdb.DuckDBPyConnection, table_name: str, column_name: str
) -> str | None:
    """Return the upper-cased data type of one column, or None if absent."""
    for name, data_type in get_column_schema(conn, table_name):
        if name == column_name:
            return data_type.upper()
    return None


def date_literal(value) -> str:
    """Render a ``datetime.date`` as a DuckDB DATE literal."""
    return f"DATE '{value.isoformat()}'"
