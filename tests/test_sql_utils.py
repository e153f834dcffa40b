"""Tests for hrgraph/sql_utils.py: column introspection and literals."""

import datetime

from hrgraph.sql_utils import (
    date_literal,
    get_column_names,
    get_column_schema,
    get_column_type,
)


class TestGetColumnNames:
    def test_returns_column_set(self, conn):
        conn.execute("CREATE TABLE t (id INT, name VARCHAR, score DOUBLE)")
        cols = get_column_names(conn, "t")
        assert cols == {"id", "name", "score"}

    def test_nonexistent_table(self, conn):
        assert get_column_names(conn, "nonexistent") == set()


class TestGetColumnSchema:
    def test_returns_ordered_columns_with_types(self, conn):
        conn.execute("CREATE TABLE t (id INTEGER, hired DATE)")
        schema = get_column_schema(conn, "t")
        assert [name for name, _ in schema] == ["id", "hired"]
        assert schema[1][1] == "DATE"

    def test_nonexistent_table(self, conn):
        assert get_column_schema(conn, "nonexistent") == []


class TestGetColumnType:
    def test_upper_cased_type(self, conn):
        conn.execute("CREATE TABLE t (name varchar, hired date)")
        assert get_column_type(conn, "t", "name") == "VARCHAR"
        assert get_column_type(conn, "t", "hired") == "DATE"

    def test_missing_column(self, conn):
        conn.execute("CREATE TABLE t (name VARCHAR)")
        assert get_column_type(conn, "t", "nope") is None


class TestDateLiteral:
    def test_renders_iso_literal(self):
        assert date_literal(datetime.date(2024, 6, 5)) == "DATE '2024-06-05'"

    def test_literal_round_trips_in_duckdb(self, conn):
        value = datetime.date(9999, 12, 31)
        row = conn.execute(f"SELECT {date_literal(value)}").fetchone()
        assert row[0] == value
