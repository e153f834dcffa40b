"""Tests for hrgraph/normalize.py: the in-place employee table normalizer."""

import datetime
import json
from dataclasses import astuple

import pytest

from tests.conftest import AS_OF, GARBLED_ID, _column, _load_raw, _raw_row
from hrgraph.infra import read_workspace_meta, reject_counts
from hrgraph.normalize import (
    FUTURE_TERMDATE,
    MALFORMED_TERMDATE,
    MISSING_EMP_ID,
    UNPARSEABLE_DATE,
    NormalizationError,
    Reject,
    SchemaError,
    age_sql,
    normalize,
    parse_date_sql,
    parse_termdate_sql,
)
from hrgraph.sql_utils import get_column_names, get_column_type
from hrgraph.termination import ACTIVE_SENTINEL


def _rows(conn, table="hr"):
    return conn.execute(f'SELECT * FROM "{table}" ORDER BY "_row_id"').fetchall()


def _rejects(conn):
    return conn.execute(
        "SELECT row_id, emp_id, column_name, value, kind, severity "
        "FROM _rejects ORDER BY row_id, column_name"
    ).fetchall()


def _ids(n):
    return [f"00-{i:07d}" for i in range(1, n + 1)]


def _employees(**columns):
    """Build raw rows from per-column value lists, ids assigned in order."""
    n = len(next(iter(columns.values())))
    rows = []
    for i, emp_id in enumerate(_ids(n)):
        row = _raw_row(**{k: v[i] for k, v in columns.items()})
        row[GARBLED_ID] = emp_id
        rows.append(row)
    return rows


class TestParseDateSql:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("03/15/1990", datetime.date(1990, 3, 15)),
            ("03-15-1990", datetime.date(1990, 3, 15)),
            ("3/5/1990", datetime.date(1990, 3, 5)),
            ("11-02-85", datetime.date(1985, 11, 2)),
            ("1/1/05", datetime.date(2005, 1, 1)),
            ("12/31/69", datetime.date(2069, 12, 31)),
            ("1/1/70", datetime.date(1970, 1, 1)),
            (" 03/15/1990 ", datetime.date(1990, 3, 15)),
            ("1990-03-15", datetime.date(1990, 3, 15)),
        ],
    )
    def test_parses(self, conn, raw, expected):
        row = conn.execute(
            f"SELECT {parse_date_sql('v')} FROM (SELECT CAST(? AS VARCHAR) AS v)", [raw]
        ).fetchone()
        assert row[0] == expected

    @pytest.mark.parametrize(
        "raw", ["13/45/1990", "02/30/2000", "March 3 1990", "03.15.1990", "", None]
    )
    def test_unparseable_is_null(self, conn, raw):
        row = conn.execute(
            f"SELECT {parse_date_sql('v')} FROM (SELECT CAST(? AS VARCHAR) AS v)", [raw]
        ).fetchone()
        assert row[0] is None


class TestParseTermdateSql:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("2023-05-10 00:00:00 UTC", datetime.date(2023, 5, 10)),
            ("2023-05-10 17:45:01 UTC", datetime.date(2023, 5, 10)),
            ("2023-05-10", datetime.date(2023, 5, 10)),
            ("", ACTIVE_SENTINEL),
            ("   ", ACTIVE_SENTINEL),
            (None, ACTIVE_SENTINEL),
            ("0000-00-00", ACTIVE_SENTINEL),
        ],
    )
    def test_parses(self, conn, raw, expected):
        row = conn.execute(
            f"SELECT {parse_termdate_sql('v')} FROM (SELECT CAST(? AS VARCHAR) AS v)",
            [raw],
        ).fetchone()
        assert row[0] == expected

    @pytest.mark.parametrize(
        "raw", ["2023-05-10T00:00:00Z", "05/10/2023", "2023-13-40 00:00:00 UTC"]
    )
    def test_malformed_is_null(self, conn, raw):
        row = conn.execute(
            f"SELECT {parse_termdate_sql('v')} FROM (SELECT CAST(? AS VARCHAR) AS v)",
            [raw],
        ).fetchone()
        assert row[0] is None


class TestAgeSql:
    @pytest.mark.parametrize(
        "birth, expected",
        [
            (datetime.date(2000, 1, 1), 24),
            (datetime.date(2000, 6, 15), 24),
            (datetime.date(2000, 6, 16), 23),
            (datetime.date(2000, 2, 29), 24),
            (datetime.date(2024, 6, 15), 0),
            (datetime.date(2025, 6, 14), 0),
            (datetime.date(2025, 6, 16), -1),
            (None, None),
        ],
    )
    def test_whole_years(self, conn, birth, expected):
        row = conn.execute(
            f"SELECT {age_sql('b', AS_OF)} FROM (SELECT CAST(? AS DATE) AS b)", [birth]
        ).fetchone()
        assert row[0] == expected


class TestNormalize:
    def test_end_to_end_shape(self, conn):
        _load_raw(conn, _employees(termdate=["2023-05-10 00:00:00 UTC", "", None]))
        result = normalize(conn, "hr", as_of=AS_OF)

        cols = get_column_names(conn, "hr")
        assert "emp_id" in cols
        assert GARBLED_ID not in cols
        assert get_column_type(conn, "hr", "emp_id") == "VARCHAR"
        assert get_column_type(conn, "hr", "birthdate") == "DATE"
        assert get_column_type(conn, "hr", "hire_date") == "DATE"
        assert get_column_type(conn, "hr", "termdate") == "DATE"
        assert get_column_type(conn, "hr", "age") == "INTEGER"

        assert _column(conn, "emp_id") == _ids(3)
        assert _column(conn, "termdate") == [
            datetime.date(2023, 5, 10),
            ACTIVE_SENTINEL,
            ACTIVE_SENTINEL,
        ]
        assert _column(conn, "age") == [24, 24, 24]
        assert result.row_count == 3
        assert result.rejects == []
        assert result.applied == [
            "repair_identifier",
            "canonicalize_birthdate",
            "canonicalize_hire_date",
            "canonicalize_termdate",
            "derive_age",
        ]

    def test_mixed_date_formats(self, conn):
        _load_raw(conn, _employees(birthdate=["03/15/1990", "03-15-1990"]))
        normalize(conn, "hr", as_of=AS_OF)
        assert _column(conn, "birthdate") == [datetime.date(1990, 3, 15)] * 2

    def test_unparseable_date_becomes_null_and_is_recorded(self, conn):
        _load_raw(conn, _employees(hire_date=["01/15/2019", "13/45/2019", ""]))
        result = normalize(conn, "hr", as_of=AS_OF)

        assert _column(conn, "hire_date") == [datetime.date(2019, 1, 15), None, None]
        expected = Reject(
            row_id=2,
            emp_id="00-0000002",
            column="hire_date",
            value="13/45/2019",
            kind=UNPARSEABLE_DATE,
            severity="warn",
        )
        assert result.rejects == [expected]
        assert _rejects(conn) == [astuple(expected)]

    def test_null_birthdate_gives_null_age(self, conn):
        _load_raw(conn, _employees(birthdate=["garbage", "01/01/2000"]))
        normalize(conn, "hr", as_of=AS_OF)
        assert _column(conn, "birthdate") == [None, datetime.date(2000, 1, 1)]
        assert _column(conn, "age") == [None, 24]

    def test_row_count_preserved(self, conn):
        _load_raw(conn, _employees(birthdate=["x", "y", "z", "01/01/2000"]))
        normalize(conn, "hr", as_of=AS_OF)
        assert conn.execute("SELECT COUNT(*) FROM hr").fetchone()[0] == 4

    def test_future_termdate_kept_and_recorded(self, conn):
        _load_raw(conn, _employees(termdate=["2030-01-01 00:00:00 UTC", ""]))
        result = normalize(conn, "hr", as_of=AS_OF)

        assert _column(conn, "termdate") == [datetime.date(2030, 1, 1), ACTIVE_SENTINEL]
        assert [(r.row_id, r.kind, r.severity) for r in result.rejects] == [
            (1, FUTURE_TERMDATE, "warn")
        ]

    def test_malformed_termdate_falls_back_to_active(self, conn):
        _load_raw(conn, _employees(termdate=["2023-05-10T00:00:00Z", ""]))
        result = normalize(conn, "hr", as_of=AS_OF)

        assert _column(conn, "termdate") == [ACTIVE_SENTINEL, ACTIVE_SENTINEL]
        assert result.reject_counts() == {MALFORMED_TERMDATE: 1}
        assert result.rejects[0].severity == "error"
        assert result.rejects[0].value == "2023-05-10T00:00:00Z"

    def test_strict_mode_raises_before_altering_termdate(self, conn):
        _load_raw(conn, _employees(termdate=["2023-05-10T00:00:00Z", ""]))
        with pytest.raises(NormalizationError) as excinfo:
            normalize(conn, "hr", as_of=AS_OF, strict=True)

        assert [r.kind for r in excinfo.value.rejects] == [MALFORMED_TERMDATE]
        assert get_column_type(conn, "hr", "termdate") == "VARCHAR"
        assert "age" not in get_column_names(conn, "hr")
        assert reject_counts(conn) == {MALFORMED_TERMDATE: 1}

    def test_strict_mode_accepts_warnings(self, conn):
        _load_raw(conn, _employees(birthdate=["garbage"]))
        result = normalize(conn, "hr", as_of=AS_OF, strict=True)
        assert result.reject_counts() == {UNPARSEABLE_DATE: 1}

    def test_missing_emp_id_recorded(self, conn):
        _load_raw(conn, _employees(gender=["Male", "Female"]))
        conn.execute(f"UPDATE hr SET \"{GARBLED_ID}\" = '' WHERE _row_id = 2")
        result = normalize(conn, "hr", as_of=AS_OF)
        assert [(r.row_id, r.kind) for r in result.rejects] == [(2, MISSING_EMP_ID)]
        assert result.rejects[0].severity == "error"

    def test_missing_emp_id_strict(self, conn):
        _load_raw(conn, _employees(gender=["Male"]))
        conn.execute(f"UPDATE hr SET \"{GARBLED_ID}\" = NULL")
        with pytest.raises(NormalizationError, match="missing_emp_id"):
            normalize(conn, "hr", as_of=AS_OF, strict=True)

    @pytest.mark.parametrize("header", ["\ufeffid", "id"])
    def test_identifier_variants(self, conn, header):
        rows = _employees(gender=["Male"])
        rows[0][header] = rows[0].pop(GARBLED_ID)
        _load_raw(conn, rows)
        normalize(conn, "hr", as_of=AS_OF)
        assert _column(conn, "emp_id") == ["00-0000001"]

    def test_numeric_identifier_widened_to_text(self, conn):
        rows = _employees(gender=["Male"])
        rows[0][GARBLED_ID] = 42
        _load_raw(conn, rows)
        normalize(conn, "hr", as_of=AS_OF)
        assert get_column_type(conn, "hr", "emp_id") == "VARCHAR"
        assert _column(conn, "emp_id") == ["42"]

    def test_already_typed_dates(self, conn):
        """DATE columns from a typed source pass through; NULL termdate is active."""
        rows = _employees(gender=["Male", "Female"])
        for row in rows:
            row["birthdate"] = datetime.date(1990, 3, 15)
            row["hire_date"] = datetime.date(2015, 1, 1)
        rows[0]["termdate"] = datetime.date(2020, 1, 1)
        rows[1]["termdate"] = None
        _load_raw(conn, rows)
        result = normalize(conn, "hr", as_of=AS_OF)

        assert _column(conn, "termdate") == [datetime.date(2020, 1, 1), ACTIVE_SENTINEL]
        assert _column(conn, "age") == [34, 34]
        assert "canonicalize_birthdate" not in result.applied


class TestSchemaErrors:
    def test_missing_column_fails_before_mutation(self, conn):
        rows = _employees(gender=["Male"])
        del rows[0]["termdate"]
        _load_raw(conn, rows)
        with pytest.raises(SchemaError, match="termdate"):
            normalize(conn, "hr", as_of=AS_OF)
        assert GARBLED_ID in get_column_names(conn, "hr")
        assert get_column_type(conn, "hr", "birthdate") == "VARCHAR"

    def test_missing_identifier(self, conn):
        rows = _employees(gender=["Male"])
        del rows[0][GARBLED_ID]
        _load_raw(conn, rows)
        with pytest.raises(SchemaError, match="emp_id"):
            normalize(conn, "hr", as_of=AS_OF)

    def test_missing_table(self, conn):
        with pytest.raises(SchemaError, match="does not exist"):
            normalize(conn, "nope", as_of=AS_OF)


class TestIdempotence:
    def test_second_run_is_noop(self, conn):
        _load_raw(
            conn,
            _employees(
                birthdate=["03/15/1990", "bad", "11-02-85"],
                termdate=["2023-05-10 00:00:00 UTC", "", "2030-01-01 00:00:00 UTC"],
            ),
        )
        normalize(conn, "hr", as_of=AS_OF)
        before = _rows(conn)
        rejects_before = _rejects(conn)

        result = normalize(conn, "hr", as_of=AS_OF)
        assert _rows(conn) == before
        assert _rejects(conn) == rejects_before
        assert result.applied == []
        assert result.rejects == []

    def test_age_is_a_snapshot(self, conn):
        _load_raw(conn, _employees(birthdate=["01/01/2000"]))
        normalize(conn, "hr", as_of=AS_OF)
        normalize(conn, "hr", as_of=datetime.date(2040, 1, 1))
        assert _column(conn, "age") == [24]
        assert read_workspace_meta(conn)["as_of"] == AS_OF.isoformat()


class TestNormalizeBookkeeping:
    def test_workspace_meta(self, conn):
        _load_raw(conn, _employees(birthdate=["bad", "01/01/2000"]))
        normalize(conn, "hr", as_of=AS_OF)
        meta = read_workspace_meta(conn)
        assert meta["as_of"] == "2024-06-15"
        assert meta["normalized_row_count"] == "2"
        assert json.loads(meta["reject_counts"]) == {UNPARSEABLE_DATE: 1}

    def test_statements_traced(self, conn):
        _load_raw(conn, _employees(gender=["Male"]))
        normalize(conn, "hr", as_of=AS_OF)
        rows = conn.execute(
            "SELECT query, success FROM _trace WHERE phase = 'normalize'"
        ).fetchall()
        assert rows
        assert all(success for _, success in rows)
        assert any("RENAME COLUMN" in q for q, _ in rows)
        assert any("ADD COLUMN age" in q for q, _ in rows)
