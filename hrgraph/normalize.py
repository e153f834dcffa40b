"""Normalizer: bring the raw employee table into its canonical shape.

Runs four steps against one DuckDB table, in order:

1. Identifier repair: the BOM-garbled id column becomes ``emp_id VARCHAR``.
2. Date canonicalization of ``birthdate`` and ``hire_date``: ``M/D/Y`` and
   ``M-D-Y`` text (chosen per value by the separator present) becomes a
   ``DATE``; anything else becomes NULL.
3. Termination canonicalization: ``YYYY-MM-DD HH:MM:SS UTC`` keeps its date
   part, empty/NULL becomes :data:`ACTIVE_SENTINEL`. Column ends up
   ``DATE NOT NULL``.
4. Age derivation: whole years between ``birthdate`` and *as_of*, stored
   once as a snapshot.

Every step is a set-based statement (no row ordering), is recorded in
``_trace``, and is a no-op on input that is already canonical, so running
:func:`normalize` twice leaves the table unchanged.

Data-quality findings land in ``_rejects``. Unparseable dates and future
termination dates are warnings; malformed termination timestamps and
missing ids are errors, which fail the run in strict mode.
"""

from __future__ import annotations

import datetime
import json
import logging
import time
from dataclasses import dataclass, field

import duckdb

from .catalog import count_rows, quote_ident, table_exists
from .infra import ensure_rejects, run_sql, upsert_workspace_meta
from .sql_utils import date_literal, get_column_names, get_column_type
from .termination import ACTIVE_SENTINEL_SQL, LEGACY_ACTIVE_SENTINEL

log = logging.getLogger(__name__)

DEFAULT_TABLE = "hr"

EMP_ID_COLUMN = "emp_id"
# The id header carries a UTF-8 BOM: decoded as Latin-1, kept as U+FEFF,
# or already stripped by the CSV reader.
CORRUPTED_ID_COLUMNS = ("\u00ef\u00bb\u00bfid", "\ufeffid", "id")
DATE_COLUMNS = ("birthdate", "hire_date")
TERMDATE_COLUMN = "termdate"
AGE_COLUMN = "age"
REQUIRED_COLUMNS = (*DATE_COLUMNS, TERMDATE_COLUMN)

SLASH_DATE_RE = r"\d{1,2}/\d{1,2}/(\d{2}|\d{4})"
DASH_DATE_RE = r"\d{1,2}-\d{1,2}-(\d{2}|\d{4})"
ISO_DATE_RE = r"\d{4}-\d{2}-\d{2}"
TERM_TIMESTAMP_RE = r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} UTC"

# Two-digit years below the pivot land in 20xx, the rest in 19xx.
TWO_DIGIT_YEAR_PIVOT = 70

# Reject kinds
UNPARSEABLE_DATE = "unparseable_date"
MALFORMED_TERMDATE = "malformed_termdate"
FUTURE_TERMDATE = "future_termdate"
MISSING_EMP_ID = "missing_emp_id"


class SchemaError(ValueError):
    """Raised when the table is missing a column the normalizer needs."""


class NormalizationError(RuntimeError):
    """Raised in strict mode when rows were rejected with severity 'error'."""

    def __init__(self, message: str, rejects: list[Reject]):
        super().__init__(message)
        self.rejects = rejects


@dataclass(frozen=True)
class Reject:
    """One data-quality finding, mirrored in the ``_rejects`` table."""

    row_id: int | None
    emp_id: str | None
    column: str
    value: str | None
    kind: str
    severity: str


@dataclass
class NormalizeResult:
    table: str
    as_of: datetime.date
    row_count: int
    applied: list[str] = field(default_factory=list)
    rejects: list[Reject] = field(default_factory=list)
    elapsed_s: float = 0.0

    def reject_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for r in self.rejects:
            counts[r.kind] = counts.get(r.kind, 0) + 1
        return dict(sorted(counts.items()))


# ---------------------------------------------------------------------------
# SQL expression builders
# ---------------------------------------------------------------------------


def _text_sql(expr: str) -> str:
    """Trimmed text of *expr*, NULL when empty."""
    return f"nullif(trim(CAST({expr} AS VARCHAR)), '')"


def parse_date_sql(expr: str) -> str:
    """SQL expression parsing raw date text in *expr* into a DATE or NULL.

    ``M/D/Y`` and ``M-D-Y`` are told apart by the separator present in the
    value itself. Canonical ``YYYY-MM-DD`` passes through unchanged.
    Impossible calendar dates yield NULL.
    """
    v = _text_sql(expr)
    parts = f"string_split(replace({v}, '/', '-'), '-')"
    year = f"TRY_CAST({parts}[3] AS INTEGER)"
    full_year = (
        f"CASE WHEN length({parts}[3]) = 2 "
        f"THEN {year} + CASE WHEN {year} < {TWO_DIGIT_YEAR_PIVOT} THEN 2000 ELSE 1900 END "
        f"ELSE {year} END"
    )
    month = f"TRY_CAST({parts}[1] AS INTEGER)"
    day = f"TRY_CAST({parts}[2] AS INTEGER)"
    mdy = f"TRY_CAST(printf('%04d-%02d-%02d', {full_year}, {month}, {day}) AS DATE)"
    return (
        "CASE "
        f"WHEN regexp_full_match({v}, '{ISO_DATE_RE}') THEN TRY_CAST({v} AS DATE) "
        f"WHEN regexp_full_match({v}, '{SLASH_DATE_RE}') THEN {mdy} "
        f"WHEN regexp_full_match({v}, '{DASH_DATE_RE}') THEN {mdy} "
        "ELSE NULL END"
    )


def parse_termdate_sql(expr: str) -> str:
    """SQL expression mapping raw termination text to a DATE.

    Empty, NULL and the legacy ``0000-00-00`` literal map to the active
    sentinel. Text matching neither the UTC timestamp nor a plain ISO date
    yields NULL (a malformed value).
    """
    v = _text_sql(expr)
    return (
        "CASE "
        f"WHEN {v} IS NULL OR {v} = '{LEGACY_ACTIVE_SENTINEL}' THEN {ACTIVE_SENTINEL_SQL} "
        f"WHEN regexp_full_match({v}, '{TERM_TIMESTAMP_RE}') THEN TRY_CAST(left({v}, 10) AS DATE) "
        f"WHEN regexp_full_match({v}, '{ISO_DATE_RE}') THEN TRY_CAST({v} AS DATE) "
        "ELSE NULL END"
    )


def age_sql(birth: str, as_of: datetime.date) -> str:
    """Whole years from *birth* to *as_of*, truncated toward zero."""
    as_of_md = as_of.month * 100 + as_of.day
    birth_md = f"(month({birth}) * 100 + day({birth}))"
    return (
        "CASE "
        f"WHEN {birth} IS NULL THEN NULL "
        f"WHEN {birth} <= {date_literal(as_of)} "
        f"THEN ({as_of.year} - year({birth})) - CASE WHEN {as_of_md} < {birth_md} THEN 1 ELSE 0 END "
        f"ELSE -((year({birth}) - {as_of.year}) - CASE WHEN {birth_md} < {as_of_md} THEN 1 ELSE 0 END) "
        "END"
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _row_refs(columns: set[str]) -> tuple[str, str]:
    """Return (row_id, emp_id) select expressions for reject rows."""
    row_ref = '"_row_id"' if "_row_id" in columns else "CAST(NULL AS INTEGER)"
    emp_ref = (
        f"CAST({EMP_ID_COLUMN} AS VARCHAR)"
        if EMP_ID_COLUMN in columns
        else "CAST(NULL AS VARCHAR)"
    )
    return row_ref, emp_ref


def _record_rejects(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    column: str,
    value_sql: str,
    where_sql: str,
    kind: str,
    severity: str,
) -> list[Reject]:
    """Insert matching rows into _rejects and return them."""
    row_ref, emp_ref = _row_refs(get_column_names(conn, table))
    rows = run_sql(
        conn,
        f"""
        INSERT INTO _rejects
        SELECT {row_ref}, {emp_ref}, '{column}', {value_sql}, '{kind}', '{severity}'
        FROM {quote_ident(table)}
        WHERE {where_sql}
        RETURNING row_id, emp_id, column_name, value, kind, severity
        """,
        phase="normalize",
    )
    return [Reject(*row) for row in rows]


def _is_nullable(conn: duckdb.DuckDBPyConnection, table: str, column: str) -> bool:
    row = conn.execute(
        """
        SELECT is_nullable
        FROM information_schema.columns
        WHERE table_name = ? AND column_name = ?
        """,
        [table, column],
    ).fetchone()
    return bool(row) and row[0] == "YES"


def _raise_if_strict(rejects: list[Reject], strict: bool) -> None:
    errors = [r for r in rejects if r.severity == "error"]
    if strict and errors:
        kinds = sorted({r.kind for r in errors})
        raise NormalizationError(
            f"{len(errors)} row(s) rejected ({', '.join(kinds)}); "
            "see the _rejects table",
            rejects=errors,
        )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def find_identifier_column(columns: set[str]) -> str | None:
    """Return the garbled identifier column name present in *columns*."""
    for name in CORRUPTED_ID_COLUMNS:
        if name in columns:
            return name
    return None


def check_schema(conn: duckdb.DuckDBPyConnection, table: str) -> None:
    """Fail fast before any mutation if a needed column is absent."""
    if not table_exists(conn, table):
        raise SchemaError(f"Table '{table}' does not exist")
    columns = get_column_names(conn, table)
    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if EMP_ID_COLUMN not in columns and find_identifier_column(columns) is None:
        missing.insert(0, f"{EMP_ID_COLUMN} (or {CORRUPTED_ID_COLUMNS[0]!r})")
    if missing:
        raise SchemaError(
            f"Table '{table}' is missing required column(s): {', '.join(missing)}"
        )


def repair_identifier(conn: duckdb.DuckDBPyConnection, table: str) -> list[Reject]:
    """Rename the garbled id column to ``emp_id`` and widen it to VARCHAR.

    Values are kept as they are. Returns rejects for rows without an id.
    A table that already has ``emp_id`` is left alone.
    """
    columns = get_column_names(conn, table)
    if EMP_ID_COLUMN in columns:
        log.debug("  %s: already present", EMP_ID_COLUMN)
        return []

    source = find_identifier_column(columns)
    if source is None:
        raise SchemaError(f"Table '{table}' has no identifier column to repair")

    t = quote_ident(table)
    run_sql(
        conn,
        f"ALTER TABLE {t} RENAME COLUMN {quote_ident(source)} TO {EMP_ID_COLUMN}",
        phase="normalize",
    )
    if get_column_type(conn, table, EMP_ID_COLUMN) != "VARCHAR":
        run_sql(
            conn,
            f"ALTER TABLE {t} ALTER COLUMN {EMP_ID_COLUMN} SET DATA TYPE VARCHAR",
            phase="normalize",
        )
    log.info("  %s: renamed from %r", EMP_ID_COLUMN, source)

    rejects = _record_rejects(
        conn,
        table,
        EMP_ID_COLUMN,
        "CAST(NULL AS VARCHAR)",
        f"{_text_sql(EMP_ID_COLUMN)} IS NULL",
        MISSING_EMP_ID,
        "error",
    )
    if rejects:
        log.warning("  %s: %d row(s) without an id", EMP_ID_COLUMN, len(rejects))
    return rejects


def canonicalize_dates(
    conn: duckdb.DuckDBPyConnection, table: str, column: str
) -> list[Reject]:
    """Rewrite a free-text date column as DATE (NULL when unparseable).

    Returns a reject per non-empty value that could not be parsed.
    """
    data_type = get_column_type(conn, table, column)
    if data_type is None:
        raise SchemaError(f"Table '{table}' is missing column '{column}'")
    if data_type == "DATE":
        log.debug("  %s: already DATE", column)
        return []

    t = quote_ident(table)
    c = quote_ident(column)
    if data_type.startswith("TIMESTAMP"):
        run_sql(
            conn,
            f"ALTER TABLE {t} ALTER COLUMN {c} SET DATA TYPE DATE USING CAST({c} AS DATE)",
            phase="normalize",
        )
        return []

    parsed = parse_date_sql(c)
    rejects = _record_rejects(
        conn,
        table,
        column,
        _text_sql(c),
        f"{_text_sql(c)} IS NOT NULL AND ({parsed}) IS NULL",
        UNPARSEABLE_DATE,
        "warn",
    )
    run_sql(
        conn,
        f"ALTER TABLE {t} ALTER COLUMN {c} SET DATA TYPE DATE USING ({parsed})",
        phase="normalize",
    )
    if rejects:
        log.warning("  %s: %d unparseable value(s) set to NULL", column, len(rejects))
    else:
        log.info("  %s: converted to DATE", column)
    return rejects


def canonicalize_termdate(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    *,
    as_of: datetime.date,
    strict: bool = False,
) -> list[Reject]:
    """Rewrite ``termdate`` as ``DATE NOT NULL`` with the active sentinel.

    Malformed timestamps are recorded as errors. In strict mode they raise
    :class:`NormalizationError` before the column is touched; otherwise the
    row is stored with the active sentinel and its reject keeps it out of
    the active and terminated report cohorts. Real dates after *as_of* are kept
    and recorded as warnings.
    """
    data_type = get_column_type(conn, table, TERMDATE_COLUMN)
    if data_type is None:
        raise SchemaError(f"Table '{table}' is missing column '{TERMDATE_COLUMN}'")

    t = quote_ident(table)
    c = quote_ident(TERMDATE_COLUMN)
    rejects: list[Reject] = []

    if data_type == "DATE":
        run_sql(
            conn,
            f"UPDATE {t} SET {c} = {ACTIVE_SENTINEL_SQL} WHERE {c} IS NULL",
            phase="normalize",
        )
    elif data_type.startswith("TIMESTAMP"):
        run_sql(
            conn,
            f"ALTER TABLE {t} ALTER COLUMN {c} SET DATA TYPE DATE "
            f"USING COALESCE(CAST({c} AS DATE), {ACTIVE_SENTINEL_SQL})",
            phase="normalize",
        )
    else:
        parsed = parse_termdate_sql(c)
        rejects = _record_rejects(
            conn,
            table,
            TERMDATE_COLUMN,
            _text_sql(c),
            f"({parsed}) IS NULL",
            MALFORMED_TERMDATE,
            "error",
        )
        if rejects:
            log.warning(
                "  %s: %d malformed timestamp(s)%s",
                TERMDATE_COLUMN,
                len(rejects),
                "" if strict else ", status unknown",
            )
        _raise_if_strict(rejects, strict)

        run_sql(
            conn,
            f"ALTER TABLE {t} ALTER COLUMN {c} SET DATA TYPE DATE "
            f"USING COALESCE({parsed}, {ACTIVE_SENTINEL_SQL})",
            phase="normalize",
        )
        future = _record_rejects(
            conn,
            table,
            TERMDATE_COLUMN,
            f"CAST({c} AS VARCHAR)",
            f"{c} <> {ACTIVE_SENTINEL_SQL} AND {c} > {date_literal(as_of)}",
            FUTURE_TERMDATE,
            "warn",
        )
        if future:
            log.info(
                "  %s: %d termination date(s) after %s",
                TERMDATE_COLUMN,
                len(future),
                as_of,
            )
        rejects.extend(future)
        log.info("  %s: converted to DATE", TERMDATE_COLUMN)

    if _is_nullable(conn, table, TERMDATE_COLUMN):
        run_sql(
            conn,
            f"ALTER TABLE {t} ALTER COLUMN {c} SET NOT NULL",
            phase="normalize",
        )
    return rejects


def derive_age(
    conn: duckdb.DuckDBPyConnection, table: str, *, as_of: datetime.date
) -> bool:
    """Add and fill the ``age`` snapshot column.

    Returns False (and changes nothing) when the column already exists:
    age is computed once at normalization time and never refreshed.
    """
    if AGE_COLUMN in get_column_names(conn, table):
        log.debug("  %s: already derived, keeping snapshot", AGE_COLUMN)
        return False

    t = quote_ident(table)
    run_sql(conn, f"ALTER TABLE {t} ADD COLUMN {AGE_COLUMN} INTEGER", phase="normalize")
    run_sql(
        conn,
        f"UPDATE {t} SET {AGE_COLUMN} = {age_sql('birthdate', as_of)}",
        phase="normalize",
    )
    log.info("  %s: derived as of %s", AGE_COLUMN, as_of)
    return True


def normalize(
    conn: duckdb.DuckDBPyConnection,
    table: str = DEFAULT_TABLE,
    *,
    as_of: datetime.date | None = None,
    strict: bool = False,
) -> NormalizeResult:
    """Run all normalization steps on *table*.

    Args:
        conn: DuckDB connection; owned exclusively for the duration.
        table: Table holding the employee records.
        as_of: Reference date for ``age`` and future-termination checks
            (default: today).
        strict: Raise :class:`NormalizationError` when rows are rejected
            with severity 'error'.

    Raises:
        SchemaError: a required column is missing (nothing is mutated).
        NormalizationError: strict mode and rejected rows.
    """
    start_time = time.time()
    if as_of is None:
        as_of = datetime.date.today()

    ensure_rejects(conn)
    check_schema(conn, table)
    log.info("Normalizing %s (as of %s)", table, as_of)

    result = NormalizeResult(
        table=table, as_of=as_of, row_count=count_rows(conn, table) or 0
    )

    had_id = EMP_ID_COLUMN in get_column_names(conn, table)
    id_rejects = repair_identifier(conn, table)
    if not had_id:
        result.applied.append("repair_identifier")
    result.rejects.extend(id_rejects)
    _raise_if_strict(id_rejects, strict)

    for column in DATE_COLUMNS:
        was_date = get_column_type(conn, table, column) == "DATE"
        result.rejects.extend(canonicalize_dates(conn, table, column))
        if not was_date:
            result.applied.append(f"canonicalize_{column}")

    was_date = get_column_type(conn, table, TERMDATE_COLUMN) == "DATE"
    result.rejects.extend(
        canonicalize_termdate(conn, table, as_of=as_of, strict=strict)
    )
    if not was_date:
        result.applied.append("canonicalize_termdate")

    if derive_age(conn, table, as_of=as_of):
        result.applied.append("derive_age")

    result.elapsed_s = time.time() - start_time

    meta: list[tuple[str, str]] = [
        ("normalized_at_utc", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
        ("normalized_row_count", str(result.row_count)),
        ("reject_counts", json.dumps(result.reject_counts(), sort_keys=True)),
    ]
    if "derive_age" in result.applied:
        meta.append(("as_of", as_of.isoformat()))
    upsert_workspace_meta(conn, meta)

    if result.applied:
        log.info(
            "Normalized %d row(s) in %.2fs: %s",
            result.row_count,
            result.elapsed_s,
            ", ".join(result.applied),
        )
    else:
        log.info("%s is already canonical", table)
    return result
