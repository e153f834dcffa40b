"""Reporter: fixed battery of read-only summaries over the normalized table.

Each :class:`Report` declares the cohort it targets; the runner applies the
matching predicate and exposes the filtered rows to the report SQL as a
CTE named ``cohort``. Reports never mutate the table, so they can run
concurrently, each on its own DuckDB cursor.

Cohorts:

- ``all``: every row.
- ``adults``: ``age >= 18``; termination is evaluated per row.
- ``active_adults``: adults whose termdate is the active sentinel, minus rows
  whose termination timestamp was malformed (their status is unknown).
- ``terminated``: adults with a real termination date on or before *as_of*.

Usage:

    results = asyncio.run(run_reports(conn, table="hr", as_of=date.today()))
    for r in results:
        print(r.name, r.data if r.success else r.error)
"""

from __future__ import annotations

import asyncio
import datetime
import json
import logging
import time
from dataclasses import dataclass
from typing import Literal

import duckdb
import polars as pl

from .catalog import quote_ident
from .infra import log_trace, persist_report_meta
from .ingest import write_frame
from .normalize import MALFORMED_TERMDATE
from .sql_utils import date_literal
from .termination import ACTIVE_SENTINEL_SQL

log = logging.getLogger(__name__)

Cohort = Literal["all", "adults", "active_adults", "terminated"]

REPORT_TABLE_PREFIX = "report_"
DEFAULT_MAX_CONCURRENCY = 4
ADULT_AGE = 18

# (label, lower bound, upper bound or None for open-ended)
AGE_GROUPS: tuple[tuple[str, int, int | None], ...] = (
    ("18-24", 18, 24),
    ("25-34", 25, 34),
    ("35-44", 35, 44),
    ("45-54", 45, 54),
    ("55-64", 55, 64),
    ("65+", 65, None),
)


def age_group_sql(expr: str = "age") -> str:
    """CASE expression mapping an age to its bucket label (NULL below 18)."""
    whens = []
    for label, lo, hi in AGE_GROUPS:
        if hi is None:
            whens.append(f"WHEN {expr} >= {lo} THEN '{label}'")
        else:
            whens.append(f"WHEN {expr} BETWEEN {lo} AND {hi} THEN '{label}'")
    return "CASE " + " ".join(whens) + " ELSE NULL END"


# Rows that fell back to the sentinel because their termdate could not be read
UNKNOWN_TERMINATION_SQL = (
    '"_row_id" IN (SELECT row_id FROM _rejects '
    f"WHERE kind = '{MALFORMED_TERMDATE}' AND row_id IS NOT NULL)"
)


def terminated_sql(as_of: datetime.date) -> str:
    """Row predicate: a real termination date on or before *as_of*."""
    return f"termdate <> {ACTIVE_SENTINEL_SQL} AND termdate <= {date_literal(as_of)}"


def cohort_predicate(cohort: Cohort, as_of: datetime.date) -> str:
    """Return the WHERE predicate for *cohort*."""
    adult = f"age >= {ADULT_AGE}"
    if cohort == "all":
        return "true"
    if cohort == "adults":
        return adult
    if cohort == "active_adults":
        return (
            f"{adult} AND termdate = {ACTIVE_SENTINEL_SQL} "
            f"AND NOT ({UNKNOWN_TERMINATION_SQL})"
        )
    if cohort == "terminated":
        return f"{adult} AND {terminated_sql(as_of)}"
    raise ValueError(f"Unknown cohort: {cohort!r}")


def safe_ratio_sql(numerator: str, denominator: str) -> str:
    """Division that yields NULL instead of failing on a zero denominator."""
    return f"CASE WHEN {denominator} = 0 THEN NULL ELSE {numerator} / {denominator} END"


TENURE_YEARS_SQL = (
    "CAST(ROUND(AVG(date_diff('day', hire_date, termdate) / 365), 0) AS INTEGER)"
)


@dataclass(frozen=True)
class Report:
    """A named read-only query over one cohort.

    ``sql`` selects from ``cohort``; ``{terminated}`` is replaced with the
    per-row termination predicate for the run's *as_of* date.
    """

    name: str
    title: str
    cohort: Cohort
    sql: str

    def render(self, table: str, as_of: datetime.date) -> str:
        body = self.sql.format(terminated=terminated_sql(as_of)).strip()
        return (
            f"WITH cohort AS (SELECT * FROM {quote_ident(table)} "
            f"WHERE {cohort_predicate(self.cohort, as_of)})\n{body}"
        )


REPORTS: tuple[Report, ...] = (
    Report(
        "age_range",
        "Youngest and oldest employee",
        "all",
        'SELECT MIN(age) AS youngest, MAX(age) AS oldest FROM cohort',
    ),
    Report(
        "minor_count",
        "Employees under 18",
        "all",
        f"SELECT COUNT(*) AS minors FROM cohort WHERE age < {ADULT_AGE}",
    ),
    Report(
        "gender_breakdown",
        "Current employees by gender",
        "active_adults",
        """
        SELECT gender, COUNT(*) AS "count"
        FROM cohort
        GROUP BY gender
        ORDER BY gender NULLS LAST
        """,
    ),
    Report(
        "race_breakdown",
        "Current employees by race/ethnicity",
        "active_adults",
        """
        SELECT race, COUNT(*) AS "count"
        FROM cohort
        GROUP BY race
        ORDER BY "count" DESC, race NULLS LAST
        """,
    ),
    Report(
        "active_age_range",
        "Youngest and oldest current employee",
        "active_adults",
        "SELECT MIN(age) AS youngest, MAX(age) AS oldest FROM cohort",
    ),
    Report(
        "age_group_distribution",
        "Current employees by age group",
        "active_adults",
        f"""
        SELECT {age_group_sql('age')} AS age_group, COUNT(*) AS "count"
        FROM cohort
        GROUP BY age_group
        ORDER BY age_group
        """,
    ),
    Report(
        "age_group_gender_distribution",
        "Current employees by age group and gender",
        "active_adults",
        f"""
        SELECT {age_group_sql('age')} AS age_group, gender, COUNT(*) AS "count"
        FROM cohort
        GROUP BY age_group, gender
        ORDER BY age_group, gender NULLS LAST
        """,
    ),
    Report(
        "location_headcount",
        "Current employees by location",
        "active_adults",
        """
        SELECT location, COUNT(*) AS "count"
        FROM cohort
        GROUP BY location
        ORDER BY location NULLS LAST
        """,
    ),
    Report(
        "avg_tenure_terminated",
        "Average length of employment of terminated employees (years)",
        "terminated",
        f"SELECT {TENURE_YEARS_SQL} AS avg_length_employment FROM cohort",
    ),
    Report(
        "department_gender_distribution",
        "Current employees by department and gender",
        "active_adults",
        """
        SELECT department, gender, COUNT(*) AS "count"
        FROM cohort
        GROUP BY department, gender
        ORDER BY department NULLS LAST, gender NULLS LAST
        """,
    ),
    Report(
        "jobtitle_headcount",
        "Current employees by job title",
        "active_adults",
        """
        SELECT jobtitle, COUNT(*) AS "count"
        FROM cohort
        GROUP BY jobtitle
        ORDER BY jobtitle DESC NULLS LAST
        """,
    ),
    Report(
        "department_turnover",
        "Termination rate by department",
        "adults",
        f"""
        SELECT
            department,
            total_count,
            terminated_count,
            {safe_ratio_sql('terminated_count', 'total_count')} AS termination_rate
        FROM (
            SELECT
                department,
                COUNT(*) AS total_count,
                CAST(SUM(CASE WHEN {{terminated}} THEN 1 ELSE 0 END) AS BIGINT)
                    AS terminated_count
            FROM cohort
            GROUP BY department
        ) AS sub
        ORDER BY termination_rate DESC NULLS LAST, department NULLS LAST
        """,
    ),
    Report(
        "state_headcount",
        "Current employees by state",
        "active_adults",
        """
        SELECT location_state, COUNT(*) AS "count"
        FROM cohort
        GROUP BY location_state
        ORDER BY "count" DESC, location_state NULLS LAST
        """,
    ),
    Report(
        "yearly_hire_trend",
        "Hires, terminations and net change by hire year",
        "adults",
        f"""
        SELECT
            "year",
            hires,
            terminations,
            hires - terminations AS net_change,
            ROUND({safe_ratio_sql('(hires - terminations)', 'hires')} * 100, 2)
                AS net_percentage_change
        FROM (
            SELECT
                year(hire_date) AS "year",
                COUNT(*) AS hires,
                CAST(SUM(CASE WHEN {{terminated}} THEN 1 ELSE 0 END) AS BIGINT)
                    AS terminations
            FROM cohort
            GROUP BY year(hire_date)
        ) AS sub
        ORDER BY "year" ASC NULLS LAST
        """,
    ),
    Report(
        "department_avg_tenure",
        "Average tenure of terminated employees by department (years)",
        "terminated",
        f"""
        SELECT department, {TENURE_YEARS_SQL} AS avg_tenure
        FROM cohort
        GROUP BY department
        ORDER BY department NULLS LAST
        """,
    ),
)

REPORTS_BY_NAME: dict[str, Report] = {r.name: r for r in REPORTS}


def select_reports(names: list[str] | None = None) -> list[Report]:
    """Return reports in registry order, optionally restricted to *names*."""
    if not names:
        return list(REPORTS)
    unknown = [n for n in names if n not in REPORTS_BY_NAME]
    if unknown:
        raise ValueError(
            f"Unknown report(s): {', '.join(unknown)}. "
            f"Available: {', '.join(REPORTS_BY_NAME)}"
        )
    wanted = set(names)
    return [r for r in REPORTS if r.name in wanted]


@dataclass
class ReportResult:
    """Outcome of one report: a DataFrame on success, an error otherwise."""

    name: str
    title: str
    cohort: Cohort
    sql: str
    data: pl.DataFrame | None = None
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def row_count(self) -> int | None:
        return None if self.data is None else self.data.height


def run_report(
    conn: duckdb.DuckDBPyConnection,
    report: Report,
    *,
    table: str,
    as_of: datetime.date,
) -> ReportResult:
    """Run one report. Errors are captured in the result, never raised."""
    sql = report.render(table, as_of)
    result = ReportResult(
        name=report.name, title=report.title, cohort=report.cohort, sql=sql
    )
    start_time = time.perf_counter()
    try:
        result.data = conn.execute(sql).pl()
    except Exception as e:
        result.error = str(e) or type(e).__name__
        log.warning("[%s] FAILED: %s", report.name, result.error)
    result.elapsed_ms = (time.perf_counter() - start_time) * 1000
    return result


def _failed_result(report: Report, exc: BaseException) -> ReportResult:
    return ReportResult(
        name=report.name,
        title=report.title,
        cohort=report.cohort,
        sql=report.sql,
        error=str(exc) or type(exc).__name__,
    )


async def run_reports(
    conn: duckdb.DuckDBPyConnection,
    *,
    table: str,
    as_of: datetime.date,
    names: list[str] | None = None,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
) -> list[ReportResult]:
    """Run reports concurrently, each on its own cursor.

    At most *max_concurrency* reports are in flight (0 = unlimited); a new
    one is launched as soon as another completes. The table must already
    be normalized and is only read. A report that raises becomes a failed
    result. Results come back in registry order regardless of completion
    order.
    """
    reports = select_reports(names)
    pending = list(reports)
    active: dict[asyncio.Task, Report] = {}
    results: dict[str, ReportResult] = {}

    async def run_one(report: Report) -> ReportResult:
        cursor = conn.cursor()
        try:
            return await asyncio.to_thread(
                run_report, cursor, report, table=table, as_of=as_of
            )
        finally:
            cursor.close()

    def launch_ready() -> None:
        while pending and (max_concurrency <= 0 or len(active) < max_concurrency):
            report = pending.pop(0)
            active[asyncio.create_task(run_one(report))] = report

    launch_ready()

    while active:
        finished, _ = await asyncio.wait(
            active.keys(), return_when=asyncio.FIRST_COMPLETED
        )
        for fut in finished:
            report = active.pop(fut)
            exc = fut.exception()
            if exc is not None:
                log.warning("[%s] FAILED: %s", report.name, exc)
                results[report.name] = _failed_result(report, exc)
            else:
                results[report.name] = fut.result()
        launch_ready()

    ordered = [results[r.name] for r in reports]
    failed = [r.name for r in ordered if not r.success]
    if failed:
        log.warning("Reports failed: %s", ", ".join(failed))
    log.info("Reports: %d ok, %d failed", len(ordered) - len(failed), len(failed))
    return ordered


def report_table_name(report_name: str) -> str:
    return f"{REPORT_TABLE_PREFIX}{report_name}"


def persist_reports(
    conn: duckdb.DuckDBPyConnection, results: list[ReportResult]
) -> int:
    """Materialize successful results as ``report_<name>`` tables.

    Every result (failed ones included) gets a ``_report_meta`` row and a
    ``_trace`` entry. Returns the number of tables written.
    """
    written = 0
    for r in results:
        log_trace(
            conn,
            r.sql,
            success=r.success,
            error=r.error,
            row_count=r.row_count,
            elapsed_ms=r.elapsed_ms,
            phase="report",
        )
        if r.success and r.data is not None:
            write_frame(conn, r.data, report_table_name(r.name))
            written += 1
        meta = {
            "title": r.title,
            "cohort": r.cohort,
            "status": "ok" if r.success else "failed",
            "row_count": r.row_count,
            "elapsed_ms": round(r.elapsed_ms, 1),
        }
        if r.error:
            meta["error"] = r.error
        persist_report_meta(conn, r.name, meta)
    return written


def results_summary(results: list[ReportResult]) -> str:
    """JSON summary (name -> status) for workspace metadata."""
    return json.dumps(
        {r.name: "ok" if r.success else "failed" for r in results}, sort_keys=True
    )
