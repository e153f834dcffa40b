"""Pipeline orchestrator: ingest, normalize, report, export.

A pipeline run is a single DuckDB database containing:
- The employee table (ingested, then normalized in place)
- One ``report_<name>`` table per successful report
- Metadata, trace and reject tables

Normalization completes before any report starts. Reports then run
concurrently against the normalized table; a failed report never blocks
the others.

Usage:

    pipeline = Pipeline(
        db_path="runs/hr.db",
        source="data/hr.csv",
        export_dir="out/",
    )

    result = asyncio.run(pipeline.run())
"""

import datetime
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb
import polars as pl

from .catalog import quote_ident
from .infra import init_infra, persist_workspace_meta, upsert_workspace_meta
from .ingest import ingest_source
from .normalize import DEFAULT_TABLE, NormalizeResult, normalize
from .report import (
    DEFAULT_MAX_CONCURRENCY,
    ReportResult,
    persist_reports,
    results_summary,
    run_reports,
)
from .sql_utils import get_column_names
from .termination import render_termdate_column

log = logging.getLogger(__name__)

# Type alias
InputValue = Any  # str | Path | FileInput | pl.DataFrame | list[dict] | dict[str, list]


def export_table_csv(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    path: Path,
    *,
    legacy_sentinel: bool = False,
) -> None:
    """Write the normalized table to CSV, without the internal _row_id."""
    columns = get_column_names(conn, table)
    exclude = ' EXCLUDE ("_row_id")' if "_row_id" in columns else ""
    order = ' ORDER BY "_row_id"' if "_row_id" in columns else ""
    df = conn.execute(f"SELECT *{exclude} FROM {quote_ident(table)}{order}").pl()
    df = render_termdate_column(df, legacy=legacy_sentinel)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.write_csv(path)


def export_report_csv(result: ReportResult, path: Path) -> None:
    """Write one report's result to CSV."""
    if result.data is None:
        raise ValueError(f"Report '{result.name}' has no data: {result.error}")
    path.parent.mkdir(parents=True, exist_ok=True)
    result.data.write_csv(path)


@dataclass
class PipelineResult:
    """Aggregated results of one pipeline run."""

    success: bool  # True if normalization and ALL reports succeeded
    normalize: NormalizeResult
    reports: list[ReportResult]
    elapsed_s: float
    export_errors: dict[str, str] = field(default_factory=dict)

    def report(self, name: str) -> ReportResult:
        for r in self.reports:
            if r.name == name:
                return r
        raise KeyError(name)

    def frames(self) -> dict[str, pl.DataFrame]:
        return {r.name: r.data for r in self.reports if r.data is not None}


@dataclass
class Pipeline:
    """Clean-then-report run backed by a single DuckDB database.

    Args:
        db_path: Path for the output database (created fresh), or
            ``":memory:"``.
        source: File path (csv/parquet), FileInput, or in-memory table.
        table: Name of the employee table.
        as_of: Reference date for age and termination cut-off
            (default: today).
        strict: Fail the run when rows are rejected with severity 'error'.
        export_dir: If set, CSVs of the normalized table and every
            successful report are written here.
        legacy_sentinel: Render active termdates as ``0000-00-00`` in the
            exported table.
        report_names: Restrict the run to these reports (default: all).
        max_concurrency: Maximum reports running at once (0 = unlimited).
    """

    db_path: Path | str
    source: InputValue
    table: str = DEFAULT_TABLE
    as_of: datetime.date | None = None
    strict: bool = False
    export_dir: Path | str | None = None
    legacy_sentinel: bool = False
    report_names: list[str] | None = None
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    def _connect(self) -> duckdb.DuckDBPyConnection:
        db_path = str(self.db_path)
        if db_path != ":memory:":
            path = Path(db_path)
            if path.exists():
                path.unlink()
            path.parent.mkdir(parents=True, exist_ok=True)
        return duckdb.connect(db_path)

    def _source_label(self) -> str | None:
        if isinstance(self.source, (str, Path)):
            return str(self.source)
        path = getattr(self.source, "path", None)
        return str(path) if path is not None else None

    def _run_exports(
        self, conn: duckdb.DuckDBPyConnection, reports: list[ReportResult]
    ) -> dict[str, str]:
        """Write CSV exports. Returns dict of path -> error for failures."""
        errors: dict[str, str] = {}
        out_dir = Path(self.export_dir)
        targets: list[tuple[Path, Any]] = [
            (
                out_dir / f"{self.table}.csv",
                lambda p: export_table_csv(
                    conn, self.table, p, legacy_sentinel=self.legacy_sentinel
                ),
            )
        ]
        for r in reports:
            if r.success:
                targets.append(
                    (out_dir / f"{r.name}.csv", lambda p, r=r: export_report_csv(r, p))
                )

        for path, export_fn in targets:
            try:
                export_fn(path)
                log.info("  %s: OK", path)
            except Exception as e:
                errors[str(path)] = str(e)
                log.error("  %s: FAILED (%s)", path, e)
        return errors

    async def run(self) -> PipelineResult:
        """Run the full pipeline: ingest, normalize, report, export.

        Raises:
            SchemaError / NormalizationError: normalization cannot proceed;
                no report runs.
        """
        start_time = time.time()
        as_of = self.as_of or datetime.date.today()

        conn = self._connect()
        try:
            init_infra(conn)

            log.info("--- Ingest ---")
            row_count = ingest_source(conn, self.source, self.table)
            persist_workspace_meta(
                conn,
                table=self.table,
                source=self._source_label(),
                input_row_count=row_count,
            )

            log.info("--- Normalize ---")
            norm = normalize(conn, self.table, as_of=as_of, strict=self.strict)

            log.info("--- Reports ---")
            reports = await run_reports(
                conn,
                table=self.table,
                as_of=as_of,
                names=self.report_names,
                max_concurrency=self.max_concurrency,
            )
            persist_reports(conn, reports)
            all_success = all(r.success for r in reports)
            upsert_workspace_meta(conn, [("reports", results_summary(reports))])

            export_errors: dict[str, str] = {}
            if self.export_dir is not None:
                log.info("--- Exports ---")
                export_errors = self._run_exports(conn, reports)
                upsert_workspace_meta(
                    conn,
                    [
                        (
                            "exports",
                            json.dumps(
                                {
                                    "dir": str(self.export_dir),
                                    "legacy_sentinel": self.legacy_sentinel,
                                    "errors": export_errors,
                                },
                                sort_keys=True,
                            ),
                        )
                    ],
                )

            elapsed_s = time.time() - start_time
            status = "ALL PASSED" if all_success else "SOME FAILED"
            log.info("--- Pipeline complete: %s (%.1fs) ---", status, elapsed_s)
            for r in reports:
                s = "PASS" if r.success else "FAIL"
                rows = r.row_count if r.row_count is not None else "-"
                log.info("  %s: %s (%s rows, %.0fms)", r.name, s, rows, r.elapsed_ms)

            return PipelineResult(
                success=all_success and not export_errors,
                normalize=norm,
                reports=reports,
                elapsed_s=elapsed_s,
                export_errors=export_errors,
            )
        finally:
            conn.close()
