"""CLI entry point for the hrgraph pipeline.

Usage:
    hrgraph init

    # Ingest, normalize and run every report
    hrgraph run data/hr.csv -o runs/hr.db --export out/

    # Normalize only, then run a subset of reports against the result
    hrgraph normalize data/hr.csv -o runs/hr.db
    hrgraph report runs/hr.db --only gender_breakdown --only state_headcount

    hrgraph show runs/hr.db
"""

import asyncio
import datetime
import json
import logging
import sys
import tomllib
from pathlib import Path
from typing import Any

import click
import duckdb
from dotenv import find_dotenv, load_dotenv

# Load .env by walking upward from the CWD.
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

from hrgraph.catalog import INFRA_PREFIX, count_rows_display, list_tables
from hrgraph.infra import (
    init_infra,
    persist_workspace_meta,
    read_report_meta,
    read_workspace_meta,
    reject_counts,
)
from hrgraph.ingest import ingest_source
from hrgraph.normalize import (
    DEFAULT_TABLE,
    NormalizationError,
    SchemaError,
    normalize,
)
from hrgraph.pipeline import Pipeline, export_report_csv
from hrgraph.report import (
    DEFAULT_MAX_CONCURRENCY,
    REPORTS,
    REPORT_TABLE_PREFIX,
    run_reports,
)

log = logging.getLogger(__name__)

AS_OF_ENV = "HRGRAPH_AS_OF"
STRICT_ENV = "HRGRAPH_STRICT"

CONFIG_DEFAULTS: dict[str, Any] = {
    "table": DEFAULT_TABLE,
    "strict": False,
    "max_concurrency": DEFAULT_MAX_CONCURRENCY,
    "export_dir": None,
    "legacy_sentinel": False,
}


def _meta_json(meta: dict[str, str], key: str) -> dict[str, Any]:
    """Parse a JSON blob from workspace meta."""
    raw = meta.get(key)
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def _project_config() -> dict[str, Any]:
    """Return settings with [tool.hrgraph] from pyproject.toml applied.

    Precedence (highest first): CLI flag / env var, [tool.hrgraph],
    built-in defaults. Only the last two are merged here.
    """
    config = dict(CONFIG_DEFAULTS)
    pyproject_path = Path.cwd() / "pyproject.toml"
    if not pyproject_path.exists():
        return config
    try:
        data = tomllib.loads(pyproject_path.read_text())
    except OSError as e:
        raise click.ClickException(f"Failed to read {pyproject_path}: {e}")
    except tomllib.TOMLDecodeError as e:
        raise click.ClickException(f"Invalid TOML in {pyproject_path}: {e}")

    tool = data.get("tool", {}).get("hrgraph", {}) if isinstance(data, dict) else {}
    unknown = sorted(set(tool) - set(CONFIG_DEFAULTS))
    if unknown:
        raise click.ClickException(
            f"Unknown [tool.hrgraph] key(s) in {pyproject_path}: {', '.join(unknown)}"
        )
    config.update(tool)
    return config


def _pick(value: Any, config: dict[str, Any], key: str) -> Any:
    return config[key] if value is None else value


def _as_date(value: datetime.datetime | None) -> datetime.date | None:
    return value.date() if value is not None else None


def _configure_logging(quiet: bool) -> None:
    level = logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def _resolve_output(output: Path, force: bool) -> Path:
    if output.suffix != ".db":
        output = output.with_suffix(".db")
        log.warning("Output path adjusted to %s (added .db suffix)", output)
    if output.exists() and not force:
        click.confirm(
            f"{output} already exists and will be overwritten. Continue?",
            abort=True,
        )
    return output


def _default_output_db_path(source: Path, now: datetime.datetime | None = None) -> Path:
    """Generate a default output .db path from input name + timestamp."""
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    ts = now.strftime("%Y%m%d_%H%M%S")
    return Path("runs") / f"{source.stem}_{ts}.db"


as_of_option = click.option(
    "--as-of",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    envvar=AS_OF_ENV,
    default=None,
    help=f"Reference date YYYY-MM-DD for age and terminations (default: today, env {AS_OF_ENV})",
)
strict_option = click.option(
    "--strict/--no-strict",
    default=None,
    envvar=STRICT_ENV,
    help="Fail when rows are rejected (malformed termdate, missing id)",
)
table_option = click.option(
    "--table", "-t", default=None, help=f"Employee table name (default: {DEFAULT_TABLE})"
)


@click.group()
def main():
    """hrgraph: HR employee-record cleaning and reporting."""


@main.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing files when initializing",
)
def init(force: bool):
    """Initialize hrgraph settings in the current project."""
    root = Path.cwd()
    pyproject_path = root / "pyproject.toml"
    gitignore_path = root / ".gitignore"
    env_path = root / ".env"

    created: list[str] = []
    skipped: list[str] = []

    if not pyproject_path.exists() or force:
        pyproject_path.write_text(
            f"""[tool.hrgraph]
table = "{DEFAULT_TABLE}"
strict = false
max_concurrency = {DEFAULT_MAX_CONCURRENCY}
legacy_sentinel = false
# export_dir = "out"
"""
        )
        created.append("pyproject.toml")
    else:
        skipped.append("pyproject.toml")

    if not env_path.exists() or force:
        env_path.write_text(
            f"""\
# Pin the reference date so reruns produce identical ages
# {AS_OF_ENV}=2024-06-15
# {STRICT_ENV}=true
"""
        )
        created.append(".env")
    else:
        skipped.append(".env")

    gitignore_entries = [".venv/", "__pycache__/", "*.db", "runs/", ".env"]
    if not gitignore_path.exists() or force:
        gitignore_path.write_text("\n".join(gitignore_entries) + "\n")
        created.append(".gitignore")
    else:
        existing = gitignore_path.read_text()
        if "*.db" not in existing:
            with open(gitignore_path, "a") as f:
                f.write("*.db\n")
        skipped.append(".gitignore")

    for name in created:
        click.echo(f"  created  {name}")
    for name in skipped:
        click.echo(f"  exists   {name}")

    click.echo("\nNext:")
    click.echo("  hrgraph run data/hr.csv")


@main.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output database path (default: runs/<input>_<timestamp>.db)",
)
@table_option
@as_of_option
@strict_option
@click.option(
    "--export",
    "export_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for CSV exports of the table and every report",
)
@click.option(
    "--legacy-sentinel/--no-legacy-sentinel",
    default=None,
    help="Export active termdates as 0000-00-00",
)
@click.option(
    "--only",
    "only",
    multiple=True,
    type=click.Choice([r.name for r in REPORTS]),
    help="Run only this report (repeatable)",
)
@click.option(
    "--max-concurrency",
    default=None,
    type=int,
    help="Maximum concurrent reports (0 = unlimited)",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite output file without prompting",
)
def run(
    source: Path,
    output: Path | None,
    table: str | None,
    as_of: datetime.datetime | None,
    strict: bool | None,
    export_dir: Path | None,
    legacy_sentinel: bool | None,
    only: tuple[str, ...],
    max_concurrency: int | None,
    quiet: bool,
    force: bool,
):
    """Ingest SOURCE, normalize it and run the reports."""
    _configure_logging(quiet)
    config = _project_config()

    if output is None:
        output = _default_output_db_path(source)
    output = _resolve_output(Path(output), force)

    pipeline = Pipeline(
        db_path=output,
        source=source,
        table=_pick(table, config, "table"),
        as_of=_as_date(as_of),
        strict=_pick(strict, config, "strict"),
        export_dir=_pick(export_dir, config, "export_dir"),
        legacy_sentinel=_pick(legacy_sentinel, config, "legacy_sentinel"),
        report_names=list(only) or None,
        max_concurrency=_pick(max_concurrency, config, "max_concurrency"),
    )

    log.info("Input: %s", source)
    log.info("Output: %s", output)

    try:
        result = asyncio.run(pipeline.run())
    except (SchemaError, NormalizationError, ValueError) as e:
        raise click.ClickException(str(e))

    log.info("Saved to: %s", output)
    log.info("SQL trace: SELECT * FROM _trace")
    log.info("Rejected rows: SELECT * FROM _rejects")

    if not quiet:
        _report_run_summary(output)

    sys.exit(0 if result.success else 1)


@main.command("normalize")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    required=True,
    help="Output database path",
)
@table_option
@as_of_option
@strict_option
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite output file without prompting",
)
def normalize_cmd(
    source: Path,
    output: Path,
    table: str | None,
    as_of: datetime.datetime | None,
    strict: bool | None,
    quiet: bool,
    force: bool,
):
    """Ingest SOURCE and normalize it, without running reports."""
    _configure_logging(quiet)
    config = _project_config()
    table = _pick(table, config, "table")
    output = _resolve_output(Path(output), force)
    if output.exists():
        output.unlink()
    output.parent.mkdir(parents=True, exist_ok=True)

    conn = duckdb.connect(str(output))
    try:
        init_infra(conn)
        try:
            row_count = ingest_source(conn, source, table)
            persist_workspace_meta(
                conn, table=table, source=str(source), input_row_count=row_count
            )
            result = normalize(
                conn,
                table,
                as_of=_as_date(as_of),
                strict=_pick(strict, config, "strict"),
            )
        except (SchemaError, NormalizationError, ValueError) as e:
            raise click.ClickException(str(e))
    finally:
        conn.close()

    click.echo(f"Normalized {result.row_count} rows into {output} (as of {result.as_of})")
    for kind, n in result.reject_counts().items():
        click.echo(f"  {kind}: {n}")


@main.command()
@click.argument("db", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@table_option
@as_of_option
@click.option(
    "--only",
    "only",
    multiple=True,
    type=click.Choice([r.name for r in REPORTS]),
    help="Run only this report (repeatable)",
)
@click.option(
    "--export",
    "export_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for CSV exports of the report results",
)
@click.option(
    "--max-concurrency",
    default=None,
    type=int,
    help="Maximum concurrent reports (0 = unlimited)",
)
def report(
    db: Path,
    table: str | None,
    as_of: datetime.datetime | None,
    only: tuple[str, ...],
    export_dir: Path | None,
    max_concurrency: int | None,
):
    """Run reports against an already normalized database DB (read-only)."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    config = _project_config()

    try:
        conn = duckdb.connect(str(db), read_only=True)
    except duckdb.Error as e:
        raise click.ClickException(f"Cannot open {db} as a DuckDB database: {e}")

    try:
        meta = read_workspace_meta(conn)
        table = table or meta.get("table") or config["table"]
        ref_date = _as_date(as_of)
        if ref_date is None and meta.get("as_of"):
            ref_date = datetime.date.fromisoformat(meta["as_of"])
        if ref_date is None:
            ref_date = datetime.date.today()

        results = asyncio.run(
            run_reports(
                conn,
                table=table,
                as_of=ref_date,
                names=list(only) or None,
                max_concurrency=_pick(max_concurrency, config, "max_concurrency"),
            )
        )
    finally:
        conn.close()

    click.echo(f"Reports for {db} (table {table}, as of {ref_date})")
    for r in results:
        click.echo(f"\n{r.name}: {r.title} [{r.cohort}]")
        if r.success:
            click.echo(str(r.data))
        else:
            click.echo(f"  FAILED: {r.error}")
        if export_dir is not None and r.success:
            export_report_csv(r, Path(export_dir) / f"{r.name}.csv")

    sys.exit(0 if all(r.success for r in results) else 1)


def _report_run_summary(output: Path) -> None:
    try:
        conn = duckdb.connect(str(output), read_only=True)
    except duckdb.Error:
        return

    try:
        meta = read_workspace_meta(conn)
        table = meta.get("table", DEFAULT_TABLE)
        tables = set(list_tables(conn, exclude_prefixes=(INFRA_PREFIX,)))

        if table in tables:
            click.echo(f"\n  {table}: {count_rows_display(conn, table)} rows")

        rejects = reject_counts(conn)
        if rejects:
            click.echo("\n  Rejects:")
            for kind, n in rejects.items():
                click.echo(f"    {kind}: {n}")

        report_meta = read_report_meta(conn)
        if report_meta:
            click.echo(f"\n  Reports ({len(report_meta)}):")
            for name, m in report_meta.items():
                output_name = f"{REPORT_TABLE_PREFIX}{name}"
                if m.get("status") == "ok" and output_name in tables:
                    click.echo(
                        f"    {output_name}: {count_rows_display(conn, output_name)} rows"
                    )
                else:
                    click.echo(f"    {name}: FAILED ({m.get('error')})")
    finally:
        conn.close()


@main.command()
@click.argument("target", type=click.Path(path_type=Path))
def show(target: Path):
    """Show the metadata of a pipeline database.

    \b
    Example:
        hrgraph show runs/hr.db
    """
    if target.suffix != ".db":
        raise click.ClickException(f"{target} is not a .db file.")
    if not target.exists():
        raise click.ClickException(f"{target} does not exist.")
    try:
        conn = duckdb.connect(str(target), read_only=True)
    except duckdb.Error as e:
        raise click.ClickException(f"Cannot open {target} as a DuckDB database: {e}")
    try:
        meta = read_workspace_meta(conn)
        rejects = reject_counts(conn)
        report_meta = read_report_meta(conn)
    finally:
        conn.close()
    if not meta:
        raise click.ClickException(
            f"{target} has no workspace metadata; not an hrgraph database."
        )

    click.echo(f"Workspace: {target}\n")
    click.echo(f"Created: {meta.get('created_at_utc', '(unknown)')}")
    click.echo(f"Table: {meta.get('table', '(unknown)')}")
    if meta.get("source"):
        click.echo(f"Source: {meta['source']}")
    click.echo(f"Input rows: {meta.get('input_row_count', '(unknown)')}")
    click.echo(f"As of: {meta.get('as_of', '(not normalized)')}")

    if rejects:
        click.echo("\nRejects:")
        for kind in sorted(rejects):
            click.echo(f"  {kind}: {rejects[kind]}")

    if report_meta:
        click.echo(f"\nReports ({len(report_meta)}):")
        for name, m in report_meta.items():
            if m.get("status") == "ok":
                click.echo(f"  {name}: OK ({m.get('row_count')} rows)")
            else:
                click.echo(f"  {name}: FAILED ({m.get('error')})")

    exports = _meta_json(meta, "exports")
    if exports:
        click.echo(f"\nExports: {exports.get('dir')}")
        for path, err in sorted((exports.get("errors") or {}).items()):
            click.echo(f"  {path}: FAILED ({err})")


if __name__ == "__main__":
    main()
