"""hrgraph: clean and report on HR employee records with DuckDB."""

from .ingest import ingest_table, ingest_source, coerce_to_dataframe
from .normalize import (
    normalize,
    NormalizeResult,
    NormalizationError,
    Reject,
    SchemaError,
)
from .pipeline import Pipeline, PipelineResult
from .report import REPORTS, Report, ReportResult, run_report, run_reports
from .termination import (
    ACTIVE_SENTINEL,
    Active,
    TerminatedOn,
    render_termdate,
    termination_of,
)

__all__ = [
    # Ingestion
    "ingest_table",
    "ingest_source",
    "coerce_to_dataframe",
    # Normalizer
    "normalize",
    "NormalizeResult",
    "NormalizationError",
    "Reject",
    "SchemaError",
    # Reporter
    "REPORTS",
    "Report",
    "ReportResult",
    "run_report",
    "run_reports",
    # Pipeline
    "Pipeline",
    "PipelineResult",
    # Termination status
    "ACTIVE_SENTINEL",
    "Active",
    "TerminatedOn",
    "render_termdate",
    "termination_of",
]
