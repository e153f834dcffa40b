"""Termination status of an employee.

Inside the database ``termdate`` is a ``DATE NOT NULL`` column: a real
termination date, or :data:`ACTIVE_SENTINEL` for employees who have not
left. In Python the two cases are kept apart as :class:`Active` and
:class:`TerminatedOn`. The legacy ``0000-00-00`` literal only exists at the
output boundary (``legacy=True``).
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass

import polars as pl

from .sql_utils import date_literal

ACTIVE_SENTINEL = datetime.date(9999, 12, 31)
LEGACY_ACTIVE_SENTINEL = "0000-00-00"

ACTIVE_SENTINEL_SQL = date_literal(ACTIVE_SENTINEL)


@dataclass(frozen=True)
class Active:
    """Employee has not been terminated."""


@dataclass(frozen=True)
class TerminatedOn:
    date: datetime.date

    def is_past(self, as_of: datetime.date) -> bool:
        return self.date <= as_of


Termination = Active | TerminatedOn


def termination_of(value: datetime.date) -> Termination:
    """Decode a stored termdate value."""
    if value is None:
        raise ValueError("termdate is never NULL after normalization")
    if value == ACTIVE_SENTINEL:
        return Active()
    return TerminatedOn(value)


def render_termdate(value: datetime.date, *, legacy: bool = False) -> str:
    """Render a stored termdate as text.

    Active employees render as the sentinel date, or ``0000-00-00`` when
    *legacy* is set.
    """
    status = termination_of(value)
    if isinstance(status, Active):
        return LEGACY_ACTIVE_SENTINEL if legacy else ACTIVE_SENTINEL.isoformat()
    return status.date.isoformat()


def render_termdate_column(
    df: pl.DataFrame, *, legacy: bool = False, column: str = "termdate"
) -> pl.DataFrame:
    """Return *df* with *column* rendered as text (see :func:`render_termdate`)."""
    if column not in df.columns:
        return df
    active_text = LEGACY_ACTIVE_SENTINEL if legacy else ACTIVE_SENTINEL.isoformat()
    return df.with_columns(
        pl.when(pl.col(column) == ACTIVE_SENTINEL)
        .then(pl.lit(active_text))
        .otherwise(pl.col(column).cast(pl.Utf8))
        .alias(column)
    )
