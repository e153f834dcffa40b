"""Tests for hrgraph/termination.py."""

import datetime

import polars as pl
import pytest

from hrgraph.termination import (
    ACTIVE_SENTINEL,
    LEGACY_ACTIVE_SENTINEL,
    Active,
    TerminatedOn,
    render_termdate,
    render_termdate_column,
    termination_of,
)


class TestTerminationOf:
    def test_sentinel_is_active(self):
        assert termination_of(ACTIVE_SENTINEL) == Active()

    def test_real_date(self):
        d = datetime.date(2023, 5, 10)
        assert termination_of(d) == TerminatedOn(d)

    def test_null_raises(self):
        with pytest.raises(ValueError):
            termination_of(None)

    def test_is_past(self):
        t = TerminatedOn(datetime.date(2023, 5, 10))
        assert t.is_past(datetime.date(2023, 5, 10))
        assert not t.is_past(datetime.date(2023, 5, 9))


class TestRender:
    def test_active_default(self):
        assert render_termdate(ACTIVE_SENTINEL) == "9999-12-31"

    def test_active_legacy(self):
        assert render_termdate(ACTIVE_SENTINEL, legacy=True) == LEGACY_ACTIVE_SENTINEL

    def test_terminated_ignores_legacy(self):
        d = datetime.date(2023, 5, 10)
        assert render_termdate(d, legacy=True) == "2023-05-10"

    def test_column(self):
        df = pl.DataFrame(
            {"termdate": [datetime.date(2023, 5, 10), ACTIVE_SENTINEL], "x": [1, 2]}
        )
        out = render_termdate_column(df, legacy=True)
        assert out["termdate"].to_list() == ["2023-05-10", "0000-00-00"]
        assert out["x"].to_list() == [1, 2]

    def test_column_absent_is_noop(self):
        df = pl.DataFrame({"x": [1]})
        assert render_termdate_column(df, legacy=True) is df
