"""Tests for result shaping."""

from __future__ import annotations

import pytest

from apple_health.core.enums import OutputFormat
from apple_health.core.query.formatting import format_result, summarize_result
from apple_health.core.query.models import QueryResult


@pytest.fixture
def result() -> QueryResult:
    return QueryResult(
        columns=("type", "value", "flag"),
        rows=tuple(("steps", float(v), v % 2 == 0) for v in range(1, 8)),
        row_count=7,
        execution_time_ms=12,
    )


class TestFormatResult:
    def test_json(self, result):
        """JSON output carries columns, rows, count and timing."""
        payload = format_result(result, "json")
        assert payload["columns"] == ["type", "value", "flag"]
        assert payload["rows"][0] == ["steps", 1.0, False]
        assert payload["row_count"] == 7
        assert payload["execution_time"] == "12ms"

    def test_csv(self, result):
        """CSV output has a header and one line per row."""
        text = format_result(result, OutputFormat.CSV)
        lines = text.strip().splitlines()
        assert lines[0] == "type,value,flag"
        assert lines[1] == "steps,1.0,false"
        assert len(lines) == 8

    def test_unsupported_format(self, result):
        """Unknown formats are rejected."""
        with pytest.raises(ValueError, match="Unsupported format"):
            format_result(result, "xml")


class TestSummary:
    def test_summary_statistics(self, result):
        """Numeric columns get statistics; booleans and strings do not."""
        summary = summarize_result(result)
        assert summary["row_count"] == 7
        assert len(summary["sample_rows"]) == 5
        assert set(summary["statistics"]) == {"value"}
        stats = summary["statistics"]["value"]
        assert stats["min"] == 1.0
        assert stats["max"] == 7.0
        assert stats["avg"] == pytest.approx(4.0)
        assert stats["count"] == 7

    def test_empty_summary(self):
        """An empty result summarizes to its count and columns only."""
        empty = QueryResult(columns=("x",), rows=(), row_count=0)
        summary = format_result(empty, "summary")
        assert summary == {"row_count": 0, "execution_time": "0ms", "columns": ["x"]}

    def test_empty_csv_has_header(self):
        """Even an empty result produces a header line."""
        empty = QueryResult(columns=("x", "y"), rows=(), row_count=0)
        assert format_result(empty, "csv").strip() == "x,y"
