from __future__ import annotations

from typing import Any, Dict, Union

import polars as pl

from apple_health.core.enums import OutputFormat
from .models import QueryResult

SUMMARY_SAMPLE_ROWS = 5


def format_result(
    result: QueryResult, fmt: Union[str, OutputFormat] = OutputFormat.JSON
) -> Union[Dict[str, Any], str]:
    """Shape a result for the caller.

    - json: columns, rows, row count and execution time
    - csv: CSV text with a header row
    - summary: row count, sample rows and min/max/avg/count per numeric column

    Raises:
        ValueError: For an unsupported format.
    """
    try:
        fmt = OutputFormat(str(getattr(fmt, "value", fmt)).lower())
    except ValueError:
        raise ValueError(f"Unsupported format: {fmt}") from None

    if fmt is OutputFormat.CSV:
        return result.to_frame().write_csv()
    if fmt is OutputFormat.SUMMARY:
        return summarize_result(result)
    return result.to_dict()


def summarize_result(result: QueryResult) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "row_count": result.row_count,
        "execution_time": f"{result.execution_time_ms}ms",
        "columns": list(result.columns),
    }
    if not result.row_count:
        return summary

    summary["sample_rows"] = [list(r) for r in result.rows[:SUMMARY_SAMPLE_ROWS]]
    frame = result.to_frame()
    statistics: Dict[str, Dict[str, Any]] = {}
    for col, dtype in frame.schema.items():
        if not dtype.is_numeric() or dtype == pl.Boolean:
            continue
        values = frame.get_column(col).drop_nulls()
        if values.len() == 0:
            continue
        statistics[col] = {
            "min": values.min(),
            "max": values.max(),
            "avg": values.mean(),
            "count": int(values.len()),
        }
    if statistics:
        summary["statistics"] = statistics
    return summary
