"""Embedded analytical engine built on Polars.

One ``QueryEngine`` owns one ``polars.SQLContext``; that context plays the
role of a single engine connection. Statements are planned under a lock and
collected outside it, so concurrent queries only serialize on planning.

All methods are synchronous and may block; async callers run them through
``asyncio.to_thread``.
"""

from __future__ import annotations

from datetime import date, datetime
import logging
import re
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import polars as pl

from apple_health.errors import ExecutionError
from .models import QueryResult

logger = logging.getLogger(__name__)

# ":name" placeholders; "::TYPE" casts and "08:30" style literals are skipped
_PARAM_RE = re.compile(r"(?<![:\w]):([A-Za-z_][A-Za-z0-9_]*)")


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, datetime):
        return f"'{value.isoformat(sep=' ')}'"
    if isinstance(value, date):
        return f"'{value.isoformat()}'"
    text = str(value).replace("'", "''")
    return f"'{text}'"


def bind_params(query: str, params: Optional[Mapping[str, Any]]) -> str:
    """Render named ``:param`` placeholders as SQL literals.

    Placeholders without a matching key are left untouched so the engine
    reports them.

    Examples:
        >>> bind_params("SELECT * FROM t WHERE type = :kind", {"kind": "it's"})
        "SELECT * FROM t WHERE type = 'it''s'"
    """
    if not params:
        return query

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in params:
            return match.group(0)
        return _sql_literal(params[key])

    return _PARAM_RE.sub(_sub, query)


HEADER_SEARCH_LINES = 5


def find_header_row(path: Union[str, Path], column: str) -> int:
    """Index of the first line naming ``column``, or 0 if none of the first few do.

    Some exporters write a metadata line above the CSV header.
    """
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for index, line in enumerate(f):
            if index >= HEADER_SEARCH_LINES:
                break
            cells = [c.strip().strip('"') for c in line.rstrip("\r\n").split(",")]
            if column in cells:
                return index
    return 0


class QueryEngine:
    """In-process table store and SQL executor."""

    def __init__(self) -> None:
        self._ctx = pl.SQLContext()
        self._tables: Dict[str, pl.DataFrame] = {}
        self._lock = threading.Lock()

    # -------------------------
    # MARK: Bulk load
    # -------------------------

    def bulk_load(
        self,
        path: Union[str, Path],
        *,
        timestamp_column: str,
        timestamp_format: str,
        cutoff: Optional[datetime] = None,
        timestamp_columns: Sequence[str] = (),
        numeric_columns: Sequence[str] = (),
        required_columns: Sequence[str] = (),
        skip_rows: Optional[int] = None,
    ) -> pl.DataFrame:
        """Read a delimited file, keep rows at or after ``cutoff`` and coerce types.

        Every column is scanned as text. Timestamp and numeric columns are then
        cast with null-on-failure, so malformed cells never fail the load.
        Rows with a missing raw value in any ``required_columns`` are dropped.
        With ``skip_rows=None`` preamble lines before the header row are
        detected and skipped.

        Raises:
            ValueError: If the timestamp column is absent from the file.
            OSError / polars errors: If the file cannot be read or parsed.
        """
        if skip_rows is None:
            skip_rows = find_header_row(path, timestamp_column)
        lf = pl.scan_csv(
            str(path),
            skip_rows=int(skip_rows),
            infer_schema_length=0,
            truncate_ragged_lines=True,
        )
        columns = lf.collect_schema().names()
        if timestamp_column not in columns:
            raise ValueError(f"Missing timestamp column '{timestamp_column}' in {path}")

        required = [c for c in required_columns if c in columns]
        if required:
            lf = lf.filter(pl.all_horizontal([pl.col(c).is_not_null() for c in required]))

        casts = []
        for col in dict.fromkeys([timestamp_column, *timestamp_columns]):
            if col in columns:
                casts.append(
                    pl.col(col)
                    .str.strip_chars()
                    .str.to_datetime(format=timestamp_format, strict=False, exact=False)
                    .alias(col)
                )
        for col in dict.fromkeys(numeric_columns):
            if col in columns:
                casts.append(
                    pl.col(col).str.strip_chars().cast(pl.Float64, strict=False).alias(col)
                )
        lf = lf.with_columns(casts)

        if cutoff is not None:
            lf = lf.filter(pl.col(timestamp_column) >= cutoff)
        return lf.collect()

    # -------------------------
    # MARK: Table management
    # -------------------------

    def create_table(
        self, name: str, frame: pl.DataFrame, *, order_by: Iterable[str] = ()
    ) -> int:
        """Register ``frame`` as ``name``, sorted by the ordering columns present.

        The sort is the engine's secondary ordering: Polars marks the leading
        sort column as sorted and uses it for range filters. Replaces any
        existing table of the same name. Returns the row count.
        """
        keys = [c for c in order_by if c in frame.columns]
        if keys and frame.height:
            frame = frame.sort(keys, nulls_last=True)
        with self._lock:
            if name in self._tables:
                self._ctx.unregister(name)
            self._ctx.register(name, frame)
            self._tables[name] = frame
        return int(frame.height)

    def rename_table(self, old: str, new: str) -> None:
        with self._lock:
            frame = self._tables.pop(old)
            self._ctx.unregister(old)
            if new in self._tables:
                self._ctx.unregister(new)
            self._ctx.register(new, frame)
            self._tables[new] = frame

    def drop_table(self, name: str) -> bool:
        """Drop ``name`` if present. Returns True when something was dropped."""
        with self._lock:
            if name not in self._tables:
                return False
            self._ctx.unregister(name)
            del self._tables[name]
        return True

    def has_table(self, name: str) -> bool:
        with self._lock:
            return name in self._tables

    def tables(self) -> List[str]:
        with self._lock:
            return sorted(self._tables)

    def schema(self, name: str) -> Dict[str, str]:
        """Return column → dtype name for a registered table."""
        with self._lock:
            frame = self._tables[name]
        return {col: str(dtype) for col, dtype in frame.schema.items()}

    def row_count(self, name: str) -> int:
        with self._lock:
            return int(self._tables[name].height)

    def head(self, name: str, n: int = 5) -> pl.DataFrame:
        with self._lock:
            frame = self._tables[name]
        return frame.head(n)

    def column_range(self, name: str, column: str) -> Tuple[Any, Any]:
        """Return (min, max) of ``column``; (None, None) when absent or empty."""
        with self._lock:
            frame = self._tables[name]
        if column not in frame.columns:
            return None, None
        series = frame.get_column(column)
        return series.min(), series.max()

    def estimated_size_bytes(self) -> int:
        """Actual in-memory size of all registered frames, as reported by Polars."""
        with self._lock:
            frames = list(self._tables.values())
        return int(sum(f.estimated_size() for f in frames))

    # -------------------------
    # MARK: Execution
    # -------------------------

    def execute(
        self,
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        placeholders: Optional[Mapping[str, pl.DataFrame]] = None,
    ) -> QueryResult:
        """Execute one statement and return its result.

        ``placeholders`` are frames visible to this statement only, under
        names that have no registered table. They stand in for datasets with
        no rows in the window.

        Raises:
            ExecutionError: If planning or execution fails; carries ``query``.
        """
        sql = bind_params(query, params)
        started = time.perf_counter()
        try:
            with self._lock:
                scoped = [n for n in (placeholders or {}) if n not in self._tables]
                for name in scoped:
                    self._ctx.register(name, placeholders[name])
                try:
                    lf = self._ctx.execute(sql, eager=False)
                finally:
                    for name in scoped:
                        self._ctx.unregister(name)
            frame = lf.collect()
        except Exception as e:
            logger.debug("Engine rejected query %r: %s", query[:200], e)
            raise ExecutionError(query, str(e)) from e
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return QueryResult.from_frame(frame, execution_time_ms=elapsed_ms)

    def close(self) -> None:
        with self._lock:
            for name in list(self._tables):
                self._ctx.unregister(name)
            self._tables.clear()
