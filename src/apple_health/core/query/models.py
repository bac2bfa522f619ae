"""Data models shared by the query layer.

- CatalogEntry: load-state bookkeeping for one dataset
- QueryResult: immutable result of one executed query
- CacheEntry: a cached result with its creation time and time-to-live
- ViewDefinition: a named aggregate shortcut substituted into query text
- DatasetColumns: the fixed column layout of the source files
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import polars as pl


@dataclass
class CatalogEntry:
    """One discoverable dataset.

    Attributes:
        name: Canonical lowercase table name (unique key).
        source_path: CSV file the table is loaded from.
        loaded: True when the backing table exists in the engine.
        row_count: Rows resident in the engine; None until first load.
        last_accessed: Epoch seconds of the last reference; frozen on unload.

    The catalog hands out copies. Mutating a copy does not change load state;
    only the catalog's mark_* and touch methods do.
    """

    name: str
    source_path: Path
    loaded: bool = False
    row_count: Optional[int] = None
    last_accessed: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "source_path": str(self.source_path),
            "loaded": self.loaded,
            "row_count": self.row_count,
            "last_accessed": self.last_accessed,
        }


@dataclass(frozen=True)
class QueryResult:
    """Result of a single query.

    Columns and rows are tuples so one instance can be shared between the
    cache and any number of callers without aliasing surprises.

    Examples:
        >>> r = QueryResult(columns=("a",), rows=((1,), (2,)), row_count=2, execution_time_ms=3)
        >>> r.to_dict()["row_count"]
        2
    """

    columns: Tuple[str, ...]
    rows: Tuple[Tuple[Any, ...], ...]
    row_count: int
    execution_time_ms: int = 0

    @classmethod
    def from_frame(cls, frame: pl.DataFrame, *, execution_time_ms: int = 0) -> "QueryResult":
        return cls(
            columns=tuple(frame.columns),
            rows=tuple(tuple(row) for row in frame.rows()),
            row_count=int(frame.height),
            execution_time_ms=int(execution_time_ms),
        )

    def to_frame(self) -> pl.DataFrame:
        """Rebuild a Polars DataFrame (used for CSV and summary shaping)."""
        if not self.rows:
            return pl.DataFrame({c: [] for c in self.columns})
        return pl.DataFrame(
            [list(r) for r in self.rows],
            schema=list(self.columns),
            orient="row",
            infer_schema_length=None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns": list(self.columns),
            "rows": [list(r) for r in self.rows],
            "row_count": self.row_count,
            "execution_time": f"{self.execution_time_ms}ms",
        }


@dataclass
class CacheEntry:
    result: QueryResult
    created_at: float
    ttl_ms: int

    def is_expired(self, now: float) -> bool:
        """An entry is live while ``now - created_at < ttl``."""
        return (now - self.created_at) * 1000.0 >= self.ttl_ms


@dataclass(frozen=True)
class ViewDefinition:
    """Named aggregate shortcut, e.g. ``daily_steps`` → ``SELECT ... GROUP BY ...``."""

    name: str
    expansion_sql: str


@dataclass(frozen=True)
class DatasetColumns:
    """Column layout shared by every source file.

    Only these columns are coerced; any other column is kept as text.
    """

    timestamp: str = "startDate"
    end_timestamp: str = "endDate"
    category: str = "type"
    source: str = "sourceName"
    unit: str = "unit"
    value: str = "value"
    extra_timestamps: Tuple[str, ...] = ("creationDate",)

    @property
    def timestamp_columns(self) -> List[str]:
        return [self.timestamp, self.end_timestamp, *self.extra_timestamps]

    @property
    def numeric_columns(self) -> List[str]:
        return [self.value]

    @property
    def ordering(self) -> List[str]:
        """Secondary ordering applied on load: category first, then time."""
        return [self.category, self.timestamp]


@dataclass
class QueryAnalysis:
    """Advisory report produced by the rewriter's analyze()."""

    referenced_tables: List[str] = field(default_factory=list)
    views: List[str] = field(default_factory=list)
    estimated_rows: int = 0
    unloaded_tables: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "referenced_tables": list(self.referenced_tables),
            "views": list(self.views),
            "estimated_rows": self.estimated_rows,
            "unloaded_tables": list(self.unloaded_tables),
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True)
class MemoryStats:
    max_memory_mb: float
    estimated_usage_mb: float
    high_water_mb: float
    low_water_mb: float
    loaded_tables: int
    total_tables: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_memory_mb": self.max_memory_mb,
            "estimated_usage_mb": round(self.estimated_usage_mb, 3),
            "high_water_mb": self.high_water_mb,
            "low_water_mb": self.low_water_mb,
            "loaded_tables": self.loaded_tables,
            "total_tables": self.total_tables,
        }
