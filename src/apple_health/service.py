"""Composition root wiring the query layer together.

A query flows Rewriter → Cache → Engine: dependencies are loaded and views
substituted before the cache is consulted, and a result is cached only after
execution succeeds. The memory manager runs beside this pipeline on its own
timer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from apple_health.config import Settings
from apple_health.core.query.cache import HeuristicTtlPolicy, QueryCache
from apple_health.core.query.catalog import DatasetCatalog
from apple_health.core.query.engine import QueryEngine
from apple_health.core.query.loader import TableLoader
from apple_health.core.query.memory import MemoryManager
from apple_health.core.query.models import MemoryStats, QueryAnalysis, QueryResult
from apple_health.core.query.rewriter import QueryRewriter
from apple_health.core.query.views import DEFAULT_VIEWS, load_view_definitions, merge_views
from apple_health.errors import UnknownTableError

logger = logging.getLogger(__name__)

# Table name fragments grouped for the schema overview
TABLE_GROUPS = {
    "heart_rate": ("heartrate",),
    "activity": ("stepcount", "distance", "energyburned", "flightsclimbed"),
    "sleep": ("sleep",),
    "workouts": ("workout",),
    "vitals": ("bloodpressure", "bodytemperature", "oxygensaturation", "respiratoryrate"),
}

QUERY_TIPS = [
    "Table names are lowercase versions of the CSV filenames",
    "Only the last {window} days of each dataset are loaded",
    "Always filter by date: WHERE startDate >= 'YYYY-MM-DD'",
    "Use CAST(startDate AS DATE) for daily grouping",
    "Heart rate values are in count/min, distances in meters",
    "Sleep values are in seconds (divide by 3600 for hours)",
    "Views such as daily_steps can be used in place of a table name",
    "describe_table shows the columns, date range and sample rows of any table",
]

SAMPLE_ROWS = 3


class HealthDataService:
    def __init__(
        self,
        settings: Settings,
        *,
        engine: Optional[QueryEngine] = None,
        catalog: Optional[DatasetCatalog] = None,
    ) -> None:
        self.settings = settings
        self.engine = engine or QueryEngine()
        self.catalog = catalog or DatasetCatalog(
            settings.data_dir, pattern=settings.dataset_pattern
        )
        self.loader = TableLoader(
            self.engine,
            self.catalog,
            rolling_window_days=settings.rolling_window_days,
            columns=settings.columns,
            timestamp_format=settings.timestamp_format,
            skip_rows=settings.skip_rows,
        )
        self.cache = QueryCache(
            settings.cache_size,
            ttl_policy=HeuristicTtlPolicy(
                default_ms=int(settings.default_ttl_s * 1000),
                aggregate_ms=int(settings.aggregate_ttl_s * 1000),
                recent_ms=int(settings.recent_ttl_s * 1000),
            ),
        )
        self.memory = MemoryManager(
            self.catalog,
            self.loader,
            max_memory_mb=settings.max_memory_mb,
            check_interval_s=settings.memory_check_interval_s,
            bytes_per_row=settings.bytes_per_row,
        )
        views = list(DEFAULT_VIEWS)
        if settings.views_file is not None:
            views = merge_views(views, load_view_definitions(settings.views_file))
        self.rewriter = QueryRewriter(
            self.loader, self.catalog, views, timestamp_column=settings.columns.timestamp
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HealthDataService":
        return cls(settings)

    # -------------------------
    # MARK: Lifecycle
    # -------------------------

    async def start(self, *, monitor: bool = True) -> None:
        """Discover datasets, optionally prewarm, and start memory monitoring.

        Raises:
            DiscoveryError: If the data directory cannot be scanned.
        """
        await self.catalog.initialize()
        if self.settings.prewarm:
            await self.loader.load_all()
        if monitor:
            self.memory.start()

    async def close(self) -> None:
        await self.memory.stop()
        self.engine.close()
        for table in self.catalog.loaded_tables():
            self.catalog.mark_unloaded(table)
        self.loader.forget_empty()
        self.loader.reset_states()

    # -------------------------
    # MARK: Queries
    # -------------------------

    async def query(self, query: str, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        """Run ``query`` through the rewrite → cache → execute pipeline.

        Raises:
            LoadError: If a referenced table could not be loaded.
            ExecutionError: If the engine rejected the rewritten query.
        """
        rewritten = await self.rewriter.optimize(query)

        async def execute() -> QueryResult:
            # datasets with no rows in the window run as empty tables
            empty = self.loader.empty_frames(self.rewriter.dependencies(query))
            return await asyncio.to_thread(
                self.engine.execute, rewritten, params, placeholders=empty
            )

        return await self.cache.get_or_execute(rewritten, execute, params)

    def analyze(self, query: str) -> QueryAnalysis:
        return self.rewriter.analyze(query)

    async def describe_table(self, name: str) -> Dict[str, Any]:
        """Load ``name`` and report its columns, row count and time range.

        Raises:
            UnknownTableError: If ``name`` is not in the catalog.
        """
        entry = self.catalog.get_entry(name)
        if entry is None:
            raise UnknownTableError(name)
        rows = await self.loader.ensure_loaded(entry.name)
        info: Dict[str, Any] = {
            "table": entry.name,
            "source_path": str(entry.source_path),
            "loaded": bool(rows),
            "row_count": rows,
            "columns": [],
        }
        if rows:
            info.update(self._table_details(entry.name))
        else:
            empty = self.loader.empty_frames([entry.name]).get(entry.name)
            if empty is not None:
                info["columns"] = [
                    {"name": col, "type": str(dtype)} for col, dtype in empty.schema.items()
                ]
        return info

    def _table_details(self, table: str) -> Dict[str, Any]:
        """Columns, time range and a few sample rows of a loaded table."""
        earliest, latest = self.engine.column_range(table, self.settings.columns.timestamp)
        return {
            "columns": [
                {"name": col, "type": dtype} for col, dtype in self.engine.schema(table).items()
            ],
            "earliest": str(earliest) if earliest is not None else None,
            "latest": str(latest) if latest is not None else None,
            "sample_rows": [list(r) for r in self.engine.head(table, SAMPLE_ROWS).rows()],
        }

    def schema_overview(self) -> Dict[str, Any]:
        """Tables, views and tips; details only for tables already loaded."""
        info = self.catalog.table_info()
        tables = sorted(info)
        if not tables:
            return {
                "error": "No health data tables found",
                "suggestion": f"Check that {self.settings.data_dir} contains CSV exports",
            }
        groups: Dict[str, List[str]] = {
            group: [t for t in tables if any(frag in t for frag in fragments)]
            for group, fragments in TABLE_GROUPS.items()
        }
        details: Dict[str, Any] = {}
        for table in tables:
            if info[table].loaded and self.engine.has_table(table):
                details[table] = {
                    "row_count": info[table].row_count,
                    **self._table_details(table),
                }
        return {
            "summary": {
                "total_tables": len(tables),
                "loaded_tables": sum(1 for e in info.values() if e.loaded),
            },
            "available_tables": tables,
            "views": sorted(self.rewriter.views),
            "common_patterns": groups,
            "table_details": details,
            "query_tips": [
                tip.format(window=self.settings.rolling_window_days) for tip in QUERY_TIPS
            ],
        }

    # -------------------------
    # MARK: Operations
    # -------------------------

    def memory_stats(self) -> MemoryStats:
        return self.memory.stats()

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()

    async def force_evict(self, count: int) -> List[str]:
        evicted = await self.memory.force_evict(count)
        logger.info("Force-evicted %d tables", len(evicted))
        return evicted

    def clear_cache(self) -> None:
        """Clear cached results and re-check datasets that were empty."""
        self.cache.clear()
        self.loader.forget_empty()
