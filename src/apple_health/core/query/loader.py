"""Lazy table loading and unloading.

Each table moves through UNLOADED → LOADING → LOADED → UNLOADED. A failed
load returns to UNLOADED after its staging table is dropped. Loads of the
same table are serialized by a per-table lock, so two queries racing on an
unloaded table materialize it once.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Set

import polars as pl

from apple_health.core.enums import LoadState
from apple_health.errors import EvictionError, LoadError, UnknownTableError
from .catalog import DatasetCatalog
from .engine import QueryEngine
from .models import CatalogEntry, DatasetColumns

logger = logging.getLogger(__name__)

DEFAULT_ROLLING_WINDOW_DAYS = 90
DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
STAGING_SUFFIX = "__staging"

_TOKEN_RE = re.compile(r"\w+", flags=re.ASCII)


class TableLoader:
    """Materializes catalog datasets into engine tables on demand."""

    def __init__(
        self,
        engine: QueryEngine,
        catalog: DatasetCatalog,
        *,
        rolling_window_days: int = DEFAULT_ROLLING_WINDOW_DAYS,
        columns: Optional[DatasetColumns] = None,
        timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
        skip_rows: Optional[int] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._engine = engine
        self._catalog = catalog
        self.rolling_window_days = int(rolling_window_days)
        self.columns = columns or DatasetColumns()
        self.timestamp_format = timestamp_format
        self.skip_rows = None if skip_rows is None else int(skip_rows)
        self._now = now
        self._states: Dict[str, LoadState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._empty: Dict[str, pl.DataFrame] = {}

    def state(self, name: str) -> LoadState:
        return self._states.get(str(name).lower(), LoadState.UNLOADED)

    def reset_states(self) -> None:
        """Forget every load outcome; used when the engine is closed."""
        self._states.clear()
        self._empty.clear()

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _require_entry(self, name: str) -> CatalogEntry:
        entry = self._catalog.get_entry(name)
        if entry is None:
            raise UnknownTableError(name)
        return entry

    # -------------------------
    # MARK: Load
    # -------------------------

    async def ensure_loaded(self, name: str) -> int:
        """Make ``name`` queryable and return its resident row count.

        A table with no rows inside the recency window is a successful
        no-load: 0 is returned and the entry stays not-loaded. That outcome
        is remembered, with the file's empty frame, until ``unload`` or
        ``forget_empty``; later calls return 0 without reading the file.

        Raises:
            UnknownTableError: If ``name`` is not in the catalog.
            LoadError: If the bulk load or type coercion failed.
        """
        entry = self._require_entry(name)
        if entry.loaded or self._is_known_empty(entry.name):
            self._catalog.touch(entry.name)
            return int(entry.row_count or 0)

        async with self._lock_for(entry.name):
            # Another task may have finished the load while this one waited
            entry = self._require_entry(entry.name)
            if entry.loaded or self._is_known_empty(entry.name):
                self._catalog.touch(entry.name)
                return int(entry.row_count or 0)
            return await self._load_table(entry)

    def _is_known_empty(self, table: str) -> bool:
        return table in self._empty and self._catalog.is_empty(table)

    def empty_frames(self, names: Iterable[str]) -> Dict[str, pl.DataFrame]:
        """Zero-row frames, with the source schema, for tables known to be empty."""
        return {
            n: self._empty[n] for n in (str(n).lower() for n in names) if self._is_known_empty(n)
        }

    def forget_empty(self) -> None:
        """Drop remembered empty outcomes so the next reference re-reads the file."""
        for table in list(self._empty):
            del self._empty[table]
            self._catalog.clear_empty(table)

    async def _load_table(self, entry: CatalogEntry) -> int:
        table = entry.name
        staging = f"{table}{STAGING_SUFFIX}"
        cutoff = self._now() - timedelta(days=self.rolling_window_days)
        self._states[table] = LoadState.LOADING
        logger.info("Loading table %s from %s", table, entry.source_path)
        loaded = False

        try:
            frame = await asyncio.to_thread(
                self._engine.bulk_load,
                entry.source_path,
                timestamp_column=self.columns.timestamp,
                timestamp_format=self.timestamp_format,
                cutoff=cutoff,
                timestamp_columns=self.columns.timestamp_columns,
                numeric_columns=self.columns.numeric_columns,
                required_columns=[self.columns.value],
                skip_rows=self.skip_rows,
            )
            if frame.height == 0:
                self._empty[table] = frame
                self._catalog.mark_empty(table)
                logger.info(
                    "No data within the last %d days for %s", self.rolling_window_days, table
                )
                return 0

            await asyncio.to_thread(
                self._engine.create_table, staging, frame, order_by=self.columns.ordering
            )
            self._engine.rename_table(staging, table)
            self._catalog.mark_loaded(table, frame.height)
            loaded = True
        except Exception as e:
            raise LoadError(table, entry.source_path, e) from e
        finally:
            # also reached on cancellation
            if not loaded:
                self._engine.drop_table(staging)
                self._states[table] = LoadState.UNLOADED

        self._states[table] = LoadState.LOADED
        logger.info("Loaded %d rows into %s", frame.height, table)
        return int(frame.height)

    async def load_all(self) -> Dict[str, int]:
        """Load every catalog table, logging and skipping failures."""
        tables = self._catalog.all_tables()
        logger.info("Loading %d tables...", len(tables))
        loaded: Dict[str, int] = {}
        for table in tables:
            try:
                loaded[table] = await self.ensure_loaded(table)
            except LoadError as e:
                logger.error("Failed to load %s: %s", table, e)
        return loaded

    # -------------------------
    # MARK: Unload
    # -------------------------

    async def unload(self, name: str) -> None:
        """Drop the backing table and mark it unloaded. Idempotent.

        Raises:
            UnknownTableError: If ``name`` is not in the catalog.
            EvictionError: If the engine failed to drop the table.
        """
        entry = self._require_entry(name)
        async with self._lock_for(entry.name):
            try:
                dropped = self._engine.drop_table(entry.name)
            except Exception as e:
                raise EvictionError(entry.name, e) from e
            self._catalog.mark_unloaded(entry.name)
            self._states[entry.name] = LoadState.UNLOADED
            if self._empty.pop(entry.name, None) is not None:
                self._catalog.clear_empty(entry.name)
        if dropped:
            logger.info("Unloaded table %s", entry.name)

    # -------------------------
    # MARK: Dependency detection
    # -------------------------

    def extract_referenced_tables(self, query: str) -> Set[str]:
        """Return catalog tables whose name appears as a token in ``query``.

        This is a heuristic, not a parser. Tokens are split on non-identifier
        characters and compared case-insensitively with catalog names. A name
        inside a string literal or comment is a false positive; a table that
        is genuinely referenced is never missed.
        """
        known = set(self._catalog.all_tables())
        if not known:
            return set()
        return {tok.lower() for tok in _TOKEN_RE.findall(query or "") if tok.lower() in known}
