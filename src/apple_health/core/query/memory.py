"""Memory pressure monitoring and LRU eviction of loaded tables."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import List, Optional

from apple_health.errors import EvictionError
from .catalog import DatasetCatalog
from .loader import TableLoader
from .models import MemoryStats

logger = logging.getLogger(__name__)

# Rough footprint of one resident row. An estimate, not an accounting.
DEFAULT_BYTES_PER_ROW = 100
DEFAULT_CHECK_INTERVAL_S = 30.0
HIGH_WATER_FRACTION = 0.8
LOW_WATER_FRACTION = 0.6

_MB = 1024 * 1024


class MemoryManager:
    """Evicts least-recently-used tables when estimated usage crosses a ceiling.

    Usage is estimated as ``row_count * bytes_per_row`` summed over loaded
    tables. Above ``high_water`` (80% of the ceiling) tables are unloaded
    oldest-access first until usage drops below ``low_water`` (60%).

    Eviction does not wait for in-flight queries.
    """

    def __init__(
        self,
        catalog: DatasetCatalog,
        loader: TableLoader,
        *,
        max_memory_mb: float = 1024,
        check_interval_s: float = DEFAULT_CHECK_INTERVAL_S,
        bytes_per_row: int = DEFAULT_BYTES_PER_ROW,
    ) -> None:
        self._catalog = catalog
        self._loader = loader
        self.max_memory_mb = float(max_memory_mb)
        self.check_interval_s = float(check_interval_s)
        self.bytes_per_row = int(bytes_per_row)
        self._task: Optional[asyncio.Task] = None

    @property
    def limit_bytes(self) -> float:
        return self.max_memory_mb * _MB

    @property
    def high_water_bytes(self) -> float:
        return self.limit_bytes * HIGH_WATER_FRACTION

    @property
    def low_water_bytes(self) -> float:
        return self.limit_bytes * LOW_WATER_FRACTION

    # -------------------------
    # MARK: Monitoring
    # -------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic check on the running event loop. Idempotent."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._monitor())
        logger.info("Memory monitoring started (every %.0fs)", self.check_interval_s)

    async def stop(self) -> None:
        """Stop the periodic check. Safe to call when not running."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Memory monitoring stopped")

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval_s)
            try:
                await self.check_memory_pressure()
            except Exception as e:  # the monitor must outlive a bad tick
                logger.error("Error checking memory pressure: %s", e)

    # -------------------------
    # MARK: Estimation and eviction
    # -------------------------

    def estimated_usage_bytes(self) -> int:
        total = 0
        for table in self._catalog.loaded_tables():
            entry = self._catalog.get_entry(table)
            if entry is not None and entry.row_count:
                total += entry.row_count * self.bytes_per_row
        return total

    async def check_memory_pressure(self) -> List[str]:
        """Run one check. Returns the tables evicted by it."""
        usage = self.estimated_usage_bytes()
        if usage <= self.high_water_bytes:
            return []
        logger.warning(
            "Memory pressure detected: %.1fMB / %.1fMB", usage / _MB, self.max_memory_mb
        )
        return await self._evict_lru()

    async def _evict_lru(self) -> List[str]:
        evicted: List[str] = []
        for table in self._catalog.tables_by_last_access():
            if self.estimated_usage_bytes() < self.low_water_bytes:
                break
            if await self._evict(table):
                evicted.append(table)
        return evicted

    async def _evict(self, table: str) -> bool:
        logger.info("Evicting table: %s", table)
        try:
            await self._loader.unload(table)
        except EvictionError as e:
            logger.error("%s", e)
            return False
        return True

    async def force_evict(self, count: int) -> List[str]:
        """Unconditionally evict the ``count`` least recently accessed tables."""
        evicted: List[str] = []
        for table in self._catalog.tables_by_last_access()[: max(0, int(count))]:
            if await self._evict(table):
                evicted.append(table)
        return evicted

    def stats(self) -> MemoryStats:
        return MemoryStats(
            max_memory_mb=self.max_memory_mb,
            estimated_usage_mb=self.estimated_usage_bytes() / _MB,
            high_water_mb=self.max_memory_mb * HIGH_WATER_FRACTION,
            low_water_mb=self.max_memory_mb * LOW_WATER_FRACTION,
            loaded_tables=len(self._catalog.loaded_tables()),
            total_tables=len(self._catalog),
        )
