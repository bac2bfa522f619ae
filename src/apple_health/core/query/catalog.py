from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Pattern, Union

from apple_health.errors import DiscoveryError, UnknownTableError
from .models import CatalogEntry

logger = logging.getLogger(__name__)


# Any "<name>.csv" file is a dataset; a trailing "_YYYY-MM-DD..." export date is dropped
DEFAULT_DATASET_PATTERN = (
    r"^(?P<name>[A-Za-z0-9_][\w\-. ]*?)(?:_\d{4}-\d{2}-\d{2}[\w\-]*)?\.csv$"
)

# Simple Health Export CSV: "HKQuantityTypeIdentifierStepCount_2025-07-20.csv"
APPLE_HEALTH_DATASET_PATTERN = r"^(?P<name>HK\w*?TypeIdentifier[A-Za-z]+).*\.csv$"

_NON_IDENT_RE = re.compile(r"[^0-9a-z_]+")


def canonical_table_name(raw: str) -> str:
    """Map a filename stem to a canonical lowercase table name.

    Examples:
        >>> canonical_table_name("HKQuantityTypeIdentifierStepCount")
        'hkquantitytypeidentifierstepcount'
        >>> canonical_table_name("Heart Rate-2024")
        'heart_rate_2024'
    """
    name = _NON_IDENT_RE.sub("_", str(raw).strip().lower())
    return name.strip("_")


class DatasetCatalog:
    """Maps logical table names to source files and their load state.

    The catalog is the only owner of ``CatalogEntry`` instances. Loader and
    memory manager change load state through ``mark_loaded``,
    ``mark_unloaded`` and ``touch``; readers get copies. All access goes
    through one internal lock.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        *,
        pattern: Union[str, Pattern[str]] = DEFAULT_DATASET_PATTERN,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.data_dir = Path(data_dir)
        self._pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._clock = clock
        self._entries: Dict[str, CatalogEntry] = {}
        self._lock = threading.RLock()
        self._initialized = False

    async def initialize(self) -> None:
        """Scan the data directory once.

        Raises:
            DiscoveryError: If the directory is missing or unreadable.
        """
        if self._initialized:
            return
        await asyncio.to_thread(self._scan_directory)

    def _scan_directory(self) -> None:
        try:
            files = sorted(p for p in self.data_dir.iterdir() if p.is_file())
        except OSError as e:
            raise DiscoveryError(
                f"Failed to catalog health data files in {self.data_dir}: {e}"
            ) from e

        with self._lock:
            for path in files:
                match = self._pattern.match(path.name)
                if not match:
                    continue
                raw = match.groupdict().get("name") or (
                    match.group(1) if match.groups() else path.stem
                )
                name = canonical_table_name(raw)
                if not name:
                    continue
                if name in self._entries:
                    # files are sorted, so a later dated export replaces an earlier one
                    logger.warning(
                        "Table %s: using %s instead of %s",
                        name,
                        path.name,
                        self._entries[name].source_path.name,
                    )
                self._entries[name] = CatalogEntry(name=name, source_path=path)
            self._initialized = True
        logger.info("Found %d datasets in %s", len(self._entries), self.data_dir)

    # -------------------------
    # MARK: Lookups
    # -------------------------

    def get_entry(self, name: str) -> Optional[CatalogEntry]:
        """Case-insensitive lookup. None means unknown table, not an empty one."""
        with self._lock:
            entry = self._entries.get(str(name).lower())
            return replace(entry) if entry is not None else None

    def get_table_path(self, name: str) -> Optional[Path]:
        entry = self.get_entry(name)
        return entry.source_path if entry else None

    def all_tables(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def loaded_tables(self) -> List[str]:
        with self._lock:
            return [name for name, e in self._entries.items() if e.loaded]

    def tables_by_last_access(self) -> List[str]:
        """Loaded tables, least recently accessed first.

        This ordering is the LRU policy. ``sorted`` is stable, so ties keep
        catalog insertion order.
        """
        with self._lock:
            loaded = [e for e in self._entries.values() if e.loaded]
        loaded = sorted(loaded, key=lambda e: e.last_accessed or 0.0)
        return [e.name for e in loaded]

    def table_info(self) -> Dict[str, CatalogEntry]:
        with self._lock:
            return {name: replace(e) for name, e in self._entries.items()}

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return isinstance(name, str) and name.lower() in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -------------------------
    # MARK: State transitions
    # -------------------------

    def _require(self, name: str) -> CatalogEntry:
        entry = self._entries.get(str(name).lower())
        if entry is None:
            raise UnknownTableError(name)
        return entry

    def mark_loaded(self, name: str, row_count: int) -> None:
        with self._lock:
            entry = self._require(name)
            entry.loaded = True
            entry.row_count = int(row_count)
            entry.last_accessed = self._clock()

    def mark_unloaded(self, name: str) -> None:
        # last_accessed stays frozen at the last reference before unload
        with self._lock:
            self._require(name).loaded = False

    def mark_empty(self, name: str) -> None:
        """Record a load that found no rows inside the window.

        The entry stays not-loaded with ``row_count == 0`` until ``clear_empty``.
        """
        with self._lock:
            entry = self._require(name)
            entry.loaded = False
            entry.row_count = 0
            entry.last_accessed = self._clock()

    def clear_empty(self, name: str) -> None:
        with self._lock:
            entry = self._require(name)
            if not entry.loaded:
                entry.row_count = None

    def is_empty(self, name: str) -> bool:
        """True when the last load of ``name`` found no rows in the window."""
        with self._lock:
            entry = self._entries.get(str(name).lower())
            return entry is not None and not entry.loaded and entry.row_count == 0

    def touch(self, name: str) -> None:
        with self._lock:
            self._require(name).last_accessed = self._clock()
