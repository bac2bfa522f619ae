"""Exception types raised by the data access layer.

Every failure a caller can act on derives from ``HealthDataError``:

- DiscoveryError: the dataset directory could not be scanned (fatal at startup)
- UnknownTableError: a table name is not in the catalog
- LoadError: bulk load or type coercion of a dataset failed
- ExecutionError: the engine rejected a query
- EvictionError: dropping a table during eviction failed

An empty result is never an error; it is a ``QueryResult`` with no rows.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class HealthDataError(Exception):
    """Base class for all data access failures."""


class DiscoveryError(HealthDataError):
    """Raised when the dataset directory cannot be read."""


class UnknownTableError(HealthDataError, KeyError):
    """Raised when a referenced table is absent from the catalog."""

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"Table {table} not found in catalog")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class LoadError(HealthDataError):
    """Raised when a table could not be materialized from its source file."""

    def __init__(
        self, table: str, path: Union[str, Path], cause: Optional[BaseException] = None
    ) -> None:
        self.table = table
        self.path = Path(path)
        message = f"Failed to load table {table} from {self.path}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ExecutionError(HealthDataError):
    """Raised when the engine rejects a query. Carries the original query text."""

    def __init__(self, query: str, reason: str) -> None:
        self.query = query
        self.reason = reason
        super().__init__(f"Query execution failed: {reason}")


class EvictionError(HealthDataError):
    """Raised when dropping a table fails. Eviction loops log and skip it."""

    def __init__(self, table: str, cause: Optional[BaseException] = None) -> None:
        self.table = table
        message = f"Failed to unload table {table}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


__all__ = [
    "HealthDataError",
    "DiscoveryError",
    "UnknownTableError",
    "LoadError",
    "ExecutionError",
    "EvictionError",
]
