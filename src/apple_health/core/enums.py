"""Core enumerations used across the package."""

from __future__ import annotations

from enum import Enum


class LoadState(str, Enum):
    """Lifecycle of a table inside the engine.

    There is no failed state: a failed load returns the table to UNLOADED.
    """

    UNLOADED = "UNLOADED"
    LOADING = "LOADING"
    LOADED = "LOADED"


class TtlClass(str, Enum):
    """Workload classes used to pick a cache time-to-live."""

    DEFAULT = "DEFAULT"
    AGGREGATE = "AGGREGATE"
    RECENT = "RECENT"


class OutputFormat(str, Enum):
    """Output shaping preferences accepted by the tool layer.

    Values are strings to ease serialization and CLI interchange.
    """

    JSON = "json"
    CSV = "csv"
    SUMMARY = "summary"


__all__ = ["LoadState", "TtlClass", "OutputFormat"]
