"""Core query layer public API.

Lazy, memory-bounded access to a directory of health-data CSV exports:
dataset discovery, on-demand table loading, LRU eviction under memory
pressure, result caching and view substitution, over an in-process Polars
SQL engine.
"""

from .catalog import (
    APPLE_HEALTH_DATASET_PATTERN,
    DEFAULT_DATASET_PATTERN,
    DatasetCatalog,
    canonical_table_name,
)
from .engine import QueryEngine, bind_params
from .loader import TableLoader
from .memory import MemoryManager
from .cache import HeuristicTtlPolicy, QueryCache, TtlPolicy, cache_key, classify_query
from .rewriter import QueryRewriter, resolve_views
from .views import DEFAULT_VIEWS, load_view_definitions, merge_views
from .formatting import format_result, summarize_result
from .models import (
    CacheEntry,
    CatalogEntry,
    DatasetColumns,
    MemoryStats,
    QueryAnalysis,
    QueryResult,
    ViewDefinition,
)

__all__ = [
    "APPLE_HEALTH_DATASET_PATTERN",
    "DEFAULT_DATASET_PATTERN",
    "DatasetCatalog",
    "canonical_table_name",
    "QueryEngine",
    "bind_params",
    "TableLoader",
    "MemoryManager",
    "HeuristicTtlPolicy",
    "QueryCache",
    "TtlPolicy",
    "cache_key",
    "classify_query",
    "QueryRewriter",
    "resolve_views",
    "DEFAULT_VIEWS",
    "load_view_definitions",
    "merge_views",
    "format_result",
    "summarize_result",
    "CacheEntry",
    "CatalogEntry",
    "DatasetColumns",
    "MemoryStats",
    "QueryAnalysis",
    "QueryResult",
    "ViewDefinition",
]
