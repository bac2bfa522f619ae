"""Query result cache.

Results are keyed by a SHA-256 digest of the normalized query text and its
parameters. Entries expire a fixed time after creation (reads do not extend
them). When full, the entry with the oldest ``created_at`` is dropped, which
is FIFO by creation rather than LRU by access.

Concurrent identical misses are not de-duplicated: each caller executes
independently. Queries are pure reads, so this costs work, not correctness.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from apple_health.core.enums import TtlClass
from .models import CacheEntry, QueryResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 5 * 60 * 1000
AGGREGATE_TTL_MS = 10 * 60 * 1000
RECENT_TTL_MS = 60 * 1000

_WS_RE = re.compile(r"\s+")
_AGGREGATE_RE = re.compile(r"\bgroup\s+by\b|\b(?:sum|avg|count|min|max)\s*\(", re.IGNORECASE)
_RECENT_RE = re.compile(
    r"\bcurrent_date\b|\bcurrent_timestamp\b|\bnow\s*\(\s*\)|\btoday\s*\(\s*\)",
    re.IGNORECASE,
)


def normalize_query(query: str) -> str:
    """Collapse whitespace runs so formatting differences share a cache entry."""
    return _WS_RE.sub(" ", query or "").strip()


def cache_key(query: str, params: Optional[Mapping[str, Any]] = None) -> str:
    payload = normalize_query(query)
    if params:
        payload += json.dumps(params, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def classify_query(query: str) -> TtlClass:
    """Classify a query by its text.

    A heuristic on keywords, not semantic analysis: aggregate shapes
    (GROUP BY, SUM/AVG/COUNT/MIN/MAX calls) are checked first, then
    references to the current moment. A query that aggregates without any
    recognized keyword falls back to DEFAULT.

    Examples:
        >>> classify_query("SELECT type, SUM(value) FROM t GROUP BY type")
        <TtlClass.AGGREGATE: 'AGGREGATE'>
        >>> classify_query("SELECT * FROM t WHERE startDate >= CURRENT_DATE")
        <TtlClass.RECENT: 'RECENT'>
    """
    if _AGGREGATE_RE.search(query or ""):
        return TtlClass.AGGREGATE
    if _RECENT_RE.search(query or ""):
        return TtlClass.RECENT
    return TtlClass.DEFAULT


class TtlPolicy(Protocol):
    def __call__(self, query: str) -> int:
        """Return the time-to-live in milliseconds for ``query``."""


class HeuristicTtlPolicy:
    """Maps ``classify_query`` classes to durations."""

    def __init__(
        self,
        *,
        default_ms: int = DEFAULT_TTL_MS,
        aggregate_ms: int = AGGREGATE_TTL_MS,
        recent_ms: int = RECENT_TTL_MS,
        classifier: Callable[[str], TtlClass] = classify_query,
    ) -> None:
        self.durations: Dict[TtlClass, int] = {
            TtlClass.DEFAULT: int(default_ms),
            TtlClass.AGGREGATE: int(aggregate_ms),
            TtlClass.RECENT: int(recent_ms),
        }
        self._classifier = classifier

    def __call__(self, query: str) -> int:
        return self.durations[self._classifier(query)]


class QueryCache:
    def __init__(
        self,
        max_entries: int = 100,
        *,
        ttl_policy: Optional[TtlPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if int(max_entries) < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.max_entries = int(max_entries)
        self.ttl_policy: TtlPolicy = ttl_policy or HeuristicTtlPolicy()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, query: str, params: Optional[Mapping[str, Any]] = None) -> Optional[QueryResult]:
        key = cache_key(query, params)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        logger.debug("Cache hit for query: %s...", query[:50])
        return entry.result

    def set(
        self, query: str, result: QueryResult, params: Optional[Mapping[str, Any]] = None
    ) -> None:
        key = cache_key(query, params)
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict_oldest()
        self._entries[key] = CacheEntry(
            result=result, created_at=self._clock(), ttl_ms=int(self.ttl_policy(query))
        )
        logger.debug("Cached query result: %s...", query[:50])

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest]
        self.evictions += 1

    async def get_or_execute(
        self,
        query: str,
        executor: Callable[[], Awaitable[QueryResult]],
        params: Optional[Mapping[str, Any]] = None,
    ) -> QueryResult:
        cached = self.get(query, params)
        if cached is not None:
            return cached
        result = await executor()
        self.set(query, result, params)
        return result

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Query cache cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "capacity": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }
