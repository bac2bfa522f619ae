from __future__ import annotations

import asyncio
import logging
import re
from typing import (
    AbstractSet,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Match,
    Optional,
    Pattern,
    Set,
)

from .catalog import DatasetCatalog
from .loader import TableLoader
from .models import QueryAnalysis, ViewDefinition

logger = logging.getLogger(__name__)

# String literals and comments; substitutions never touch these
_LITERAL_RE = re.compile(r"'(?:[^']|'')*'|--[^\n]*|/\*.*?\*/", re.DOTALL)

_WHERE_RE = re.compile(r"\bwhere\b", re.IGNORECASE)
_SELECT_STAR_RE = re.compile(r"\bselect\s+(?:distinct\s+)?\*", re.IGNORECASE)
_LIMIT_RE = re.compile(r"\blimit\s+\d+", re.IGNORECASE)
_ORDER_BY_RE = re.compile(r"\border\s+by\b", re.IGNORECASE)
_LEADING_WILDCARD_RE = re.compile(r"\blike\s+'%", re.IGNORECASE)
_AGGREGATE_RE = re.compile(r"\bgroup\s+by\b|\b(?:sum|avg|count|min|max)\s*\(", re.IGNORECASE)
_RELATIVE_DATE_RE = re.compile(r"\bcurrent_date\b|\bnow\s*\(|\binterval\b", re.IGNORECASE)


def _map_code(sql: str, fn: Callable[[str], str]) -> str:
    """Apply ``fn`` to the parts of ``sql`` outside literals and comments."""
    out: List[str] = []
    pos = 0
    for m in _LITERAL_RE.finditer(sql):
        out.append(fn(sql[pos : m.start()]))
        out.append(m.group(0))
        pos = m.end()
    out.append(fn(sql[pos:]))
    return "".join(out)


def _word_pattern(names: Iterable[str], *, qualified: bool = True) -> Optional[Pattern[str]]:
    """Whole-word, case-insensitive match of any of ``names``.

    With ``qualified=False`` a name followed by ``.`` (a column qualifier)
    is not matched.
    """
    alternatives = sorted({re.escape(n) for n in names}, key=len, reverse=True)
    if not alternatives:
        return None
    tail = r"(?!\w)" if qualified else r"(?![\w.])"
    return re.compile(r"(?<![\w.])(" + "|".join(alternatives) + ")" + tail, re.IGNORECASE)


# Words that may follow a table reference without being its alias
_CLAUSE_WORDS = frozenset(
    """
    where group order limit offset having window qualify union except intersect
    join inner left right full outer cross natural semi anti on using as
    select from with when then else end and or not
    """.split()
)
_ALIAS_RE = re.compile(r"\s+(?:as\s+)?([A-Za-z_]\w*)", re.IGNORECASE)
_AS_BEFORE_RE = re.compile(r"\bas\s+$", re.IGNORECASE)
# "WITH name AS (" and ", name AS (" introduce common table expressions
_CTE_RE = re.compile(
    r"(?:\bwith\s+(?:recursive\s+)?|,\s*)([A-Za-z_]\w*)\s+as\s*\(", re.IGNORECASE
)


def _cte_names(sql: str) -> Set[str]:
    """Lowercased names of the common table expressions ``sql`` defines."""
    names: Set[str] = set()

    def collect(seg: str) -> str:
        names.update(m.group(1).lower() for m in _CTE_RE.finditer(seg))
        return seg

    _map_code(sql, collect)
    return names


def _references(
    seg: str, pattern: Pattern[str], shadowed: AbstractSet[str] = frozenset()
) -> Iterator[Match[str]]:
    """Matches of ``pattern`` in ``seg`` that refer to a view.

    Skipped: a name right after ``AS`` (an alias) and names in ``shadowed``
    (CTEs of the same query, which take precedence over views).
    """
    for m in pattern.finditer(seg):
        if m.group(1).lower() in shadowed:
            continue
        if not _AS_BEFORE_RE.search(seg, 0, m.start()):
            yield m


def _inline_views(
    seg: str,
    pattern: Pattern[str],
    expansion: Callable[[str], str],
    shadowed: AbstractSet[str] = frozenset(),
) -> str:
    """Replace view names in ``seg`` with aliased subqueries.

    The engine requires every derived table to carry an alias: the view name
    is used unless one already follows. A name directly after ``AS`` is an
    alias, not a reference, and is left alone.
    """
    out: List[str] = []
    pos = 0
    for m in _references(seg, pattern, shadowed):
        out.append(seg[pos : m.start()])
        pos = m.end()
        name = m.group(1).lower()
        alias = _ALIAS_RE.match(seg, m.end())
        if alias and alias.group(1).lower() not in _CLAUSE_WORDS:
            out.append(f"({expansion(name)})")
        else:
            out.append(f"({expansion(name)}) AS {name}")
    out.append(seg[pos:])
    return "".join(out)


def resolve_views(views: Iterable[ViewDefinition]) -> Dict[str, ViewDefinition]:
    """Expand references between views so every expansion is view-free.

    Raises:
        ValueError: If a view refers to itself, directly or through others.
    """
    defs = {v.name.lower(): v for v in views}
    pattern = _word_pattern(defs, qualified=False)
    resolved: Dict[str, ViewDefinition] = {}

    def expand(name: str, stack: tuple) -> str:
        if name in resolved:
            return resolved[name].expansion_sql
        if name in stack:
            chain = " -> ".join(stack + (name,))
            raise ValueError(f"View '{name}' is defined in terms of itself: {chain}")
        view = defs[name]
        sql = view.expansion_sql.strip().rstrip(";")
        if pattern is not None:
            shadowed = _cte_names(sql)
            sql = _map_code(
                sql,
                lambda seg: _inline_views(
                    seg, pattern, lambda ref: expand(ref, stack + (name,)), shadowed
                ),
            )
        resolved[name] = ViewDefinition(name=view.name, expansion_sql=sql)
        return sql

    for name in defs:
        expand(name, ())
    return resolved


class QueryRewriter:
    """Loads query dependencies and substitutes named views inline.

    Views are whole-word, case-insensitive names replaced with their
    parenthesized definition, aliased by the view name. Table references are
    rewritten to their canonical lowercase names; the engine resolves
    identifiers case-sensitively.
    """

    def __init__(
        self,
        loader: TableLoader,
        catalog: DatasetCatalog,
        views: Iterable[ViewDefinition] = (),
        *,
        timestamp_column: str = "startDate",
    ) -> None:
        self._loader = loader
        self._catalog = catalog
        self._views = resolve_views(views)
        self._view_re = _word_pattern(self._views, qualified=False)
        self.timestamp_column = timestamp_column

    @property
    def views(self) -> Dict[str, ViewDefinition]:
        return dict(self._views)

    def views_in(self, query: str) -> List[str]:
        """Names of the views referenced outside literals, in order of appearance."""
        if self._view_re is None:
            return []
        found: List[str] = []
        shadowed = _cte_names(query)

        def collect(seg: str) -> str:
            for m in _references(seg, self._view_re, shadowed):
                name = m.group(1).lower()
                if name not in found:
                    found.append(name)
            return seg

        _map_code(query, collect)
        return found

    def substitute_views(self, query: str) -> str:
        if self._view_re is None:
            return query
        shadowed = _cte_names(query)
        return _map_code(
            query,
            lambda seg: _inline_views(
                seg, self._view_re, lambda name: self._views[name].expansion_sql, shadowed
            ),
        )

    def normalize_table_names(self, query: str) -> str:
        pattern = _word_pattern(self._catalog.all_tables())
        if pattern is None:
            return query
        return _map_code(query, lambda seg: pattern.sub(lambda m: m.group(1).lower(), seg))

    def dependencies(self, query: str) -> List[str]:
        """Catalog tables needed by ``query``, including those inside referenced views."""
        tables = set(self._loader.extract_referenced_tables(query))
        for name in self.views_in(query):
            tables |= self._loader.extract_referenced_tables(self._views[name].expansion_sql)
        return sorted(tables)

    async def optimize(self, query: str) -> str:
        """Load every table ``query`` depends on, then return the rewritten text.

        Raises:
            LoadError: If a dependency could not be loaded.
        """
        tables = self.dependencies(query)
        if tables:
            await asyncio.gather(*(self._loader.ensure_loaded(t) for t in tables))
        rewritten = self.normalize_table_names(self.substitute_views(query))
        if rewritten != query:
            logger.debug("Rewrote query: %s", rewritten[:200])
        return rewritten

    def analyze(self, query: str) -> QueryAnalysis:
        """Advisory report on ``query``. Never loads tables or alters execution."""
        tables = self.dependencies(query)
        expanded = self.substitute_views(query)
        code_only = _LITERAL_RE.sub("''", expanded)
        analysis = QueryAnalysis(referenced_tables=tables, views=self.views_in(query))

        for table in tables:
            entry = self._catalog.get_entry(table)
            if entry is None:
                continue
            if entry.row_count is None:
                analysis.unloaded_tables.append(table)
            else:
                analysis.estimated_rows += int(entry.row_count)

        is_aggregate = bool(_AGGREGATE_RE.search(code_only))
        has_where = bool(_WHERE_RE.search(code_only))
        mentions_time = self.timestamp_column.lower() in code_only.lower()
        suggestions = analysis.suggestions

        if tables and not (has_where and (mentions_time or _RELATIVE_DATE_RE.search(code_only))):
            suggestions.append(
                f"Add a date filter (e.g. WHERE {self.timestamp_column} >= "
                "CURRENT_DATE - INTERVAL '30 days') to limit the rows scanned"
            )
        if _SELECT_STAR_RE.search(query):
            suggestions.append("Select only the columns you need instead of SELECT *")
        has_limit = bool(_LIMIT_RE.search(code_only))
        if _ORDER_BY_RE.search(code_only) and not has_limit:
            suggestions.append("ORDER BY without LIMIT sorts the full result; add a LIMIT")
        elif not is_aggregate and not has_limit:
            suggestions.append("Add a LIMIT clause or aggregate to bound the result size")
        if _LEADING_WILDCARD_RE.search(query):
            suggestions.append(
                "LIKE patterns starting with '%' scan every row; anchor the pattern if possible"
            )
        return analysis
