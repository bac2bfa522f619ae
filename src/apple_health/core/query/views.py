from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import yaml

from .models import ViewDefinition

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


DEFAULT_VIEWS: Tuple[ViewDefinition, ...] = (
    ViewDefinition(
        name="daily_steps",
        expansion_sql=(
            "SELECT day, SUM(value) AS steps FROM "
            "(SELECT CAST(startDate AS DATE) AS day, value "
            "FROM hkquantitytypeidentifierstepcount) AS s "
            "GROUP BY day"
        ),
    ),
    ViewDefinition(
        name="daily_heart_rate",
        expansion_sql=(
            "SELECT day, AVG(value) AS avg_bpm, MIN(value) AS min_bpm, MAX(value) AS max_bpm "
            "FROM (SELECT CAST(startDate AS DATE) AS day, value "
            "FROM hkquantitytypeidentifierheartrate) AS s "
            "GROUP BY day"
        ),
    ),
    ViewDefinition(
        name="daily_active_energy",
        expansion_sql=(
            "SELECT day, SUM(value) AS kcal FROM "
            "(SELECT CAST(startDate AS DATE) AS day, value "
            "FROM hkquantitytypeidentifieractiveenergyburned) AS s "
            "GROUP BY day"
        ),
    ),
    ViewDefinition(
        name="daily_distance",
        expansion_sql=(
            "SELECT day, SUM(value) AS distance FROM "
            "(SELECT CAST(startDate AS DATE) AS day, value "
            "FROM hkquantitytypeidentifierdistancewalkingrunning) AS s "
            "GROUP BY day"
        ),
    ),
    ViewDefinition(
        name="nightly_sleep",
        expansion_sql=(
            "SELECT night, SUM(value) / 3600.0 AS hours FROM "
            "(SELECT CAST(startDate AS DATE) AS night, value "
            "FROM hkcategorytypeidentifiersleepanalysis) AS s "
            "GROUP BY night"
        ),
    ),
)


def load_view_definitions(views_file: Path) -> List[ViewDefinition]:
    """Load view definitions from YAML.

    Expected layout::

        views:
          - name: weekly_steps
            sql: SELECT ... GROUP BY ...

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If an entry has an invalid name or an empty definition.
    """
    if not views_file.exists():
        raise FileNotFoundError(f"Views file not found: {views_file}")
    with views_file.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    views: List[ViewDefinition] = []
    for item in data.get("views", []) or []:
        name = str(item.get("name", "")).strip()
        sql = str(item.get("sql", "") or "").strip().rstrip(";")
        if not _IDENT_RE.match(name):
            raise ValueError(f"Invalid view name in {views_file}: {name!r}")
        if not sql:
            raise ValueError(f"View '{name}' in {views_file} has no sql")
        views.append(ViewDefinition(name=name, expansion_sql=sql))
    return views


def merge_views(
    base: Iterable[ViewDefinition], extra: Optional[Iterable[ViewDefinition]] = None
) -> List[ViewDefinition]:
    """Combine view sets; later definitions replace earlier ones by name."""
    merged: Dict[str, ViewDefinition] = {}
    for view in list(base) + list(extra or []):
        merged[view.name.lower()] = view
    return list(merged.values())
