"""Tests for view definitions."""

from __future__ import annotations

import pytest

from apple_health.core.query.models import ViewDefinition
from apple_health.core.query.rewriter import resolve_views
from apple_health.core.query.views import DEFAULT_VIEWS, load_view_definitions, merge_views


def test_default_views_resolve():
    """Built-in views are valid and free of cycles."""
    resolved = resolve_views(DEFAULT_VIEWS)
    assert set(resolved) == {
        "daily_steps",
        "daily_heart_rate",
        "daily_active_energy",
        "daily_distance",
        "nightly_sleep",
    }


def test_load_view_definitions(tmp_path):
    """YAML entries become definitions with trailing semicolons removed."""
    path = tmp_path / "views.yaml"
    path.write_text(
        "views:\n"
        "  - name: weekly_steps\n"
        "    sql: SELECT 1 AS n;\n",
        encoding="utf-8",
    )
    assert load_view_definitions(path) == [ViewDefinition("weekly_steps", "SELECT 1 AS n")]


@pytest.mark.parametrize(
    "body, message",
    [
        ("views:\n  - name: bad-name\n    sql: SELECT 1\n", "Invalid view name"),
        ("views:\n  - name: empty\n", "has no sql"),
    ],
)
def test_invalid_view_definitions(tmp_path, body, message):
    path = tmp_path / "views.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ValueError, match=message):
        load_view_definitions(path)


def test_missing_views_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_view_definitions(tmp_path / "missing.yaml")


def test_merge_views_later_wins():
    """A user view with a built-in name replaces the built-in."""
    custom = ViewDefinition("DAILY_STEPS", "SELECT 1 AS steps")
    merged = {v.name.lower(): v for v in merge_views(DEFAULT_VIEWS, [custom])}
    assert merged["daily_steps"] is custom
    assert len(merged) == len(DEFAULT_VIEWS)
