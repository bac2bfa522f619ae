"""Tests for settings resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from apple_health.config import (
    PATTERN_PRESETS,
    Settings,
    load_config_file,
    load_settings,
    with_overrides,
)
from apple_health.core.query.catalog import (
    APPLE_HEALTH_DATASET_PATTERN,
    DEFAULT_DATASET_PATTERN,
)


class TestDefaults:
    def test_defaults(self):
        """An empty environment yields the documented defaults."""
        s = load_settings(env={})
        assert s.data_dir == Path("data/health")
        assert s.max_memory_mb == 1024
        assert s.cache_size == 100
        assert s.rolling_window_days == 90
        assert s.memory_check_interval_s == 30
        assert s.prewarm is False
        assert s.skip_rows is None
        assert s.dataset_pattern == DEFAULT_DATASET_PATTERN
        assert s.columns.timestamp == "startDate"

    @pytest.mark.parametrize(
        "field, value",
        [("max_memory_mb", 0), ("cache_size", -1), ("rolling_window_days", -5)],
    )
    def test_invalid_values_rejected(self, field, value):
        """Non-positive sizes and negative windows are rejected."""
        with pytest.raises(ValueError):
            Settings(**{field: value})


class TestSources:
    def test_environment_overrides_defaults(self):
        """Environment variables are coerced to field types."""
        s = load_settings(
            env={"MAX_MEMORY_MB": "256", "CACHE_SIZE": "10", "HEALTH_DATA_DIR": "/tmp/x"}
        )
        assert s.max_memory_mb == 256.0
        assert s.cache_size == 10
        assert s.data_dir == Path("/tmp/x")

    def test_file_then_env_then_overrides(self, tmp_path):
        """Later sources win over earlier ones."""
        config = tmp_path / "health.yaml"
        config.write_text(
            "max_memory_mb: 512\ncache_size: 50\nprewarm: true\ndataset_pattern: apple_health\n",
            encoding="utf-8",
        )
        s = load_settings(config, env={"CACHE_SIZE": "20"}, max_memory_mb=64)
        assert s.max_memory_mb == 64
        assert s.cache_size == 20
        assert s.prewarm is True
        assert s.dataset_pattern == APPLE_HEALTH_DATASET_PATTERN

    def test_config_path_from_environment(self, tmp_path):
        """HEALTH_CONFIG points at the YAML file when no path is given."""
        config = tmp_path / "health.yaml"
        config.write_text("rolling_window_days: 30\n", encoding="utf-8")
        s = load_settings(env={"HEALTH_CONFIG": str(config)})
        assert s.rolling_window_days == 30

    def test_skip_rows_from_file(self, tmp_path):
        """An explicit header offset overrides detection."""
        config = tmp_path / "health.yaml"
        config.write_text("skip_rows: 1\n", encoding="utf-8")
        assert load_settings(config, env={}).skip_rows == 1
        with pytest.raises(ValueError):
            Settings(skip_rows=-1)

    def test_none_overrides_are_ignored(self):
        """Unset CLI flags do not clobber other sources."""
        s = load_settings(env={"CACHE_SIZE": "7"}, cache_size=None)
        assert s.cache_size == 7

    def test_with_overrides(self):
        """Copies keep derived column layout in sync."""
        s = with_overrides(Settings(), timestamp_column="start", cache_size="5")
        assert s.cache_size == 5
        assert s.columns.timestamp == "start"

    def test_custom_pattern_passes_through(self):
        """A pattern that is not a preset name is used verbatim."""
        s = load_settings(env={}, dataset_pattern=r"^(?P<name>\w+)\.tsv$")
        assert s.dataset_pattern == r"^(?P<name>\w+)\.tsv$"
        assert "apple_health" in PATTERN_PRESETS


class TestConfigFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(tmp_path / "nope.yaml")

    def test_unknown_setting(self, tmp_path):
        """Typos in the config file are reported."""
        config = tmp_path / "bad.yaml"
        config.write_text("max_memroy_mb: 5\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Unknown setting"):
            load_config_file(config)

    def test_invalid_value(self, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("cache_size: lots\n", encoding="utf-8")
        with pytest.raises(ValueError, match="cache_size"):
            load_config_file(config)

    def test_non_mapping(self, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_config_file(config)
