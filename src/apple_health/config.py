"""Runtime configuration.

Settings resolve in this order, later sources winning:

1. Defaults on ``Settings``
2. A YAML file (``--config`` / ``HEALTH_CONFIG``)
3. Environment variables (see ``ENV_VARS``)
4. Explicit overrides (CLI flags)

Example YAML::

    data_dir: ~/HealthExport
    max_memory_mb: 512
    cache_size: 200
    rolling_window_days: 30
    dataset_pattern: apple_health

``skip_rows`` is the number of lines above the CSV header. Left unset, a
metadata line above the header (as some exporters write) is detected and
skipped.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from apple_health.core.query.catalog import (
    APPLE_HEALTH_DATASET_PATTERN,
    DEFAULT_DATASET_PATTERN,
)
from apple_health.core.query.models import DatasetColumns

DEFAULT_DATA_DIR = Path("data/health")

# Named presets accepted for dataset_pattern
PATTERN_PRESETS = {
    "default": DEFAULT_DATASET_PATTERN,
    "apple_health": APPLE_HEALTH_DATASET_PATTERN,
}

# Environment variable → settings key
ENV_VARS = {
    "HEALTH_DATA_DIR": "data_dir",
    "MAX_MEMORY_MB": "max_memory_mb",
    "CACHE_SIZE": "cache_size",
    "ROLLING_WINDOW_DAYS": "rolling_window_days",
    "MEMORY_CHECK_INTERVAL": "memory_check_interval_s",
    "HEALTH_VIEWS_FILE": "views_file",
}


@dataclass(frozen=True)
class Settings:
    data_dir: Path = DEFAULT_DATA_DIR
    max_memory_mb: float = 1024
    cache_size: int = 100
    default_ttl_s: float = 300
    aggregate_ttl_s: float = 600
    recent_ttl_s: float = 60
    rolling_window_days: int = 90
    memory_check_interval_s: float = 30
    bytes_per_row: int = 100
    prewarm: bool = False
    skip_rows: Optional[int] = None
    dataset_pattern: str = DEFAULT_DATASET_PATTERN
    timestamp_format: str = "%Y-%m-%d %H:%M:%S"
    timestamp_column: str = "startDate"
    end_timestamp_column: str = "endDate"
    category_column: str = "type"
    value_column: str = "value"
    views_file: Optional[Path] = None
    columns: DatasetColumns = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "columns",
            DatasetColumns(
                timestamp=self.timestamp_column,
                end_timestamp=self.end_timestamp_column,
                category=self.category_column,
                value=self.value_column,
            ),
        )
        for key in ("max_memory_mb", "cache_size", "bytes_per_row"):
            if getattr(self, key) <= 0:
                raise ValueError(f"{key} must be positive, got {getattr(self, key)}")
        for key in ("rolling_window_days", "memory_check_interval_s", "skip_rows"):
            if getattr(self, key) is not None and getattr(self, key) < 0:
                raise ValueError(f"{key} must not be negative, got {getattr(self, key)}")


_FIELD_TYPES = {f.name: f.type for f in fields(Settings) if f.init}


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type of settings field ``key``."""
    if key not in _FIELD_TYPES:
        raise ValueError(f"Unknown setting: {key}")
    if value is None:
        if key in ("views_file", "skip_rows"):
            return None
        raise ValueError(f"Setting '{key}' cannot be empty")
    annotation = str(_FIELD_TYPES[key])
    try:
        if key in ("data_dir", "views_file"):
            return Path(os.path.expanduser(str(value)))
        if key == "dataset_pattern":
            return PATTERN_PRESETS.get(str(value), str(value))
        if annotation == "bool":
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if annotation in ("int", "Optional[int]"):
            return int(value)
        if annotation == "float":
            return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for '{key}': {value!r}") from e
    return str(value)


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read settings overrides from a YAML mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML is not a mapping or names unknown settings.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return {str(k): _coerce(str(k), v) for k, v in data.items()}


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> Settings:
    """Resolve settings from defaults, file, environment and overrides.

    Examples:
        >>> s = load_settings(env={"MAX_MEMORY_MB": "256"}, cache_size=10)
        >>> (s.max_memory_mb, s.cache_size)
        (256.0, 10)
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    config_path = config_path or env.get("HEALTH_CONFIG")
    if config_path:
        values.update(load_config_file(config_path))

    for var, key in ENV_VARS.items():
        raw = env.get(var)
        if raw not in (None, ""):
            values[key] = _coerce(key, raw)

    for key, value in overrides.items():
        if value is not None:
            values[key] = _coerce(key, value)

    return Settings(**values)


def with_overrides(settings: Settings, **overrides: Any) -> Settings:
    """Return a copy of ``settings`` with non-None overrides applied."""
    values = {k: _coerce(k, v) for k, v in overrides.items() if v is not None}
    return replace(settings, **values)
