"""Shared pytest fixtures for health data testing."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional, Sequence

import polars as pl
import pytest

from apple_health.core.query.catalog import DatasetCatalog
from apple_health.core.query.engine import QueryEngine
from apple_health.core.query.loader import TableLoader

TS_FORMAT = "%Y-%m-%d %H:%M:%S"
COLUMNS = ["type", "sourceName", "unit", "creationDate", "startDate", "endDate", "value"]

STEPS = "HKQuantityTypeIdentifierStepCount"
HEART_RATE = "HKQuantityTypeIdentifierHeartRate"


def ts(days_ago: float = 0, hours: float = 0) -> str:
    """Timestamp string relative to now, in export format."""
    return (datetime.now() - timedelta(days=days_ago, hours=hours)).strftime(TS_FORMAT)


def health_row(
    kind: str, value: Optional[object], days_ago: float, *, unit: str = "count"
) -> Dict[str, Optional[str]]:
    start = ts(days_ago)
    return {
        "type": kind,
        "sourceName": "iPhone",
        "unit": unit,
        "creationDate": start,
        "startDate": start,
        "endDate": ts(days_ago, hours=-0.5),
        "value": None if value is None else str(value),
    }


def write_health_csv(path: Path, rows: Sequence[Dict[str, Optional[str]]]) -> Path:
    """Write rows as a CSV export with the standard column layout."""
    frame = pl.DataFrame(
        {col: [r.get(col) for r in rows] for col in COLUMNS},
        schema={col: pl.String for col in COLUMNS},
    )
    frame.write_csv(path)
    return path


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_000.0)


@pytest.fixture
def health_dir(tmp_path: Path) -> Path:
    """Directory with two datasets: a (3 step rows) and b (2 heart rate rows)."""
    data_dir = tmp_path / "health"
    data_dir.mkdir()
    write_health_csv(
        data_dir / "a.csv",
        [
            health_row(STEPS, 400, 3),
            health_row(STEPS, 100, 1),
            health_row(STEPS, 250, 2),
        ],
    )
    write_health_csv(
        data_dir / "b.csv",
        [
            health_row(HEART_RATE, 72, 1, unit="count/min"),
            health_row(HEART_RATE, 60, 2, unit="count/min"),
        ],
    )
    return data_dir


@pytest.fixture
def engine() -> QueryEngine:
    eng = QueryEngine()
    yield eng
    eng.close()


@pytest.fixture
def catalog(health_dir: Path, clock: FakeClock) -> DatasetCatalog:
    return DatasetCatalog(health_dir, clock=clock)


@pytest.fixture
def loader(engine: QueryEngine, catalog: DatasetCatalog) -> TableLoader:
    return TableLoader(engine, catalog)
