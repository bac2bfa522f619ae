"""Tests for lazy table loading."""

from __future__ import annotations

import asyncio
import threading

import pytest

from apple_health.core.enums import LoadState
from apple_health.core.query.catalog import DatasetCatalog
from apple_health.core.query.loader import STAGING_SUFFIX, TableLoader
from apple_health.errors import EvictionError, LoadError, UnknownTableError

from conftest import STEPS, health_row, write_health_csv


def _init(catalog: DatasetCatalog) -> None:
    asyncio.run(catalog.initialize())


class TestEnsureLoaded:
    def test_nothing_loads_until_referenced(self, engine, catalog, loader):
        """Discovery alone creates no engine tables."""
        _init(catalog)
        assert engine.tables() == []
        assert loader.state("a") is LoadState.UNLOADED

    def test_loads_table_on_demand(self, engine, catalog, loader, clock):
        """ensure_loaded materializes the table and records it in the catalog."""
        _init(catalog)
        rows = asyncio.run(loader.ensure_loaded("a"))

        assert rows == 3
        assert engine.tables() == ["a"]
        entry = catalog.get_entry("a")
        assert entry.loaded is True
        assert entry.row_count == 3
        assert entry.last_accessed == clock.now
        assert loader.state("a") is LoadState.LOADED
        assert catalog.get_entry("b").loaded is False

    def test_second_call_touches_without_reloading(self, engine, catalog, loader, clock):
        """A loaded table is only touched on the next reference."""
        _init(catalog)
        asyncio.run(loader.ensure_loaded("a"))
        calls = []
        original = engine.bulk_load
        engine.bulk_load = lambda *a, **k: calls.append(a) or original(*a, **k)

        clock.advance(7)
        assert asyncio.run(loader.ensure_loaded("A")) == 3
        assert calls == []
        assert catalog.get_entry("a").last_accessed == clock.now

    def test_concurrent_loads_are_single_flight(self, engine, catalog, loader):
        """Two racing references to an unloaded table load it once."""
        _init(catalog)
        calls = []
        original = engine.bulk_load

        def counting(*args, **kwargs):
            calls.append(args)
            return original(*args, **kwargs)

        engine.bulk_load = counting

        async def race():
            return await asyncio.gather(loader.ensure_loaded("a"), loader.ensure_loaded("a"))

        assert asyncio.run(race()) == [3, 3]
        assert len(calls) == 1

    def test_rows_outside_window_are_excluded(self, engine, tmp_path):
        """Only rows inside the rolling window become resident."""
        write_health_csv(
            tmp_path / "a.csv",
            [health_row(STEPS, 1, 1), health_row(STEPS, 2, 10), health_row(STEPS, 3, 200)],
        )
        catalog = DatasetCatalog(tmp_path)
        _init(catalog)
        loader = TableLoader(engine, catalog, rolling_window_days=30)
        assert asyncio.run(loader.ensure_loaded("a")) == 2

    def test_empty_window_is_a_no_load(self, engine, tmp_path):
        """A dataset with no recent rows returns 0 and stays not-loaded."""
        write_health_csv(tmp_path / "old.csv", [health_row(STEPS, 1, 400)])
        catalog = DatasetCatalog(tmp_path)
        _init(catalog)
        loader = TableLoader(engine, catalog)

        assert asyncio.run(loader.ensure_loaded("old")) == 0
        assert catalog.get_entry("old").loaded is False
        assert catalog.get_entry("old").row_count == 0
        assert engine.tables() == []
        assert loader.state("old") is LoadState.UNLOADED
        frames = loader.empty_frames(["OLD", "missing"])
        assert list(frames) == ["old"]
        assert frames["old"].height == 0
        assert "startDate" in frames["old"].columns

    def test_empty_outcome_is_remembered_until_unload(self, engine, tmp_path):
        """An empty dataset is not read again until it is unloaded."""
        write_health_csv(tmp_path / "old.csv", [health_row(STEPS, 1, 400)])
        catalog = DatasetCatalog(tmp_path)
        _init(catalog)
        loader = TableLoader(engine, catalog)
        calls = []
        original = engine.bulk_load
        engine.bulk_load = lambda *a, **k: calls.append(a) or original(*a, **k)

        asyncio.run(loader.ensure_loaded("old"))
        asyncio.run(loader.ensure_loaded("old"))
        assert len(calls) == 1

        asyncio.run(loader.unload("old"))
        assert catalog.get_entry("old").row_count is None
        assert loader.empty_frames(["old"]) == {}
        asyncio.run(loader.ensure_loaded("old"))
        assert len(calls) == 2

    def test_cancelled_load_leaves_no_trace(self, engine, catalog, loader):
        """Cancelling a load mid-read returns the table to UNLOADED."""
        _init(catalog)
        started = threading.Event()
        release = threading.Event()
        original = engine.bulk_load

        def blocking(*args, **kwargs):
            started.set()
            release.wait(5)
            return original(*args, **kwargs)

        engine.bulk_load = blocking

        async def cancel_midway():
            task = asyncio.create_task(loader.ensure_loaded("a"))
            while not started.is_set():
                await asyncio.sleep(0.01)
            assert loader.state("a") is LoadState.LOADING
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            release.set()

        asyncio.run(cancel_midway())
        assert loader.state("a") is LoadState.UNLOADED
        assert engine.tables() == []
        assert catalog.get_entry("a").loaded is False

        engine.bulk_load = original
        assert asyncio.run(loader.ensure_loaded("a")) == 3

    def test_reset_states(self, catalog, loader):
        _init(catalog)
        asyncio.run(loader.ensure_loaded("a"))
        loader.reset_states()
        assert loader.state("a") is LoadState.UNLOADED

    def test_unknown_table_raises(self, catalog, loader):
        """Names outside the catalog are rejected."""
        _init(catalog)
        with pytest.raises(UnknownTableError):
            asyncio.run(loader.ensure_loaded("nope"))

    def test_failed_load_leaves_no_trace(self, engine, tmp_path):
        """A load failure raises LoadError and drops any staging table."""
        (tmp_path / "bad.csv").write_text("type,value\nx,1\n", encoding="utf-8")
        catalog = DatasetCatalog(tmp_path)
        _init(catalog)
        loader = TableLoader(engine, catalog)

        with pytest.raises(LoadError) as exc:
            asyncio.run(loader.ensure_loaded("bad"))
        assert exc.value.table == "bad"
        assert exc.value.path.name == "bad.csv"
        assert engine.tables() == []
        assert f"bad{STAGING_SUFFIX}" not in engine.tables()
        assert catalog.get_entry("bad").loaded is False
        assert loader.state("bad") is LoadState.UNLOADED

    def test_load_all_skips_failures(self, engine, health_dir):
        """load_all loads what it can and logs the rest."""
        (health_dir / "bad.csv").write_text("type,value\nx,1\n", encoding="utf-8")
        catalog = DatasetCatalog(health_dir)
        _init(catalog)
        loader = TableLoader(engine, catalog)

        loaded = asyncio.run(loader.load_all())
        assert loaded == {"a": 3, "b": 2}
        assert engine.tables() == ["a", "b"]


class TestUnload:
    def test_unload_drops_and_marks(self, engine, catalog, loader):
        """Unloading removes the engine table; repeating it is harmless."""
        _init(catalog)
        asyncio.run(loader.ensure_loaded("a"))
        asyncio.run(loader.unload("a"))
        asyncio.run(loader.unload("a"))

        assert engine.tables() == []
        assert catalog.get_entry("a").loaded is False
        assert loader.state("a") is LoadState.UNLOADED

    def test_reload_after_unload(self, engine, catalog, loader):
        """An evicted table comes back on the next reference."""
        _init(catalog)
        asyncio.run(loader.ensure_loaded("a"))
        asyncio.run(loader.unload("a"))
        assert asyncio.run(loader.ensure_loaded("a")) == 3
        assert engine.has_table("a")

    def test_drop_failure_raises_eviction_error(self, engine, catalog, loader):
        """A failing drop surfaces as EvictionError and keeps the table loaded."""
        _init(catalog)
        asyncio.run(loader.ensure_loaded("a"))

        def broken(name):
            raise RuntimeError("locked")

        engine.drop_table = broken
        with pytest.raises(EvictionError):
            asyncio.run(loader.unload("a"))
        assert catalog.get_entry("a").loaded is True


class TestReferencedTables:
    def test_extracts_catalog_tokens(self, catalog, loader):
        """Tokens are compared case-insensitively with catalog names."""
        _init(catalog)
        found = loader.extract_referenced_tables("SELECT * FROM A JOIN b ON A.x = b.x")
        assert found == {"a", "b"}

    def test_partial_words_do_not_match(self, catalog, loader):
        """Only whole tokens count as references."""
        _init(catalog)
        assert loader.extract_referenced_tables("SELECT abc FROM ab") == set()
        assert loader.extract_referenced_tables("") == set()
