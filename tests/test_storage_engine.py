"""
tests/test_storage_engine.py

StorageEngine write path, index cap, quota eviction, retention, deletion,
listing and stats, all against the in-memory backend.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.common.models import JobStatus
from app.errors import QuotaExceededError, StorageError
from app.storage.backend import MemoryBackend
from app.storage.engine import INDEX_KEY, SESSION_PREFIX, StorageEngine, session_key
from app.storage.models import HistoryEntry, SessionFilters

from conftest import BASE_TIME


def _engine(config, clock, backend=None, **overrides) -> StorageEngine:
    if overrides:
        config = config.model_copy(update=overrides)
    engine = StorageEngine(backend or MemoryBackend(), config=config, clock=clock)
    asyncio.run(engine.initialize())
    return engine


class TestSaveSession:
    def test_index_entry_is_written_newest_first(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            await engine.save_session(make_session("old", BASE_TIME))
            await engine.save_session(make_session("new", BASE_TIME + timedelta(hours=1)))
            return await engine.get_index()

        index = asyncio.run(run())
        assert [e.id for e in index] == ["new", "old"]
        assert index[0].result_count == 2
        assert index[0].duration_ms == 5 * 60 * 1000
        assert index[0].byte_size > 0

    def test_duplicates_are_dropped_before_writing(self, config, clock, make_session, make_record) -> None:
        engine = _engine(config, clock)
        session = make_session("s1", results=0)
        session.results = [make_record(1), make_record(1)]

        async def run():
            await engine.save_session(session)
            return await engine.get_session("s1")

        stored = asyncio.run(run())
        assert len(stored.results) == 1

    def test_resaving_replaces_entry_in_place(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            await engine.save_session(make_session("a", BASE_TIME))
            await engine.save_session(make_session("b", BASE_TIME + timedelta(hours=1)))
            await engine.save_session(make_session("a", BASE_TIME, results=5))
            return await engine.get_index()

        index = asyncio.run(run())
        assert [e.id for e in index] == ["b", "a"]
        assert index[1].result_count == 5

    def test_failed_write_surfaces_to_caller(self, config, clock, make_session) -> None:
        engine = _engine(config, clock, backend=MemoryBackend(quota_bytes=300))
        with pytest.raises(QuotaExceededError):
            asyncio.run(engine.save_session(make_session("big", results=20)))
        assert asyncio.run(engine.get_index()) == []

    def test_index_write_failure_rolls_back_record(self, config, clock, make_session) -> None:
        class FailingIndexBackend(MemoryBackend):
            async def set(self, items):
                if INDEX_KEY in items and any(k.startswith(SESSION_PREFIX) for k in self._data):
                    raise StorageError("index write failed")
                await super().set(items)

        engine = _engine(config, clock, backend=FailingIndexBackend())
        with pytest.raises(StorageError):
            asyncio.run(engine.save_session(make_session("s1")))
        assert asyncio.run(engine.get_session("s1")) is None


class TestIndexCap:
    def test_keeps_only_newest_entries(self, config, clock, make_session) -> None:
        engine = _engine(config, clock, max_index_entries=3)

        async def run():
            for i in range(5):
                await engine.save_session(make_session(f"s{i}", BASE_TIME + timedelta(hours=i)))
            return await engine.get_index(), await engine.backend.keys(SESSION_PREFIX)

        index, keys = asyncio.run(run())
        assert [e.id for e in index] == ["s4", "s3", "s2"]
        assert sorted(keys) == sorted(session_key(i) for i in ("s2", "s3", "s4"))


class TestQuotaEviction:
    def test_pressure_evicts_oldest_quarter_before_write(self, config, clock, make_session) -> None:
        backend = MemoryBackend(quota_bytes=10 * 1024 * 1024)
        engine = _engine(config, clock, backend=backend)

        async def run():
            for i in range(8):
                await engine.save_session(make_session(f"s{i}", BASE_TIME + timedelta(hours=i)))
            used = await backend.bytes_in_use()
            backend.quota_bytes = int(used / 0.85)
            await engine.save_session(make_session("s8", BASE_TIME + timedelta(hours=8)))
            return await engine.get_index()

        index = asyncio.run(run())
        ids = {e.id for e in index}
        assert len(index) == 7
        assert "s0" not in ids and "s1" not in ids
        assert "s8" in ids

    def test_no_eviction_below_threshold(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            for i in range(8):
                await engine.save_session(make_session(f"s{i}", BASE_TIME + timedelta(hours=i)))
            return await engine.get_index()

        assert len(asyncio.run(run())) == 8

    def test_explicit_evict_oldest(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            for i in range(4):
                await engine.save_session(make_session(f"s{i}", BASE_TIME + timedelta(hours=i)))
            evicted = await engine.evict_oldest(3)
            return evicted, await engine.get_index()

        evicted, index = asyncio.run(run())
        assert evicted == ["s0", "s1", "s2"]
        assert [e.id for e in index] == ["s3"]


class TestRetention:
    def test_sweep_removes_only_expired_sessions(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)
        now = BASE_TIME + timedelta(days=40)

        async def run():
            await engine.save_session(make_session("expired", BASE_TIME))
            await engine.save_session(make_session("fresh", now - timedelta(days=2), results=3))
            removed = await engine.sweep_expired(now)
            return removed, await engine.get_index(), await engine.get_session("fresh")

        removed, index, fresh = asyncio.run(run())
        assert removed == ["expired"]
        assert [e.id for e in index] == ["fresh"]
        assert len(fresh.results) == 3
        assert asyncio.run(engine.get_session("expired")) is None

    def test_window_follows_stored_settings(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)
        now = BASE_TIME + timedelta(days=10)

        async def run():
            await engine.save_session(make_session("s", BASE_TIME))
            await engine.update_settings({"data_retention_days": 7})
            return await engine.sweep_expired(now)

        assert asyncio.run(run()) == ["s"]


class TestDeletion:
    def test_delete_by_filter(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            await engine.save_session(make_session("a", title="Engineer"))
            await engine.save_session(make_session("b", title="Designer"))
            deleted = await engine.delete_sessions(SessionFilters(title="design"))
            return deleted, await engine.get_index()

        deleted, index = asyncio.run(run())
        assert deleted == 1
        assert [e.id for e in index] == ["a"]

    def test_delete_all_clears_orphans_and_history(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            await engine.save_session(make_session("a"))
            await engine.backend.set({session_key("orphan"): {"id": "orphan"}})
            await engine.record_history(
                HistoryEntry(id="j", params=make_session("x").params, start_time=BASE_TIME, status=JobStatus.RUNNING)
            )
            await engine.delete_sessions(delete_all=True)
            return (
                await engine.get_index(),
                await engine.backend.keys(SESSION_PREFIX),
                await engine.get_history(),
                await engine.get_stats(),
            )

        index, keys, history, stats = asyncio.run(run())
        assert index == [] and keys == [] and history == []
        assert stats.total_sessions == 0

    def test_delete_single_session(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)
        asyncio.run(engine.save_session(make_session("a")))
        assert asyncio.run(engine.delete_session("a")) is True
        assert asyncio.run(engine.delete_session("a")) is False


class TestListAndStats:
    def test_filters_and_pagination(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            for i in range(5):
                await engine.save_session(
                    make_session(f"s{i}", BASE_TIME + timedelta(days=i), results=i)
                )
            page = await engine.list_sessions(SessionFilters(min_results=1), offset=0, limit=2)
            dated = await engine.list_sessions(
                SessionFilters(start_date=BASE_TIME + timedelta(days=3))
            )
            return page, dated

        page, dated = asyncio.run(run())
        assert [e.id for e in page.entries] == ["s4", "s3"]
        assert page.total == 4
        assert page.has_more is True
        assert page.next_offset == 2
        assert [e.id for e in dated.entries] == ["s4", "s3"]

    def test_stats_follow_writes_and_deletes(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            await engine.save_session(make_session("a", results=2))
            await engine.save_session(make_session("b", results=3))
            first = await engine.get_stats()
            await engine.delete_session("a")
            return first, await engine.get_stats()

        first, second = asyncio.run(run())
        assert (first.total_sessions, first.total_results) == (2, 5)
        assert (second.total_sessions, second.total_results) == (1, 3)
        assert second.bytes_used > 0

    def test_history_is_capped_and_updated(self, config, clock, make_session) -> None:
        engine = _engine(config, clock, history_max_entries=3)
        params = make_session("x").params

        async def run():
            for i in range(4):
                await engine.record_history(
                    HistoryEntry(id=f"j{i}", params=params, start_time=BASE_TIME, status=JobStatus.RUNNING)
                )
            await engine.record_history(
                HistoryEntry(
                    id="j3",
                    params=params,
                    start_time=BASE_TIME,
                    status=JobStatus.COMPLETED,
                    result_count=4,
                )
            )
            return await engine.get_history()

        history = asyncio.run(run())
        assert [h.id for h in history] == ["j3", "j2", "j1"]
        assert history[0].status == JobStatus.COMPLETED
        assert history[0].result_count == 4


class TestSettings:
    def test_partial_update_merges_and_ignores_unknown_keys(self, config, clock) -> None:
        engine = _engine(config, clock)

        async def run():
            await engine.update_settings({"max_concurrent_scrapes": 4, "bogus": True})
            return await engine.get_settings()

        current = asyncio.run(run())
        assert current.max_concurrent_scrapes == 4
        assert current.max_pages_per_scrape == config.max_pages_per_scrape
        assert not hasattr(current, "bogus")


class TestBackup:
    def test_restore_replaces_all_data(self, config, clock, make_session) -> None:
        engine = _engine(config, clock)

        async def run():
            await engine.save_session(make_session("kept"))
            backup = await engine.create_backup()
            await engine.save_session(make_session("later"))
            restored = await engine.restore_backup(backup.model_dump(mode="json"))
            return restored, await engine.get_index(), await engine.get_stats()

        restored, index, stats = asyncio.run(run())
        assert restored > 0
        assert [e.id for e in index] == ["kept"]
        assert stats.total_sessions == 1

    def test_oversized_backup_leaves_storage_untouched(self, config, clock, make_session) -> None:
        engine = _engine(config, clock, backend=MemoryBackend(quota_bytes=64 * 1024))

        async def run():
            await engine.save_session(make_session("kept"))
            payload = {"version": "1.0", "timestamp": BASE_TIME.isoformat(), "data": {"big": "x" * 70000}}
            with pytest.raises(QuotaExceededError):
                await engine.restore_backup(payload)
            return await engine.get_index()

        assert [e.id for e in asyncio.run(run())] == ["kept"]
