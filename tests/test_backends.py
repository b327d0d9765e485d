"""
tests/test_backends.py

Key/value backends: quota accounting, prefix listing and the file layout.
"""

from __future__ import annotations

import asyncio
import os

import pytest

from app.errors import QuotaExceededError, StorageError
from app.storage.backend import MemoryBackend, encode_value, entry_size
from app.storage.engine import StorageEngine
from app.storage.file_backend import FileBackend
from app.storage.supabase_backend import SupabaseBackend


class TestMemoryBackend:
    def test_round_trip_and_prefix_listing(self) -> None:
        backend = MemoryBackend()

        async def run():
            await backend.set({"session:a": {"x": 1}, "session:b": [1, 2], "settings": {}})
            return (
                await backend.get("session:a"),
                sorted(await backend.keys("session:")),
                await backend.get("missing"),
            )

        value, keys, missing = asyncio.run(run())
        assert value == {"x": 1}
        assert keys == ["session:a", "session:b"]
        assert missing is None

    def test_bytes_in_use_counts_keys_and_payloads(self) -> None:
        backend = MemoryBackend()
        asyncio.run(backend.set({"k": {"a": "b"}}))
        assert asyncio.run(backend.bytes_in_use()) == entry_size("k", encode_value({"a": "b"}))

    def test_overwrite_is_charged_net_of_previous_value(self) -> None:
        size = entry_size("k", encode_value("x" * 50))
        backend = MemoryBackend(quota_bytes=size)

        async def run():
            await backend.set({"k": "x" * 50})
            await backend.set({"k": "y" * 50})
            return await backend.get("k")

        assert asyncio.run(run()) == "y" * 50

    def test_write_past_quota_raises(self) -> None:
        backend = MemoryBackend(quota_bytes=20)
        with pytest.raises(QuotaExceededError):
            asyncio.run(backend.set({"key": "a value that is too long"}))
        assert asyncio.run(backend.keys()) == []


class TestFileBackend:
    def test_values_survive_a_new_instance(self, tmp_path) -> None:
        asyncio.run(FileBackend(str(tmp_path)).set({"session:abc": {"id": "abc"}}))
        reopened = FileBackend(str(tmp_path))
        assert asyncio.run(reopened.get("session:abc")) == {"id": "abc"}
        assert asyncio.run(reopened.keys("session:")) == ["session:abc"]

    def test_keys_are_quoted_on_disk(self, tmp_path) -> None:
        asyncio.run(FileBackend(str(tmp_path)).set({"session:a/b": 1}))
        assert os.listdir(tmp_path) == ["session%3Aa%2Fb.json"]

    def test_remove_and_quota(self, tmp_path) -> None:
        backend = FileBackend(str(tmp_path), quota_bytes=64)

        async def run():
            await backend.set({"a": "1"})
            await backend.remove(["a", "never-written"])
            return await backend.keys()

        assert asyncio.run(run()) == []
        with pytest.raises(QuotaExceededError):
            asyncio.run(backend.set({"big": "z" * 100}))

    def test_corrupted_file_raises_storage_error(self, tmp_path) -> None:
        (tmp_path / "session%3Abad.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            asyncio.run(FileBackend(str(tmp_path)).get("session:bad"))

    def test_engine_runs_on_file_backend(self, tmp_path, config, clock, make_session) -> None:
        engine = StorageEngine(FileBackend(str(tmp_path)), config=config, clock=clock)

        async def run():
            await engine.initialize()
            await engine.save_session(make_session("s1"))
            return await engine.get_session("s1")

        assert len(asyncio.run(run()).results) == 2


class _FakeQuery:
    """Just enough of the supabase query builder for the backend's calls."""

    def __init__(self, rows: dict, columns: str = "*") -> None:
        self._rows = rows
        self._columns = [c.strip() for c in columns.split(",")]
        self._filters = []
        self._op = "select"
        self._payload = None

    def select(self, columns: str):
        self._columns = [c.strip() for c in columns.split(",")]
        return self

    def in_(self, column: str, values):
        self._filters.append(lambda row: row[column] in values)
        return self

    def like(self, column: str, pattern: str):
        prefix = pattern.rstrip("%")
        self._filters.append(lambda row: row[column].startswith(prefix))
        return self

    def upsert(self, rows):
        self._op, self._payload = "upsert", rows
        return self

    def delete(self):
        self._op = "delete"
        return self

    def execute(self):
        matched = [r for r in self._rows.values() if all(f(r) for f in self._filters)]
        if self._op == "upsert":
            for row in self._payload:
                self._rows[row["key"]] = dict(row)
            return type("Response", (), {"data": self._payload})()
        if self._op == "delete":
            for row in matched:
                del self._rows[row["key"]]
            return type("Response", (), {"data": matched})()
        return type("Response", (), {"data": [{c: r[c] for c in self._columns} for r in matched]})()


class _FakeSupabase:
    def __init__(self) -> None:
        self.rows = {}

    def table(self, name: str) -> _FakeQuery:
        assert name == "scrape_storage"
        return _FakeQuery(self.rows)


class TestSupabaseBackend:
    def test_round_trip_prefix_and_size_column(self) -> None:
        client = _FakeSupabase()
        backend = SupabaseBackend(client, "scrape_storage")

        async def run():
            await backend.set({"session:a": {"id": "a"}, "session_index": []})
            await backend.remove(["session_index"])
            return await backend.get("session:a"), await backend.keys("session:"), await backend.bytes_in_use()

        value, keys, used = asyncio.run(run())
        assert value == {"id": "a"}
        assert keys == ["session:a"]
        assert used == client.rows["session:a"]["size_bytes"]

    def test_quota_and_client_failures(self) -> None:
        backend = SupabaseBackend(_FakeSupabase(), "scrape_storage", quota_bytes=16)
        with pytest.raises(QuotaExceededError):
            asyncio.run(backend.set({"key": "x" * 64}))

        class Broken:
            def table(self, name):
                raise ConnectionError("network down")

        with pytest.raises(StorageError):
            asyncio.run(SupabaseBackend(Broken(), "scrape_storage").keys())
