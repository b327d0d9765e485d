"""Supabase-backed key/value storage.

Expects a table with columns ``key text primary key``, ``value jsonb`` and
``size_bytes integer``. The Supabase client is synchronous, so every call
runs in a thread executor to keep the event loop free.
"""

import asyncio
from typing import Any, Dict, Iterable, List

from app.errors import StorageError
from app.storage.backend import StorageBackend, encode_value, entry_size


class SupabaseBackend(StorageBackend):
    def __init__(self, client, table: str, quota_bytes: int = 10 * 1024 * 1024):
        self._client = client
        self._table = table
        self.quota_bytes = quota_bytes

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Supabase request failed: {type(e).__name__}: {e}") from e

    def _rows(self, columns: str, keys: List[str]) -> List[dict]:
        if not keys:
            return []
        response = (
            self._client.table(self._table)
            .select(columns)
            .in_("key", keys)
            .execute()
        )
        return response.data or []

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        wanted = list(keys)
        rows = await self._run(lambda: self._rows("key, value", wanted))
        return {row["key"]: row["value"] for row in rows}

    async def keys(self, prefix: str = "") -> List[str]:
        def fetch():
            query = self._client.table(self._table).select("key")
            if prefix:
                query = query.like("key", f"{prefix}%")
            return query.execute().data or []

        rows = await self._run(fetch)
        return [row["key"] for row in rows if row["key"].startswith(prefix)]

    async def set(self, items: Dict[str, Any]) -> None:
        rows = [
            {"key": k, "value": v, "size_bytes": entry_size(k, encode_value(v))}
            for k, v in items.items()
        ]

        def write():
            existing = self._rows("key, size_bytes", [r["key"] for r in rows])
            freed = sum(r["size_bytes"] or 0 for r in existing)
            added = sum(r["size_bytes"] for r in rows)
            self._check_quota(self._used(), freed, added)
            self._client.table(self._table).upsert(rows).execute()

        await self._run(write)

    async def remove(self, keys: Iterable[str]) -> None:
        doomed = list(keys)
        if not doomed:
            return
        await self._run(
            lambda: self._client.table(self._table).delete().in_("key", doomed).execute()
        )

    def _used(self) -> int:
        rows = self._client.table(self._table).select("size_bytes").execute().data or []
        return sum(row["size_bytes"] or 0 for row in rows)

    async def bytes_in_use(self) -> int:
        return await self._run(self._used)
