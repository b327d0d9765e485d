"""File-backed key/value storage: one JSON file per key."""

import asyncio
import json
import os
import tempfile
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, unquote

from app.errors import StorageError
from app.storage.backend import StorageBackend, encode_value, entry_size

_SUFFIX = ".json"


class FileBackend(StorageBackend):
    """Stores each key as ``<base_dir>/<quoted key>.json``.

    Quota accounting uses the same key+payload sizes as the memory backend,
    so eviction behaves the same regardless of filesystem block sizes.
    """

    def __init__(self, base_dir: Optional[str] = None, quota_bytes: int = 10 * 1024 * 1024):
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "scrape_sessions")
        os.makedirs(self._base_dir, exist_ok=True)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> str:
        return os.path.join(self._base_dir, quote(key, safe="") + _SUFFIX)

    def _read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def _list_keys(self) -> List[str]:
        return [
            unquote(name[: -len(_SUFFIX)])
            for name in os.listdir(self._base_dir)
            if name.endswith(_SUFFIX)
        ]

    def _used(self) -> int:
        total = 0
        for key in self._list_keys():
            raw = self._read(key)
            if raw is not None:
                total += entry_size(key, raw)
        return total

    def _write_all(self, items: Dict[str, Any]) -> None:
        encoded = {k: encode_value(v) for k, v in items.items()}
        freed = 0
        for key in encoded:
            raw = self._read(key)
            if raw is not None:
                freed += entry_size(key, raw)
        added = sum(entry_size(k, v) for k, v in encoded.items())
        self._check_quota(self._used(), freed, added)

        for key, payload in encoded.items():
            path = self._path(key)
            tmp_path = path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, path)

    def _remove_all(self, keys: List[str]) -> None:
        for key in keys:
            path = self._path(key)
            if os.path.exists(path):
                os.remove(path)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except OSError as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        found = {}
        for key in keys:
            raw = await self._run(self._read, key)
            if raw is None:
                continue
            try:
                found[key] = json.loads(raw)
            except json.JSONDecodeError as e:
                raise StorageError(f"Corrupted value for {key!r}: {e}") from e
        return found

    async def keys(self, prefix: str = "") -> List[str]:
        names = await self._run(self._list_keys)
        return [k for k in names if k.startswith(prefix)]

    async def set(self, items: Dict[str, Any]) -> None:
        await self._run(self._write_all, items)

    async def remove(self, keys: Iterable[str]) -> None:
        await self._run(self._remove_all, list(keys))

    async def bytes_in_use(self) -> int:
        return await self._run(self._used)
