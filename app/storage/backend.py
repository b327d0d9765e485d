"""Key/value storage backend interface and in-memory implementation."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from app.errors import QuotaExceededError


def encode_value(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def entry_size(key: str, encoded: str) -> int:
    """Bytes charged against the quota for one stored key."""
    return len(key.encode("utf-8")) + len(encoded.encode("utf-8"))


class StorageBackend(ABC):
    """Abstract byte-quota'd key/value store (local, file or remote).

    Values are JSON-compatible objects. Writes that would push usage past
    ``quota_bytes`` raise ``QuotaExceededError``; any other failure of the
    underlying medium raises ``StorageError``.
    """

    quota_bytes: int

    @abstractmethod
    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the stored values for the keys that exist."""
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        ...

    @abstractmethod
    async def set(self, items: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def remove(self, keys: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def bytes_in_use(self) -> int:
        ...

    async def get(self, key: str) -> Optional[Any]:
        found = await self.get_many([key])
        return found.get(key)

    async def get_all(self) -> Dict[str, Any]:
        return await self.get_many(await self.keys())

    async def clear(self) -> None:
        await self.remove(await self.keys())

    def _check_quota(self, current: int, freed: int, added: int) -> None:
        projected = current - freed + added
        if projected > self.quota_bytes:
            raise QuotaExceededError(
                f"Write of {added} bytes exceeds quota "
                f"({projected}/{self.quota_bytes} bytes)"
            )


class MemoryBackend(StorageBackend):
    """Process-local backend. Values are held JSON-encoded so sizes are real."""

    def __init__(self, quota_bytes: int = 10 * 1024 * 1024):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {k: json.loads(self._data[k]) for k in keys if k in self._data}

    async def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._data if k.startswith(prefix)]

    async def set(self, items: Dict[str, Any]) -> None:
        encoded = {k: encode_value(v) for k, v in items.items()}
        freed = sum(entry_size(k, self._data[k]) for k in encoded if k in self._data)
        added = sum(entry_size(k, v) for k, v in encoded.items())
        self._check_quota(await self.bytes_in_use(), freed, added)
        self._data.update(encoded)

    async def remove(self, keys: Iterable[str]) -> None:
        for key in list(keys):
            self._data.pop(key, None)

    async def bytes_in_use(self) -> int:
        return sum(entry_size(k, v) for k, v in self._data.items())
