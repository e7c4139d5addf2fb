"""In-process store for local runs and tests. Not shared between workers."""

import asyncio
import copy
from time import monotonic

from app.storage.base import JSONValue, KeyValueStore, Mutator


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: dict[str, tuple[JSONValue, float | None]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> JSONValue | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= monotonic():
            del self._data[key]
            return None
        return value

    @staticmethod
    def _expiry(ttl_seconds: int | None) -> float | None:
        return monotonic() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> JSONValue | None:
        async with self._lock:
            return copy.deepcopy(self._live(key))

    async def put(self, key: str, value: JSONValue, ttl_seconds: int | None = None) -> None:
        async with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl_seconds))

    async def add(self, key: str, value: JSONValue, ttl_seconds: int | None = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl_seconds))
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def update(self, key: str, mutate: Mutator, ttl_seconds: int | None = None) -> JSONValue | None:
        async with self._lock:
            current = self._live(key)
            new = mutate(copy.deepcopy(current))
            if new is None:
                self._data.pop(key, None)
                return None
            expires_at = self._expiry(ttl_seconds) if ttl_seconds else (self._data[key][1] if current is not None else None)
            self._data[key] = (copy.deepcopy(new), expires_at)
            return copy.deepcopy(new)

    async def keys(self, prefix: str) -> list[str]:
        async with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]
