from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Callable

from app.core.config import get_settings

JSONValue = dict[str, Any] | list[Any]
Mutator = Callable[[JSONValue | None], JSONValue | None]


class KeyValueStore(ABC):
    """Flat namespace of JSON documents addressed by string keys."""

    @abstractmethod
    async def get(self, key: str) -> JSONValue | None:
        """Return the document, or None if absent or expired."""
        ...

    @abstractmethod
    async def put(self, key: str, value: JSONValue, ttl_seconds: int | None = None) -> None:
        """Unconditionally store the document."""
        ...

    @abstractmethod
    async def add(self, key: str, value: JSONValue, ttl_seconds: int | None = None) -> bool:
        """Store only if the key is absent; return True if this call created it."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def update(self, key: str, mutate: Mutator, ttl_seconds: int | None = None) -> JSONValue | None:
        """
        Optimistic read-modify-write. `mutate` gets the current document (or None) and
        returns the new one; returning None deletes the key. An exception raised by
        `mutate` aborts without writing and propagates. The write only commits if the
        key was not changed by anyone else since it was read.
        """
        ...

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        """Snapshot of keys starting with prefix."""
        ...

    async def close(self) -> None:
        pass


@lru_cache
def get_store() -> KeyValueStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        from app.storage.memory import MemoryStore
        return MemoryStore()
    from app.storage.redis_store import RedisStore
    return RedisStore.from_url(settings.redis_url, prefix=settings.store_key_prefix)
