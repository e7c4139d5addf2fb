import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from app.core.exceptions import StoreConflictError, StoreError
from app.core.logging import get_logger
from app.storage.base import JSONValue, KeyValueStore, Mutator

log = get_logger(__name__)

UPDATE_RETRIES = 8


class RedisStore(KeyValueStore):
    def __init__(self, redis: aioredis.Redis, prefix: str = "") -> None:
        self._redis = redis
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True), prefix=prefix)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> JSONValue | None:
        try:
            raw = await self._redis.get(self._k(key))
        except RedisError as e:
            raise StoreError(f"get {key} failed: {e}") from e
        return orjson.loads(raw) if raw is not None else None

    async def put(self, key: str, value: JSONValue, ttl_seconds: int | None = None) -> None:
        try:
            await self._redis.set(self._k(key), orjson.dumps(value), ex=ttl_seconds)
        except RedisError as e:
            raise StoreError(f"put {key} failed: {e}") from e

    async def add(self, key: str, value: JSONValue, ttl_seconds: int | None = None) -> bool:
        try:
            created = await self._redis.set(self._k(key), orjson.dumps(value), ex=ttl_seconds, nx=True)
        except RedisError as e:
            raise StoreError(f"add {key} failed: {e}") from e
        return bool(created)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._k(key))
        except RedisError as e:
            raise StoreError(f"delete {key} failed: {e}") from e

    async def update(self, key: str, mutate: Mutator, ttl_seconds: int | None = None) -> JSONValue | None:
        k = self._k(key)
        for attempt in range(UPDATE_RETRIES):
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(k)
                    raw = await pipe.get(k)
                    new = mutate(orjson.loads(raw) if raw is not None else None)
                    pipe.multi()
                    if new is None:
                        pipe.delete(k)
                    elif ttl_seconds:
                        pipe.set(k, orjson.dumps(new), ex=ttl_seconds)
                    else:
                        pipe.set(k, orjson.dumps(new), keepttl=True)
                    await pipe.execute()
                    return new
            except WatchError:
                log.debug("store_update_retry", key=key, attempt=attempt)
                continue
            except RedisError as e:
                raise StoreError(f"update {key} failed: {e}") from e
        raise StoreConflictError(key)

    async def keys(self, prefix: str) -> list[str]:
        try:
            found = [k async for k in self._redis.scan_iter(match=f"{self._k(prefix)}*", count=500)]
        except RedisError as e:
            raise StoreError(f"scan {prefix} failed: {e}") from e
        return [k[len(self.prefix):] for k in found]

    async def close(self) -> None:
        await self._redis.aclose()
