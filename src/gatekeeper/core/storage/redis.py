from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from gatekeeper.core.exceptions import BackendError
from gatekeeper.core.storage.base import AtomicScript, StorageBackend


class RedisBackend(StorageBackend):
    def __init__(self, redis: Redis):
        self._redis = redis
        # script name -> registered AsyncScript (EVALSHA with EVAL fallback)
        self._scripts: dict[str, Any] = {}

    async def eval_script(self, script: AtomicScript, keys: list[str], args: list[Any]) -> list[int]:
        registered = self._scripts.get(script.name)
        if registered is None:
            registered = self._redis.register_script(script.lua)
            self._scripts[script.name] = registered
        try:
            result = await registered(keys=keys, args=args)
        except RedisError as exc:
            raise BackendError(f"script {script.name} failed: {exc}") from exc
        return [int(value) for value in result]

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._redis.delete(*keys)
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def scan(self, pattern: str) -> list[str]:
        try:
            return [key async for key in self._redis.scan_iter(match=pattern, count=500)]
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def increment_hash(self, key: str, deltas: dict[str, int], ttl: int) -> dict[str, int]:
        fields = list(deltas)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for field in fields:
                    pipe.hincrby(key, field, deltas[field])
                pipe.expire(key, ttl)
                results = await pipe.execute()
        except RedisError as exc:
            raise BackendError(str(exc)) from exc
        return {field: int(value) for field, value in zip(fields, results)}

    async def get_hash(self, key: str) -> dict[str, str]:
        try:
            return await self._redis.hgetall(key)
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def add_to_set(self, key: str, members: set[str], ttl: int) -> None:
        if not members:
            return
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.sadd(key, *members)
                pipe.expire(key, ttl)
                await pipe.execute()
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def get_set(self, key: str) -> set[str]:
        try:
            return set(await self._redis.smembers(key))
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def push_list(self, key: str, values: list[str], max_length: int, ttl: int) -> None:
        if not values:
            return
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lpush(key, *values)
                pipe.ltrim(key, 0, max_length - 1)
                pipe.expire(key, ttl)
                await pipe.execute()
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def get_list(self, key: str) -> list[str]:
        try:
            return await self._redis.lrange(key, 0, -1)
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def increment_ranking(self, key: str, deltas: dict[str, float], ttl: int) -> None:
        if not deltas:
            return
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for member, amount in deltas.items():
                    pipe.zincrby(key, amount, member)
                pipe.expire(key, ttl)
                await pipe.execute()
        except RedisError as exc:
            raise BackendError(str(exc)) from exc

    async def top_ranking(self, key: str, n: int) -> list[tuple[str, float]]:
        try:
            rows = await self._redis.zrevrange(key, 0, n - 1, withscores=True)
        except RedisError as exc:
            raise BackendError(str(exc)) from exc
        # redis-py may return bytes when decode_responses is off
        return [(m.decode() if isinstance(m, bytes) else m, float(s)) for m, s in rows]

    async def close(self) -> None:
        await self._redis.aclose()
