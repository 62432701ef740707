"""
In-memory storage backend for testing and development.

This backend stores all data in Python dictionaries, making it:
- Fast: No network calls, no serialization
- Simple: No external dependencies
- Isolated: Each instance is independent

Scripts run their Python twin while holding a single asyncio.Lock, which
gives the same all-or-nothing guarantee as a Lua script inside one process.

WARNING: Not suitable for production!
- No persistence (data lost on restart)
- No distribution (single process only)

Use RedisBackend for production deployments.
"""

import asyncio
import fnmatch
import time
from typing import Any, Callable

from gatekeeper.core.storage.base import AtomicScript, StorageBackend


class MemoryCommands:
    """
    Redis-like commands over the backend's dictionaries.

    Handed to a script's Python twin; callers must hold the backend lock.
    """

    def __init__(self, backend: "InMemoryBackend") -> None:
        self._backend = backend

    def get(self, key: str) -> str | None:
        value = self._backend._read(key)
        return None if value is None else str(value)

    def set(self, key: str, value: Any) -> None:
        self._backend._write(key, str(value))

    def incrby(self, key: str, amount: int) -> int:
        current = int(self._backend._read(key) or 0) + int(amount)
        self._backend._write(key, str(current), keep_ttl=True)
        return current

    def hmget(self, key: str, *fields: str) -> list[str | None]:
        data = self._backend._read(key) or {}
        return [data.get(field) for field in fields]

    def hset(self, key: str, mapping: dict[str, Any]) -> None:
        data = dict(self._backend._read(key) or {})
        data.update({field: str(value) for field, value in mapping.items()})
        self._backend._write(key, data, keep_ttl=True)

    def pexpire(self, key: str, ttl_ms: int) -> None:
        self._backend._set_ttl(key, ttl_ms / 1000)

    def zincrby(self, key: str, amount: float, member: str) -> float:
        ranking = dict(self._backend._read(key) or {})
        ranking[member] = ranking.get(member, 0.0) + float(amount)
        self._backend._write(key, ranking, keep_ttl=True)
        return ranking[member]


class InMemoryBackend(StorageBackend):
    """
    In-memory implementation of StorageBackend.

    Stores data in dictionaries with manual TTL checking.
    Designed for unit tests and local development only.

    Features:
    - Full StorageBackend interface support
    - TTL expiration (checked on access)
    - Atomic script execution via the scripts' Python twins

    Example:
        >>> backend = InMemoryBackend()
        >>> strategy = FixedWindowStrategy(backend)
        >>> decision = await strategy.evaluate("login", params)

    Args:
        clock: Source of wall-clock seconds used for TTL checks.
               Tests may inject a fake clock.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize empty storage containers."""
        # key -> str | dict | set | list
        self._data: dict[str, Any] = {}

        # key -> unix timestamp (seconds) when the key expires
        self._expiry: dict[str, float] = {}

        self._clock = clock
        self._lock = asyncio.Lock()
        self._commands = MemoryCommands(self)

    def _is_expired(self, key: str) -> bool:
        if key in self._expiry:
            return self._clock() > self._expiry[key]
        return False

    def _cleanup_if_expired(self, key: str) -> bool:
        if self._is_expired(key):
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    def _read(self, key: str) -> Any:
        if self._cleanup_if_expired(key):
            return None
        return self._data.get(key)

    def _write(self, key: str, value: Any, keep_ttl: bool = False) -> None:
        if not keep_ttl or self._cleanup_if_expired(key):
            self._expiry.pop(key, None)
        self._data[key] = value

    def _set_ttl(self, key: str, seconds: float) -> None:
        # Only set expiry if key exists
        if key in self._data:
            self._expiry[key] = self._clock() + seconds

    # =========================================================================
    # Atomic execution
    # =========================================================================

    async def eval_script(
        self,
        script: AtomicScript,
        keys: list[str],
        args: list[Any],
    ) -> list[int]:
        async with self._lock:
            return script.local(self._commands, keys, args)

    # =========================================================================
    # Key management
    # =========================================================================

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._read(key) is not None:
                removed += 1
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def scan(self, pattern: str) -> list[str]:
        return [key for key in self.keys() if fnmatch.fnmatchcase(key, pattern)]

    # =========================================================================
    # Statistics containers
    # =========================================================================

    async def increment_hash(
        self,
        key: str,
        deltas: dict[str, int],
        ttl: int,
    ) -> dict[str, int]:
        async with self._lock:
            data = dict(self._read(key) or {})
            result = {}
            for field, amount in deltas.items():
                value = int(data.get(field, 0)) + int(amount)
                data[field] = str(value)
                result[field] = value
            self._write(key, data)
            self._set_ttl(key, ttl)
            return result

    async def get_hash(self, key: str) -> dict[str, str]:
        return dict(self._read(key) or {})

    async def add_to_set(self, key: str, members: set[str], ttl: int) -> None:
        async with self._lock:
            self._write(key, set(self._read(key) or set()) | set(members))
            self._set_ttl(key, ttl)

    async def get_set(self, key: str) -> set[str]:
        return set(self._read(key) or set())

    async def push_list(
        self,
        key: str,
        values: list[str],
        max_length: int,
        ttl: int,
    ) -> None:
        async with self._lock:
            items = list(self._read(key) or [])
            # LPUSH semantics: each value becomes the new head
            for value in values:
                items.insert(0, value)
            self._write(key, items[:max_length])
            self._set_ttl(key, ttl)

    async def get_list(self, key: str) -> list[str]:
        return list(self._read(key) or [])

    async def increment_ranking(
        self,
        key: str,
        deltas: dict[str, float],
        ttl: int,
    ) -> None:
        async with self._lock:
            for member, amount in deltas.items():
                self._commands.zincrby(key, amount, member)
            self._set_ttl(key, ttl)

    async def top_ranking(self, key: str, n: int) -> list[tuple[str, float]]:
        ranking = self._read(key) or {}
        ordered = sorted(ranking.items(), key=lambda item: (-item[1], item[0]))
        return ordered[:n]

    # =========================================================================
    # Utility Methods (not part of interface, useful for testing)
    # =========================================================================

    def clear(self) -> None:
        """
        Clear all stored data.

        Useful for resetting state between tests.
        """
        self._data.clear()
        self._expiry.clear()

    def keys(self) -> list[str]:
        """
        Get all non-expired keys.
        """
        return [k for k in list(self._data) if not self._is_expired(k)]

    def ttl(self, key: str) -> float | None:
        """Seconds until `key` expires, or None if it has no expiry."""
        if key not in self._expiry or self._is_expired(key):
            return None
        return self._expiry[key] - self._clock()
