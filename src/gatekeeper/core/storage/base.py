"""
Abstract base class for storage backends.

This module defines the contract that all storage backends must follow.
Separating storage from algorithms allows:
- Testing with in-memory backend (no Redis needed)
- Running locally without external dependencies
- Keeping every admission decision a single atomic round-trip

Algorithm state is only ever touched through `eval_script`, which executes an
AtomicScript as one indivisible unit. The remaining operations are used by the
statistics aggregator, where per-command atomicity is sufficient.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Protocol


class ScriptCommands(Protocol):
    """
    Redis-like command surface available to the Python twin of a script.

    Only the commands the admission scripts need are listed. Values read back
    are strings (or None), mirroring Redis with decode_responses=True.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def incrby(self, key: str, amount: int) -> int: ...

    def hmget(self, key: str, *fields: str) -> list[str | None]: ...

    def hset(self, key: str, mapping: dict[str, Any]) -> None: ...

    def pexpire(self, key: str, ttl_ms: int) -> None: ...

    def zincrby(self, key: str, amount: float, member: str) -> float: ...


@dataclass(frozen=True)
class AtomicScript:
    """
    One indivisible read-compute-write unit against the shared store.

    Attributes:
        name: Short identifier used in logs ("counter", "token_bucket", ...).
        lua: Script source executed server-side by Redis (EVALSHA/EVAL).
        local: Python twin with identical semantics, executed by backends
               without server-side scripting. Receives (commands, keys, args)
               and returns the same reply list as the Lua script.
    """

    name: str
    lua: str
    local: Callable[[ScriptCommands, list[str], list[Any]], list[int]]


class StorageBackend(ABC):
    """
    Abstract base class for rate limit state storage.

    Implementations must handle:
    - Atomic script execution (one round-trip per admission decision)
    - Hash counters with TTL (statistics buckets)
    - Sets, lists and rankings with TTL (alerts and hotspot reports)

    Available implementations:
    - InMemoryBackend: For testing and development (single process)
    - RedisBackend: For production (distributed, shared by all instances)
    """

    # =========================================================================
    # Atomic execution (used by every algorithm)
    # =========================================================================

    @abstractmethod
    async def eval_script(
        self,
        script: AtomicScript,
        keys: list[str],
        args: list[Any],
    ) -> list[int]:
        """
        Execute a script atomically.

        Args:
            script: The script to run.
            keys: Store keys the script addresses (KEYS in Lua).
            args: Scalar arguments (ARGV in Lua).

        Returns:
            The script reply, a list of integers.

        Raises:
            BackendError: If the store is unreachable or the script fails.
        """
        pass

    # =========================================================================
    # Key management
    # =========================================================================

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """
        Delete keys. Missing keys are ignored.

        Returns:
            Number of keys actually removed.
        """
        pass

    @abstractmethod
    async def scan(self, pattern: str) -> list[str]:
        """
        List keys matching a glob-style pattern.

        Example:
            >>> await backend.scan("rate_limit:ip:*")
            ["rate_limit:ip:fixed_window:login:ip:10.0.0.1:fw:1699900020000"]
        """
        pass

    # =========================================================================
    # Statistics containers
    # =========================================================================

    @abstractmethod
    async def increment_hash(
        self,
        key: str,
        deltas: dict[str, int],
        ttl: int,
    ) -> dict[str, int]:
        """
        Increment several hash fields and refresh the key's TTL.

        Args:
            key: The hash key.
            deltas: field -> amount to add.
            ttl: Time-to-live in seconds.

        Returns:
            field -> value after the increment.
        """
        pass

    @abstractmethod
    async def get_hash(self, key: str) -> dict[str, str]:
        """Return every field of a hash, or an empty dict."""
        pass

    @abstractmethod
    async def add_to_set(self, key: str, members: set[str], ttl: int) -> None:
        """Add members to a set and refresh its TTL."""
        pass

    @abstractmethod
    async def get_set(self, key: str) -> set[str]:
        """Return the members of a set, or an empty set."""
        pass

    @abstractmethod
    async def push_list(
        self,
        key: str,
        values: list[str],
        max_length: int,
        ttl: int,
    ) -> None:
        """
        Prepend values to a list and keep only the newest `max_length`.
        """
        pass

    @abstractmethod
    async def get_list(self, key: str) -> list[str]:
        """Return a list, newest first."""
        pass

    @abstractmethod
    async def increment_ranking(
        self,
        key: str,
        deltas: dict[str, float],
        ttl: int,
    ) -> None:
        """Add to the score of ranking members (sorted set)."""
        pass

    @abstractmethod
    async def top_ranking(self, key: str, n: int) -> list[tuple[str, float]]:
        """
        Return the `n` highest scoring members, highest first.

        Example:
            >>> await backend.top_ranking("rate_limit:hotspot:rank:2025-09-01", 3)
            [("song-42", 57.0), ("song-7", 12.0)]
        """
        pass

    async def close(self) -> None:
        """Release connections. No-op by default."""
        return None
