"""
Abstract base classes for rate limiting strategies.

This module defines the contract that all admission algorithms must follow.
Using the Strategy Pattern allows swapping algorithms per policy without
changing the decision handler.

Every strategy evaluates through exactly one AtomicScript, so a decision is a
single indivisible round-trip against the shared store. The script reply is
the same four-element tuple for every algorithm:

    [allowed (0|1), remaining_or_volume, reset_or_next_event_ms, extra]

where `extra` is the wait time in milliseconds for the leaky bucket and the
current count for all other algorithms.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import StrEnum

import structlog

from gatekeeper.core.storage.base import AtomicScript, StorageBackend

logger = structlog.get_logger()

# Reply returned by every script (and by Python) for malformed parameters.
INVALID_REPLY = [0, 0, 0, 0]


def now_millis() -> int:
    return int(time.time() * 1000)


class RateLimitStatus(StrEnum):
    """
    Possible outcomes of a rate limit check.

    ALLOWED: Request is within limits and should proceed.
    DENIED: Request exceeds limits and should be rejected (HTTP 429).
    """

    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass(frozen=True)
class LimitParams:
    """
    Fully resolved numeric parameters for one evaluation.

    Attributes:
        limit: Maximum admitted weight per period (window algorithms).
        period_ms: Window / cycle length in milliseconds.
        capacity: Bucket capacity (token and leaky bucket).
        rate: Refill or leak rate, units per second (token and leaky bucket).
        slices: Number of sub-windows (sliding window).
        warmup_ms: Token bucket warmup duration, 0 disables warmup.
    """

    limit: int
    period_ms: int
    capacity: float = 0
    rate: float = 0.0
    slices: int = 0
    warmup_ms: int = 0

    @classmethod
    def for_window(cls, limit: int, period_seconds: float, slices: int = 60) -> "LimitParams":
        period_ms = int(period_seconds * 1000)
        return cls(
            limit=limit,
            period_ms=period_ms,
            capacity=limit,
            rate=limit / period_seconds if period_seconds > 0 else 0.0,
            slices=slices,
        )


@dataclass(frozen=True)
class Decision:
    """
    Immutable result of one admission check.

    This object contains all information needed to:
    1. Decide whether to allow/deny the request
    2. Populate rate limit headers in the HTTP response
    3. Tell the client when they can retry (if denied)

    Attributes:
        allowed: Whether the request may proceed.
        limit: Quota (or bucket capacity) the decision was taken against.
        remaining: Quota left after this request, never negative.
        reset_at: Epoch milliseconds of the next reset / next useful event.
        current_value: Count (or bucket volume) after this request.
        wait_ms: Milliseconds until the request would fit (leaky bucket only).
        is_hotspot: The parameter value crossed its own hotspot threshold.
        hotspot_level: 0 (none) to 3 (severe).
        error_code: Numeric code surfaced to clients on denial.
        message: Human-readable denial message.
        key: The limiter key the decision was taken for.
        algorithm: Name of the algorithm that produced the decision.

    Example headers this maps to:
        X-RateLimit-Limit: {limit}
        X-RateLimit-Remaining: {remaining}
        X-RateLimit-Reset: {reset_at // 1000}
        Retry-After: {retry_after}  (only on 429 responses)
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    current_value: int = 0
    wait_ms: int = 0
    is_hotspot: bool = False
    hotspot_level: int = 0
    error_code: int = 0
    message: str | None = None
    key: str | None = None
    algorithm: str | None = None

    @property
    def status(self) -> RateLimitStatus:
        return RateLimitStatus.ALLOWED if self.allowed else RateLimitStatus.DENIED

    @property
    def is_allowed(self) -> bool:
        """Convenience property to check if request should proceed."""
        return self.allowed

    def seconds_to_reset(self, now_ms: int | None = None) -> int:
        now_ms = now_ms if now_ms is not None else now_millis()
        return max(0, (self.reset_at - now_ms) // 1000)

    def retry_after(self, now_ms: int | None = None) -> int | None:
        """Whole seconds a denied client should wait, None when allowed."""
        if self.allowed:
            return None
        now_ms = now_ms if now_ms is not None else now_millis()
        wait = self.wait_ms or max(0, self.reset_at - now_ms)
        return max(1, math.ceil(wait / 1000))

    @property
    def usage_percentage(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.current_value / self.limit * 100.0

    @property
    def remaining_percentage(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.remaining / self.limit * 100.0

    def is_near_limit(self, threshold: float) -> bool:
        """True when usage reached `threshold` (0..1) of the quota."""
        return self.usage_percentage >= threshold * 100

    def with_updates(self, **changes) -> "Decision":
        return replace(self, **changes)

    @classmethod
    def rejected_config(cls, limit: int = 0, key: str | None = None, algorithm: str | None = None) -> "Decision":
        """Deterministic deny-with-zero result for malformed parameters."""
        return cls(
            allowed=False,
            limit=max(0, int(limit)),
            remaining=0,
            reset_at=0,
            error_code=429,
            message="Invalid rate limit configuration",
            key=key,
            algorithm=algorithm,
        )


class RateLimitStrategy(ABC):
    """
    Abstract base class for admission algorithms.

    Subclasses provide the script, the store key it addresses, the script
    arguments and the translation of the reply into a Decision. Validation
    and the round-trip itself are shared.
    """

    name: str = ""
    script: AtomicScript

    def __init__(self, backend: StorageBackend):
        self.backend = backend

    async def evaluate(
        self,
        key: str,
        params: LimitParams,
        now_ms: int | None = None,
        weight: int = 1,
    ) -> Decision:
        """
        Check if a request should be allowed and consume quota if so.

        This method is called for every guarded invocation. It must be fast
        and safe under concurrent calls from many processes.

        Args:
            key: Fully resolved limiter key.
                 Examples: "rate_limit:ip:fixed_window:login:ip:10.0.0.1"
            params: Resolved numeric parameters.
            now_ms: Epoch milliseconds; defaults to the wall clock.
            weight: Units this request consumes (default 1).

        Returns:
            Decision with the verdict and quota metadata.
        """
        if now_ms is None:
            now_ms = now_millis()

        if not self._valid(params, now_ms, weight):
            logger.warning(
                "invalid_limit_params",
                algorithm=self.name,
                key=key,
                limit=params.limit,
                period_ms=params.period_ms,
                capacity=params.capacity,
                rate=params.rate,
                now_ms=now_ms,
                weight=weight,
            )
            return Decision.rejected_config(params.limit, key=key, algorithm=self.name)

        reply = await self.backend.eval_script(
            self.script,
            keys=[key],
            args=self.script_args(params, now_ms, weight),
        )
        if list(reply) == INVALID_REPLY:
            logger.warning("script_rejected_params", algorithm=self.name, key=key)
            return Decision.rejected_config(params.limit, key=key, algorithm=self.name)

        return self.to_decision(key, params, reply)

    async def reset(self, key: str) -> None:
        """
        Delete all state held for `key`.

        Args:
            key: The limiter key to reset.
        """
        keys = await self.backend.scan(f"{key}:*")
        await self.backend.delete(*keys)

    @abstractmethod
    def _valid(self, params: LimitParams, now_ms: int, weight: int) -> bool:
        pass

    @abstractmethod
    def script_args(self, params: LimitParams, now_ms: int, weight: int) -> list:
        pass

    @abstractmethod
    def to_decision(self, key: str, params: LimitParams, reply: list[int]) -> Decision:
        pass


class WindowStrategy(RateLimitStrategy):
    """Shared plumbing for counter, fixed window and sliding window."""

    def _valid(self, params: LimitParams, now_ms: int, weight: int) -> bool:
        return now_ms > 0 and params.limit > 0 and params.period_ms > 0 and weight > 0

    def script_args(self, params: LimitParams, now_ms: int, weight: int) -> list:
        return [params.limit, params.period_ms, now_ms, weight]

    def to_decision(self, key: str, params: LimitParams, reply: list[int]) -> Decision:
        allowed, remaining, reset_at, current = reply[:4]
        return Decision(
            allowed=bool(allowed),
            limit=params.limit,
            remaining=max(0, int(remaining)),
            reset_at=int(reset_at),
            current_value=int(current),
            key=key,
            algorithm=self.name,
        )
