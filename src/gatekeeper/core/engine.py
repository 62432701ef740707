"""
Algorithm engine: dispatches a resolved limit to its strategy.

The engine is stateless apart from the strategy instances, which all share one
StorageBackend. Every call is exactly one atomic script execution.
"""

import structlog

from gatekeeper.config import StrategyType
from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.core.storage.base import StorageBackend
from gatekeeper.core.strategies.base import Decision, LimitParams, RateLimitStrategy
from gatekeeper.core.strategies.counter import CounterStrategy
from gatekeeper.core.strategies.fixed_window import FixedWindowStrategy
from gatekeeper.core.strategies.leaky_bucket import LeakyBucketStrategy
from gatekeeper.core.strategies.sliding_window import SlidingWindowStrategy
from gatekeeper.core.strategies.token_bucket import TokenBucketStrategy

logger = structlog.get_logger()

STRATEGIES: dict[StrategyType, type[RateLimitStrategy]] = {
    StrategyType.COUNTER: CounterStrategy,
    StrategyType.FIXED_WINDOW: FixedWindowStrategy,
    StrategyType.SLIDING_WINDOW: SlidingWindowStrategy,
    StrategyType.TOKEN_BUCKET: TokenBucketStrategy,
    StrategyType.LEAKY_BUCKET: LeakyBucketStrategy,
}


class AlgorithmEngine:
    """
    Entry point for admission checks.

    Example:
        >>> engine = AlgorithmEngine(InMemoryBackend())
        >>> params = LimitParams.for_window(limit=8, period_seconds=30)
        >>> decision = await engine.evaluate("fixed_window", "rate_limit:login", params)
    """

    def __init__(self, backend: StorageBackend, key_prefix: str = "rate_limit"):
        self.backend = backend
        self.key_prefix = key_prefix
        self._strategies = {name: cls(backend) for name, cls in STRATEGIES.items()}

    def strategy(self, algorithm: StrategyType | str) -> RateLimitStrategy:
        try:
            return self._strategies[StrategyType(algorithm)]
        except ValueError as exc:
            raise ConfigurationError(f"unknown algorithm: {algorithm!r}") from exc

    async def evaluate(
        self,
        algorithm: StrategyType | str,
        key: str,
        params: LimitParams,
        now_ms: int | None = None,
        weight: int = 1,
    ) -> Decision:
        """
        Run one admission check.

        Raises:
            ConfigurationError: Unknown algorithm name.
            BackendError: The store failed; the caller decides fail-open/closed.
        """
        return await self.strategy(algorithm).evaluate(key, params, now_ms=now_ms, weight=weight)

    async def reset(self, algorithm: StrategyType | str, key: str) -> None:
        await self.strategy(algorithm).reset(key)
        logger.info("rate_limit_reset", algorithm=str(algorithm), key=key)

    async def exists(self, key: str) -> bool:
        """True if any algorithm holds state for `key`."""
        return bool(await self.backend.scan(f"{key}:*"))

    async def active_keys(self, pattern: str | None = None) -> list[str]:
        """State keys currently held under the engine prefix."""
        return sorted(await self.backend.scan(pattern or f"{self.key_prefix}:*"))
