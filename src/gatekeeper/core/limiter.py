"""
Decorator facade over the decision handler.

    limiter = RateLimiter()

    @limiter.register_fallback("play_unavailable")
    async def play_unavailable(song_id: str):
        return {"song_id": song_id, "queued": True}

    @limiter.limit(
        RateLimitPolicy(key="play", limit=30, period=60, dimension="parameter"),
        RateLimitPolicy(key="play", limit=100, period=60, dimension="ip", order=1),
    )
    async def play_song(song_id: str): ...

The limiter is inert until `configure()` runs during the application
lifespan; calls made before that pass straight through.
"""

import functools
import inspect
from typing import Any, Callable

import structlog

from gatekeeper.config import Settings, get_settings
from gatekeeper.core.context import Invocation, KeyBuilder, RequestContext, current_request
from gatekeeper.core.engine import AlgorithmEngine
from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.core.handler import DecisionHandler
from gatekeeper.core.hotspot import HotspotDetector
from gatekeeper.core.policy import RateLimitPolicy
from gatekeeper.core.registry import FallbackRegistry, KeyGeneratorRegistry
from gatekeeper.core.statistics import StatisticsAggregator
from gatekeeper.core.strategies.base import Decision, now_millis

logger = structlog.get_logger()

_BOUND_NAMES = ("self", "cls")


class RateLimiter:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.fallbacks = FallbackRegistry()
        self.key_generators = KeyGeneratorRegistry()
        self.handler: DecisionHandler | None = None
        self._policies: list[RateLimitPolicy] = []

    @property
    def configured(self) -> bool:
        return self.handler is not None

    def register_fallback(self, name: str) -> Callable:
        return self.fallbacks.register(name)

    def register_key_generator(self, name: str) -> Callable:
        return self.key_generators.register(name)

    def configure(
        self,
        engine: AlgorithmEngine,
        aggregator: StatisticsAggregator | None = None,
        detector: HotspotDetector | None = None,
        settings: Settings | None = None,
        clock: Callable[[], int] = now_millis,
    ) -> DecisionHandler:
        """
        Wire the limiter to its collaborators.

        Raises:
            ConfigurationError: A declared policy names an unregistered
                                fallback or key generator.
        """
        if settings is not None:
            self.settings = settings
        for policy in self._policies:
            self._validate(policy)

        self.handler = DecisionHandler(
            engine,
            settings=self.settings,
            key_builder=KeyBuilder(
                self.settings.rate_limit_key_prefix,
                key_generators=self.key_generators.as_dict(),
            ),
            detector=detector,
            aggregator=aggregator,
            fallbacks=self.fallbacks,
            clock=clock,
        )
        logger.info("limiter_configured", policies=len(self._policies))
        return self.handler

    def unconfigure(self) -> None:
        self.handler = None

    def _validate(self, policy: RateLimitPolicy) -> None:
        if policy.fallback and policy.fallback not in self.fallbacks:
            raise ConfigurationError(f"policy {policy.label!r} names unknown fallback {policy.fallback!r}")
        if policy.key_generator and policy.key_generator not in self.key_generators:
            raise ConfigurationError(
                f"policy {policy.label!r} names unknown key generator {policy.key_generator!r}"
            )

    def limit(self, *policies: RateLimitPolicy) -> Callable:
        """
        Guard an `async def` operation with one or more policies.

        Policies run in ascending `order`; the first denial wins and later
        policies are not evaluated.
        """
        ordered = sorted(policies or (RateLimitPolicy(),), key=lambda p: p.order)

        def decorator(func: Callable) -> Callable:
            if not inspect.iscoroutinefunction(func):
                raise ConfigurationError(f"{func.__qualname__} must be an async function")
            for policy in ordered:
                if self.configured:
                    self._validate(policy)
                self._policies.append(policy)

            signature = inspect.signature(func)
            operation = f"{func.__module__}.{func.__qualname__}"

            @functools.wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> Any:
                handler = self.handler
                if handler is None:
                    logger.warning("limiter_uninitialized_skipping", operation=operation)
                    return await func(*args, **kwargs)

                invocation = self._invocation(operation, signature, args, kwargs, current_request())
                for policy in ordered:
                    decision = await handler.decide(policy, invocation)
                    if decision is not None and not decision.allowed:
                        return await handler.deny(policy, decision, args, kwargs)
                return await handler.proceed(invocation, lambda: func(*args, **kwargs))

            wrapper.rate_limit_policies = tuple(ordered)
            return wrapper

        return decorator

    async def check(
        self,
        policy: RateLimitPolicy,
        operation: str,
        *args: Any,
        request: RequestContext | None = None,
        **kwargs: Any,
    ) -> Decision | None:
        """Decision-only access: consumes quota, runs nothing, never raises on denial."""
        if self.handler is None:
            logger.warning("limiter_uninitialized_skipping", operation=operation)
            return None
        invocation = Invocation(
            operation=operation,
            args=args,
            arguments=kwargs,
            request=request if request is not None else current_request(),
        )
        return await self.handler.decide(policy, invocation)

    @staticmethod
    def _invocation(
        operation: str,
        signature: inspect.Signature,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        request: RequestContext | None,
    ) -> Invocation:
        try:
            bound = signature.bind(*args, **kwargs)
        except TypeError:
            # Let the operation itself report the bad call
            return Invocation(operation=operation, args=args, arguments=kwargs, request=request)
        bound.apply_defaults()

        arguments: dict[str, Any] = {}
        positional: list[Any] = []
        for name, value in bound.arguments.items():
            kind = signature.parameters[name].kind
            if name in _BOUND_NAMES:
                continue
            if kind == inspect.Parameter.VAR_POSITIONAL:
                positional.extend(value)
            elif kind == inspect.Parameter.VAR_KEYWORD:
                arguments.update(value)
            else:
                arguments[name] = value
                if kind != inspect.Parameter.KEYWORD_ONLY:
                    positional.append(value)
        return Invocation(operation=operation, args=tuple(positional), arguments=arguments, request=request)


limiter = RateLimiter()
