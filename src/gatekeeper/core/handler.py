"""
Per-invocation admission state machine.

    Unchecked -> (bypassed | allowed | denied)

    bypassed: policy disabled, limiter disabled, guard false or failing,
              or the store failed while fail-open is set.
    allowed:  the operation runs; its errors propagate and consumed quota is
              not refunded.
    denied:   fallback, else None when ignore_on_limit, else RateLimitExceeded.

Statistics are recorded as soon as the decision exists, before the operation
runs, so an operation failure can never skip them.
"""

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from gatekeeper.config import Settings, get_settings
from gatekeeper.core.context import Invocation, KeyBuilder
from gatekeeper.core.engine import AlgorithmEngine
from gatekeeper.core.exceptions import BackendError, ExpressionError, RateLimitExceeded
from gatekeeper.core.expressions import ExpressionEvaluator
from gatekeeper.core.hotspot import HotspotDetector
from gatekeeper.core.policy import Dimension, RateLimitPolicy
from gatekeeper.core.registry import FallbackRegistry
from gatekeeper.core.statistics import Outcome, StatisticsAggregator
from gatekeeper.core.strategies.base import Decision, now_millis

logger = structlog.get_logger()

CHECK_FAILED_MESSAGE = "Rate limit check failed"


class DecisionHandler:
    def __init__(
        self,
        engine: AlgorithmEngine,
        settings: Settings | None = None,
        key_builder: KeyBuilder | None = None,
        detector: HotspotDetector | None = None,
        aggregator: StatisticsAggregator | None = None,
        fallbacks: FallbackRegistry | None = None,
        evaluator: ExpressionEvaluator | None = None,
        clock: Callable[[], int] = now_millis,
    ):
        self.engine = engine
        self.settings = settings or get_settings()
        self.evaluator = evaluator or ExpressionEvaluator()
        self.key_builder = key_builder or KeyBuilder(self.settings.rate_limit_key_prefix, self.evaluator)
        self.detector = detector
        self.aggregator = aggregator
        self.fallbacks = fallbacks or FallbackRegistry()
        self.clock = clock

    async def handle(
        self,
        policy: RateLimitPolicy,
        invocation: Invocation,
        call: Callable[[], Awaitable[Any]],
        fallback_args: tuple[tuple[Any, ...], dict[str, Any]] | None = None,
    ) -> Any:
        """
        Decide and then run `call`, the fallback, or raise.

        Args:
            policy: The governing policy.
            invocation: Operation identity, arguments and request context.
            call: Zero-argument coroutine factory running the operation.
            fallback_args: (args, kwargs) handed to the fallback; defaults to
                           the invocation's positional arguments.

        Raises:
            RateLimitExceeded: Denied with no fallback and ignore_on_limit off.
        """
        decision = await self.decide(policy, invocation)
        if decision is None or decision.allowed:
            return await self.proceed(invocation, call)
        args, kwargs = fallback_args if fallback_args is not None else (invocation.args, {})
        return await self.deny(policy, decision, args, kwargs)

    async def decide(self, policy: RateLimitPolicy, invocation: Invocation) -> Decision | None:
        """
        Evaluate `policy` for `invocation` without running anything.

        Returns:
            The Decision, or None when the invocation is bypassed.
        """
        if not policy.enabled or not self.settings.rate_limit_enabled:
            return None

        context = self.key_builder.context_map(invocation)
        if policy.condition is not None and not self._guard(policy, invocation, context):
            return None

        key = self.key_builder.build(policy, invocation, context)
        now_ms = self.clock()
        client_ip = invocation.request.client_ip if invocation.request is not None else None

        try:
            decision = await self._with_timeout(self._evaluate(policy, invocation, context, key, now_ms))
        except (BackendError, asyncio.TimeoutError) as exc:
            logger.warning(
                "rate_limit_backend_error",
                key=key,
                algorithm=policy.algorithm.value,
                error=str(exc) or type(exc).__name__,
                fail_open=self.settings.rate_limit_fail_open,
            )
            self._record(policy, key, None, Outcome.ERROR, now_ms, client_ip)
            if self.settings.rate_limit_fail_open:
                return None
            return Decision(
                allowed=False,
                limit=policy.effective_limit,
                remaining=0,
                reset_at=0,
                error_code=policy.error_code,
                message=CHECK_FAILED_MESSAGE,
                key=key,
                algorithm=policy.algorithm.value,
            )

        self._record(
            policy,
            key,
            decision,
            Outcome.ALLOWED if decision.allowed else Outcome.BLOCKED,
            now_ms,
            client_ip,
        )
        if policy.enable_log and self.settings.rate_limit_enable_log:
            logger.info(
                "rate_limit_check",
                policy=policy.label,
                key=key,
                algorithm=policy.algorithm.value,
                status=decision.status.value,
                remaining=decision.remaining,
                limit=decision.limit,
                hotspot=decision.is_hotspot,
            )
        return decision

    async def proceed(self, invocation: Invocation, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await call()
        except Exception:
            logger.debug("operation_failed_after_admission", operation=invocation.operation, exc_info=True)
            raise

    async def deny(
        self,
        policy: RateLimitPolicy,
        decision: Decision,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        if policy.fallback:
            logger.info("rate_limit_fallback", policy=policy.label, fallback=policy.fallback, key=decision.key)
            return await self.fallbacks.invoke(policy.fallback, args, kwargs)
        if policy.ignore_on_limit:
            return None
        raise RateLimitExceeded(decision, policy, error_code=policy.error_code)

    def _guard(self, policy: RateLimitPolicy, invocation: Invocation, context: dict[str, Any]) -> bool:
        try:
            return self.evaluator.evaluate_condition(policy.condition, context)
        except ExpressionError as exc:
            logger.warning(
                "condition_evaluation_failed",
                policy=policy.label,
                operation=invocation.operation,
                error=str(exc),
            )
            return False

    async def _with_timeout(self, awaitable: Awaitable[Decision]) -> Decision:
        timeout = self.settings.rate_limit_evaluation_timeout
        if timeout and timeout > 0:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        return await awaitable

    async def _evaluate(
        self,
        policy: RateLimitPolicy,
        invocation: Invocation,
        context: dict[str, Any],
        key: str,
        now_ms: int,
    ) -> Decision:
        params = policy.resolve_params(self.settings)
        decision = await self.engine.evaluate(policy.algorithm, key, params, now_ms=now_ms)

        if policy.dimension != Dimension.PARAMETER or self.detector is None or not decision.allowed:
            return decision
        value = context.get("hotspot_param")
        if value is None:
            return decision

        threshold, period_ms = policy.hotspot_params()
        verdict = await self.detector.evaluate(invocation.operation, value, threshold, period_ms, now_ms)
        if not verdict.hot:
            return decision
        return decision.with_updates(
            allowed=False,
            remaining=0,
            reset_at=max(decision.reset_at, verdict.reset_at),
            is_hotspot=True,
            hotspot_level=verdict.level,
            error_code=policy.error_code,
            message=self.settings.hotspot_message,
        )

    def _record(
        self,
        policy: RateLimitPolicy,
        key: str,
        decision: Decision | None,
        outcome: Outcome,
        now_ms: int,
        client_ip: str | None,
    ) -> None:
        if self.aggregator is None or not self.settings.rate_limit_enable_monitor:
            return
        if policy.record_async:
            self.aggregator.submit(policy, key, decision, outcome, now_ms, client_ip)
        else:
            self.aggregator.record(policy, key, decision, outcome, now_ms, client_ip)
