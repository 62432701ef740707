"""
Unit tests for the Counter strategy.

The counter's cycle is anchored to the first request seen for a key, not to
wall-clock boundaries.

Run tests:
    pytest tests/unit/test_counter.py -v
"""

import pytest

from gatekeeper.core.storage.memory import InMemoryBackend
from gatekeeper.core.strategies.base import LimitParams, RateLimitStatus
from gatekeeper.core.strategies.counter import CounterStrategy

NOW = 1_700_000_012_345


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def strategy(backend: InMemoryBackend) -> CounterStrategy:
    return CounterStrategy(backend)


def params(limit: int, period_ms: int) -> LimitParams:
    return LimitParams(limit=limit, period_ms=period_ms)


# =============================================================================
# Boundary Tests
# =============================================================================


class TestBoundary:
    @pytest.mark.asyncio
    async def test_exactly_limit_calls_are_allowed(self, strategy: CounterStrategy) -> None:
        for i in range(5):
            decision = await strategy.evaluate("svc", params(5, 10_000), now_ms=NOW + i)
            assert decision.allowed, f"Request {i + 1} should be allowed"
            assert decision.remaining == 5 - i - 1

        decision = await strategy.evaluate("svc", params(5, 10_000), now_ms=NOW + 10)
        assert not decision.allowed
        assert decision.status == RateLimitStatus.DENIED
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_reset_at_is_anchored_to_first_request(self, strategy: CounterStrategy) -> None:
        first = await strategy.evaluate("svc", params(5, 10_000), now_ms=NOW)
        later = await strategy.evaluate("svc", params(5, 10_000), now_ms=NOW + 4_000)

        assert first.reset_at == NOW + 10_000
        assert later.reset_at == NOW + 10_000

    @pytest.mark.asyncio
    async def test_fresh_cycle_after_reset_at(self, strategy: CounterStrategy) -> None:
        for _ in range(3):
            await strategy.evaluate("svc", params(3, 1_000), now_ms=NOW)
        assert not (await strategy.evaluate("svc", params(3, 1_000), now_ms=NOW + 999)).allowed

        decision = await strategy.evaluate("svc", params(3, 1_000), now_ms=NOW + 1_000)

        assert decision.allowed
        assert decision.remaining == 2
        assert decision.current_value == 1
        assert decision.reset_at == NOW + 2_000

    @pytest.mark.asyncio
    async def test_weight_consumes_multiple_units(self, strategy: CounterStrategy) -> None:
        first = await strategy.evaluate("svc", params(5, 10_000), now_ms=NOW, weight=3)
        second = await strategy.evaluate("svc", params(5, 10_000), now_ms=NOW, weight=3)

        assert first.allowed
        assert first.remaining == 2
        assert not second.allowed
        assert second.current_value == 3


# =============================================================================
# State & Validation Tests
# =============================================================================


class TestState:
    @pytest.mark.asyncio
    async def test_state_keys_carry_expiry(self, strategy: CounterStrategy, backend: InMemoryBackend) -> None:
        await strategy.evaluate("svc", params(5, 10_000), now_ms=NOW)

        assert sorted(backend.keys()) == ["svc:counter", "svc:reset_at"]
        ttl = backend.ttl("svc:counter")
        assert ttl is not None
        assert 0 < ttl <= 20

    @pytest.mark.asyncio
    async def test_invalid_params_deny_without_touching_store(
        self, strategy: CounterStrategy, backend: InMemoryBackend
    ) -> None:
        decision = await strategy.evaluate("svc", params(0, 10_000), now_ms=NOW)

        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.reset_at == 0
        assert decision.message == "Invalid rate limit configuration"
        assert backend.keys() == []

    @pytest.mark.asyncio
    async def test_reset_clears_the_cycle(self, strategy: CounterStrategy, backend: InMemoryBackend) -> None:
        await strategy.evaluate("svc", params(1, 10_000), now_ms=NOW)
        await strategy.reset("svc")

        decision = await strategy.evaluate("svc", params(1, 10_000), now_ms=NOW + 1)
        assert decision.allowed
