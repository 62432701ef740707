"""
Unit tests for the StatisticsAggregator.

Run tests:
    pytest tests/unit/test_statistics.py -v
"""

import pytest

from gatekeeper.core.exceptions import BackendError, ConfigurationError
from gatekeeper.core.policy import RateLimitPolicy
from gatekeeper.core.statistics import (
    BucketType,
    Outcome,
    StatisticsAggregator,
    StatisticsBucket,
    time_key,
)
from gatekeeper.core.storage.memory import InMemoryBackend
from gatekeeper.core.strategies.base import Decision

NOW = 1_700_000_040_000  # 2023-11-14 22:14 UTC
HOUR = "2023-11-14-22"
DAY = "2023-11-14"

POLICY = RateLimitPolicy(key="login", limit=10, algorithm="fixed_window")
KEY = "rate_limit:global:fixed_window:login"


def decision(allowed: bool = True, remaining: int = 5, hotspot: bool = False) -> Decision:
    return Decision(allowed=allowed, limit=10, remaining=remaining, reset_at=NOW + 60_000, is_hotspot=hotspot)


class FlakyBackend(InMemoryBackend):
    """Fails `failures` hash writes once `healthy_writes` have gone through."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0
        self.healthy_writes = 0

    async def increment_hash(self, key, increments, ttl):
        if self.healthy_writes:
            self.healthy_writes -= 1
        elif self.failures:
            self.failures -= 1
            raise BackendError("store unavailable")
        return await super().increment_hash(key, increments, ttl)


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def aggregator(backend: InMemoryBackend) -> StatisticsAggregator:
    return StatisticsAggregator(backend, high_frequency_threshold=3)


def record(aggregator: StatisticsAggregator, outcome: Outcome, key: str = KEY, **kwargs) -> None:
    allowed = outcome == Outcome.ALLOWED
    result = None if outcome == Outcome.ERROR else decision(allowed=allowed, **kwargs)
    aggregator.record(POLICY, key, result, outcome, NOW, "10.0.0.1")


# =============================================================================
# Buckets
# =============================================================================


class TestBuckets:
    def test_time_keys(self) -> None:
        assert time_key(BucketType.HOURLY, NOW) == HOUR
        assert time_key(BucketType.DAILY, NOW) == DAY

    @pytest.mark.asyncio
    async def test_outcomes_add_up_to_total(self, aggregator: StatisticsAggregator) -> None:
        for outcome in (Outcome.ALLOWED, Outcome.ALLOWED, Outcome.BLOCKED, Outcome.ERROR):
            record(aggregator, outcome)

        for bucket_type, key in ((BucketType.HOURLY, HOUR), (BucketType.DAILY, DAY)):
            bucket = await aggregator.snapshot(bucket_type, key)
            assert bucket.total_requests == 4
            assert bucket.allowed_requests + bucket.blocked_requests + bucket.error_requests == 4
            assert bucket.error_requests == 1

    @pytest.mark.asyncio
    async def test_rates(self, aggregator: StatisticsAggregator) -> None:
        for outcome in (Outcome.ALLOWED, Outcome.ALLOWED, Outcome.ALLOWED, Outcome.BLOCKED):
            record(aggregator, outcome)

        bucket = await aggregator.snapshot("hourly", HOUR)

        assert bucket.block_rate == 25.0
        assert bucket.pass_rate == 75.0
        assert bucket.hotspot_rate == 0.0
        assert not bucket.has_anomalies

    def test_empty_bucket(self) -> None:
        bucket = StatisticsBucket(BucketType.HOURLY, HOUR)

        assert bucket.block_rate == 0.0
        assert bucket.most_active_key is None
        assert bucket.summary()["total_requests"] == 0

    def test_anomalies_above_half_blocked(self) -> None:
        bucket = StatisticsBucket(BucketType.HOURLY, HOUR, total_requests=3, allowed_requests=1, blocked_requests=2)

        assert bucket.has_anomalies
        assert bucket.summary()["block_rate"] == 66.67

    @pytest.mark.asyncio
    async def test_most_active_ties_pick_smallest_name(self, aggregator: StatisticsAggregator) -> None:
        record(aggregator, Outcome.ALLOWED, key="b")
        record(aggregator, Outcome.ALLOWED, key="a")

        bucket = await aggregator.snapshot("daily", DAY)

        assert bucket.most_active_key == "a"
        assert bucket.most_active_strategy == "fixed_window"

    @pytest.mark.asyncio
    async def test_unknown_bucket_type(self, aggregator: StatisticsAggregator) -> None:
        with pytest.raises(ConfigurationError):
            await aggregator.snapshot("weekly", DAY)


# =============================================================================
# Persistence
# =============================================================================


class TestPersistence:
    @pytest.mark.asyncio
    async def test_flush_writes_both_buckets(self, aggregator: StatisticsAggregator, backend: InMemoryBackend) -> None:
        record(aggregator, Outcome.ALLOWED)
        record(aggregator, Outcome.BLOCKED)

        assert await aggregator.flush(NOW) == 2
        assert await aggregator.flush(NOW) == 0

        stored = await backend.get_hash(f"rate_limit:stats:hourly:{HOUR}")
        assert stored["total_requests"] == "2"
        assert stored[f"key:{KEY}"] == "2"
        assert (await aggregator.snapshot("daily", DAY)).blocked_requests == 1

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_deltas(self) -> None:
        backend = FlakyBackend()
        aggregator = StatisticsAggregator(backend)
        record(aggregator, Outcome.ALLOWED)
        backend.failures = 1

        with pytest.raises(BackendError):
            await aggregator.flush(NOW)
        record(aggregator, Outcome.BLOCKED)
        await aggregator.flush(NOW)

        stored = await backend.get_hash(f"rate_limit:stats:daily:{DAY}")
        assert stored["total_requests"] == "2"

    @pytest.mark.asyncio
    async def test_partial_flush_does_not_double_count(self) -> None:
        backend = FlakyBackend()
        aggregator = StatisticsAggregator(backend)
        record(aggregator, Outcome.ERROR)
        # Hourly hash goes through, daily hash fails
        backend.healthy_writes = 1
        backend.failures = 1

        with pytest.raises(BackendError):
            await aggregator.flush(NOW)
        assert (await aggregator.snapshot("hourly", HOUR)).total_requests == 1
        assert (await aggregator.snapshot("daily", DAY)).total_requests == 1

        assert await aggregator.flush(NOW) == 1

        hourly = await aggregator.snapshot("hourly", HOUR)
        daily = await aggregator.snapshot("daily", DAY)
        assert hourly.total_requests == 1
        assert hourly.error_requests == 1
        assert daily.total_requests == 1
        assert (await backend.get_hash(f"rate_limit:stats:hourly:{HOUR}"))["total_requests"] == "1"

    @pytest.mark.asyncio
    async def test_partial_blocked_alert_flush_keeps_alert_deltas(self) -> None:
        backend = FlakyBackend()
        aggregator = StatisticsAggregator(backend)
        record(aggregator, Outcome.BLOCKED)
        # Both statistics buckets land, the blocked alert hash fails
        backend.healthy_writes = 2
        backend.failures = 1

        with pytest.raises(BackendError):
            await aggregator.flush(NOW)
        await aggregator.flush(NOW)

        assert await aggregator.alerts("blocked", HOUR) == {KEY: 1}
        assert (await aggregator.snapshot("daily", DAY)).blocked_requests == 1

    @pytest.mark.asyncio
    async def test_prune_drops_expired_buckets(self, aggregator: StatisticsAggregator, backend: InMemoryBackend) -> None:
        for key in (
            "rate_limit:stats:hourly:2023-11-01-10",
            "rate_limit:stats:hourly:2023-11-14-10",
            "rate_limit:stats:daily:2023-09-01",
            "rate_limit:stats:daily:2023-11-01",
        ):
            await backend.increment_hash(key, {"total_requests": 1}, ttl=3600)

        assert await aggregator.prune(NOW) == 2
        assert sorted(backend.keys()) == [
            "rate_limit:stats:daily:2023-11-01",
            "rate_limit:stats:hourly:2023-11-14-10",
        ]


# =============================================================================
# Alerts
# =============================================================================


class TestAlerts:
    @pytest.mark.asyncio
    async def test_blocked_and_low_quota(self, aggregator: StatisticsAggregator) -> None:
        record(aggregator, Outcome.BLOCKED, remaining=0)
        record(aggregator, Outcome.ALLOWED, key="quiet", remaining=9)
        record(aggregator, Outcome.ALLOWED, key="busy", remaining=1)
        await aggregator.flush(NOW)

        assert await aggregator.alerts("blocked", HOUR) == {KEY: 1}
        assert await aggregator.alerts("low_quota", HOUR) == ["busy"]

    @pytest.mark.asyncio
    async def test_high_frequency_fires_once_on_crossing(self, aggregator: StatisticsAggregator) -> None:
        for _ in range(3):
            record(aggregator, Outcome.BLOCKED)
        await aggregator.flush(NOW)
        assert await aggregator.alerts("high_frequency") == []

        record(aggregator, Outcome.BLOCKED)
        await aggregator.flush(NOW)
        record(aggregator, Outcome.BLOCKED)
        await aggregator.flush(NOW)

        alerts = await aggregator.alerts("high_frequency")
        assert alerts == [{"key": KEY, "hour": HOUR, "blocked": 4, "timestamp": NOW}]

    @pytest.mark.asyncio
    async def test_hotspot_alerts_and_addresses(self, aggregator: StatisticsAggregator) -> None:
        record(aggregator, Outcome.BLOCKED, hotspot=True)
        record(aggregator, Outcome.BLOCKED, hotspot=True)
        await aggregator.flush(NOW)

        assert await aggregator.alerts("hotspot", HOUR) == {KEY: 2}
        assert await aggregator.hotspot_addresses(DAY) == [("10.0.0.1", 2)]
        assert (await aggregator.snapshot("hourly", HOUR)).hotspot_requests == 2

    @pytest.mark.asyncio
    async def test_unknown_category(self, aggregator: StatisticsAggregator) -> None:
        with pytest.raises(ConfigurationError):
            await aggregator.alerts("weird", HOUR)


# =============================================================================
# Background Worker
# =============================================================================


class TestWorker:
    @pytest.mark.asyncio
    async def test_submitted_records_survive_shutdown(self, backend: InMemoryBackend) -> None:
        aggregator = StatisticsAggregator(backend, flush_interval=60)
        aggregator.start()

        for _ in range(3):
            aggregator.submit(POLICY, KEY, decision(), Outcome.ALLOWED, NOW)
        await aggregator.shutdown()

        stored = await backend.get_hash(f"rate_limit:stats:hourly:{HOUR}")
        assert stored["total_requests"] == "3"

    @pytest.mark.asyncio
    async def test_full_queue_drops_records(self, backend: InMemoryBackend) -> None:
        aggregator = StatisticsAggregator(backend, flush_interval=60, queue_size=1)
        aggregator.start()

        for _ in range(3):
            aggregator.submit(POLICY, KEY, decision(), Outcome.ALLOWED, NOW)
        await aggregator.shutdown()

        assert (await aggregator.snapshot("hourly", HOUR)).total_requests == 1

    @pytest.mark.asyncio
    async def test_submit_without_worker_records_inline(self, aggregator: StatisticsAggregator) -> None:
        aggregator.submit(POLICY, KEY, decision(), Outcome.ALLOWED, NOW)

        assert (await aggregator.snapshot("hourly", HOUR)).total_requests == 1
