"""
Decision statistics and monitoring alerts.

Every decision increments in-process counters for its hourly and daily
bucket. A background task flushes them to the shared store periodically so
the admission hot path never waits on statistics writes.

Store layout ({p} is the key prefix):

    {p}:stats:hourly:{YYYY-MM-DD-HH}      hash, kept 7 days
    {p}:stats:daily:{YYYY-MM-DD}          hash, kept 30 days
    {p}:alert:blocked:{YYYY-MM-DD-HH}     hash key -> blocked count, 24 h
    {p}:alert:hotspot:{YYYY-MM-DD-HH}     hash key -> hotspot count, 24 h
    {p}:alert:low_quota:{YYYY-MM-DD-HH}   set of keys under 20% quota, 24 h
    {p}:alert:high_frequency              list of JSON records, newest first
    {p}:stats:hotspot_ip:{YYYY-MM-DD}     ranking of caller addresses

Hash fields: total_requests, allowed_requests, blocked_requests,
hotspot_requests, error_requests, strategy:<name>, key:<limiter key>.
"""

import asyncio
import json
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any

import structlog

from gatekeeper.core.exceptions import BackendError, ConfigurationError
from gatekeeper.core.policy import RateLimitPolicy
from gatekeeper.core.storage.base import StorageBackend
from gatekeeper.core.strategies.base import Decision, now_millis

logger = structlog.get_logger()

HOURLY_FORMAT = "%Y-%m-%d-%H"
DAILY_FORMAT = "%Y-%m-%d"

ALERT_TTL = 24 * 3600
HIGH_FREQUENCY_MAX = 1000
LOW_QUOTA_RATIO = 0.2
ANOMALY_BLOCK_RATE = 50.0


class Outcome(StrEnum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    ERROR = "error"


class BucketType(StrEnum):
    HOURLY = "hourly"
    DAILY = "daily"


class AlertCategory(StrEnum):
    BLOCKED = "blocked"
    HOTSPOT = "hotspot"
    LOW_QUOTA = "low_quota"
    HIGH_FREQUENCY = "high_frequency"


def time_key(bucket_type: BucketType, now_ms: int) -> str:
    moment = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
    return moment.strftime(HOURLY_FORMAT if bucket_type == BucketType.HOURLY else DAILY_FORMAT)


@dataclass
class StatisticsBucket:
    """
    Counters for one hour or one day.

    allowed + blocked + error == total for every bucket; hotspot requests are
    a subset of blocked ones.
    """

    bucket_type: BucketType
    time_key: str
    total_requests: int = 0
    allowed_requests: int = 0
    blocked_requests: int = 0
    hotspot_requests: int = 0
    error_requests: int = 0
    strategy_counts: dict[str, int] = field(default_factory=dict)
    key_counts: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_fields(cls, bucket_type: BucketType, key: str, fields: dict[str, Any]) -> "StatisticsBucket":
        bucket = cls(bucket_type=BucketType(bucket_type), time_key=key)
        for name, raw in fields.items():
            value = int(raw)
            if name.startswith("strategy:"):
                bucket.strategy_counts[name.removeprefix("strategy:")] = value
            elif name.startswith("key:"):
                bucket.key_counts[name.removeprefix("key:")] = value
            elif name in _COUNTER_FIELDS:
                setattr(bucket, name, value)
        return bucket

    @property
    def block_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.blocked_requests / self.total_requests * 100

    @property
    def pass_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.allowed_requests / self.total_requests * 100

    @property
    def hotspot_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.hotspot_requests / self.total_requests * 100

    @property
    def most_active_strategy(self) -> str | None:
        return _most_active(self.strategy_counts)

    @property
    def most_active_key(self) -> str | None:
        return _most_active(self.key_counts)

    @property
    def has_anomalies(self) -> bool:
        return self.block_rate > ANOMALY_BLOCK_RATE

    def summary(self) -> dict[str, Any]:
        return {
            "bucket_type": self.bucket_type.value,
            "time_key": self.time_key,
            "total_requests": self.total_requests,
            "allowed_requests": self.allowed_requests,
            "blocked_requests": self.blocked_requests,
            "hotspot_requests": self.hotspot_requests,
            "error_requests": self.error_requests,
            "block_rate": round(self.block_rate, 2),
            "pass_rate": round(self.pass_rate, 2),
            "hotspot_rate": round(self.hotspot_rate, 2),
            "most_active_strategy": self.most_active_strategy,
            "most_active_key": self.most_active_key,
            "has_anomalies": self.has_anomalies,
        }


_COUNTER_FIELDS = {
    "total_requests",
    "allowed_requests",
    "blocked_requests",
    "hotspot_requests",
    "error_requests",
}


def _most_active(counts: dict[str, int]) -> str | None:
    if not counts:
        return None
    # Ties resolve to the lexicographically smallest name
    return min(counts, key=lambda name: (-counts[name], name))


@dataclass
class _Pending:
    """Deltas accumulated since the last flush."""

    buckets: dict[tuple[BucketType, str], Counter] = field(default_factory=lambda: defaultdict(Counter))
    blocked: dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    hotspot: dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    low_quota: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))
    hotspot_ips: dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))

    def __bool__(self) -> bool:
        return any((self.buckets, self.blocked, self.hotspot, self.low_quota, self.hotspot_ips))

    def merge(self, other: "_Pending") -> None:
        for target, source in (
            (self.buckets, other.buckets),
            (self.blocked, other.blocked),
            (self.hotspot, other.hotspot),
            (self.hotspot_ips, other.hotspot_ips),
        ):
            for name, counts in source.items():
                target[name].update(counts)
        for name, members in other.low_quota.items():
            self.low_quota[name] |= members


class StatisticsAggregator:
    """
    Time-bucketed decision counters with periodic persistence.

    Example:
        aggregator = StatisticsAggregator(backend)
        aggregator.start()
        aggregator.record(policy, key, decision, Outcome.ALLOWED)

        # On application shutdown:
        await aggregator.shutdown()
    """

    def __init__(
        self,
        backend: StorageBackend,
        prefix: str = "rate_limit",
        flush_interval: float = 10.0,
        queue_size: int = 10_000,
        hourly_retention_days: int = 7,
        daily_retention_days: int = 30,
        high_frequency_threshold: int = 100,
    ):
        self.backend = backend
        self.prefix = prefix
        self.flush_interval = flush_interval
        self.hourly_retention_days = hourly_retention_days
        self.daily_retention_days = daily_retention_days
        self.high_frequency_threshold = high_frequency_threshold

        self._pending = _Pending()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._flush_lock = asyncio.Lock()

        self._worker_task: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()
        self._started = False

    # =========================================================================
    # Recording
    # =========================================================================

    def record(
        self,
        policy: RateLimitPolicy,
        key: str,
        decision: Decision | None,
        outcome: Outcome,
        now_ms: int | None = None,
        client_ip: str | None = None,
    ) -> None:
        """Count one decision. Never touches the store."""
        now_ms = now_ms if now_ms is not None else now_millis()
        outcome = Outcome(outcome)
        hour = time_key(BucketType.HOURLY, now_ms)
        day = time_key(BucketType.DAILY, now_ms)
        hotspot = decision is not None and decision.is_hotspot

        for bucket_type, bucket_key in ((BucketType.HOURLY, hour), (BucketType.DAILY, day)):
            counts = self._pending.buckets[(bucket_type, bucket_key)]
            counts["total_requests"] += 1
            counts[f"{outcome.value}_requests"] += 1
            if hotspot:
                counts["hotspot_requests"] += 1
            counts[f"strategy:{policy.algorithm.value}"] += 1
            counts[f"key:{key}"] += 1

        if outcome == Outcome.BLOCKED:
            self._pending.blocked[hour][key] += 1
        if hotspot:
            self._pending.hotspot[hour][key] += 1
            if client_ip:
                self._pending.hotspot_ips[day][client_ip] += 1
        if (
            outcome == Outcome.ALLOWED
            and decision is not None
            and decision.limit > 0
            and decision.remaining < decision.limit * LOW_QUOTA_RATIO
        ):
            self._pending.low_quota[hour].add(key)

    def submit(
        self,
        policy: RateLimitPolicy,
        key: str,
        decision: Decision | None,
        outcome: Outcome,
        now_ms: int | None = None,
        client_ip: str | None = None,
    ) -> None:
        """
        Hand a decision to the background worker.

        Falls back to recording inline when the worker is not running. Drops
        the record when the queue is full.
        """
        if not self._started:
            self.record(policy, key, decision, outcome, now_ms, client_ip)
            return
        try:
            self._queue.put_nowait((policy, key, decision, outcome, now_ms or now_millis(), client_ip))
        except asyncio.QueueFull:
            logger.debug("statistics_dropped", key=key, outcome=str(outcome))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the queue worker and the periodic flush task."""
        if not self._started:
            self._shutdown_event.clear()
            self._worker_task = asyncio.create_task(self._worker())
            self._flush_task = asyncio.create_task(self._flush_loop())
            self._started = True
            logger.debug("statistics_aggregator_started", flush_interval=self.flush_interval)

    async def shutdown(self) -> None:
        """Stop background tasks, drain the queue and flush what is left."""
        self._shutdown_event.set()
        for task in (self._worker_task, self._flush_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._worker_task = None
        self._flush_task = None
        self._started = False

        while not self._queue.empty():
            self.record(*self._queue.get_nowait())

        try:
            await self.flush()
        except BackendError as exc:
            logger.warning("statistics_final_flush_failed", error=str(exc))
        logger.debug("statistics_aggregator_stopped")

    async def _worker(self) -> None:
        while True:
            item = await self._queue.get()
            self.record(*item)
            self._queue.task_done()

    async def _flush_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass

            if not self._shutdown_event.is_set():
                try:
                    await self.flush()
                    await self.prune()
                except BackendError as exc:
                    logger.warning("statistics_flush_failed", error=str(exc))

    # =========================================================================
    # Persistence
    # =========================================================================

    def _bucket_key(self, bucket_type: BucketType, key: str) -> str:
        return f"{self.prefix}:stats:{bucket_type.value}:{key}"

    def _alert_key(self, category: AlertCategory, key: str | None = None) -> str:
        if key is None:
            return f"{self.prefix}:alert:{category.value}"
        return f"{self.prefix}:alert:{category.value}:{key}"

    def _retention_seconds(self, bucket_type: BucketType) -> int:
        days = self.hourly_retention_days if bucket_type == BucketType.HOURLY else self.daily_retention_days
        return days * 24 * 3600

    async def flush(self, now_ms: int | None = None) -> int:
        """
        Persist pending deltas.

        Every entry leaves `pending` as soon as its own write succeeds, so a
        failure part way through keeps only what was not yet written.

        Returns:
            Number of statistics buckets written.

        Raises:
            BackendError: The store failed; unwritten deltas are kept for the next flush.
        """
        async with self._flush_lock:
            pending, self._pending = self._pending, _Pending()
            if not pending:
                return 0
            buckets = len(pending.buckets)
            try:
                await self._persist(pending, now_ms if now_ms is not None else now_millis())
            except BackendError:
                pending.merge(self._pending)
                self._pending = pending
                raise
            logger.debug("statistics_flushed", buckets=buckets)
            return buckets

    async def _persist(self, pending: _Pending, now_ms: int) -> None:
        for bucket_type, key in list(pending.buckets):
            await self.backend.increment_hash(
                self._bucket_key(bucket_type, key),
                dict(pending.buckets[(bucket_type, key)]),
                self._retention_seconds(bucket_type),
            )
            del pending.buckets[(bucket_type, key)]

        for hour in list(pending.blocked):
            counts = pending.blocked.pop(hour)
            try:
                totals = await self.backend.increment_hash(
                    self._alert_key(AlertCategory.BLOCKED, hour), dict(counts), ALERT_TTL
                )
            except BackendError:
                pending.blocked[hour] = counts
                raise
            frequent: list[str] = []
            for limiter_key, total in totals.items():
                before = total - counts[limiter_key]
                if before <= self.high_frequency_threshold < total:
                    logger.warning("high_frequency_blocking", key=limiter_key, hour=hour, blocked=total)
                    frequent.append(
                        json.dumps({"key": limiter_key, "hour": hour, "blocked": total, "timestamp": now_ms})
                    )
            if frequent:
                await self.backend.push_list(
                    self._alert_key(AlertCategory.HIGH_FREQUENCY), frequent, HIGH_FREQUENCY_MAX, ALERT_TTL
                )

        for hour in list(pending.hotspot):
            await self.backend.increment_hash(
                self._alert_key(AlertCategory.HOTSPOT, hour), dict(pending.hotspot[hour]), ALERT_TTL
            )
            del pending.hotspot[hour]
        for hour in list(pending.low_quota):
            await self.backend.add_to_set(
                self._alert_key(AlertCategory.LOW_QUOTA, hour), pending.low_quota[hour], ALERT_TTL
            )
            del pending.low_quota[hour]
        for day in list(pending.hotspot_ips):
            await self.backend.increment_ranking(
                f"{self.prefix}:stats:hotspot_ip:{day}",
                {ip: float(n) for ip, n in pending.hotspot_ips[day].items()},
                self._retention_seconds(BucketType.HOURLY),
            )
            del pending.hotspot_ips[day]

    async def prune(self, now_ms: int | None = None) -> int:
        """Delete persisted buckets older than their retention horizon."""
        now = datetime.fromtimestamp((now_ms if now_ms is not None else now_millis()) / 1000, tz=timezone.utc)
        expired: list[str] = []
        for bucket_type, fmt in ((BucketType.HOURLY, HOURLY_FORMAT), (BucketType.DAILY, DAILY_FORMAT)):
            horizon = now - timedelta(seconds=self._retention_seconds(bucket_type))
            prefix = self._bucket_key(bucket_type, "")
            for stored in await self.backend.scan(f"{prefix}*"):
                try:
                    moment = datetime.strptime(stored.removeprefix(prefix), fmt).replace(tzinfo=timezone.utc)
                except ValueError:
                    continue
                if moment < horizon:
                    expired.append(stored)
        if expired:
            await self.backend.delete(*expired)
            logger.info("statistics_pruned", buckets=len(expired))
        return len(expired)

    # =========================================================================
    # Reads
    # =========================================================================

    async def snapshot(self, bucket_type: BucketType | str, key: str) -> StatisticsBucket:
        """Persisted counts plus anything not yet flushed."""
        try:
            bucket_type = BucketType(bucket_type)
        except ValueError as exc:
            raise ConfigurationError(f"unknown bucket type {bucket_type!r}") from exc
        merged = Counter({name: int(value) for name, value in (await self.backend.get_hash(self._bucket_key(bucket_type, key))).items()})
        merged.update(self._pending.buckets.get((bucket_type, key), Counter()))
        return StatisticsBucket.from_fields(bucket_type, key, dict(merged))

    async def current(self, bucket_type: BucketType | str = BucketType.HOURLY, now_ms: int | None = None) -> StatisticsBucket:
        bucket_type = BucketType(bucket_type)
        return await self.snapshot(bucket_type, time_key(bucket_type, now_ms if now_ms is not None else now_millis()))

    async def alerts(self, category: AlertCategory | str, key: str | None = None) -> Any:
        """
        Read one alert category.

        blocked / hotspot: {limiter key: count} for the hour `key`.
        low_quota: sorted limiter keys for the hour `key`.
        high_frequency: decoded records, newest first (`key` is ignored).
        """
        try:
            category = AlertCategory(category)
        except ValueError as exc:
            raise ConfigurationError(f"unknown alert category {category!r}") from exc

        if category == AlertCategory.HIGH_FREQUENCY:
            return [json.loads(item) for item in await self.backend.get_list(self._alert_key(category))]
        if key is None:
            key = time_key(BucketType.HOURLY, now_millis())
        if category == AlertCategory.LOW_QUOTA:
            return sorted(await self.backend.get_set(self._alert_key(category, key)))
        data = await self.backend.get_hash(self._alert_key(category, key))
        return {name: int(value) for name, value in data.items()}

    async def hotspot_addresses(self, date: str, n: int = 10) -> list[tuple[str, int]]:
        rows = await self.backend.top_ranking(f"{self.prefix}:stats:hotspot_ip:{date}", n)
        return [(address, int(score)) for address, score in rows]
