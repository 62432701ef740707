"""
Declarative rate limit policy.

A policy is pure data attached to an operation. It names the algorithm, the
dimension the quota is partitioned by and the numeric limits. Anything left
at its zero/None value falls back to the per-algorithm defaults below.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable

from gatekeeper.config import Settings, StrategyType
from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.core.strategies.base import LimitParams

Algorithm = StrategyType

DEFAULT_MESSAGE = "Too many requests, please try again later"
DEFAULT_ERROR_CODE = 429

# algorithm -> (default limit, default period in seconds)
ALGORITHM_DEFAULTS: dict[StrategyType, tuple[int, float]] = {
    StrategyType.SLIDING_WINDOW: (100, 60.0),
    StrategyType.FIXED_WINDOW: (100, 60.0),
    StrategyType.TOKEN_BUCKET: (10, 1.0),
    StrategyType.LEAKY_BUCKET: (5, 1.0),
    StrategyType.COUNTER: (1000, 60.0),
}


class TimeUnit(StrEnum):
    MILLISECONDS = "milliseconds"
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    def to_millis(self, amount: float) -> int:
        return int(amount * _UNIT_MILLIS[self])


_UNIT_MILLIS = {
    TimeUnit.MILLISECONDS: 1,
    TimeUnit.SECONDS: 1_000,
    TimeUnit.MINUTES: 60_000,
    TimeUnit.HOURS: 3_600_000,
    TimeUnit.DAYS: 86_400_000,
}


class Dimension(StrEnum):
    """
    What a quota is partitioned by.

    GLOBAL: One shared quota for the operation.
    IP: Per caller address.
    USER: Per authenticated principal ("anonymous" when absent).
    API: Per request path / operation.
    PARAMETER: Per value of the first argument (hotspot detection applies).
    DEVICE: Per device identifier.
    APP: Per client application identifier.
    CUSTOM: The key template alone decides.
    COMPOSITE: Combination of the dimensions listed in `composite_of`.
    """

    GLOBAL = "global"
    IP = "ip"
    USER = "user"
    API = "api"
    PARAMETER = "parameter"
    DEVICE = "device"
    APP = "app"
    CUSTOM = "custom"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Immutable rate limit declaration for one operation.

    Example:
        >>> RateLimitPolicy(key="login", limit=8, period=30,
        ...                 algorithm="fixed_window", dimension="ip")

    Raises:
        ConfigurationError: On non-positive limits or malformed fields.
    """

    key: str = ""
    limit: int | None = None
    period: float | None = None
    time_unit: TimeUnit = TimeUnit.SECONDS
    algorithm: StrategyType = StrategyType.SLIDING_WINDOW
    dimension: Dimension = Dimension.GLOBAL
    composite_of: tuple[Dimension, ...] = (Dimension.IP, Dimension.USER)

    # Algorithm-specific overrides, 0 means "use the default"
    bucket_capacity: int = 0
    refill_rate: float = 0.0
    leaky_bucket_capacity: int = 0
    leak_rate: float = 0.0
    window_slices: int = 0
    warmup_period: float = 0.0

    hotspot_threshold: int = 0
    hotspot_period: float = 0.0

    enabled: bool = True
    record_async: bool = True
    condition: str | Callable[[dict[str, Any]], bool] | None = None
    fallback: str | None = None
    ignore_on_limit: bool = False
    enable_log: bool = True
    message: str = DEFAULT_MESSAGE
    error_code: int = DEFAULT_ERROR_CODE
    key_generator: str | None = None
    order: int = 0
    group: str = "default"
    properties: tuple[str, ...] = field(default_factory=tuple)
    name: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "algorithm", StrategyType(self.algorithm))
            object.__setattr__(self, "dimension", Dimension(self.dimension))
            object.__setattr__(self, "time_unit", TimeUnit(self.time_unit))
            object.__setattr__(
                self, "composite_of", tuple(Dimension(d) for d in self.composite_of)
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        if self.limit is not None and self.limit <= 0:
            raise ConfigurationError(f"limit must be positive, got {self.limit}")
        if self.period is not None and self.period <= 0:
            raise ConfigurationError(f"period must be positive, got {self.period}")

        for attr in (
            "bucket_capacity",
            "refill_rate",
            "leaky_bucket_capacity",
            "leak_rate",
            "window_slices",
            "warmup_period",
            "hotspot_threshold",
            "hotspot_period",
        ):
            if getattr(self, attr) < 0:
                raise ConfigurationError(f"{attr} must not be negative")

        if self.effective_period_ms <= 0:
            raise ConfigurationError(f"period {self.period} {self.time_unit.value} is shorter than 1 ms")
        if self.hotspot_period and self.time_unit.to_millis(self.hotspot_period) <= 0:
            raise ConfigurationError(
                f"hotspot_period {self.hotspot_period} {self.time_unit.value} is shorter than 1 ms"
            )

        if Dimension.COMPOSITE in self.composite_of:
            raise ConfigurationError("composite_of cannot contain 'composite'")
        if self.dimension == Dimension.COMPOSITE and not self.composite_of:
            raise ConfigurationError("composite dimension needs at least one part")

        for entry in self.properties:
            if "=" not in entry:
                raise ConfigurationError(f"property {entry!r} is not of the form name=value")

        if self.condition is not None and not (isinstance(self.condition, str) or callable(self.condition)):
            raise ConfigurationError("condition must be an expression string or a callable")

    @property
    def effective_limit(self) -> int:
        if self.limit is not None:
            return self.limit
        return ALGORITHM_DEFAULTS[self.algorithm][0]

    @property
    def effective_period_ms(self) -> int:
        if self.period is not None:
            return self.time_unit.to_millis(self.period)
        return int(ALGORITHM_DEFAULTS[self.algorithm][1] * 1000)

    @property
    def label(self) -> str:
        return self.name or self.key or self.algorithm.value

    def resolve_params(self, settings: Settings | None = None) -> LimitParams:
        """
        Map the declaration to concrete numbers for the algorithm engine.

        Bucket capacity defaults to the limit and the rate to
        limit / period, so a bare `limit=10, period=1` token bucket holds 10
        tokens and refills 10 per second.
        """
        limit = self.effective_limit
        period_ms = self.effective_period_ms
        default_rate = limit * 1000 / period_ms

        capacity: float = limit
        rate = default_rate
        if self.algorithm == StrategyType.TOKEN_BUCKET:
            capacity = self.bucket_capacity or limit
            rate = self.refill_rate or default_rate
        elif self.algorithm == StrategyType.LEAKY_BUCKET:
            capacity = self.leaky_bucket_capacity or limit
            rate = self.leak_rate or default_rate

        default_slices = settings.rate_limit_window_slices if settings is not None else 60
        return LimitParams(
            limit=limit,
            period_ms=period_ms,
            capacity=capacity,
            rate=rate,
            slices=self.window_slices or default_slices,
            warmup_ms=self.time_unit.to_millis(self.warmup_period) if self.warmup_period else 0,
        )

    def hotspot_params(self) -> tuple[int, int]:
        """(threshold, period_ms) for per-value hotspot detection."""
        threshold = self.hotspot_threshold or max(1, self.effective_limit // 5)
        if self.hotspot_period:
            period_ms = self.time_unit.to_millis(self.hotspot_period)
        else:
            period_ms = self.effective_period_ms
        return threshold, period_ms

    @property
    def property_map(self) -> dict[str, str]:
        return dict(entry.split("=", 1) for entry in self.properties)

    def property(self, name: str, default: str | None = None) -> str | None:
        return self.property_map.get(name, default)
