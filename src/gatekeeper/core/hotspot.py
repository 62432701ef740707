"""
Per-value hotspot detection for the parameter dimension.

A value (song id, product id, ...) is hot when it is requested more than
`threshold` times within one aligned window. Hot values are ranked per day so
operators can see which data attracts the load.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from gatekeeper.core.storage.base import AtomicScript, ScriptCommands, StorageBackend
from gatekeeper.core.strategies.base import INVALID_REPLY, now_millis

logger = structlog.get_logger()

MAX_LEVEL = 3
RANKING_TTL_MS = 7 * 24 * 3600 * 1000

# KEYS[1]: per-value counter for the current window
# KEYS[2]: per-operation daily ranking
# KEYS[3]: global daily ranking
# ARGV: threshold, period_ms, now_ms, operation_member, global_member, ranking_ttl_ms
# Reply: [hot, remaining, window_reset_ms, count]
_LUA_SCRIPT = """
local threshold = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

if not now or now <= 0 or not threshold or threshold <= 0 or not period or period <= 0 then
    return {0, 0, 0, 0}
end

local window_start = math.floor(now / period) * period
local count = redis.call("INCRBY", KEYS[1], 1)
redis.call("PEXPIRE", KEYS[1], period * 2)

local hot = 0
if count > threshold then
    hot = 1
    redis.call("ZINCRBY", KEYS[2], 1, ARGV[4])
    redis.call("PEXPIRE", KEYS[2], ARGV[6])
    redis.call("ZINCRBY", KEYS[3], 1, ARGV[5])
    redis.call("PEXPIRE", KEYS[3], ARGV[6])
end

return {hot, math.max(0, threshold - count), window_start + period, count}
"""


def _apply(r: ScriptCommands, keys: list[str], args: list) -> list[int]:
    threshold, period, now = int(args[0]), int(args[1]), int(args[2])
    if now <= 0 or threshold <= 0 or period <= 0:
        return list(INVALID_REPLY)

    window_start = (now // period) * period
    count = r.incrby(keys[0], 1)
    r.pexpire(keys[0], period * 2)

    hot = 0
    if count > threshold:
        hot = 1
        r.zincrby(keys[1], 1, args[3])
        r.pexpire(keys[1], int(args[5]))
        r.zincrby(keys[2], 1, args[4])
        r.pexpire(keys[2], int(args[5]))

    return [hot, max(0, threshold - count), window_start + period, count]


HOTSPOT_SCRIPT = AtomicScript(name="hotspot", lua=_LUA_SCRIPT, local=_apply)


def day_key(now_ms: int) -> str:
    return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class HotspotVerdict:
    hot: bool
    level: int
    count: int
    remaining: int
    reset_at: int


class HotspotDetector:
    def __init__(self, backend: StorageBackend, prefix: str = "rate_limit"):
        self.backend = backend
        self.prefix = prefix

    def _ranking_key(self, date: str, operation: str | None = None) -> str:
        if operation:
            return f"{self.prefix}:hotspot:rank:{operation}:{date}"
        return f"{self.prefix}:hotspot:rank:{date}"

    async def evaluate(
        self,
        operation: str,
        value: str,
        threshold: int,
        period_ms: int,
        now_ms: int | None = None,
    ) -> HotspotVerdict:
        """
        Count one access to `value` and report whether it is hot.

        Level grows with the overshoot: count // threshold, capped at 3.
        """
        now_ms = now_ms if now_ms is not None else now_millis()
        if threshold <= 0 or period_ms <= 0:
            logger.warning("invalid_hotspot_params", operation=operation, threshold=threshold, period_ms=period_ms)
            return HotspotVerdict(hot=False, level=0, count=0, remaining=0, reset_at=0)

        window_start = (now_ms // period_ms) * period_ms
        date = day_key(now_ms)
        reply = await self.backend.eval_script(
            HOTSPOT_SCRIPT,
            keys=[
                f"{self.prefix}:hotspot:{operation}:{value}:{window_start}",
                self._ranking_key(date, operation),
                self._ranking_key(date),
            ],
            args=[threshold, period_ms, now_ms, value, f"{operation}:{value}", RANKING_TTL_MS],
        )
        hot, remaining, reset_at, count = (int(v) for v in reply[:4])
        level = min(MAX_LEVEL, count // threshold) if hot else 0
        if hot:
            logger.info("hotspot_detected", operation=operation, value=value, count=count, level=level)
        return HotspotVerdict(hot=bool(hot), level=level, count=count, remaining=remaining, reset_at=reset_at)

    async def top(self, date: str, n: int = 10, operation: str | None = None) -> list[tuple[str, int]]:
        """Hottest values of a day, highest first."""
        rows = await self.backend.top_ranking(self._ranking_key(date, operation), n)
        return [(member, int(score)) for member, score in rows]
