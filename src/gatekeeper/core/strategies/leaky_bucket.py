import math

from gatekeeper.core.storage.base import AtomicScript, ScriptCommands
from gatekeeper.core.strategies.base import INVALID_REPLY, Decision, LimitParams, RateLimitStrategy
from gatekeeper.core.strategies.token_bucket import MIN_BUCKET_TTL_MS

# The bucket drains continuously at `rate` units per second. A request adds
# `weight` units and is admitted only if the bucket does not overflow.
#
# KEYS[1]: limiter key (state lives in the hash KEYS[1]:lb)
# ARGV: capacity, leak_rate_per_second, now_ms, weight
# Reply: [allowed, volume_rounded_up, next_event_ms, wait_ms]
_LUA_SCRIPT = """
local bucket = KEYS[1] .. ":lb"
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local weight = tonumber(ARGV[4]) or 1

if not now or now <= 0 or not capacity or capacity <= 0 or not rate or rate <= 0 or weight <= 0 then
    redis.log(redis.LOG_WARNING, "leaky_bucket: invalid parameters for " .. bucket)
    return {0, 0, 0, 0}
end

local data = redis.call("HMGET", bucket, "volume", "last_leak")
local volume = tonumber(data[1]) or 0
local last_leak = tonumber(data[2]) or now

-- Leak what drained since the last visit
local elapsed = math.max(0, now - last_leak)
volume = math.max(0, volume - elapsed * rate / 1000)

local allowed = 0
local wait = 0
local next_event
if volume + weight <= capacity then
    allowed = 1
    volume = volume + weight
    next_event = now + math.ceil(volume * 1000 / rate)
else
    wait = math.ceil((volume + weight - capacity) * 1000 / rate)
    next_event = now + wait
end

redis.call("HSET", bucket, "volume", tostring(volume), "last_leak", string.format("%d", now))
redis.call("PEXPIRE", bucket, math.max(3600000, math.ceil(capacity * 2000 / rate)))

return {allowed, math.ceil(volume), next_event, wait}
"""


def _apply(r: ScriptCommands, keys: list[str], args: list) -> list[int]:
    bucket = f"{keys[0]}:lb"
    capacity, rate = float(args[0]), float(args[1])
    now, weight = int(args[2]), int(args[3])
    if now <= 0 or capacity <= 0 or rate <= 0 or weight <= 0:
        return list(INVALID_REPLY)

    raw_volume, raw_last_leak = r.hmget(bucket, "volume", "last_leak")
    volume = float(raw_volume) if raw_volume is not None else 0.0
    last_leak = int(raw_last_leak) if raw_last_leak is not None else now

    elapsed = max(0, now - last_leak)
    volume = max(0.0, volume - elapsed * rate / 1000)

    allowed = 0
    wait = 0
    if volume + weight <= capacity:
        allowed = 1
        volume += weight
        next_event = now + math.ceil(volume * 1000 / rate)
    else:
        wait = math.ceil((volume + weight - capacity) * 1000 / rate)
        next_event = now + wait

    r.hset(bucket, {"volume": repr(volume), "last_leak": now})
    r.pexpire(bucket, max(MIN_BUCKET_TTL_MS, math.ceil(capacity * 2000 / rate)))

    return [allowed, math.ceil(volume), next_event, wait]


class LeakyBucketStrategy(RateLimitStrategy):
    """
    Leaky bucket: smooths traffic to a constant outflow.

    Denied requests do not add to the bucket. The decision carries `wait_ms`,
    the time until the same request would fit, which only shrinks as the
    bucket drains.
    """

    name = "leaky_bucket"
    script = AtomicScript(name="leaky_bucket", lua=_LUA_SCRIPT, local=_apply)

    def _valid(self, params: LimitParams, now_ms: int, weight: int) -> bool:
        return now_ms > 0 and params.capacity > 0 and params.rate > 0 and weight > 0

    def script_args(self, params: LimitParams, now_ms: int, weight: int) -> list:
        return [params.capacity, params.rate, now_ms, weight]

    def to_decision(self, key: str, params: LimitParams, reply: list[int]) -> Decision:
        allowed, volume, next_event, wait = reply[:4]
        capacity = int(params.capacity)
        return Decision(
            allowed=bool(allowed),
            limit=capacity,
            remaining=max(0, capacity - int(volume)),
            reset_at=int(next_event),
            current_value=int(volume),
            wait_ms=int(wait),
            key=key,
            algorithm=self.name,
        )
