import math

from gatekeeper.core.storage.base import AtomicScript, ScriptCommands
from gatekeeper.core.strategies.base import INVALID_REPLY, Decision, LimitParams, RateLimitStrategy

# Lower bound of the warmup ramp, as a fraction of the configured rate.
WARMUP_FLOOR = 0.1

# Buckets idle for less than an hour keep their state.
MIN_BUCKET_TTL_MS = 3_600_000

# Lazy refill: tokens are topped up only when the key is accessed.
#
# KEYS[1]: limiter key (state lives in the hash KEYS[1]:tb)
# ARGV: capacity, rate_per_second, now_ms, weight, warmup_ms
# Reply: [allowed, whole_tokens_left, reset_ms, tokens_in_use]
_LUA_SCRIPT = """
local bucket = KEYS[1] .. ":tb"
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local weight = tonumber(ARGV[4]) or 1
local warmup = tonumber(ARGV[5]) or 0

if not now or now <= 0 or not capacity or capacity <= 0 or not rate or rate <= 0
        or weight <= 0 or warmup < 0 then
    redis.log(redis.LOG_WARNING, "token_bucket: invalid parameters for " .. bucket)
    return {0, 0, 0, 0}
end

-- Fetch current state
local data = redis.call("HMGET", bucket, "tokens", "last_refill", "created")
local tokens = tonumber(data[1])
local last_refill = tonumber(data[2])
local created = tonumber(data[3])

-- New buckets start full
if tokens == nil then
    tokens = capacity
    last_refill = now
end
created = created or now

-- Warmup ramps the refill rate linearly up to the configured rate
local effective_rate = rate
if warmup > 0 and now - created < warmup then
    effective_rate = rate * (0.1 + 0.9 * (now - created) / warmup)
end

local elapsed = math.max(0, now - (last_refill or now))
tokens = math.min(capacity, tokens + elapsed * effective_rate / 1000)

local allowed = 0
local reset_at
if tokens >= weight then
    allowed = 1
    tokens = tokens - weight
    reset_at = now + math.ceil((capacity - tokens) * 1000 / effective_rate)
else
    reset_at = now + math.ceil((weight - tokens) * 1000 / effective_rate)
end

redis.call("HSET", bucket,
    "tokens", tostring(tokens),
    "last_refill", string.format("%d", now),
    "created", string.format("%d", created))
redis.call("PEXPIRE", bucket, math.max(3600000, math.ceil(capacity * 2000 / rate)))

return {allowed, math.floor(tokens), reset_at, math.ceil(capacity - tokens)}
"""


def _apply(r: ScriptCommands, keys: list[str], args: list) -> list[int]:
    bucket = f"{keys[0]}:tb"
    capacity, rate = float(args[0]), float(args[1])
    now, weight, warmup = int(args[2]), int(args[3]), int(args[4])
    if now <= 0 or capacity <= 0 or rate <= 0 or weight <= 0 or warmup < 0:
        return list(INVALID_REPLY)

    raw_tokens, raw_refill, raw_created = r.hmget(bucket, "tokens", "last_refill", "created")
    if raw_tokens is None:
        tokens = capacity
        last_refill = now
    else:
        tokens = float(raw_tokens)
        last_refill = int(raw_refill) if raw_refill is not None else now
    created = int(raw_created) if raw_created is not None else now

    effective_rate = rate
    if warmup > 0 and now - created < warmup:
        effective_rate = rate * (WARMUP_FLOOR + (1 - WARMUP_FLOOR) * (now - created) / warmup)

    elapsed = max(0, now - last_refill)
    tokens = min(capacity, tokens + elapsed * effective_rate / 1000)

    allowed = 0
    if tokens >= weight:
        allowed = 1
        tokens -= weight
        reset_at = now + math.ceil((capacity - tokens) * 1000 / effective_rate)
    else:
        reset_at = now + math.ceil((weight - tokens) * 1000 / effective_rate)

    r.hset(bucket, {"tokens": repr(tokens), "last_refill": now, "created": created})
    r.pexpire(bucket, max(MIN_BUCKET_TTL_MS, math.ceil(capacity * 2000 / rate)))

    return [allowed, math.floor(tokens), reset_at, math.ceil(capacity - tokens)]


class TokenBucketStrategy(RateLimitStrategy):
    """
    Lazy Token Bucket implementation using Lua for atomicity.
    Tokens are refilled only when the key is accessed.

    Allows bursts up to `capacity` while enforcing a long-run average of
    `rate` units per second. With a warmup period, a freshly created bucket
    refills slowly at first and reaches full speed after `warmup_ms`.
    """

    name = "token_bucket"
    script = AtomicScript(name="token_bucket", lua=_LUA_SCRIPT, local=_apply)

    def _valid(self, params: LimitParams, now_ms: int, weight: int) -> bool:
        return (
            now_ms > 0
            and params.capacity > 0
            and params.rate > 0
            and weight > 0
            and params.warmup_ms >= 0
        )

    def script_args(self, params: LimitParams, now_ms: int, weight: int) -> list:
        return [params.capacity, params.rate, now_ms, weight, params.warmup_ms]

    def to_decision(self, key: str, params: LimitParams, reply: list[int]) -> Decision:
        allowed, tokens, reset_at, in_use = reply[:4]
        capacity = int(params.capacity)
        return Decision(
            allowed=bool(allowed),
            limit=capacity,
            remaining=max(0, min(capacity, int(tokens))),
            reset_at=int(reset_at),
            current_value=max(0, int(in_use)),
            key=key,
            algorithm=self.name,
        )
