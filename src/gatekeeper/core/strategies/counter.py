from gatekeeper.core.storage.base import AtomicScript, ScriptCommands
from gatekeeper.core.strategies.base import INVALID_REPLY, WindowStrategy

# KEYS[1]: limiter key
# ARGV: limit, period_ms, now_ms, weight
# Reply: [allowed, remaining, reset_at_ms, count]
_LUA_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local weight = tonumber(ARGV[4]) or 1

if not now or now <= 0 or not limit or limit <= 0 or not period or period <= 0 or weight <= 0 then
    redis.log(redis.LOG_WARNING, "counter: invalid parameters for " .. key)
    return {0, 0, 0, 0}
end

local counter_key = key .. ":counter"
local reset_key = key .. ":reset_at"

local count = tonumber(redis.call("GET", counter_key)) or 0
local reset_at = tonumber(redis.call("GET", reset_key)) or 0

-- Start a fresh cycle on first use or once the reset time has passed
if reset_at == 0 or now >= reset_at then
    count = 0
    reset_at = now + period
    redis.call("SET", counter_key, 0)
    redis.call("SET", reset_key, string.format("%d", reset_at))
end

local allowed = 0
local remaining = 0
if count + weight <= limit then
    count = redis.call("INCRBY", counter_key, weight)
    allowed = 1
    remaining = limit - count
end

redis.call("PEXPIRE", counter_key, period * 2)
redis.call("PEXPIRE", reset_key, period * 2)

return {allowed, remaining, reset_at, count}
"""


def _apply(r: ScriptCommands, keys: list[str], args: list) -> list[int]:
    key = keys[0]
    limit, period, now, weight = (int(a) for a in args)
    if now <= 0 or limit <= 0 or period <= 0 or weight <= 0:
        return list(INVALID_REPLY)

    counter_key = f"{key}:counter"
    reset_key = f"{key}:reset_at"

    count = int(r.get(counter_key) or 0)
    reset_at = int(r.get(reset_key) or 0)

    if reset_at == 0 or now >= reset_at:
        count = 0
        reset_at = now + period
        r.set(counter_key, 0)
        r.set(reset_key, reset_at)

    allowed = 0
    remaining = 0
    if count + weight <= limit:
        count = r.incrby(counter_key, weight)
        allowed = 1
        remaining = limit - count

    r.pexpire(counter_key, period * 2)
    r.pexpire(reset_key, period * 2)

    return [allowed, remaining, reset_at, count]


class CounterStrategy(WindowStrategy):
    """
    Plain counter that resets `period` after the first request of a cycle.

    Unlike the fixed window, cycles are anchored to the first observation of
    the key rather than to wall-clock boundaries.
    """

    name = "counter"
    script = AtomicScript(name="counter", lua=_LUA_SCRIPT, local=_apply)
