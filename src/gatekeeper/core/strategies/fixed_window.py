from gatekeeper.core.storage.base import AtomicScript, ScriptCommands
from gatekeeper.core.strategies.base import INVALID_REPLY, WindowStrategy

# KEYS[1]: limiter key
# ARGV: limit, period_ms, now_ms, weight
# Reply: [allowed, remaining, window_reset_ms, count]
_LUA_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local weight = tonumber(ARGV[4]) or 1

if not now or now <= 0 or not limit or limit <= 0 or not period or period <= 0 or weight <= 0 then
    redis.log(redis.LOG_WARNING, "fixed_window: invalid parameters for " .. key)
    return {0, 0, 0, 0}
end

local window_start = math.floor(now / period) * period
local window_key = key .. ":fw:" .. string.format("%d", window_start)

local count = tonumber(redis.call("GET", window_key)) or 0
local allowed = 0
local remaining = 0

if count + weight <= limit then
    count = redis.call("INCRBY", window_key, weight)
    allowed = 1
    remaining = limit - count
end

redis.call("PEXPIRE", window_key, period * 2)

return {allowed, remaining, window_start + period, count}
"""


def _apply(r: ScriptCommands, keys: list[str], args: list) -> list[int]:
    key = keys[0]
    limit, period, now, weight = (int(a) for a in args)
    if now <= 0 or limit <= 0 or period <= 0 or weight <= 0:
        return list(INVALID_REPLY)

    window_start = (now // period) * period
    window_key = f"{key}:fw:{window_start}"

    count = int(r.get(window_key) or 0)
    allowed = 0
    remaining = 0

    if count + weight <= limit:
        count = r.incrby(window_key, weight)
        allowed = 1
        remaining = limit - count

    r.pexpire(window_key, period * 2)

    return [allowed, remaining, window_start + period, count]


class FixedWindowStrategy(WindowStrategy):
    """
    Fixed window aligned to multiples of the period.

    Window identity is floor(now / period) * period, so every process agrees
    on it without coordination. Up to twice the limit may pass across a
    window edge; that is inherent to the algorithm.
    """

    name = "fixed_window"
    script = AtomicScript(name="fixed_window", lua=_LUA_SCRIPT, local=_apply)
