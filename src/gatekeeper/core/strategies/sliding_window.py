from gatekeeper.core.storage.base import AtomicScript, ScriptCommands
from gatekeeper.core.strategies.base import INVALID_REPLY, LimitParams, WindowStrategy

# LUA SCRIPT LOGIC:
# 1. Split the period into N slices of floor(period / N) ms (at least 1 ms).
# 2. Sum every slice counter whose start lies in (now - period, now].
# 3. If sum + weight <= limit: increment the current slice, Allow.
# 4. Else: Deny.
# Each slice is its own key with its own expiry, so stale slices vanish
# without cleanup.
#
# KEYS[1]: limiter key
# ARGV: limit, period_ms, now_ms, weight, slices
# Reply: [allowed, remaining, oldest_slice_exit_ms, count]
_LUA_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local weight = tonumber(ARGV[4]) or 1
local slices = tonumber(ARGV[5]) or 60

if not now or now <= 0 or not limit or limit <= 0 or not period or period <= 0
        or weight <= 0 or slices <= 0 then
    redis.log(redis.LOG_WARNING, "sliding_window: invalid parameters for " .. key)
    return {0, 0, 0, 0}
end

local slice_size = math.max(1, math.floor(period / slices))
local current_slice = math.floor(now / slice_size) * slice_size
local window_start = now - period

-- 1. Sum live slices
local count = 0
local oldest = current_slice
local start = current_slice
while start > window_start do
    local value = tonumber(redis.call("GET", key .. ":sw:" .. string.format("%d", start)))
    if value then
        count = count + value
        oldest = start
    end
    start = start - slice_size
end

-- 2. Admit into the current slice
local allowed = 0
local remaining = 0
if count + weight <= limit then
    local slice_key = key .. ":sw:" .. string.format("%d", current_slice)
    redis.call("INCRBY", slice_key, weight)
    redis.call("PEXPIRE", slice_key, period + slice_size)
    count = count + weight
    allowed = 1
    remaining = limit - count
end

return {allowed, remaining, oldest + period, count}
"""


def _apply(r: ScriptCommands, keys: list[str], args: list) -> list[int]:
    key = keys[0]
    limit, period, now, weight, slices = (int(a) for a in args)
    if now <= 0 or limit <= 0 or period <= 0 or weight <= 0 or slices <= 0:
        return list(INVALID_REPLY)

    slice_size = max(1, period // slices)
    current_slice = (now // slice_size) * slice_size
    window_start = now - period

    count = 0
    oldest = current_slice
    start = current_slice
    while start > window_start:
        value = r.get(f"{key}:sw:{start}")
        if value is not None:
            count += int(value)
            oldest = start
        start -= slice_size

    allowed = 0
    remaining = 0
    if count + weight <= limit:
        slice_key = f"{key}:sw:{current_slice}"
        r.incrby(slice_key, weight)
        r.pexpire(slice_key, period + slice_size)
        count += weight
        allowed = 1
        remaining = limit - count

    return [allowed, remaining, oldest + period, count]


class SlidingWindowStrategy(WindowStrategy):
    """
    Sliding window over N slice counters.

    Cheaper than a request log (N counters per key instead of one entry per
    request) while avoiding the fixed window's double burst at the edge.
    The reset hint is the moment the oldest counted slice leaves the window.
    """

    name = "sliding_window"
    script = AtomicScript(name="sliding_window", lua=_LUA_SCRIPT, local=_apply)

    def _valid(self, params: LimitParams, now_ms: int, weight: int) -> bool:
        return super()._valid(params, now_ms, weight) and params.slices > 0

    def script_args(self, params: LimitParams, now_ms: int, weight: int) -> list:
        return [params.limit, params.period_ms, now_ms, weight, params.slices]
