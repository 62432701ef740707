"""
Unit tests for InMemoryBackend.

These cover the statistics containers and TTL handling; the script path is
exercised by every strategy test.
"""

import pytest

from gatekeeper.core.storage.base import AtomicScript
from gatekeeper.core.storage.memory import InMemoryBackend


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> InMemoryBackend:
    return InMemoryBackend(clock=clock)


# =============================================================================
# Scripts
# =============================================================================


class TestScripts:
    @pytest.mark.asyncio
    async def test_eval_script_runs_python_twin(self, backend: InMemoryBackend) -> None:
        def bump(r, keys, args):
            value = r.incrby(keys[0], int(args[0]))
            r.pexpire(keys[0], 5_000)
            return [value]

        script = AtomicScript(name="bump", lua="", local=bump)

        assert await backend.eval_script(script, keys=["n"], args=[2]) == [2]
        assert await backend.eval_script(script, keys=["n"], args=[3]) == [5]
        assert backend.ttl("n") == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_incrby_keeps_existing_ttl(self, backend: InMemoryBackend, clock: FakeClock) -> None:
        def bump(r, keys, args):
            if args:
                r.pexpire(keys[0], 10_000)
            return [r.incrby(keys[0], 1)]

        script = AtomicScript(name="bump", lua="", local=bump)
        await backend.eval_script(script, keys=["n"], args=[])
        await backend.eval_script(script, keys=["n"], args=[1])
        clock.now += 4
        await backend.eval_script(script, keys=["n"], args=[])

        assert backend.ttl("n") == pytest.approx(6.0)


# =============================================================================
# Expiry & Key Management
# =============================================================================


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_keys_disappear(self, backend: InMemoryBackend, clock: FakeClock) -> None:
        await backend.increment_hash("h", {"a": 1}, ttl=10)

        clock.now += 11

        assert await backend.get_hash("h") == {}
        assert backend.keys() == []

    @pytest.mark.asyncio
    async def test_delete_counts_existing_keys(self, backend: InMemoryBackend) -> None:
        await backend.increment_hash("a", {"x": 1}, ttl=60)
        await backend.increment_hash("b", {"x": 1}, ttl=60)

        assert await backend.delete("a", "b", "missing") == 2
        assert await backend.delete() == 0

    @pytest.mark.asyncio
    async def test_scan_matches_glob(self, backend: InMemoryBackend) -> None:
        for key in ("rl:ip:1", "rl:ip:2", "rl:user:1"):
            await backend.increment_hash(key, {"x": 1}, ttl=60)

        assert sorted(await backend.scan("rl:ip:*")) == ["rl:ip:1", "rl:ip:2"]

    def test_clear(self, backend: InMemoryBackend) -> None:
        backend._data["k"] = "1"
        backend.clear()
        assert backend.keys() == []


# =============================================================================
# Statistics Containers
# =============================================================================


class TestContainers:
    @pytest.mark.asyncio
    async def test_increment_hash_returns_new_totals(self, backend: InMemoryBackend) -> None:
        await backend.increment_hash("h", {"total": 2, "blocked": 1}, ttl=60)

        result = await backend.increment_hash("h", {"total": 3}, ttl=60)

        assert result == {"total": 5}
        assert await backend.get_hash("h") == {"total": "5", "blocked": "1"}

    @pytest.mark.asyncio
    async def test_sets(self, backend: InMemoryBackend) -> None:
        await backend.add_to_set("s", {"a", "b"}, ttl=60)
        await backend.add_to_set("s", {"b", "c"}, ttl=60)

        assert await backend.get_set("s") == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_push_list_is_newest_first_and_trimmed(self, backend: InMemoryBackend) -> None:
        await backend.push_list("l", ["1", "2"], max_length=3, ttl=60)
        await backend.push_list("l", ["3", "4"], max_length=3, ttl=60)

        assert await backend.get_list("l") == ["4", "3", "2"]

    @pytest.mark.asyncio
    async def test_ranking_orders_by_score(self, backend: InMemoryBackend) -> None:
        await backend.increment_ranking("r", {"a": 1, "b": 5, "c": 3}, ttl=60)
        await backend.increment_ranking("r", {"a": 9}, ttl=60)

        assert await backend.top_ranking("r", 2) == [("a", 10.0), ("b", 5.0)]
