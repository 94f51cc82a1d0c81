"""Tests for the position-sensitive state cache."""

import asyncio

import pytest

from sightline.cache import (
    TIER_TTL_MULTIPLIER,
    CacheEntry,
    StateCache,
    compress,
    make_key,
    parse_key,
)
from sightline.params import CacheParams
from sightline.types import (
    CoverLevel,
    Entity,
    ImportanceTier,
    Point,
    PositionState,
    VisibilityLevel,
)


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def _state(vis=VisibilityLevel.FULL, cover=CoverLevel.NONE, bonus=0, eff=None):
    return PositionState(
        visibility_level=vis,
        visibility_computed=True,
        cover_level=cover,
        cover_computed=True,
        stealth_bonus=bonus,
        effective_visibility=eff or vis,
    )


CRITICAL = _state(VisibilityLevel.HIDDEN)
HIGH = _state(
    VisibilityLevel.FULL, CoverLevel.STANDARD, 2, VisibilityLevel.PARTIAL
)
NORMAL = _state(VisibilityLevel.FULL, CoverLevel.LESSER, 1)
LOW = _state()


def _tier_state(i: int) -> PositionState:
    return (CRITICAL, HIGH, NORMAL, LOW)[i % 4]


class TestKeys:
    def test_key_shape(self):
        obs = Entity("o1", 10.4, 20.6)
        subj = Entity("s1", -3.2, 7.0)
        assert make_key(obs, subj) == "o1@10,21:s1@-3,7"

    def test_parse_key(self):
        assert parse_key("o1@10,21:s1@-3,7") == ("o1", "s1")
        assert parse_key("not-a-pair-key") is None


class TestGetPut:
    def test_hit_after_put(self):
        cache = StateCache(clock=FakeClock())
        obs, subj = Entity("o", 0, 0), Entity("s", 100, 0)
        cache.put_state(obs, subj, CRITICAL)
        assert cache.get(obs, subj) == CRITICAL
        assert cache.get_stats()["hits"] == 1

    def test_moved_subject_misses(self):
        """A cached value is only valid while neither party has moved."""
        cache = StateCache(clock=FakeClock())
        obs, subj = Entity("o", 0, 0), Entity("s", 100, 0)
        cache.put_state(obs, subj, LOW)
        assert cache.get(obs, subj.moved_to(Point(150, 0))) is None
        assert cache.get(obs.moved_to(Point(0, 50)), subj) is None
        assert cache.get(obs, subj) == LOW

    def test_sub_unit_moves_share_key(self):
        cache = StateCache(clock=FakeClock())
        obs, subj = Entity("o", 0, 0), Entity("s", 100, 0)
        cache.put_state(obs, subj, LOW)
        assert cache.get(obs, Entity("s", 100.3, 0.2)) == LOW

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = StateCache(clock=clock)
        cache.put("k", {"a": 1}, ttl_ms=500)
        clock.advance(0.4)
        assert cache.get_by_key("k") == {"a": 1}
        clock.advance(0.2)
        assert cache.get_by_key("k") is None
        assert len(cache) == 0

    def test_tier_derived_from_state(self):
        cache = StateCache(clock=FakeClock())
        cache.put("a@0,0:b@0,0", CRITICAL, importance_tier=ImportanceTier.LOW)
        assert cache.peek("a@0,0:b@0,0").importance_tier == ImportanceTier.CRITICAL

    def test_tier_from_caller_for_other_payloads(self):
        cache = StateCache(clock=FakeClock())
        cache.put("k", {"x": 1}, importance_tier=ImportanceTier.HIGH)
        assert cache.peek("k").importance_tier == ImportanceTier.HIGH

    @pytest.mark.parametrize(
        "state,tier",
        [
            (CRITICAL, ImportanceTier.CRITICAL),
            (HIGH, ImportanceTier.HIGH),
            (NORMAL, ImportanceTier.NORMAL),
            (LOW, ImportanceTier.LOW),
        ],
    )
    def test_state_ttl_scales_with_tier(self, state, tier):
        cache = StateCache(clock=FakeClock())
        cache.put("a@0,0:b@0,0", state, ttl_ms=1000)
        entry = cache.peek("a@0,0:b@0,0")
        assert entry.importance_tier == tier
        assert entry.ttl_ms == 1000 * TIER_TTL_MULTIPLIER[tier]

    def test_concealed_state_outlives_visible_state(self):
        clock = FakeClock()
        cache = StateCache(clock=clock)
        cache.put("o@0,0:hidden@0,0", CRITICAL, ttl_ms=1000)
        cache.put("o@0,0:seen@0,0", LOW, ttl_ms=1000)
        clock.advance(0.6)
        assert cache.get_by_key("o@0,0:seen@0,0") is None
        clock.advance(3.0)
        assert cache.get_by_key("o@0,0:hidden@0,0") == CRITICAL
        clock.advance(0.5)
        assert cache.get_by_key("o@0,0:hidden@0,0") is None

    def test_other_payloads_keep_flat_ttl(self):
        cache = StateCache(clock=FakeClock())
        cache.put("k", {"x": 1}, ttl_ms=1000, importance_tier=ImportanceTier.CRITICAL)
        assert cache.peek("k").ttl_ms == 1000

    def test_corrupted_entry_reads_as_absent(self):
        cache = StateCache(clock=FakeClock())
        cache.put("k", {"x": 1})
        cache._entries["k"] = object()
        assert cache.get_by_key("k") is None
        assert "k" not in cache

    def test_none_is_not_cached(self):
        cache = StateCache(clock=FakeClock())
        cache.put("k", None)
        assert len(cache) == 0


class TestInvalidate:
    def test_invalidate_removes_both_roles(self):
        cache = StateCache(clock=FakeClock())
        a, b, c = Entity("a", 0, 0), Entity("b", 10, 0), Entity("c", 20, 0)
        cache.put_state(a, b, LOW)
        cache.put_state(b, a, LOW)
        cache.put_state(c, a, LOW)
        cache.put_state(c, b, LOW)
        assert cache.invalidate("a") == 3
        assert len(cache) == 1
        assert cache.get(c, b) == LOW

    def test_batch_invalidate(self):
        cache = StateCache(clock=FakeClock())
        ents = [Entity(f"e{i}", i * 10, 0) for i in range(4)]
        for o in ents:
            for s in ents:
                if o is not s:
                    cache.put_state(o, s, LOW)
        assert len(cache) == 12
        removed = cache.batch_invalidate(["e0", "e1"])
        assert removed == 10
        assert len(cache) == 2

    def test_ids_containing_separators(self):
        cache = StateCache(clock=FakeClock())
        obs = Entity("scene:1@guard", 0, 0)
        subj = Entity("token@2:rogue", 10, 0)
        other = Entity("bystander", 20, 0)
        cache.put_state(obs, subj, LOW)
        cache.put_state(other, subj, LOW)
        cache.put_state(obs, other, LOW)
        assert cache.invalidate("token@2:rogue") == 2
        assert cache.get(obs, subj) is None
        assert cache.get(obs, other) == LOW
        assert cache.invalidate("scene:1@guard") == 1
        assert len(cache) == 0

    def test_explicit_ids_for_custom_keys(self):
        cache = StateCache(clock=FakeClock())
        cache.put("custom-key", LOW, entity_ids=("o", "s"))
        entry = cache.peek("custom-key")
        assert (entry.observer_id, entry.subject_id) == ("o", "s")
        assert cache.invalidate("s") == 1
        assert "custom-key" not in cache

    def test_invalidate_unknown_entity(self):
        cache = StateCache(clock=FakeClock())
        assert cache.invalidate("nobody") == 0


class TestEviction:
    def test_optimize_mixed_tiers(self):
        """25 entries cycling tiers; optimize(10) keeps critical over low."""
        cache = StateCache(clock=FakeClock())
        for i in range(25):
            cache.put(f"o{i}@0,0:s{i}@1,1", _tier_state(i))
        cache.optimize(10)
        assert len(cache) == 10
        tiers = [cache.peek(k).importance_tier for k in list(cache._entries)]
        critical = tiers.count(ImportanceTier.CRITICAL)
        low = tiers.count(ImportanceTier.LOW)
        assert critical >= low
        # 7 critical and 6 high exist; all survivors are critical or high.
        assert critical == 7
        assert low == 0

    def test_recency_breaks_ties_within_tier(self):
        clock = FakeClock()
        cache = StateCache(clock=clock)
        for i in range(3):
            cache.put(f"o{i}@0,0:s@0,0", LOW)
            clock.advance(0.001)
        cache.get_by_key("o0@0,0:s@0,0")
        cache.optimize(2)
        assert "o1@0,0:s@0,0" not in cache
        assert "o0@0,0:s@0,0" in cache

    def test_never_evicts_critical_while_older_low_remains(self):
        clock = FakeClock()
        cache = StateCache(CacheParams(max_entries=8), clock=clock)
        # Critical entries are the oldest; low entries are newer.
        for i in range(4):
            cache.put(f"c{i}@0,0:s@0,0", CRITICAL)
            clock.advance(0.001)
        for i in range(4):
            cache.put(f"l{i}@0,0:s@0,0", LOW)
            clock.advance(0.001)
        cache.put("extra@0,0:s@0,0", LOW)
        assert len(cache) == 7
        for i in range(4):
            assert f"c{i}@0,0:s@0,0" in cache
        assert "l0@0,0:s@0,0" not in cache
        assert "l1@0,0:s@0,0" not in cache

    def test_entry_budget_enforced_on_insert(self):
        cache = StateCache(CacheParams(max_entries=10), clock=FakeClock())
        for i in range(10):
            cache.put(f"o{i}@0,0:s@0,0", LOW)
        assert len(cache) == 10
        cache.put("new@0,0:s@0,0", LOW)
        # One sweep drops to 80% of capacity, then the new entry lands.
        assert len(cache) == 9
        assert "new@0,0:s@0,0" in cache
        assert cache.get_stats()["evictions"] == 2

    def test_expired_entries_go_first(self):
        clock = FakeClock()
        cache = StateCache(CacheParams(max_entries=4), clock=clock)
        cache.put("old@0,0:s@0,0", CRITICAL, ttl_ms=10)
        for i in range(3):
            cache.put(f"o{i}@0,0:s@0,0", LOW)
        clock.advance(1)
        cache.put("new@0,0:s@0,0", LOW)
        assert "old@0,0:s@0,0" not in cache
        assert len(cache) == 4

    def test_memory_budget_enforced(self):
        params = CacheParams(max_memory_mb=0.01)  # ~10 KB
        cache = StateCache(params, clock=FakeClock())
        for i in range(40):
            cache.put(f"o{i}@0,0:s@0,0", LOW)
        assert cache._memory_bytes <= cache.max_memory_bytes
        assert cache.get_stats()["evictions"] > 0

    def test_payload_over_whole_budget_is_not_cached(self):
        params = CacheParams(max_memory_mb=0.01)  # ~10 KB
        cache = StateCache(params, clock=FakeClock())
        for i in range(3):
            cache.put(f"o{i}@0,0:s@0,0", LOW)
        cache.put("big", {"blob": "x" * 10000})
        assert "big" not in cache
        assert len(cache) == 3
        assert cache.get_stats()["evictions"] == 0

    def test_payload_near_budget_fits_without_overshoot(self):
        params = CacheParams(max_memory_mb=0.01)
        cache = StateCache(params, clock=FakeClock())
        for i in range(3):
            cache.put(f"o{i}@0,0:s@0,0", LOW)
        # Larger than the 80% sweep target but within the budget.
        cache.put("big", {"blob": "x" * 4480})
        assert "big" in cache
        assert cache._memory_bytes <= cache.max_memory_bytes

    def test_memory_aware_cleanup(self):
        cache = StateCache(clock=FakeClock())
        for i in range(20):
            cache.put(f"o{i}@0,0:s@0,0", _tier_state(i))
        before = cache._memory_bytes
        target_mb = before / 2 / 1024 / 1024
        removed = cache.memory_aware_cleanup(target_mb)
        assert removed > 0
        assert cache._memory_bytes <= before / 2

    def test_clear(self):
        cache = StateCache(clock=FakeClock())
        cache.put("a@0,0:b@0,0", LOW)
        cache.clear()
        assert len(cache) == 0
        assert cache.invalidate("a") == 0
        assert cache.get_stats()["memory_usage_mb"] == 0


class TestCompression:
    def test_large_payload_is_compressed(self):
        cache = StateCache(CacheParams(compress_threshold_bytes=200), clock=FakeClock())
        payload = {
            "timestamp": 1700000000.987,
            "points": [{"x": i + 0.123456, "y": i / 3} for i in range(20)],
        }
        cache.put("k", payload)
        got = cache.get_by_key("k")
        assert set(got) == {"timestamp", "points"}
        assert got["timestamp"] == 1700000000.0
        assert got["points"][1]["x"] == 1.12
        assert cache.get_stats()["compressions"] == 1

    def test_compress_position_state_keeps_type(self):
        state = PositionState(distance=12.3456, captured_at=99.9)
        out = compress(state)
        assert isinstance(out, PositionState)
        assert out.distance == 12.35
        assert out.captured_at == 99.0

    def test_small_payload_untouched(self):
        cache = StateCache(clock=FakeClock())
        cache.put("k", {"v": 1.23456})
        assert cache.get_by_key("k") == {"v": 1.23456}
        assert not cache.peek("k").compressed


class TestAsyncHelpers:
    def test_get_or_compute_caches(self):
        cache = StateCache(clock=FakeClock())
        calls = []

        async def compute():
            calls.append(1)
            return {"v": len(calls)}

        async def run():
            first = await cache.get_or_compute("k", compute)
            second = await cache.get_or_compute("k", compute)
            return first, second

        first, second = asyncio.run(run())
        assert first == second == {"v": 1}
        assert len(calls) == 1

    def test_warm_skips_cached_and_survives_failures(self):
        cache = StateCache(clock=FakeClock())
        obs = Entity("o", 0, 0)
        subjects = [Entity(f"s{i}", i * 10, 0) for i in range(25)]
        cache.put_state(obs, subjects[0], LOW)

        async def compute(o, s):
            if s.id == "s3":
                raise RuntimeError("boom")
            return HIGH

        warmed = asyncio.run(
            cache.warm([(obs, s) for s in subjects], compute, batch_size=10)
        )
        assert warmed == 23
        assert cache.get(obs, subjects[3]) is None
        assert cache.get(obs, subjects[5]) == HIGH
        # Warm TTL doubled, then doubled again for a high-tier state.
        assert cache.peek(make_key(obs, subjects[5])).ttl_ms == 120000


class TestStats:
    def test_hit_rate(self):
        cache = StateCache(clock=FakeClock())
        cache.put("k", {"v": 1})
        cache.get_by_key("k")
        cache.get_by_key("missing")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 50.0
        assert stats["total_entries"] == 1

    def test_entry_eviction_key_orders_tier_first(self):
        low_recent = CacheEntry("a", 1, 0, 1000, ImportanceTier.LOW, 10, last_access=99)
        crit_old = CacheEntry("b", 1, 0, 1000, ImportanceTier.CRITICAL, 10, last_access=1)
        assert low_recent.eviction_key() < crit_old.eviction_key()
