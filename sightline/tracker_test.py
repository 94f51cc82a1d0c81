"""Tests for start/end captures and transition analysis."""

import asyncio

from sightline.geometry import LightSource, Scene, Wall
from sightline.params import SightlineParams
from sightline.services import build_services
from sightline.types import (
    CoverLevel,
    CoverReading,
    Entity,
    LightingBand,
    Point,
    PositionState,
    TransitionType,
    VisibilityLevel,
)


class CountingVisibility:
    enabled = True

    def __init__(self, level=VisibilityLevel.HIDDEN, latency_s=0.0):
        self.level = level
        self.latency_s = latency_s
        self.calls = 0

    async def visibility(self, observer, subject):
        self.calls += 1
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        return self.level


class ThresholdVisibility(CountingVisibility):
    """Hidden once the subject is at or beyond ``hidden_from_x``."""

    def __init__(self, hidden_from_x):
        super().__init__()
        self.hidden_from_x = hidden_from_x

    async def visibility(self, observer, subject):
        self.calls += 1
        if subject.x >= self.hidden_from_x:
            return VisibilityLevel.HIDDEN
        return VisibilityLevel.FULL


class FixedCover:
    enabled = True

    def __init__(self, level=CoverLevel.STANDARD):
        self.level = level

    async def cover(self, observer, subject):
        return CoverReading(self.level)


class NoMeasurementsScene(Scene):
    def distance(self, a, b):
        raise RuntimeError("no distance")

    def line_of_sight(self, a, b):
        raise RuntimeError("no sight")

    def lighting_at(self, point):
        raise RuntimeError("no lights")


SNEAKER = Entity("sneaker", 100, 0)


def _observers(n, spacing=25):
    return [Entity(f"o{i}", 0, i * spacing) for i in range(n)]


def _services(scene=None, vis=None, cover=None, params=None):
    return build_services(
        scene if scene is not None else Scene(),
        visibility_oracle=vis or CountingVisibility(),
        cover_oracle=cover or FixedCover(),
        params=params,
        clock=lambda: 1000.0,
    )


class TestCapture:
    def test_sequential_capture(self):
        vis = CountingVisibility(VisibilityLevel.HIDDEN)
        svc = _services(vis=vis)
        states = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, _observers(3))
        )
        assert list(states) == ["o0", "o1", "o2"]
        s = states["o0"]
        assert s.visibility_level == VisibilityLevel.HIDDEN
        assert s.effective_visibility == VisibilityLevel.HIDDEN
        assert s.cover_level == CoverLevel.STANDARD
        assert s.stealth_bonus == 2
        assert s.distance == 100.0
        assert s.has_line_of_sight
        assert s.lighting_band == LightingBand.UNKNOWN
        assert s.captured_at == 1000.0
        assert s.visibility_computed and s.cover_computed
        assert not s.is_error_state
        assert vis.calls == 3

    def test_second_capture_hits_cache(self):
        vis = CountingVisibility()
        svc = _services(vis=vis)
        observers = _observers(3)
        asyncio.run(svc.tracker.capture_start_positions(SNEAKER, observers))
        asyncio.run(svc.tracker.capture_start_positions(SNEAKER, observers))
        assert vis.calls == 3
        assert svc.cache.get_stats()["hits"] == 3

    def test_many_observers_go_through_optimizer(self):
        vis = CountingVisibility()
        svc = _services(vis=vis)
        observers = _observers(15)
        states = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, observers)
        )
        assert list(states) == [o.id for o in observers]
        assert all(isinstance(s, PositionState) for s in states.values())
        assert vis.calls == 15
        assert svc.optimizer.get_metrics()["total_operations"] > 0
        # Cached under the same keys the sequential path uses.
        asyncio.run(svc.tracker.capture_start_positions(SNEAKER, observers[:3]))
        assert vis.calls == 15

    def test_optimizer_timeout_becomes_error_states(self):
        params = SightlineParams.from_dict(
            {"optimizer": {"timeout_ms": 20, "batch_delay_ms": 0}}
        )
        vis = CountingVisibility(latency_s=0.5)
        svc = _services(vis=vis, params=params)
        states = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, _observers(12))
        )
        assert len(states) == 12
        for s in states.values():
            assert s.is_error_state
            assert s.visibility_level == VisibilityLevel.FULL
            assert "timed out" in s.errors[0]
        assert len(svc.cache) == 0

    def test_invalid_inputs(self):
        svc = _services()
        assert asyncio.run(
            svc.tracker.capture_start_positions(Entity("", 0, 0), _observers(2))
        ) == {}
        assert asyncio.run(svc.tracker.capture_start_positions(SNEAKER, None)) == {}
        states = asyncio.run(
            svc.tracker.capture_start_positions(
                SNEAKER, [Entity("ok", 0, 0), Entity("bad", float("nan"), 0)]
            )
        )
        assert list(states) == ["ok"]

    def test_lighting_from_scene(self):
        scene = Scene(lights=[LightSource(100, 0, 10, 50)])
        svc = _services(scene=scene)
        states = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, _observers(1))
        )
        assert states["o0"].lighting_band == LightingBand.BRIGHT


class TestStoredPosition:
    def test_distance_and_sight_measured_from_stored_point(self):
        scene = Scene(walls=[Wall(50, -10, 50, 10)])
        svc = _services(scene=scene)
        observer = Entity("o", 0, 0)
        live = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, [observer])
        )["o"]
        stored = asyncio.run(
            svc.tracker.capture_start_positions(
                SNEAKER, [observer], stored_position=Point(30, 0)
            )
        )["o"]
        assert live.distance == 100.0
        assert not live.has_line_of_sight
        assert not live.used_stored_position
        assert stored.distance == 30.0
        assert stored.has_line_of_sight
        assert stored.used_stored_position

    def test_moved_sneaker_with_same_stored_point_recomputes(self):
        vis = ThresholdVisibility(hidden_from_x=500)
        svc = _services(vis=vis)
        observer = Entity("o", 0, 0)
        stored = Point(30, 0)
        before = asyncio.run(
            svc.tracker.capture_start_positions(
                SNEAKER, [observer], stored_position=stored
            )
        )["o"]
        after = asyncio.run(
            svc.tracker.capture_start_positions(
                SNEAKER.moved_to(Point(600, 0)), [observer], stored_position=stored
            )
        )["o"]
        assert before.visibility_level == VisibilityLevel.FULL
        assert after.visibility_level == VisibilityLevel.HIDDEN
        assert after.distance == 30.0
        assert vis.calls == 2

    def test_moved_sneaker_recomputes_through_optimizer(self):
        vis = ThresholdVisibility(hidden_from_x=500)
        svc = _services(vis=vis)
        observers = _observers(12)
        stored = Point(30, 0)
        asyncio.run(
            svc.tracker.capture_start_positions(
                SNEAKER, observers, stored_position=stored
            )
        )
        states = asyncio.run(
            svc.tracker.capture_start_positions(
                SNEAKER.moved_to(Point(600, 0)), observers, stored_position=stored
            )
        )
        assert vis.calls == 24
        assert all(
            s.visibility_level == VisibilityLevel.HIDDEN for s in states.values()
        )

    def test_same_live_and_stored_position_hits_cache(self):
        vis = ThresholdVisibility(hidden_from_x=500)
        svc = _services(vis=vis)
        observer = Entity("o", 0, 0)
        for _ in range(2):
            asyncio.run(
                svc.tracker.capture_start_positions(
                    SNEAKER, [observer], stored_position=Point(30, 0)
                )
            )
        assert vis.calls == 1


class TestFailures:
    def test_integrator_exception_gives_default_state(self):
        svc = _services()

        async def explode(observer, subject):
            raise RuntimeError("integrator down")

        svc.integrator.get_combined_state = explode
        states = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, _observers(2))
        )
        for s in states.values():
            assert s.is_error_state
            assert s.errors == ("integrator down",)
            assert s.visibility_level == VisibilityLevel.FULL
            assert s.cover_level == CoverLevel.NONE
            assert s.stealth_bonus == 0

    def test_measurement_failures_use_defaults(self):
        svc = _services(scene=NoMeasurementsScene())
        s = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, _observers(1))
        )["o0"]
        assert s.distance == 0.0
        assert s.has_line_of_sight
        assert s.lighting_band == LightingBand.UNKNOWN
        assert not s.is_error_state
        assert s.visibility_level == VisibilityLevel.HIDDEN

    def test_fallback_warnings_recorded(self):
        svc = build_services(Scene(), clock=lambda: 1.0)
        s = asyncio.run(
            svc.tracker.capture_start_positions(SNEAKER, _observers(1))
        )["o0"]
        assert not s.visibility_computed
        assert not s.cover_computed
        assert not s.source_flags.visibility_enabled
        assert len(s.errors) == 2
        assert not s.is_error_state


class TestTransitions:
    def test_end_positions_recompute(self):
        vis = CountingVisibility(VisibilityLevel.FULL)
        cover = FixedCover(CoverLevel.NONE)
        svc = _services(vis=vis, cover=cover)
        observers = _observers(2)
        start = asyncio.run(svc.tracker.capture_start_positions(SNEAKER, observers))
        vis.level = VisibilityLevel.HIDDEN
        cover.level = CoverLevel.GREATER
        end = asyncio.run(svc.tracker.calculate_end_positions(SNEAKER, observers))
        assert vis.calls == 4
        assert end["o0"].visibility_level == VisibilityLevel.HIDDEN

        transitions = svc.tracker.analyze_position_transitions(start, end)
        t = transitions["o0"]
        assert t.visibility_changed and t.cover_changed
        assert t.stealth_bonus_change == 4
        assert t.transition_type == TransitionType.IMPROVED
        summary = svc.tracker.summarize(transitions)
        assert summary["total"] == 2
        assert summary["improved"] == 2

    def test_only_keys_in_both_maps(self):
        svc = _services()
        a = PositionState(captured_at=1.0)
        b = PositionState(
            visibility_level=VisibilityLevel.PARTIAL,
            effective_visibility=VisibilityLevel.PARTIAL,
            captured_at=2.0,
        )
        transitions = svc.tracker.analyze_position_transitions(
            {"x": a, "y": a}, {"y": b, "z": b}
        )
        assert list(transitions) == ["y"]
        assert transitions["y"].transition_type == TransitionType.IMPROVED

    def test_worsened_and_unchanged(self):
        svc = _services()
        hidden = PositionState(
            visibility_level=VisibilityLevel.HIDDEN,
            effective_visibility=VisibilityLevel.HIDDEN,
        )
        full = PositionState()
        transitions = svc.tracker.analyze_position_transitions(
            {"a": hidden, "b": full}, {"a": full, "b": full}
        )
        assert transitions["a"].transition_type == TransitionType.WORSENED
        assert transitions["b"].transition_type == TransitionType.UNCHANGED
        assert not transitions["b"].has_changed


class TestLargeScenes:
    def test_distance_filter(self):
        svc = _services()
        near = [Entity(f"n{i}", 100, i * 10) for i in range(8)]
        far = [Entity(f"f{i}", 5000, i * 10) for i in range(4)]
        states = asyncio.run(
            svc.tracker.capture_large_scene(SNEAKER, near + far, max_distance=500)
        )
        assert sorted(states) == sorted(o.id for o in near)

    def test_streaming_path(self):
        params = SightlineParams.from_dict({"optimizer": {"stream_batch_size": 4}})
        svc = _services(params=params)
        observers = _observers(10, spacing=5)
        states = asyncio.run(
            svc.tracker.capture_large_scene(SNEAKER, observers, use_streaming=True)
        )
        assert list(states) == [o.id for o in observers]

    def test_stream_positions_progress(self):
        params = SightlineParams.from_dict({"optimizer": {"stream_batch_size": 4}})
        svc = _services(params=params)

        async def collect():
            return [
                b async for b in svc.tracker.stream_positions(SNEAKER, _observers(10))
            ]

        batches = asyncio.run(collect())
        assert [b.progress.processed for b in batches] == [4, 8, 10]
        assert batches[-1].progress.percentage == 100.0

    def test_preload_warms_cache(self):
        vis = CountingVisibility()
        svc = _services(vis=vis)
        observers = _observers(4)
        warmed = asyncio.run(svc.tracker.preload(SNEAKER, observers))
        assert warmed == 4
        asyncio.run(svc.tracker.capture_start_positions(SNEAKER, observers))
        assert vis.calls == 4

    def test_performance_metrics(self):
        svc = _services()
        asyncio.run(svc.tracker.capture_start_positions(SNEAKER, _observers(2)))
        metrics = svc.tracker.get_performance_metrics()
        assert set(metrics) == {"optimizer", "cache", "systems"}
        assert metrics["cache"]["total_entries"] == 2
