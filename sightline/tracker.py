"""Before/after snapshots of how every observer perceives a sneaking entity.

A sneak is bracketed by two captures: ``capture_start_positions`` before
the move and ``calculate_end_positions`` after it. Each capture maps
observer id to a ``PositionState`` for the pair (observer, sneaker), and
``analyze_position_transitions`` classifies what changed per observer.

Small captures run observer by observer; larger ones go through the batch
optimizer. Either way a capture never raises: if the integrator fails for
a pair, that pair gets a safe default state (fully visible, no cover) that
carries the error message, and a failing distance, line-of-sight or
lighting lookup only costs that one field its default.

A ``stored_position`` lets callers ask "what did this look like from where
the sneaker started": distance and line of sight are measured from that
point instead of the sneaker's live position, and the state is cached
under a key built from it.
"""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Callable, Iterable

import numpy as np

from .advice import summarize_transitions
from .cache import StateCache, make_key
from .integrator import DualSourceIntegrator
from .interfaces import Geometry
from .optimizer import BatchOptimizer, StreamBatch
from .params import TrackerParams
from .rules import classify_transition
from .types import (
    Entity,
    ErrorResult,
    LightingBand,
    Point,
    PositionState,
    PositionTransition,
    ResultSource,
    SourceFlags,
    is_valid_entity,
)

logger = logging.getLogger(__name__)


class SnapshotTracker:
    def __init__(
        self,
        integrator: DualSourceIntegrator,
        optimizer: BatchOptimizer,
        cache: StateCache,
        geometry: Geometry,
        params: TrackerParams | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.integrator = integrator
        self.optimizer = optimizer
        self.cache = cache
        self.geometry = geometry
        self.params = params or TrackerParams()
        self._clock = clock

    def _flags(self) -> SourceFlags:
        return SourceFlags(
            visibility_enabled=self.integrator.visibility_enabled,
            cover_enabled=self.integrator.cover_enabled,
        )

    def _as_state(self, value: Any) -> PositionState:
        if isinstance(value, PositionState):
            return value
        if isinstance(value, ErrorResult):
            message = value.message
        else:
            message = f"unexpected capture result {value!r}"
        return PositionState.default(
            captured_at=self._clock(),
            errors=(message,),
            source_flags=self._flags(),
        )

    @staticmethod
    def _capture_key(
        observer: Entity, sneaker: Entity, stored_position: Point | None
    ) -> str:
        # Live positions, plus the stored point distance is measured from.
        key = make_key(observer, sneaker)
        if stored_position is not None:
            key += f"|from@{round(stored_position.x)},{round(stored_position.y)}"
        return key

    @classmethod
    def _key_fn(cls, stored_position: Point | None):
        def key(sneaker: Entity, observer: Entity) -> str:
            return cls._capture_key(observer, sneaker, stored_position)

        return key

    # -- single pair --------------------------------------------------------

    async def _capture_state(
        self,
        sneaker: Entity,
        observer: Entity,
        stored_position: Point | None = None,
        *,
        captured_at: float | None = None,
        force_fresh: bool = False,
        use_cache: bool = True,
    ) -> PositionState:
        captured_at = self._clock() if captured_at is None else captured_at
        measured_from = (
            sneaker.moved_to(stored_position) if stored_position else sneaker
        )
        key = self._capture_key(observer, sneaker, stored_position)
        if use_cache and not force_fresh:
            cached = self.cache.get_by_key(key)
            if isinstance(cached, PositionState):
                return cached

        try:
            combined = await self.integrator.get_combined_state(observer, sneaker)
        except Exception as exc:
            logger.warning(
                "capture failed for %s -> %s: %s", observer.id, sneaker.id, exc
            )
            return PositionState.default(
                captured_at=captured_at,
                errors=(str(exc) or type(exc).__name__,),
                source_flags=self._flags(),
            )

        distance = 0.0
        has_line_of_sight = True
        lighting = LightingBand.UNKNOWN
        try:
            distance = max(0.0, float(self.geometry.distance(measured_from, observer)))
        except Exception as exc:
            logger.warning("distance calculation failed: %s", exc)
        try:
            has_line_of_sight = bool(
                self.geometry.line_of_sight(observer, measured_from)
            )
        except Exception as exc:
            logger.warning("line of sight calculation failed: %s", exc)
        try:
            lighting = LightingBand(self.geometry.lighting_at(sneaker))
        except Exception as exc:
            logger.warning("lighting calculation failed: %s", exc)

        vis = combined.visibility_result
        cov = combined.cover_result
        try:
            state = PositionState(
                visibility_level=vis.level,
                visibility_computed=vis.success,
                cover_level=cov.level,
                cover_computed=cov.success,
                stealth_bonus=combined.stealth_bonus,
                effective_visibility=combined.effective_visibility,
                distance=distance,
                has_line_of_sight=has_line_of_sight,
                lighting_band=lighting,
                captured_at=captured_at,
                source_flags=self._flags(),
                visibility_override=(
                    vis.level if vis.source == ResultSource.OVERRIDE else None
                ),
                cover_override=cov.level if cov.source == ResultSource.MANUAL else None,
                used_stored_position=stored_position is not None,
                errors=tuple(combined.warnings),
            )
        except ValueError as exc:
            logger.warning("inconsistent combined state: %s", exc)
            return PositionState.default(
                captured_at=captured_at,
                errors=(str(exc),),
                source_flags=self._flags(),
            )

        if use_cache:
            self.cache.put(
                key,
                state,
                ttl_ms=self.params.cache_ttl_ms,
                entity_ids=(observer.id, sneaker.id),
            )
        return state

    # -- captures -----------------------------------------------------------

    async def capture_start_positions(
        self,
        sneaker: Entity,
        observers: Iterable[Entity] | None,
        stored_position: Point | None = None,
        *,
        force_fresh: bool = False,
    ) -> dict[str, PositionState]:
        """Map observer id to the observer's view of ``sneaker``."""
        if not is_valid_entity(sneaker) or observers is None:
            logger.warning("invalid parameters for position capture")
            return {}
        observers = list(observers)
        valid = [o for o in observers if is_valid_entity(o)]
        if len(valid) < len(observers):
            logger.warning(
                "skipping %d invalid observers", len(observers) - len(valid)
            )
        observers = valid

        if len(observers) > self.params.sequential_threshold:
            captured_at = self._clock()

            async def compute(snk: Entity, observer: Entity) -> PositionState:
                return await self._capture_state(
                    snk,
                    observer,
                    stored_position,
                    captured_at=captured_at,
                    use_cache=False,
                )

            results = await self.optimizer.optimize_multi_target_processing(
                sneaker,
                observers,
                compute,
                cache_ttl_ms=self.params.cache_ttl_ms,
                force_fresh=force_fresh,
                key_fn=self._key_fn(stored_position),
            )
            return {k: self._as_state(v) for k, v in results.items()}

        states: dict[str, PositionState] = {}
        captured_at = self._clock()
        for observer in observers:
            states[observer.id] = await self._capture_state(
                sneaker,
                observer,
                stored_position,
                captured_at=captured_at,
                force_fresh=force_fresh,
            )
        logger.debug(
            "captured %d position states for %s", len(states), sneaker.id
        )
        return states

    async def calculate_end_positions(
        self, sneaker: Entity, observers: Iterable[Entity] | None
    ) -> dict[str, PositionState]:
        if is_valid_entity(sneaker):
            self.cache.invalidate(sneaker.id)
        return await self.capture_start_positions(
            sneaker, observers, None, force_fresh=True
        )

    def analyze_position_transitions(
        self,
        start: dict[str, PositionState],
        end: dict[str, PositionState],
    ) -> dict[str, PositionTransition]:
        transitions: dict[str, PositionTransition] = {}
        for target_id in dict.fromkeys([*start, *end]):
            before = start.get(target_id)
            after = end.get(target_id)
            if before is None or after is None:
                continue
            vis_changed, cover_changed, delta, kind = classify_transition(
                before, after
            )
            transitions[target_id] = PositionTransition(
                target_id=target_id,
                start=before,
                end=after,
                visibility_changed=vis_changed,
                cover_changed=cover_changed,
                stealth_bonus_change=delta,
                transition_type=kind,
            )
        return transitions

    def summarize(self, transitions: dict[str, PositionTransition]) -> dict:
        return summarize_transitions(transitions.values())

    # -- large scenes -------------------------------------------------------

    async def stream_positions(
        self,
        sneaker: Entity,
        observers: list[Entity],
        stored_position: Point | None = None,
        *,
        force_fresh: bool = False,
    ) -> AsyncIterator[StreamBatch]:
        captured_at = self._clock()

        async def compute(snk: Entity, observer: Entity) -> PositionState:
            return await self._capture_state(
                snk,
                observer,
                stored_position,
                captured_at=captured_at,
                use_cache=False,
            )

        async for batch in self.optimizer.stream_large_token_processing(
            sneaker,
            observers,
            compute,
            cache_ttl_ms=self.params.cache_ttl_ms,
            force_fresh=force_fresh,
            key_fn=self._key_fn(stored_position),
        ):
            yield StreamBatch(
                results={k: self._as_state(v) for k, v in batch.results.items()},
                progress=batch.progress,
            )

    async def capture_large_scene(
        self,
        sneaker: Entity,
        observers: list[Entity],
        max_distance: float | None = None,
        use_streaming: bool | None = None,
    ) -> dict[str, PositionState]:
        """Capture only observers within ``max_distance`` of the sneaker."""
        if not is_valid_entity(sneaker):
            return {}
        if max_distance is None:
            max_distance = self.params.large_scene_max_distance
        candidates = [o for o in observers if is_valid_entity(o)]
        if candidates:
            dist = np.array(
                [self.geometry.distance(sneaker, o) for o in candidates],
                dtype=np.float64,
            )
            nearby = [o for o, keep in zip(candidates, dist <= max_distance) if keep]
        else:
            nearby = []
        if use_streaming is None:
            use_streaming = len(nearby) > self.params.streaming_threshold
        logger.info(
            "large scene capture: %d of %d observers in range, streaming=%s",
            len(nearby),
            len(observers),
            use_streaming,
        )

        if use_streaming:
            states: dict[str, PositionState] = {}
            async for batch in self.stream_positions(sneaker, nearby):
                states.update(batch.results)
            return states

        captured_at = self._clock()

        async def compute(snk: Entity, observer: Entity) -> PositionState:
            return await self._capture_state(
                snk, observer, captured_at=captured_at, use_cache=False
            )

        results = await self.optimizer.optimize_multi_target_processing(
            sneaker,
            nearby,
            compute,
            cache_ttl_ms=self.params.cache_ttl_ms,
            key_fn=self._key_fn(None),
        )
        return {k: self._as_state(v) for k, v in results.items()}

    async def preload(self, sneaker: Entity, observers: list[Entity]) -> int:
        """Warm the cache for every (observer, sneaker) pair."""

        async def compute(observer: Entity, snk: Entity) -> PositionState:
            return await self._capture_state(
                snk, observer, force_fresh=True, use_cache=False
            )

        return await self.cache.warm(
            [(o, sneaker) for o in observers if is_valid_entity(o)],
            compute,
        )

    def get_performance_metrics(self) -> dict:
        return {
            "optimizer": self.optimizer.get_metrics(),
            "cache": self.cache.get_stats(),
            "systems": self.integrator.get_system_diagnostics(),
        }
