"""Merge the visibility and cover sources into one combined state per pair.

Each source is resolved independently through the same ladder:

1. a stored manual override for the pair wins outright;
2. otherwise the oracle is asked;
3. if the oracle fails (or the inputs are unusable) a local geometric
   fallback answers instead: line of sight for visibility, movement
   blocking for cover.

Fallback answers are marked ``success=False, fallback_used=True`` but are
still usable. A failure on one source never affects the other; the two
lookups run concurrently and are isolated from each other's exceptions.

Which oracles exist is decided once, at construction. A missing oracle is
replaced by a null oracle that always raises ``OracleUnavailableError``, so
a disabled source simply takes the fallback path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from .errors import OracleError, OracleUnavailableError
from .interfaces import (
    CoverOracle,
    Geometry,
    NullCoverOracle,
    NullVisibilityOracle,
    PersistentStore,
    VisibilityOracle,
)
from .params import IntegratorParams
from .rules import COVER_TABLE, CoverRule, combine_states
from .store import cover_override_key, override_key
from .types import (
    CombinedState,
    CoverLevel,
    CoverReading,
    CoverResult,
    Entity,
    ResultSource,
    VisibilityLevel,
    VisibilityResult,
    is_valid_entity,
)

logger = logging.getLogger(__name__)

_INVALID_INPUT = "invalid observer or subject"


@dataclass
class SourceHealth:
    enabled: bool
    available: bool
    last_error: str | None = None
    last_error_at: float | None = None
    failure_count: int = 0

    def record_failure(self, exc: BaseException) -> None:
        self.last_error = str(exc) or type(exc).__name__
        self.last_error_at = time.time()
        if isinstance(exc, OracleUnavailableError):
            self.available = False
        else:
            self.failure_count += 1

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "available": self.available,
            "last_error": self.last_error,
            "failure_count": self.failure_count,
        }


class DualSourceIntegrator:
    def __init__(
        self,
        geometry: Geometry,
        store: PersistentStore,
        visibility_oracle: VisibilityOracle | None = None,
        cover_oracle: CoverOracle | None = None,
        params: IntegratorParams | None = None,
        cover_table: dict[CoverLevel, CoverRule] = COVER_TABLE,
    ) -> None:
        self.geometry = geometry
        self.store = store
        self.visibility_oracle = visibility_oracle or NullVisibilityOracle()
        self.cover_oracle = cover_oracle or NullCoverOracle()
        self.params = params or IntegratorParams()
        self.cover_table = cover_table

        self.visibility_enabled = getattr(self.visibility_oracle, "enabled", True)
        self.cover_enabled = getattr(self.cover_oracle, "enabled", True)
        self.health = {
            "visibility": SourceHealth(
                enabled=self.visibility_enabled,
                available=self.visibility_enabled,
            ),
            "cover": SourceHealth(
                enabled=self.cover_enabled, available=self.cover_enabled
            ),
        }

    def _bonus_for(self, level: CoverLevel) -> int:
        rule = self.cover_table.get(level)
        return rule.bonus if rule is not None else 0

    async def _read_override(self, entity_id: str, key: str):
        try:
            return await self.store.get(entity_id, key)
        except Exception as exc:
            logger.warning("override read %s/%s failed: %s", entity_id, key, exc)
            return None

    # -- visibility ---------------------------------------------------------

    async def get_visibility(
        self, observer: Entity, subject: Entity
    ) -> VisibilityResult:
        if not (is_valid_entity(observer) and is_valid_entity(subject)):
            return VisibilityResult(
                level=VisibilityLevel.FULL,
                source=ResultSource.FALLBACK,
                fallback_used=True,
                error=_INVALID_INPUT,
            )

        override = await self._read_override(observer.id, override_key(subject.id))
        if override:
            try:
                return VisibilityResult(
                    level=VisibilityLevel(override),
                    success=True,
                    source=ResultSource.OVERRIDE,
                )
            except ValueError:
                logger.warning(
                    "ignoring unknown visibility override %r for %s -> %s",
                    override,
                    observer.id,
                    subject.id,
                )

        try:
            level = await self.visibility_oracle.visibility(observer, subject)
            level = VisibilityLevel(level)
        except Exception as exc:
            self.health["visibility"].record_failure(exc)
            if not isinstance(exc, OracleUnavailableError):
                logger.warning(
                    "visibility oracle failed for %s -> %s: %s",
                    observer.id,
                    subject.id,
                    exc,
                )
            return self._visibility_fallback(observer, subject, exc)

        return VisibilityResult(level=level, success=True)

    def _visibility_fallback(
        self, observer: Entity, subject: Entity, cause: BaseException
    ) -> VisibilityResult:
        error = str(cause) or type(cause).__name__
        try:
            visible = self.geometry.line_of_sight(observer, subject)
        except Exception as exc:
            logger.warning("line-of-sight fallback failed: %s", exc)
            return VisibilityResult(
                level=VisibilityLevel.FULL,
                source=ResultSource.FALLBACK,
                fallback_used=True,
                error=f"{error}; fallback failed: {exc}",
            )
        return VisibilityResult(
            level=VisibilityLevel.FULL if visible else VisibilityLevel.PARTIAL,
            source=ResultSource.FALLBACK,
            fallback_used=True,
            error=error,
        )

    # -- cover --------------------------------------------------------------

    async def get_cover(self, observer: Entity, subject: Entity) -> CoverResult:
        if not (is_valid_entity(observer) and is_valid_entity(subject)):
            return CoverResult(
                level=CoverLevel.NONE,
                bonus=0,
                source=ResultSource.FALLBACK,
                fallback_used=True,
                error=_INVALID_INPUT,
            )

        manual = await self._read_override(
            observer.id, cover_override_key(subject.id)
        )
        if manual and manual != CoverLevel.NONE.value:
            try:
                level = CoverLevel(manual)
                return CoverResult(
                    level=level,
                    bonus=self._bonus_for(level),
                    success=True,
                    source=ResultSource.MANUAL,
                )
            except ValueError:
                logger.warning("ignoring unknown cover override %r", manual)

        try:
            reading = await self.cover_oracle.cover(observer, subject)
            if not isinstance(reading, CoverReading):
                raise OracleError("cover", f"unexpected cover reading {reading!r}")
            level = CoverLevel(reading.level)
        except Exception as exc:
            self.health["cover"].record_failure(exc)
            if not isinstance(exc, OracleUnavailableError):
                logger.warning(
                    "cover oracle failed for %s -> %s: %s",
                    observer.id,
                    subject.id,
                    exc,
                )
            return self._cover_fallback(observer, subject, exc)

        bonus = reading.bonus if reading.bonus is not None else self._bonus_for(level)
        return CoverResult(level=level, bonus=max(0, bonus), success=True)

    def _cover_fallback(
        self, observer: Entity, subject: Entity, cause: BaseException
    ) -> CoverResult:
        error = str(cause) or type(cause).__name__
        try:
            blocked = self.geometry.movement_blocked(observer, subject)
        except Exception as exc:
            logger.warning("collision fallback failed: %s", exc)
            return CoverResult(
                level=CoverLevel.NONE,
                bonus=0,
                source=ResultSource.FALLBACK,
                fallback_used=True,
                error=f"{error}; fallback failed: {exc}",
            )
        level = CoverLevel.STANDARD if blocked else CoverLevel.NONE
        return CoverResult(
            level=level,
            bonus=self._bonus_for(level),
            source=ResultSource.FALLBACK,
            fallback_used=True,
            error=error,
        )

    # -- combined -----------------------------------------------------------

    async def get_combined_state(
        self, observer: Entity, subject: Entity
    ) -> CombinedState:
        vis, cov = await asyncio.gather(
            self.get_visibility(observer, subject),
            self.get_cover(observer, subject),
            return_exceptions=True,
        )
        if isinstance(vis, asyncio.CancelledError):
            raise vis
        if isinstance(cov, asyncio.CancelledError):
            raise cov
        if isinstance(vis, BaseException):
            vis = VisibilityResult(
                source=ResultSource.FALLBACK, fallback_used=True, error=str(vis)
            )
        if isinstance(cov, BaseException):
            cov = CoverResult(
                source=ResultSource.FALLBACK, fallback_used=True, error=str(cov)
            )

        warnings = []
        if vis.fallback_used:
            warnings.append(f"visibility fallback used: {vis.error}")
        if cov.fallback_used:
            warnings.append(f"cover fallback used: {cov.error}")

        return CombinedState(
            visibility_result=vis,
            cover_result=cov,
            effective_visibility=combine_states(
                vis.level, cov.level, self.cover_table
            ),
            stealth_bonus=cov.bonus,
            warnings=warnings,
        )

    async def get_batch_combined_states(
        self,
        observer: Entity,
        subjects: list[Entity],
        batch_size: int | None = None,
    ) -> dict[str, CombinedState]:
        """Combined state per subject id, computed in fixed-size chunks.

        A subject whose computation fails gets an error state; the rest of
        the batch is unaffected. Subjects without an id are skipped.
        """
        size = max(1, batch_size or self.params.batch_size)
        subjects = [s for s in subjects if getattr(s, "id", None)]
        results: dict[str, CombinedState] = {}

        async def one(subject: Entity) -> tuple[str, CombinedState]:
            try:
                return subject.id, await self.get_combined_state(observer, subject)
            except Exception as exc:
                logger.warning("batch state failed for %s: %s", subject.id, exc)
                return subject.id, CombinedState.error(str(exc))

        for i in range(0, len(subjects), size):
            chunk = subjects[i : i + size]
            for subject_id, state in await asyncio.gather(*(one(s) for s in chunk)):
                results[subject_id] = state
        return results

    def get_system_diagnostics(self) -> dict:
        return {name: h.to_dict() for name, h in self.health.items()}
