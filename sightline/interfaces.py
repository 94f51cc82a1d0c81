"""Collaborator interfaces consumed by the integrator, tracker and applier.

The oracles and the persistent store are async; geometry queries are plain
synchronous calls. A source that is not available is represented by a null
oracle chosen once at construction, so callers never probe for it.
"""

from __future__ import annotations

from typing import Any, Protocol

from .errors import OracleUnavailableError
from .types import CoverReading, Entity, LightingBand, Point, VisibilityLevel


class VisibilityOracle(Protocol):
    enabled: bool

    async def visibility(
        self, observer: Entity, subject: Entity
    ) -> VisibilityLevel:
        """How well ``observer`` perceives ``subject``. May raise."""
        ...


class CoverOracle(Protocol):
    enabled: bool

    async def cover(self, observer: Entity, subject: Entity) -> CoverReading:
        """Cover ``subject`` has against ``observer``. May raise."""
        ...


class Geometry(Protocol):
    def distance(self, a: Entity | Point, b: Entity | Point) -> float: ...

    def line_of_sight(self, a: Entity | Point, b: Entity | Point) -> bool: ...

    def lighting_at(self, point: Entity | Point) -> LightingBand: ...

    def movement_blocked(
        self, a: Entity | Point, b: Entity | Point
    ) -> bool: ...


class PersistentStore(Protocol):
    async def get(self, entity_id: str, key: str) -> Any:
        """Stored value, or None when absent. Raises StoreError on failure."""
        ...

    async def set(self, entity_id: str, key: str, value: Any) -> None:
        """Store ``value``; None removes the key. Raises StoreError."""
        ...


class NullVisibilityOracle:
    enabled = False

    async def visibility(
        self, observer: Entity, subject: Entity
    ) -> VisibilityLevel:
        raise OracleUnavailableError("visibility", "visibility source disabled")


class NullCoverOracle:
    enabled = False

    async def cover(self, observer: Entity, subject: Entity) -> CoverReading:
        raise OracleUnavailableError("cover", "cover source disabled")
