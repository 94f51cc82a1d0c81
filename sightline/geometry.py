"""Scene geometry: distance, line of sight, lighting and movement blocking.

A ``Scene`` is the concrete geometry collaborator used by the local
fallbacks in the integrator, by the tracker's per-capture measurements and
by the benchmark script. Walls are straight segments; a wall can block
sight, movement, or both. Lights are points with a bright radius and a
larger dim radius.

Line of sight is answered by shapely against a prepared union of the
sight-blocking walls, rebuilt lazily when walls change. Lighting and the
bulk distance query are vectorized with numpy since a scene can carry many
lights and observers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np
from shapely.geometry import LineString, MultiLineString
from shapely.prepared import prep

from .errors import InvalidEntityError
from .types import Entity, LightingBand, Point


@dataclass(frozen=True)
class Wall:
    x1: float
    y1: float
    x2: float
    y2: float
    blocks_sight: bool = True
    blocks_movement: bool = True

    @staticmethod
    def from_dict(d: dict) -> Wall:
        x1, y1, x2, y2 = d["c"]
        return Wall(
            x1=x1,
            y1=y1,
            x2=x2,
            y2=y2,
            blocks_sight=d.get("blocks_sight", True),
            blocks_movement=d.get("blocks_movement", True),
        )

    def to_dict(self) -> dict:
        return {
            "c": [self.x1, self.y1, self.x2, self.y2],
            "blocks_sight": self.blocks_sight,
            "blocks_movement": self.blocks_movement,
        }


@dataclass(frozen=True)
class LightSource:
    x: float
    y: float
    bright_radius: float
    dim_radius: float

    @staticmethod
    def from_dict(d: dict) -> LightSource:
        bright = d.get("bright", 0.0)
        return LightSource(
            x=d["x"],
            y=d["y"],
            bright_radius=bright,
            dim_radius=max(d.get("dim", 0.0), bright),
        )


def segments_intersect(
    x1: float,
    y1: float,
    x2: float,
    y2: float,
    x3: float,
    y3: float,
    x4: float,
    y4: float,
) -> bool:
    """Test if two segments intersect, endpoints included.

    Parallel segments never intersect.
    """
    denominator = (y4 - y3) * (x2 - x1) - (x4 - x3) * (y2 - y1)
    if denominator == 0:
        return False
    ua = ((x4 - x3) * (y1 - y3) - (y4 - y3) * (x1 - x3)) / denominator
    if ua < 0 or ua > 1:
        return False
    ub = ((x2 - x1) * (y1 - y3) - (y2 - y1) * (x1 - x3)) / denominator
    return 0 <= ub <= 1


def _xy(obj: Entity | Point) -> tuple[float, float]:
    return float(obj.x), float(obj.y)


@dataclass
class Scene:
    entities: dict[str, Entity] = field(default_factory=dict)
    walls: list[Wall] = field(default_factory=list)
    # None means the scene has no lighting model at all.
    lights: list[LightSource] | None = None
    _sight_blockers: object = field(default=None, init=False, repr=False)
    _blockers_built: bool = field(default=False, init=False, repr=False)

    @staticmethod
    def from_dict(d: dict) -> Scene:
        lights = d.get("lights")
        return Scene(
            entities={
                e["id"]: Entity.from_dict(e) for e in d.get("entities", [])
            },
            walls=[Wall.from_dict(w) for w in d.get("walls", [])],
            lights=(
                [LightSource.from_dict(li) for li in lights]
                if lights is not None
                else None
            ),
        )

    # -- entities ---------------------------------------------------------

    def add_entity(self, entity: Entity) -> None:
        self.entities[entity.id] = entity

    def move_entity(self, entity_id: str, point: Point) -> Entity:
        if entity_id not in self.entities:
            raise InvalidEntityError(f"unknown entity {entity_id!r}")
        moved = self.entities[entity_id].moved_to(point)
        self.entities[entity_id] = moved
        return moved

    def has_entity(self, entity_id: str) -> bool:
        return entity_id in self.entities

    def get_entity(self, entity_id: str) -> Entity | None:
        return self.entities.get(entity_id)

    def add_wall(self, wall: Wall) -> None:
        self.walls.append(wall)
        self._blockers_built = False

    # -- queries ----------------------------------------------------------

    def distance(self, a: Entity | Point, b: Entity | Point) -> float:
        ax, ay = _xy(a)
        bx, by = _xy(b)
        return math.hypot(bx - ax, by - ay)

    def distances_from(
        self, origin: Entity | Point, others: list[Entity]
    ) -> np.ndarray:
        """Distances from ``origin`` to each of ``others``, in order."""
        if not others:
            return np.zeros(0, dtype=np.float64)
        ox, oy = _xy(origin)
        pts = np.array([_xy(o) for o in others], dtype=np.float64)
        return np.hypot(pts[:, 0] - ox, pts[:, 1] - oy)

    def _blockers(self):
        if not self._blockers_built:
            segs = [
                ((w.x1, w.y1), (w.x2, w.y2))
                for w in self.walls
                if w.blocks_sight
            ]
            self._sight_blockers = prep(MultiLineString(segs)) if segs else None
            self._blockers_built = True
        return self._sight_blockers

    def line_of_sight(self, a: Entity | Point, b: Entity | Point) -> bool:
        blockers = self._blockers()
        if blockers is None:
            return True
        ax, ay = _xy(a)
        bx, by = _xy(b)
        if ax == bx and ay == by:
            return True
        return not blockers.intersects(LineString([(ax, ay), (bx, by)]))

    def movement_blocked(self, a: Entity | Point, b: Entity | Point) -> bool:
        ax, ay = _xy(a)
        bx, by = _xy(b)
        for w in self.walls:
            if not w.blocks_movement:
                continue
            if segments_intersect(ax, ay, bx, by, w.x1, w.y1, w.x2, w.y2):
                return True
        return False

    def lighting_at(self, point: Entity | Point) -> LightingBand:
        if self.lights is None:
            return LightingBand.UNKNOWN
        if not self.lights:
            return LightingBand.DARK
        px, py = _xy(point)
        arr = np.array(
            [(li.x, li.y, li.bright_radius, li.dim_radius) for li in self.lights],
            dtype=np.float64,
        )
        dist = np.hypot(arr[:, 0] - px, arr[:, 1] - py)
        if np.any(dist <= arr[:, 2]):
            return LightingBand.BRIGHT
        if np.any(dist <= arr[:, 3]):
            return LightingBand.DIM
        return LightingBand.DARK
