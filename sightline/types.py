"""Data types shared by the cache, integrator, optimizer, tracker and applier."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum

from .errors import InvalidOutcomeError


class VisibilityLevel(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    HIDDEN = "hidden"
    UNDETECTED = "undetected"


class CoverLevel(str, Enum):
    NONE = "none"
    LESSER = "lesser"
    STANDARD = "standard"
    GREATER = "greater"


class LightingBand(str, Enum):
    BRIGHT = "bright"
    DIM = "dim"
    DARK = "dark"
    UNKNOWN = "unknown"


class ImportanceTier(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class TransitionType(str, Enum):
    IMPROVED = "improved"
    WORSENED = "worsened"
    UNCHANGED = "unchanged"


class ResultSource(str, Enum):
    ORACLE = "oracle"
    OVERRIDE = "override"
    MANUAL = "manual"
    FALLBACK = "fallback"
    ERROR = "error"


@dataclass(frozen=True)
class Point:
    x: float = 0.0
    y: float = 0.0

    @staticmethod
    def from_dict(d: dict | None) -> Point:
        if not d:
            return Point()
        return Point(x=d.get("x", 0.0), y=d.get("y", 0.0))

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class Entity:
    """Something in the scene that can observe or be observed.

    ``x``/``y`` are the entity's center in scene units.
    """

    id: str
    x: float
    y: float
    name: str | None = None

    @property
    def position(self) -> Point:
        return Point(self.x, self.y)

    @property
    def is_valid(self) -> bool:
        return (
            bool(self.id)
            and isinstance(self.x, (int, float))
            and isinstance(self.y, (int, float))
            and math.isfinite(self.x)
            and math.isfinite(self.y)
        )

    def moved_to(self, point: Point) -> Entity:
        return replace(self, x=point.x, y=point.y)

    @staticmethod
    def from_dict(d: dict) -> Entity:
        return Entity(
            id=d["id"],
            x=d.get("x", 0.0),
            y=d.get("y", 0.0),
            name=d.get("name"),
        )

    def to_dict(self) -> dict:
        d: dict = {"id": self.id, "x": self.x, "y": self.y}
        if self.name:
            d["name"] = self.name
        return d


def is_valid_entity(entity: object) -> bool:
    return isinstance(entity, Entity) and entity.is_valid


@dataclass(frozen=True)
class CoverReading:
    """What a cover oracle reports for one pair."""

    level: CoverLevel
    # None means "look the bonus up in the cover table".
    bonus: int | None = None


@dataclass(frozen=True)
class SourceFlags:
    """Which oracles were enabled when a state was captured."""

    visibility_enabled: bool = True
    cover_enabled: bool = True


@dataclass
class VisibilityResult:
    level: VisibilityLevel = VisibilityLevel.FULL
    success: bool = False
    source: ResultSource = ResultSource.ORACLE
    fallback_used: bool = False
    error: str | None = None


@dataclass
class CoverResult:
    level: CoverLevel = CoverLevel.NONE
    bonus: int = 0
    success: bool = False
    source: ResultSource = ResultSource.ORACLE
    fallback_used: bool = False
    error: str | None = None


@dataclass
class CombinedState:
    visibility_result: VisibilityResult
    cover_result: CoverResult
    effective_visibility: VisibilityLevel
    stealth_bonus: int
    warnings: list[str] = field(default_factory=list)

    @staticmethod
    def error(message: str) -> CombinedState:
        return CombinedState(
            visibility_result=VisibilityResult(
                source=ResultSource.ERROR, error=message
            ),
            cover_result=CoverResult(source=ResultSource.ERROR, error=message),
            effective_visibility=VisibilityLevel.FULL,
            stealth_bonus=0,
            warnings=[f"system error: {message}"],
        )


# Index = concealment; higher is better for the entity trying to stay unseen.
STEALTH_ORDER: tuple[VisibilityLevel, ...] = (
    VisibilityLevel.FULL,
    VisibilityLevel.PARTIAL,
    VisibilityLevel.HIDDEN,
    VisibilityLevel.UNDETECTED,
)


def stealth_rank(level: VisibilityLevel) -> int:
    return STEALTH_ORDER.index(level)


@dataclass(frozen=True)
class PositionState:
    """Relationship from one observer to one subject at one instant.

    ``effective_visibility`` may be more concealed than
    ``visibility_level`` (cover adds concealment) but never less.
    """

    visibility_level: VisibilityLevel = VisibilityLevel.FULL
    visibility_computed: bool = False
    cover_level: CoverLevel = CoverLevel.NONE
    cover_computed: bool = False
    stealth_bonus: int = 0
    effective_visibility: VisibilityLevel = VisibilityLevel.FULL
    distance: float = 0.0
    has_line_of_sight: bool = True
    lighting_band: LightingBand = LightingBand.UNKNOWN
    captured_at: float = 0.0
    source_flags: SourceFlags = SourceFlags()
    visibility_override: VisibilityLevel | None = None
    cover_override: CoverLevel | None = None
    used_stored_position: bool = False
    errors: tuple[str, ...] = ()
    # Set on the safe default built when a capture fails outright.
    failed: bool = False

    def __post_init__(self) -> None:
        if self.stealth_bonus < 0:
            raise ValueError("stealth_bonus must be >= 0")
        if self.distance < 0:
            raise ValueError("distance must be >= 0")
        if stealth_rank(self.effective_visibility) < stealth_rank(
            self.visibility_level
        ):
            raise ValueError(
                f"effective visibility {self.effective_visibility.value} is "
                f"more visible than {self.visibility_level.value}"
            )

    @staticmethod
    def default(
        captured_at: float | None = None,
        errors: tuple[str, ...] = (),
        source_flags: SourceFlags = SourceFlags(),
    ) -> PositionState:
        """Safe state: fully visible, no cover, nothing computed.

        With ``errors`` it marks a failed capture.
        """
        return PositionState(
            captured_at=time.time() if captured_at is None else captured_at,
            source_flags=source_flags,
            errors=errors,
            failed=bool(errors),
        )

    @property
    def is_error_state(self) -> bool:
        return self.failed

    def to_dict(self) -> dict:
        d: dict = {
            "visibility_level": self.visibility_level.value,
            "visibility_computed": self.visibility_computed,
            "cover_level": self.cover_level.value,
            "cover_computed": self.cover_computed,
            "stealth_bonus": self.stealth_bonus,
            "effective_visibility": self.effective_visibility.value,
            "distance": self.distance,
            "has_line_of_sight": self.has_line_of_sight,
            "lighting_band": self.lighting_band.value,
            "captured_at": self.captured_at,
            "source_flags": {
                "visibility_enabled": self.source_flags.visibility_enabled,
                "cover_enabled": self.source_flags.cover_enabled,
            },
            "used_stored_position": self.used_stored_position,
            "errors": list(self.errors),
            "failed": self.failed,
        }
        if self.visibility_override is not None:
            d["visibility_override"] = self.visibility_override.value
        if self.cover_override is not None:
            d["cover_override"] = self.cover_override.value
        return d

    @staticmethod
    def from_dict(d: dict) -> PositionState:
        flags = d.get("source_flags") or {}
        vis_override = d.get("visibility_override")
        cover_override = d.get("cover_override")
        return PositionState(
            visibility_level=VisibilityLevel(d.get("visibility_level", "full")),
            visibility_computed=d.get("visibility_computed", False),
            cover_level=CoverLevel(d.get("cover_level", "none")),
            cover_computed=d.get("cover_computed", False),
            stealth_bonus=d.get("stealth_bonus", 0),
            effective_visibility=VisibilityLevel(
                d.get("effective_visibility", "full")
            ),
            distance=d.get("distance", 0.0),
            has_line_of_sight=d.get("has_line_of_sight", True),
            lighting_band=LightingBand(d.get("lighting_band", "unknown")),
            captured_at=d.get("captured_at", 0.0),
            source_flags=SourceFlags(
                visibility_enabled=flags.get("visibility_enabled", True),
                cover_enabled=flags.get("cover_enabled", True),
            ),
            visibility_override=(
                VisibilityLevel(vis_override) if vis_override else None
            ),
            cover_override=CoverLevel(cover_override) if cover_override else None,
            used_stored_position=d.get("used_stored_position", False),
            errors=tuple(d.get("errors", ())),
            failed=d.get("failed", False),
        )


@dataclass(frozen=True)
class PositionTransition:
    """Classified change between a start and end state for one pair.

    ``target_id`` is the key both snapshot maps were indexed by (the
    observer, for sneak captures).
    """

    target_id: str
    start: PositionState
    end: PositionState
    visibility_changed: bool
    cover_changed: bool
    stealth_bonus_change: int
    transition_type: TransitionType

    @property
    def has_changed(self) -> bool:
        return self.visibility_changed or self.cover_changed

    @property
    def impact_on_dc(self) -> int:
        return self.stealth_bonus_change

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "has_changed": self.has_changed,
            "transition_type": self.transition_type.value,
            "stealth_bonus_change": self.stealth_bonus_change,
            "impact_on_dc": self.impact_on_dc,
            "visibility": {
                "from": self.start.visibility_level.value,
                "to": self.end.visibility_level.value,
                "changed": self.visibility_changed,
            },
            "cover": {
                "from": self.start.cover_level.value,
                "to": self.end.cover_level.value,
                "changed": self.cover_changed,
            },
        }


@dataclass(frozen=True)
class ErrorResult:
    """Stand-in result for a subject whose computation failed."""

    message: str
    error_type: str = "error"
    timestamp: float = 0.0

    @staticmethod
    def from_exception(exc: BaseException) -> ErrorResult:
        return ErrorResult(
            message=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            timestamp=time.time(),
        )

    def to_dict(self) -> dict:
        return {
            "error": True,
            "message": self.message,
            "error_type": self.error_type,
            "timestamp": self.timestamp,
        }


def _parse_enum(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidOutcomeError(
            f"unknown {field_name} {value!r}"
        ) from None


@dataclass(frozen=True)
class Outcome:
    """Decided final state for one observer/subject pair.

    At least one of ``new_visibility``, ``new_cover`` or ``override_state``
    must be set. ``override_state`` pins the observer's visibility of the
    subject and takes precedence over ``new_visibility``.
    """

    observer_id: str
    subject_id: str
    new_visibility: VisibilityLevel | None = None
    new_cover: CoverLevel | None = None
    override_state: VisibilityLevel | None = None
    old_visibility: VisibilityLevel | None = None
    old_cover: CoverLevel | None = None

    @property
    def target_visibility(self) -> VisibilityLevel | None:
        return self.override_state or self.new_visibility

    @property
    def changes_visibility(self) -> bool:
        return self.target_visibility is not None

    @property
    def changes_cover(self) -> bool:
        return self.new_cover is not None

    @staticmethod
    def from_dict(d: dict) -> Outcome:
        try:
            observer_id = d["observer_id"]
            subject_id = d["subject_id"]
        except KeyError as exc:
            raise InvalidOutcomeError(f"missing {exc.args[0]}") from None
        return Outcome(
            observer_id=observer_id,
            subject_id=subject_id,
            new_visibility=_parse_enum(
                VisibilityLevel, d.get("new_visibility"), "visibility"
            ),
            new_cover=_parse_enum(CoverLevel, d.get("new_cover"), "cover"),
            override_state=_parse_enum(
                VisibilityLevel, d.get("override_state"), "override state"
            ),
            old_visibility=_parse_enum(
                VisibilityLevel, d.get("old_visibility"), "visibility"
            ),
            old_cover=_parse_enum(CoverLevel, d.get("old_cover"), "cover"),
        )


@dataclass(frozen=True)
class ChangeRecord:
    kind: str  # "visibility", "cover", "override"
    observer_id: str
    subject_id: str
    old_state: str | None
    new_state: str | None
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "observer_id": self.observer_id,
            "subject_id": self.subject_id,
            "old_state": self.old_state,
            "new_state": self.new_state,
            "timestamp": self.timestamp,
        }
