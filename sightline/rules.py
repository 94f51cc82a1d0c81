"""Cover bonuses, stealth ordering and the visibility/cover combination rule.

Cover only ever adds concealment: a subject that is already hidden or
undetected stays that way whatever its cover, and a fully visible subject
behind cover that allows hiding drops to partial visibility.
"""

from __future__ import annotations

from dataclasses import dataclass

from .types import (
    CoverLevel,
    ImportanceTier,
    PositionState,
    TransitionType,
    VisibilityLevel,
    stealth_rank,
)


@dataclass(frozen=True)
class CoverRule:
    bonus: int
    can_hide: bool


COVER_TABLE: dict[CoverLevel, CoverRule] = {
    CoverLevel.NONE: CoverRule(bonus=0, can_hide=False),
    CoverLevel.LESSER: CoverRule(bonus=0, can_hide=False),
    CoverLevel.STANDARD: CoverRule(bonus=2, can_hide=True),
    CoverLevel.GREATER: CoverRule(bonus=4, can_hide=True),
}

# Tier rank for eviction; lower ranks are evicted first.
TIER_RANK: dict[ImportanceTier, int] = {
    ImportanceTier.LOW: 0,
    ImportanceTier.NORMAL: 1,
    ImportanceTier.HIGH: 2,
    ImportanceTier.CRITICAL: 3,
}


def cover_bonus(
    level: CoverLevel, table: dict[CoverLevel, CoverRule] = COVER_TABLE
) -> int:
    return table[level].bonus


def can_hide(
    level: CoverLevel, table: dict[CoverLevel, CoverRule] = COVER_TABLE
) -> bool:
    return table[level].can_hide


def combine_states(
    visibility: VisibilityLevel,
    cover: CoverLevel,
    table: dict[CoverLevel, CoverRule] = COVER_TABLE,
) -> VisibilityLevel:
    if visibility in (VisibilityLevel.HIDDEN, VisibilityLevel.UNDETECTED):
        return visibility
    if visibility == VisibilityLevel.FULL and can_hide(cover, table):
        return VisibilityLevel.PARTIAL
    return visibility


def is_visibility_improved_for_stealth(
    before: VisibilityLevel, after: VisibilityLevel
) -> bool:
    """True when ``after`` conceals the subject better than ``before``."""
    return stealth_rank(after) > stealth_rank(before)


def classify_transition(
    start: PositionState, end: PositionState
) -> tuple[bool, bool, int, TransitionType]:
    """Return (visibility_changed, cover_changed, bonus_delta, type)."""
    visibility_changed = start.visibility_level != end.visibility_level
    cover_changed = start.cover_level != end.cover_level
    bonus_delta = end.stealth_bonus - start.stealth_bonus
    if not (visibility_changed or cover_changed):
        kind = TransitionType.UNCHANGED
    elif (
        is_visibility_improved_for_stealth(
            start.visibility_level, end.visibility_level
        )
        or bonus_delta > 0
    ):
        kind = TransitionType.IMPROVED
    else:
        kind = TransitionType.WORSENED
    return visibility_changed, cover_changed, bonus_delta, kind


def derive_importance(state: PositionState) -> ImportanceTier:
    if state.visibility_level in (
        VisibilityLevel.HIDDEN,
        VisibilityLevel.UNDETECTED,
    ):
        return ImportanceTier.CRITICAL
    if state.visibility_level == VisibilityLevel.PARTIAL or state.stealth_bonus >= 2:
        return ImportanceTier.HIGH
    if state.visibility_level == VisibilityLevel.FULL and state.stealth_bonus == 0:
        return ImportanceTier.LOW
    return ImportanceTier.NORMAL
