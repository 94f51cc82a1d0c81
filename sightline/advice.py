"""Scores and summaries that help decide where a sneaking entity stands."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .types import (
    CoverLevel,
    LightingBand,
    PositionState,
    PositionTransition,
    TransitionType,
    VisibilityLevel,
)

VISIBILITY_SCORE = {
    VisibilityLevel.FULL: 0,
    VisibilityLevel.PARTIAL: 10,
    VisibilityLevel.HIDDEN: 20,
    VisibilityLevel.UNDETECTED: 30,
}

COVER_SCORE = {
    CoverLevel.NONE: 0,
    CoverLevel.LESSER: 5,
    CoverLevel.STANDARD: 10,
    CoverLevel.GREATER: 15,
}

LIGHTING_SCORE = {
    LightingBand.BRIGHT: -5,
    LightingBand.DIM: 0,
    LightingBand.DARK: 5,
    LightingBand.UNKNOWN: 0,
}


def stealth_score(state: PositionState) -> float:
    """Higher is better for the subject trying to stay unseen.

    Visibility dominates, then cover, then the stealth bonus and lighting.
    A moderate distance earns a small bonus, a clear line of sight a small
    penalty, and each recorded error a penalty of two.
    """
    score = VISIBILITY_SCORE[state.visibility_level]
    score += COVER_SCORE[state.cover_level]
    score += state.stealth_bonus
    score += LIGHTING_SCORE[state.lighting_band]
    if 10 <= state.distance <= 30:
        score += 2
    if state.has_line_of_sight:
        score -= 3
    score -= 2 * len(state.errors)
    return score


def best_position_for_stealth(
    states: list[PositionState],
) -> tuple[int, PositionState | None, float]:
    """(index, state, score) of the highest-scoring state; first wins ties.

    Returns ``(-1, None, -inf)`` for an empty list.
    """
    best_index, best_state, best = -1, None, float("-inf")
    for i, state in enumerate(states):
        score = stealth_score(state)
        if score > best:
            best_index, best_state, best = i, state, score
    return best_index, best_state, best


@dataclass
class DCModifier:
    modifier: int
    breakdown: list[str]

    @property
    def description(self) -> str:
        if not self.breakdown:
            return "no DC modifiers apply"
        return f"DC modifier: {self.modifier:+d} ({', '.join(self.breakdown)})"


def dc_modifier(state: PositionState) -> DCModifier:
    breakdown = []
    modifier = 0
    if state.stealth_bonus > 0:
        modifier += state.stealth_bonus
        breakdown.append(f"+{state.stealth_bonus} from {state.cover_level.value} cover")
    return DCModifier(modifier=modifier, breakdown=breakdown)


def group_transitions_by_type(
    transitions: Iterable[PositionTransition],
) -> dict[TransitionType, list[PositionTransition]]:
    groups: dict[TransitionType, list[PositionTransition]] = {
        t: [] for t in TransitionType
    }
    for transition in transitions:
        groups[transition.transition_type].append(transition)
    return groups


def summarize_transitions(transitions: Iterable[PositionTransition]) -> dict:
    transitions = list(transitions)
    groups = group_transitions_by_type(transitions)
    n = len(transitions)
    total_bonus = sum(t.stealth_bonus_change for t in transitions)
    return {
        "total": n,
        "improved": len(groups[TransitionType.IMPROVED]),
        "worsened": len(groups[TransitionType.WORSENED]),
        "unchanged": len(groups[TransitionType.UNCHANGED]),
        "average_stealth_bonus_change": total_bonus / n if n else 0.0,
        "average_impact_on_dc": (
            sum(t.impact_on_dc for t in transitions) / n if n else 0.0
        ),
    }
