"""Canonical learner profile and the effective-profile merge."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import MissingParameter
from .refinement import RefinementState, difficulty_band

AttributeSource = Literal["user", "system"]
EffectiveSource = Literal["user", "system", "refinement"]

MIN_CONFIDENCE_FOR_SYNC = 0.6
DEFAULT_DIFFICULTY_TARGET = 3.0
DEFAULT_ESTIMATED_ABILITY = 0.0

# Profile attributes that have a refinement-derived counterpart.
SYNCABLE_ATTRIBUTES = (
    "optimal_session_length",
    "peak_performance_hour",
    "speed_preference",
    "difficulty_preference",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_username(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise MissingParameter("Username cannot be empty.")
    return normalized


class LearnerProfile(BaseModel):
    username: str
    education_level: str = "high_school"
    study_goal: str = "general_learning"
    preferred_study_time: str = "varies"
    learning_styles: List[str] = Field(default_factory=list)
    avg_session_length: int = Field(default=15, ge=1)
    optimal_session_length: int = Field(default=15, ge=1)
    peak_performance_hour: Optional[int] = Field(default=None, ge=0, le=23)
    speed_preference: Literal["fast", "moderate", "slow"] = "moderate"
    difficulty_preference: Literal["easy", "moderate", "challenging"] = "moderate"
    strong_subjects: List[str] = Field(default_factory=list)
    weak_subjects: List[str] = Field(default_factory=list)
    locked_attributes: List[str] = Field(default_factory=list)
    attribute_sources: Dict[str, AttributeSource] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=_now)


# Fields that are not learner attributes and therefore cannot be locked.
_NON_ATTRIBUTE_FIELDS = frozenset({"username", "locked_attributes", "attribute_sources", "last_updated"})

PROFILE_ATTRIBUTES = frozenset(
    name for name in LearnerProfile.model_fields if name not in _NON_ATTRIBUTE_FIELDS
)


class EffectiveProfile(BaseModel):
    """Canonical profile with unlocked fields overridden by refinement values."""

    username: str
    education_level: str
    study_goal: str
    preferred_study_time: str
    learning_styles: List[str] = Field(default_factory=list)
    avg_session_length: int
    optimal_session_length: int
    peak_performance_hour: Optional[int] = None
    speed_preference: str
    difficulty_preference: str
    strong_subjects: List[str] = Field(default_factory=list)
    weak_subjects: List[str] = Field(default_factory=list)
    current_difficulty_target: float = DEFAULT_DIFFICULTY_TARGET
    estimated_ability: float = DEFAULT_ESTIMATED_ABILITY
    session_length_confidence: float = 0.0
    peak_hour_confidence: float = 0.0
    difficulty_confidence: float = 0.0
    speed_confidence: float = 0.0
    sources: Dict[str, EffectiveSource] = Field(default_factory=dict)


def refinement_value(attribute: str, state: RefinementState) -> tuple[object, float]:
    """Return the refinement-derived value and its confidence for a syncable attribute."""
    if attribute == "optimal_session_length":
        return state.inferred_optimal_session_minutes, state.session_length_confidence
    if attribute == "peak_performance_hour":
        return state.inferred_peak_hour, state.peak_hour_confidence
    if attribute == "speed_preference":
        return state.inferred_speed_preference, state.speed_confidence
    if attribute == "difficulty_preference":
        return difficulty_band(state.current_difficulty_target), state.difficulty_confidence
    raise KeyError(attribute)


def calculate_effective_profile(
    profile: LearnerProfile,
    refinement_state: Optional[RefinementState],
) -> EffectiveProfile:
    """Merge the canonical profile with live refinement values.

    Locked attributes always keep their canonical value. An unlocked
    attribute takes its refinement value once the confidence behind it
    reaches ``MIN_CONFIDENCE_FOR_SYNC``. The inputs are never mutated.
    """
    payload = profile.model_dump(exclude={"locked_attributes", "attribute_sources", "last_updated"})
    sources: Dict[str, EffectiveSource] = {
        attribute: profile.attribute_sources.get(attribute, "system") for attribute in SYNCABLE_ATTRIBUTES
    }
    payload["sources"] = sources

    if refinement_state is None:
        return EffectiveProfile(**payload)

    locked = set(profile.locked_attributes)
    for attribute in SYNCABLE_ATTRIBUTES:
        if attribute in locked:
            continue
        value, confidence = refinement_value(attribute, refinement_state)
        if value is None or confidence < MIN_CONFIDENCE_FOR_SYNC:
            continue
        payload[attribute] = value
        sources[attribute] = "refinement"

    payload.update(
        current_difficulty_target=refinement_state.current_difficulty_target,
        estimated_ability=refinement_state.estimated_ability,
        session_length_confidence=refinement_state.session_length_confidence,
        peak_hour_confidence=refinement_state.peak_hour_confidence,
        difficulty_confidence=refinement_state.difficulty_confidence,
        speed_confidence=refinement_state.speed_confidence,
    )
    return EffectiveProfile(**payload)


__all__ = [
    "EffectiveProfile",
    "LearnerProfile",
    "MIN_CONFIDENCE_FOR_SYNC",
    "PROFILE_ATTRIBUTES",
    "SYNCABLE_ATTRIBUTES",
    "calculate_effective_profile",
    "refinement_value",
]
