"""Per-concept mastery propagation from lesson outcomes.

A completed lesson moves the mastery of every concept it is mapped to. How
far it moves depends on the relationship between lesson and concept:
lessons that *teach* a concept move it the most, lessons that *reinforce*
it move it less, and lessons that merely *require* it only ever grant a
small bump on a strong performance.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from .refinement import clamp

RelationshipType = Literal["teaches", "reinforces", "requires"]

RELATIONSHIP_COEFFICIENTS: Dict[str, float] = {
    "teaches": 0.3,
    "reinforces": 0.15,
}
REQUIRES_BUMP = 0.05
REQUIRES_MIN_ACCURACY = 0.7
SUCCESS_THRESHOLD = 0.6
FAILURE_THRESHOLD = 0.4
STABILITY_GROWTH = 1.2
STABILITY_DECAY = 0.8
MIN_STABILITY = 1.0
DEFAULT_RELEVANCE = 0.8

# Strongest first; used when a lesson maps the same concept more than once.
_RELATIONSHIP_STRENGTH = {"teaches": 3, "reinforces": 2, "requires": 1}


class ConceptMapping(BaseModel):
    course_id: str
    lesson_index: int = Field(ge=0)
    step_index: Optional[int] = None
    concept_id: str = Field(min_length=1)
    relationship_type: RelationshipType = "teaches"
    relevance_score: float = Field(default=DEFAULT_RELEVANCE, gt=0.0, le=1.0)


class ConceptMastery(BaseModel):
    username: str
    concept_id: str
    mastery_level: float = Field(default=0.0, ge=0.0, le=1.0)
    peak_mastery: float = Field(default=0.0, ge=0.0, le=1.0)
    total_exposures: int = Field(default=0, ge=0)
    successful_recalls: int = Field(default=0, ge=0)
    failed_recalls: int = Field(default=0, ge=0)
    stability: float = Field(default=MIN_STABILITY, ge=MIN_STABILITY)
    next_review_date: Optional[date] = None
    first_encountered_at: Optional[datetime] = None
    last_reviewed_at: Optional[datetime] = None


class LessonAttempt(BaseModel):
    correct: bool
    attempted_at: datetime


class LessonProgress(BaseModel):
    username: str
    course_id: str
    lesson_index: int
    completed: bool = False
    mastery_level: float = Field(default=0.0, ge=0.0, le=1.0)
    accuracy: Optional[float] = None
    completed_at: Optional[datetime] = None


def compute_mastery_delta(accuracy: float, relationship_type: str, relevance: float) -> float:
    accuracy = clamp(accuracy, 0.0, 1.0)
    relevance = clamp(relevance, 0.0, 1.0)
    if relationship_type == "requires":
        if accuracy >= REQUIRES_MIN_ACCURACY:
            return REQUIRES_BUMP * relevance
        return 0.0
    coefficient = RELATIONSHIP_COEFFICIENTS.get(relationship_type, 0.0)
    return (accuracy - 0.5) * coefficient * relevance


def next_stability(stability: float, accuracy: float) -> float:
    stability = max(stability, MIN_STABILITY)
    if accuracy >= SUCCESS_THRESHOLD:
        return stability * STABILITY_GROWTH
    return max(MIN_STABILITY, stability * STABILITY_DECAY)


def next_review_interval(stability: float) -> int:
    """Whole days until the next review. Halves round up."""
    return max(int(math.floor(stability + 0.5)), 1)


def collapse_mappings(mappings: Iterable[ConceptMapping]) -> List[ConceptMapping]:
    """One mapping per concept: strongest relationship, highest relevance."""
    merged: Dict[str, ConceptMapping] = {}
    for mapping in mappings:
        current = merged.get(mapping.concept_id)
        if current is None:
            merged[mapping.concept_id] = mapping
            continue
        strongest = max(
            (current.relationship_type, mapping.relationship_type),
            key=lambda kind: _RELATIONSHIP_STRENGTH[kind],
        )
        merged[mapping.concept_id] = current.model_copy(
            update={
                "relationship_type": strongest,
                "relevance_score": max(current.relevance_score, mapping.relevance_score),
            }
        )
    return list(merged.values())


def apply_lesson_outcome(
    existing: Optional[ConceptMastery],
    *,
    username: str,
    mapping: ConceptMapping,
    accuracy: float,
    now: Optional[datetime] = None,
) -> ConceptMastery:
    """Return the next mastery row for ``mapping.concept_id``.

    ``existing=None`` is treated as a fresh row at zero mastery and unit
    stability.
    """
    now = now or datetime.now(timezone.utc)
    accuracy = clamp(accuracy, 0.0, 1.0)
    current = existing or ConceptMastery(username=username, concept_id=mapping.concept_id, first_encountered_at=now)

    delta = compute_mastery_delta(accuracy, mapping.relationship_type, mapping.relevance_score)
    mastery = clamp(current.mastery_level + delta, 0.0, 1.0)
    stability = next_stability(current.stability, accuracy)

    return current.model_copy(
        update={
            "mastery_level": mastery,
            "peak_mastery": max(current.peak_mastery, mastery),
            "total_exposures": current.total_exposures + 1,
            "successful_recalls": current.successful_recalls + (1 if accuracy >= SUCCESS_THRESHOLD else 0),
            "failed_recalls": current.failed_recalls + (1 if accuracy < FAILURE_THRESHOLD else 0),
            "stability": stability,
            "next_review_date": now.date() + timedelta(days=next_review_interval(stability)),
            "first_encountered_at": current.first_encountered_at or now,
            "last_reviewed_at": now,
        }
    )


def recency_weight(days_since: float) -> float:
    if days_since > 14:
        return 0.6
    if days_since > 7:
        return 0.7
    if days_since > 3:
        return 0.85
    if days_since > 1:
        return 0.95
    return 1.0


def lesson_mastery(attempts: Sequence[LessonAttempt], now: Optional[datetime] = None) -> float:
    """Recency-weighted accuracy over ``attempts``; 0 when there are none."""
    if not attempts:
        return 0.0
    now = now or datetime.now(timezone.utc)
    raw_accuracy = sum(1 for attempt in attempts if attempt.correct) / len(attempts)
    latest = max(attempt.attempted_at for attempt in attempts)
    days_since = max((now - latest).total_seconds() / 86400.0, 0.0)
    return min(raw_accuracy * recency_weight(days_since), 1.0)


__all__ = [
    "ConceptMapping",
    "ConceptMastery",
    "LessonAttempt",
    "LessonProgress",
    "RelationshipType",
    "apply_lesson_outcome",
    "collapse_mappings",
    "compute_mastery_delta",
    "lesson_mastery",
    "next_review_interval",
    "next_stability",
    "recency_weight",
]
