"""Knowledge gap detection over stored concept mastery."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field

from .concept_mastery import ConceptMastery

GapType = Literal["never_learned", "missing_prerequisite", "decay"]
GapSeverity = Literal["critical", "moderate", "minor"]

MASTERY_THRESHOLD = 0.3
DECAY_PEAK_THRESHOLD = 0.6
DECAY_RETAINED_RATIO = 0.7
DECAY_DAYS_THRESHOLD = 7

_SEVERITY_ORDER = {"critical": 0, "moderate": 1, "minor": 2}


class KnowledgeGap(BaseModel):
    concept_id: str
    gap_type: GapType
    severity: GapSeverity
    confidence: float
    mastery_level: float = 0.0
    days_since_review: Optional[int] = None
    mastery_decay: Optional[float] = None


class KnowledgeGapReport(BaseModel):
    gaps: List[KnowledgeGap] = Field(default_factory=list)
    analyzed_concepts: int = 0
    has_blocking_gaps: bool = False
    recommended_action: Literal["review", "practice", "continue"] = "continue"


def _prerequisite_gap(concept_id: str, mastery: Optional[ConceptMastery], blocking: bool) -> Optional[KnowledgeGap]:
    level = mastery.mastery_level if mastery else 0.0
    if level >= MASTERY_THRESHOLD:
        return None
    return KnowledgeGap(
        concept_id=concept_id,
        gap_type="never_learned" if level == 0 else "missing_prerequisite",
        severity="critical" if blocking else "moderate",
        confidence=0.9,
        mastery_level=level,
    )


def _decay_gap(mastery: ConceptMastery, now: datetime) -> Optional[KnowledgeGap]:
    if mastery.last_reviewed_at is None:
        return None
    if mastery.peak_mastery < DECAY_PEAK_THRESHOLD:
        return None
    if mastery.mastery_level >= mastery.peak_mastery * DECAY_RETAINED_RATIO:
        return None
    days_since = int(abs((now - mastery.last_reviewed_at).total_seconds()) // 86400)
    if days_since < DECAY_DAYS_THRESHOLD:
        return None
    return KnowledgeGap(
        concept_id=mastery.concept_id,
        gap_type="decay",
        severity="moderate" if mastery.mastery_level < MASTERY_THRESHOLD else "minor",
        confidence=0.8,
        mastery_level=mastery.mastery_level,
        days_since_review=days_since,
        mastery_decay=mastery.peak_mastery - mastery.mastery_level,
    )


def detect_knowledge_gaps(
    masteries: Mapping[str, ConceptMastery],
    required_concepts: Iterable[str],
    *,
    related_concepts: Iterable[str] = (),
    now: Optional[datetime] = None,
    blocking: bool = True,
) -> KnowledgeGapReport:
    """Find gaps among ``required_concepts`` and decay among every checked concept.

    A required concept with no mastery row or a level below
    ``MASTERY_THRESHOLD`` is a prerequisite gap. Any checked concept whose
    mastery fell below 70% of its peak and has not been reviewed for a week
    is a decay gap. Each concept yields at most one gap.
    """
    now = now or datetime.now(timezone.utc)
    required = list(dict.fromkeys(required_concepts))
    checked = list(dict.fromkeys([*required, *related_concepts]))
    gaps: List[KnowledgeGap] = []
    flagged: set[str] = set()

    for concept_id in required:
        gap = _prerequisite_gap(concept_id, masteries.get(concept_id), blocking)
        if gap is not None:
            gaps.append(gap)
            flagged.add(concept_id)

    for concept_id in checked:
        mastery = masteries.get(concept_id)
        if mastery is None or concept_id in flagged:
            continue
        gap = _decay_gap(mastery, now)
        if gap is not None:
            gaps.append(gap)
            flagged.add(concept_id)

    gaps.sort(key=lambda gap: (_SEVERITY_ORDER[gap.severity], -gap.confidence))
    has_blocking = any(
        gap.severity == "critical" and gap.gap_type in ("never_learned", "missing_prerequisite") for gap in gaps
    )
    if has_blocking:
        action = "review"
    elif any(gap.gap_type == "decay" for gap in gaps):
        action = "practice"
    else:
        action = "continue"

    return KnowledgeGapReport(
        gaps=gaps,
        analyzed_concepts=len(checked),
        has_blocking_gaps=has_blocking,
        recommended_action=action,
    )


def due_concepts(masteries: Iterable[ConceptMastery], today: Optional[date] = None) -> List[ConceptMastery]:
    """Concepts whose next review falls on or before ``today``, most overdue first."""
    today = today or datetime.now(timezone.utc).date()
    due = [mastery for mastery in masteries if mastery.next_review_date is not None and mastery.next_review_date <= today]
    return sorted(due, key=lambda mastery: (mastery.next_review_date, mastery.concept_id))


__all__ = [
    "KnowledgeGap",
    "KnowledgeGapReport",
    "detect_knowledge_gaps",
    "due_concepts",
]
