from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from learner_engine.concept_mastery import ConceptMastery
from learner_engine.knowledge_gaps import detect_knowledge_gaps, due_concepts

NOW = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


def _mastery(concept_id: str, level: float, *, peak: float | None = None, reviewed_days_ago: int | None = None, **extra) -> ConceptMastery:
    return ConceptMastery(
        username="ada",
        concept_id=concept_id,
        mastery_level=level,
        peak_mastery=level if peak is None else peak,
        last_reviewed_at=None if reviewed_days_ago is None else NOW - timedelta(days=reviewed_days_ago),
        **extra,
    )


def test_missing_and_weak_prerequisites_block_the_lesson() -> None:
    masteries = {
        "algebra": _mastery("algebra", 0.2, reviewed_days_ago=1),
        "geometry": _mastery("geometry", 0.8, reviewed_days_ago=1),
    }
    report = detect_knowledge_gaps(masteries, ["algebra", "geometry", "fractions"], now=NOW)

    by_concept = {gap.concept_id: gap for gap in report.gaps}
    assert set(by_concept) == {"algebra", "fractions"}
    assert by_concept["fractions"].gap_type == "never_learned"
    assert by_concept["algebra"].gap_type == "missing_prerequisite"
    assert all(gap.severity == "critical" for gap in report.gaps)
    assert report.has_blocking_gaps is True
    assert report.recommended_action == "review"
    assert report.analyzed_concepts == 3


def test_non_blocking_check_downgrades_severity() -> None:
    report = detect_knowledge_gaps({}, ["fractions"], now=NOW, blocking=False)
    assert report.gaps[0].severity == "moderate"
    assert report.has_blocking_gaps is False
    assert report.recommended_action == "continue"


def test_decay_is_reported_once_per_concept() -> None:
    masteries = {"fractions": _mastery("fractions", 0.4, peak=0.9, reviewed_days_ago=10)}
    report = detect_knowledge_gaps(masteries, ["fractions"], related_concepts=["fractions"], now=NOW)

    assert len(report.gaps) == 1
    gap = report.gaps[0]
    assert gap.gap_type == "decay"
    assert gap.severity == "minor"
    assert gap.days_since_review == 10
    assert abs(gap.mastery_decay - 0.5) < 1e-9
    assert report.has_blocking_gaps is False
    assert report.recommended_action == "practice"
    assert report.analyzed_concepts == 1


def test_recent_review_or_low_peak_is_not_decay() -> None:
    masteries = {
        "recent": _mastery("recent", 0.4, peak=0.9, reviewed_days_ago=3),
        "shallow": _mastery("shallow", 0.35, peak=0.5, reviewed_days_ago=30),
        "retained": _mastery("retained", 0.7, peak=0.9, reviewed_days_ago=30),
    }
    report = detect_knowledge_gaps(masteries, [], related_concepts=list(masteries), now=NOW)
    assert report.gaps == []
    assert report.recommended_action == "continue"


def test_gaps_are_ordered_by_severity() -> None:
    masteries = {"decayed": _mastery("decayed", 0.2, peak=0.8, reviewed_days_ago=20)}
    report = detect_knowledge_gaps(masteries, ["missing"], related_concepts=["decayed"], now=NOW)
    assert [gap.concept_id for gap in report.gaps] == ["missing", "decayed"]
    assert report.gaps[1].severity == "moderate"


def test_due_concepts_sorted_most_overdue_first() -> None:
    today = date(2026, 5, 1)
    masteries = [
        _mastery("later", 0.5, next_review_date=today + timedelta(days=2)),
        _mastery("today", 0.5, next_review_date=today),
        _mastery("overdue", 0.5, next_review_date=today - timedelta(days=3)),
        _mastery("never", 0.5),
    ]
    assert [mastery.concept_id for mastery in due_concepts(masteries, today)] == ["overdue", "today"]
