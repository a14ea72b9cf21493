from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from learner_engine.concept_mastery import (
    ConceptMapping,
    ConceptMastery,
    LessonAttempt,
    apply_lesson_outcome,
    collapse_mappings,
    compute_mastery_delta,
    lesson_mastery,
    next_review_interval,
    recency_weight,
)

NOW = datetime(2026, 4, 10, 15, 0, tzinfo=timezone.utc)


def _mapping(concept_id: str = "fractions", relationship_type: str = "teaches", relevance: float = 0.8) -> ConceptMapping:
    return ConceptMapping(
        course_id="math-101",
        lesson_index=2,
        concept_id=concept_id,
        relationship_type=relationship_type,
        relevance_score=relevance,
    )


def test_teaching_lesson_with_perfect_accuracy_raises_mastery() -> None:
    updated = apply_lesson_outcome(None, username="ada", mapping=_mapping(), accuracy=1.0, now=NOW)
    assert updated.mastery_level == pytest.approx(0.5 * 0.3 * 0.8)
    assert updated.peak_mastery == updated.mastery_level
    assert updated.total_exposures == 1
    assert updated.successful_recalls == 1
    assert updated.failed_recalls == 0
    assert updated.first_encountered_at == NOW
    assert updated.last_reviewed_at == NOW


def test_reinforcing_lesson_moves_less_than_teaching() -> None:
    teaches = compute_mastery_delta(0.9, "teaches", 1.0)
    reinforces = compute_mastery_delta(0.9, "reinforces", 1.0)
    assert teaches > reinforces > 0.0
    assert compute_mastery_delta(0.1, "reinforces", 1.0) < 0.0


def test_required_concept_is_never_penalised() -> None:
    existing = ConceptMastery(username="ada", concept_id="algebra", mastery_level=0.4, stability=2.0)
    updated = apply_lesson_outcome(
        existing,
        username="ada",
        mapping=_mapping("algebra", "requires"),
        accuracy=0.5,
        now=NOW,
    )
    assert updated.mastery_level == pytest.approx(0.4)
    assert compute_mastery_delta(0.0, "requires", 1.0) == 0.0
    assert compute_mastery_delta(0.7, "requires", 0.8) == pytest.approx(0.04)


def test_mastery_is_clamped_to_unit_interval() -> None:
    high = ConceptMastery(username="ada", concept_id="fractions", mastery_level=0.95)
    raised = apply_lesson_outcome(high, username="ada", mapping=_mapping(relevance=1.0), accuracy=1.0, now=NOW)
    assert raised.mastery_level == 1.0

    low = ConceptMastery(username="ada", concept_id="fractions", mastery_level=0.05)
    lowered = apply_lesson_outcome(low, username="ada", mapping=_mapping(relevance=1.0), accuracy=0.0, now=NOW)
    assert lowered.mastery_level == 0.0
    assert lowered.peak_mastery == 0.0


def test_out_of_range_accuracy_is_clamped() -> None:
    updated = apply_lesson_outcome(None, username="ada", mapping=_mapping(), accuracy=1.0000001, now=NOW)
    assert updated.mastery_level == pytest.approx(0.12)


@pytest.mark.parametrize(
    ("accuracy", "successes", "failures"),
    [(0.6, 1, 0), (0.5, 0, 0), (0.4, 0, 0), (0.39, 0, 1)],
)
def test_recall_counters_follow_accuracy_bands(accuracy: float, successes: int, failures: int) -> None:
    updated = apply_lesson_outcome(None, username="ada", mapping=_mapping(), accuracy=accuracy, now=NOW)
    assert updated.total_exposures == 1
    assert updated.successful_recalls == successes
    assert updated.failed_recalls == failures


def test_stability_and_review_date_after_success() -> None:
    updated = apply_lesson_outcome(None, username="ada", mapping=_mapping(), accuracy=1.0, now=NOW)
    assert updated.stability == pytest.approx(1.2)
    assert updated.next_review_date == NOW.date() + timedelta(days=1)


def test_stability_never_drops_below_one_day() -> None:
    existing = ConceptMastery(username="ada", concept_id="fractions", stability=1.1)
    updated = apply_lesson_outcome(existing, username="ada", mapping=_mapping(), accuracy=0.2, now=NOW)
    assert updated.stability == 1.0
    assert updated.next_review_date == NOW.date() + timedelta(days=1)


def test_review_interval_rounds_half_up() -> None:
    assert next_review_interval(1.2) == 1
    assert next_review_interval(1.5) == 2
    assert next_review_interval(2.49) == 2
    assert next_review_interval(2.5) == 3


def test_duplicate_mappings_collapse_to_strongest_relationship() -> None:
    collapsed = collapse_mappings(
        [
            _mapping("fractions", "requires", 0.9),
            _mapping("fractions", "teaches", 0.5),
            _mapping("decimals", "reinforces", 0.6),
        ]
    )
    by_concept = {mapping.concept_id: mapping for mapping in collapsed}
    assert len(collapsed) == 2
    assert by_concept["fractions"].relationship_type == "teaches"
    assert by_concept["fractions"].relevance_score == pytest.approx(0.9)
    assert by_concept["decimals"].relationship_type == "reinforces"


@pytest.mark.parametrize(
    ("days", "weight"),
    [(0, 1.0), (1, 1.0), (1.5, 0.95), (3, 0.95), (4, 0.85), (7, 0.85), (8, 0.7), (14, 0.7), (15, 0.6)],
)
def test_recency_weight_bands(days: float, weight: float) -> None:
    assert recency_weight(days) == weight


def test_lesson_mastery_weights_by_most_recent_attempt() -> None:
    attempts = [
        LessonAttempt(correct=True, attempted_at=NOW - timedelta(days=9)),
        LessonAttempt(correct=True, attempted_at=NOW - timedelta(days=5)),
        LessonAttempt(correct=False, attempted_at=NOW - timedelta(days=4)),
        LessonAttempt(correct=True, attempted_at=NOW - timedelta(days=2)),
    ]
    assert lesson_mastery(attempts, NOW) == pytest.approx(0.75 * 0.95)
    assert lesson_mastery([], NOW) == 0.0
