from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from learner_engine.refinement import (
    DEFAULT_TUNING,
    RefinementState,
    RefinementTuning,
    apply_signal,
    calculate_confidence,
    difficulty_band,
    difficulty_target_for,
    expected_correctness,
    initial_state,
)
from learner_engine.signals import QuestionAnswered, SelfAssessment, SessionEnded

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _question(correct: bool, difficulty: float = 3.0, response_time_ms: int = 8000) -> QuestionAnswered:
    return QuestionAnswered(correct=correct, difficulty=difficulty, response_time_ms=response_time_ms)


def test_expected_correctness_is_logistic() -> None:
    assert expected_correctness(0.0, 0.0) == pytest.approx(0.5)
    assert expected_correctness(2.0, 0.0) > expected_correctness(1.0, 0.0) > 0.5
    assert 0.0 < expected_correctness(-50.0, 50.0) < 1e-6
    assert expected_correctness(1e6, 0.0) == pytest.approx(1.0)


def test_difficulty_target_keeps_expected_success_at_target_rate() -> None:
    for ability in (-0.5, 0.0, 0.7):
        target = difficulty_target_for(ability, 0.75)
        assert expected_correctness(ability, target - 3.0) == pytest.approx(0.75)
    assert difficulty_target_for(-4.0, 0.75) == 1.0
    assert difficulty_target_for(4.0, 0.75) == 5.0


def test_calculate_confidence_grows_toward_one() -> None:
    assert calculate_confidence(0) == 0.0
    assert calculate_confidence(10) == pytest.approx(0.5)
    assert calculate_confidence(5, 5) == pytest.approx(0.5)
    assert calculate_confidence(10) < calculate_confidence(40) < 1.0


def test_difficulty_band_boundaries() -> None:
    assert difficulty_band(2.49) == "easy"
    assert difficulty_band(2.5) == "moderate"
    assert difficulty_band(3.49) == "moderate"
    assert difficulty_band(3.5) == "challenging"


def test_first_signal_creates_state_lazily() -> None:
    outcome = apply_signal(None, _question(True), username="ada", now=NOW)
    state = outcome.state
    assert state.username == "ada"
    assert state.total_questions_analyzed == 1
    assert state.estimated_ability == pytest.approx(0.2)
    assert state.rolling_accuracy == pytest.approx(0.1)
    assert state.current_difficulty_target == pytest.approx(difficulty_target_for(0.2, 0.75))
    assert state.last_updated == NOW
    assert "last_updated" not in outcome.updates
    assert {"estimated_ability", "rolling_accuracy", "current_difficulty_target", "total_questions_analyzed"} <= set(
        outcome.updates
    )


def test_missing_state_without_username_is_rejected() -> None:
    with pytest.raises(ValueError):
        apply_signal(None, _question(True))


def test_all_correct_answers_never_lower_ability() -> None:
    state = initial_state("ada", now=NOW)
    previous = state.estimated_ability
    for difficulty in (1, 5, 3, 2, 4, 5, 5, 1, 3, 4) * 5:
        state = apply_signal(state, _question(True, difficulty), now=NOW).state
        assert state.estimated_ability >= previous
        assert -4.0 <= state.estimated_ability <= 4.0
        previous = state.estimated_ability
    assert state.rolling_accuracy <= 1.0


def test_all_incorrect_answers_never_raise_ability() -> None:
    state = initial_state("ada", now=NOW)
    previous = state.estimated_ability
    for difficulty in (5, 1, 3, 2, 4) * 10:
        state = apply_signal(state, _question(False, difficulty), now=NOW).state
        assert state.estimated_ability <= previous
        assert -4.0 <= state.estimated_ability <= 4.0
        previous = state.estimated_ability
    assert state.rolling_accuracy >= 0.0


def test_large_learning_rate_is_clamped() -> None:
    tuning = RefinementTuning(ability_rate=100.0)
    outcome = apply_signal(initial_state("ada", now=NOW), _question(True, 5), now=NOW, tuning=tuning)
    assert outcome.state.estimated_ability == 4.0
    assert outcome.state.current_difficulty_target == 5.0


def test_speed_preference_switches_only_after_sustained_evidence() -> None:
    state = initial_state("ada", now=NOW)
    for _ in range(3):
        state = apply_signal(state, _question(True, response_time_ms=2000), now=NOW).state
    assert state.inferred_speed_preference == "moderate"
    assert state.speed_confidence > 0.0

    for _ in range(7):
        state = apply_signal(state, _question(True, response_time_ms=2000), now=NOW).state
    assert state.inferred_speed_preference == "fast"
    assert state.speed_confidence == pytest.approx(0.5)


def test_session_without_cards_only_counts_the_session() -> None:
    state = initial_state("ada", now=NOW)
    outcome = apply_signal(state, SessionEnded(cards_reviewed=0, correct_count=0, duration_ms=0), now=NOW)
    assert outcome.updates == ["total_sessions_analyzed"]
    assert outcome.state.estimated_ability == state.estimated_ability
    assert outcome.state.rolling_accuracy == state.rolling_accuracy


def test_strong_session_infers_peak_hour_and_session_length() -> None:
    state = initial_state("ada", now=NOW)
    signal = SessionEnded(
        cards_reviewed=10,
        correct_count=9,
        duration_ms=40 * 60000,
        started_at=datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc),
    )
    outcome = apply_signal(state, signal, now=NOW)
    assert outcome.state.inferred_peak_hour == 9
    assert outcome.state.inferred_optimal_session_minutes == 16
    assert outcome.state.session_length_confidence == pytest.approx(calculate_confidence(1, 5))
    assert outcome.state.peak_hour_confidence == pytest.approx(calculate_confidence(1, 10))
    assert outcome.state.estimated_ability > 0.0
    assert outcome.state.total_sessions_analyzed == 1


def test_weak_session_does_not_set_peak_hour() -> None:
    signal = SessionEnded(
        cards_reviewed=10,
        correct_count=3,
        duration_ms=10 * 60000,
        started_at=datetime(2026, 3, 2, 21, 0, tzinfo=timezone.utc),
    )
    outcome = apply_signal(initial_state("ada", now=NOW), signal, now=NOW)
    assert outcome.state.inferred_peak_hour is None
    assert outcome.state.estimated_ability < 0.0


def test_self_assessment_within_tolerance_is_a_no_op() -> None:
    state = initial_state("ada", now=NOW).model_copy(update={"rolling_accuracy": 0.6})
    outcome = apply_signal(state, SelfAssessment(concept_id="loops", claimed_mastery=0.63), now=NOW)
    assert outcome.updates == []
    assert outcome.state is state


def test_overconfident_self_assessment_moves_calibration() -> None:
    state = initial_state("ada", now=NOW).model_copy(update={"rolling_accuracy": 0.3})
    outcome = apply_signal(state, SelfAssessment(concept_id="loops", claimed_mastery=0.9), now=NOW)
    assert outcome.state.confidence_calibration > 0.0
    assert outcome.state.total_self_assessments == 1
    assert outcome.state.rolling_accuracy > 0.3
    assert "confidence_calibration" in outcome.updates


def test_state_is_not_mutated() -> None:
    state = initial_state("ada", now=NOW)
    snapshot = state.model_dump()
    apply_signal(state, _question(False), now=NOW)
    assert state.model_dump() == snapshot


def test_default_state_targets_default_success_rate() -> None:
    state = RefinementState(username="ada")
    expected = difficulty_target_for(0.0, DEFAULT_TUNING.target_success_rate)
    assert math.isclose(state.current_difficulty_target, expected)
    assert state.current_difficulty_target == pytest.approx(3.0 - math.log(3.0))


def test_rolling_accuracy_converges_on_stationary_stream() -> None:
    # Four correct answers then one miss, repeated: a steady 80% learner.
    pattern = (True, True, True, True, False)
    state = initial_state("ada", now=NOW)
    window_errors = []
    for _ in range(40):
        window = []
        for correct in pattern:
            state = apply_signal(state, _question(correct), now=NOW).state
            window.append(state.rolling_accuracy)
        window_errors.append(abs(sum(window) / len(window) - 0.8))

    for earlier, later in zip(window_errors, window_errors[1:]):
        assert later <= earlier + 1e-12
    assert window_errors[0] > 0.5
    assert window_errors[-1] < 0.01
