from __future__ import annotations

import pytest

from learner_engine.errors import UnknownAttribute
from learner_engine.learner_profile import (
    PROFILE_ATTRIBUTES,
    LearnerProfile,
    calculate_effective_profile,
)
from learner_engine.locks import lock_attribute, unlock_attribute, validate_attribute
from learner_engine.profile_sync import plan_sync
from learner_engine.refinement import RefinementState


def _confident_state(**overrides) -> RefinementState:
    values = {
        "username": "ada",
        "inferred_optimal_session_minutes": 30,
        "session_length_confidence": 0.9,
        "inferred_peak_hour": 20,
        "peak_hour_confidence": 0.8,
        "inferred_speed_preference": "fast",
        "speed_confidence": 0.7,
        "current_difficulty_target": 3.8,
        "difficulty_confidence": 0.65,
        "estimated_ability": 1.2,
    }
    values.update(overrides)
    return RefinementState(**values)


def test_without_refinement_state_profile_passes_through() -> None:
    profile = LearnerProfile(username="ada", optimal_session_length=25, speed_preference="slow")
    effective = calculate_effective_profile(profile, None)
    assert effective.optimal_session_length == 25
    assert effective.speed_preference == "slow"
    assert effective.difficulty_preference == "moderate"
    assert effective.current_difficulty_target == 3.0
    assert effective.estimated_ability == 0.0
    assert set(effective.sources.values()) == {"system"}


def test_confident_refinement_values_override_unlocked_fields() -> None:
    profile = LearnerProfile(username="ada")
    effective = calculate_effective_profile(profile, _confident_state())
    assert effective.optimal_session_length == 30
    assert effective.peak_performance_hour == 20
    assert effective.speed_preference == "fast"
    assert effective.difficulty_preference == "challenging"
    assert effective.estimated_ability == pytest.approx(1.2)
    assert effective.sources["optimal_session_length"] == "refinement"


def test_locked_fields_keep_canonical_value() -> None:
    profile = LearnerProfile(
        username="ada",
        optimal_session_length=45,
        locked_attributes=["optimal_session_length"],
        attribute_sources={"optimal_session_length": "user"},
    )
    effective = calculate_effective_profile(profile, _confident_state())
    assert effective.optimal_session_length == 45
    assert effective.sources["optimal_session_length"] == "user"
    assert effective.speed_preference == "fast"


def test_low_confidence_and_unknown_values_are_ignored() -> None:
    profile = LearnerProfile(username="ada", peak_performance_hour=7)
    state = _confident_state(session_length_confidence=0.3, inferred_peak_hour=None)
    effective = calculate_effective_profile(profile, state)
    assert effective.optimal_session_length == 15
    assert effective.peak_performance_hour == 7


def test_merge_is_pure_and_idempotent() -> None:
    profile = LearnerProfile(username="ada", locked_attributes=["speed_preference"])
    state = _confident_state()
    before = (profile.model_dump(), state.model_dump())
    first = calculate_effective_profile(profile, state)
    second = calculate_effective_profile(profile, state)
    assert first == second
    assert (profile.model_dump(), state.model_dump()) == before


def test_lockable_attributes_exclude_bookkeeping_fields() -> None:
    assert "optimal_session_length" in PROFILE_ATTRIBUTES
    assert "education_level" in PROFILE_ATTRIBUTES
    for name in ("username", "attribute_sources", "last_updated", "locked_attributes"):
        assert name not in PROFILE_ATTRIBUTES


def test_lock_and_unlock_are_idempotent() -> None:
    first = lock_attribute([], "speed_preference")
    assert first.changed is True
    assert first.locked == ["speed_preference"]

    again = lock_attribute(first.locked, "speed_preference")
    assert again.changed is False
    assert again.locked == ["speed_preference"]

    released = unlock_attribute(again.locked, "speed_preference")
    assert released.changed is True
    assert released.locked == []
    assert unlock_attribute([], "speed_preference").changed is False


@pytest.mark.parametrize("attribute", ["", "username", "favourite_colour", "last_updated"])
def test_unknown_attributes_are_rejected(attribute: str) -> None:
    with pytest.raises(UnknownAttribute):
        validate_attribute(attribute)
    with pytest.raises(UnknownAttribute):
        lock_attribute([], attribute)


def test_sync_skips_locked_attributes_unless_forced() -> None:
    profile = LearnerProfile(username="ada", locked_attributes=["speed_preference"])
    state = _confident_state()

    plan = plan_sync(profile, state)
    assert "speed_preference" in plan.skipped_attributes
    assert plan.profile.speed_preference == "moderate"
    assert plan.profile.optimal_session_length == 30
    assert plan.profile.attribute_sources["optimal_session_length"] == "system"

    forced = plan_sync(profile, state, force=True)
    assert "speed_preference" in forced.updated_attributes
    assert forced.profile.speed_preference == "fast"
    assert forced.profile.locked_attributes == ["speed_preference"]


def test_sync_confidence_gate_and_null_peak_hour() -> None:
    profile = LearnerProfile(username="ada", peak_performance_hour=6)
    state = _confident_state(speed_confidence=0.2, inferred_peak_hour=None, peak_hour_confidence=0.9)

    plan = plan_sync(profile, state)
    assert set(plan.skipped_attributes) == {"speed_preference", "peak_performance_hour"}

    forced = plan_sync(profile, state, force=True)
    assert forced.profile.speed_preference == "fast"
    assert forced.profile.peak_performance_hour == 6
    assert "peak_performance_hour" in forced.skipped_attributes


def test_sync_with_nothing_to_apply_returns_original_profile() -> None:
    profile = LearnerProfile(username="ada")
    state = RefinementState(username="ada")
    plan = plan_sync(profile, state)
    assert plan.updated_attributes == []
    assert plan.profile is profile
