"""Refinement state and the pure update rules that evolve it.

Every learning signal moves a small set of rolling estimates:

* ``rolling_accuracy`` is an exponential moving average of observed
  correctness.
* ``estimated_ability`` sits on a logit scale and moves by
  ``rate * (observed - expected)`` where ``expected`` is the logistic success
  probability of the learner against the item's difficulty.
* ``current_difficulty_target`` is re-derived from ability after every
  ability change so that the expected success rate at the target stays at
  ``target_success_rate``.

Nothing here touches storage; callers pass the current state in and persist
the returned state themselves.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .errors import InvalidSignal
from .signals import QuestionAnswered, SelfAssessment, SessionEnded

SpeedPreference = Literal["fast", "moderate", "slow"]

ABILITY_BOUND = 4.0
DIFFICULTY_CENTER = 3.0
MIN_DIFFICULTY_LEVEL = 1.0
MAX_DIFFICULTY_LEVEL = 5.0
MIN_SESSION_MINUTES = 5
MAX_SESSION_MINUTES = 60
FAST_RESPONSE_MS = 5000
SLOW_RESPONSE_MS = 15000
CHANGE_TOLERANCE = 1e-9

# Bookkeeping fields never reported as updates.
_UNREPORTED_FIELDS = frozenset({"last_updated"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def clamp(value: float, lower: float, upper: float) -> float:
    if math.isnan(value):
        return lower
    return max(lower, min(upper, value))


def apply_ema(current: float, observed: float, alpha: float) -> float:
    """Exponential moving average step."""
    alpha = clamp(alpha, 0.0, 1.0)
    return alpha * observed + (1 - alpha) * current


def calculate_confidence(data_points: int, min_data_points: int = 10) -> float:
    """Confidence in an inferred value given the evidence seen so far.

    Reaches 0.5 at ``min_data_points`` and approaches 1 asymptotically.
    """
    if data_points <= 0:
        return 0.0
    normalized = data_points / max(min_data_points, 1)
    return clamp(1 - 1 / (1 + normalized), 0.0, 1.0)


def expected_correctness(ability: float, difficulty_logit: float, steepness: float = 1.0) -> float:
    """Logistic probability of a correct answer.

    Monotone in ``ability - difficulty_logit``, 0.5 when they are equal,
    asymptotic to 0 and 1.
    """
    exponent = clamp(-steepness * (ability - difficulty_logit), -60.0, 60.0)
    return 1.0 / (1.0 + math.exp(exponent))


def level_to_logit(level: float) -> float:
    """Map a 1-5 difficulty level onto the ability scale."""
    return clamp(level, MIN_DIFFICULTY_LEVEL, MAX_DIFFICULTY_LEVEL) - DIFFICULTY_CENTER


def difficulty_target_for(ability: float, target_success_rate: float, steepness: float = 1.0) -> float:
    """Difficulty level whose expected success rate equals ``target_success_rate``."""
    rate = clamp(target_success_rate, 0.01, 0.99)
    offset = math.log(rate / (1 - rate)) / steepness
    return clamp(ability - offset + DIFFICULTY_CENTER, MIN_DIFFICULTY_LEVEL, MAX_DIFFICULTY_LEVEL)


def difficulty_band(target: float) -> Literal["easy", "moderate", "challenging"]:
    if target < 2.5:
        return "easy"
    if target < 3.5:
        return "moderate"
    return "challenging"


@dataclass(frozen=True)
class RefinementTuning:
    """Policy constants for the update rules."""

    ema_alpha: float = 0.1
    ability_rate: float = 0.4
    logistic_steepness: float = 1.0
    target_success_rate: float = 0.75
    session_weight: float = 0.5
    self_assessment_weight: float = 0.25
    self_assessment_tolerance: float = 0.05
    session_alpha: float = 0.05
    calibration_alpha: float = 0.03

    @classmethod
    def from_settings(cls, settings: Any) -> "RefinementTuning":
        return cls(
            ema_alpha=settings.ema_alpha,
            ability_rate=settings.ability_rate,
            logistic_steepness=settings.logistic_steepness,
            target_success_rate=settings.target_success_rate,
        )


DEFAULT_TUNING = RefinementTuning()


class RefinementState(BaseModel):
    username: str
    rolling_accuracy: float = Field(default=0.0, ge=0.0, le=1.0)
    rolling_response_time_ms: int = Field(default=0, ge=0)
    estimated_ability: float = Field(default=0.0, ge=-ABILITY_BOUND, le=ABILITY_BOUND)
    confidence_calibration: float = Field(default=0.0, ge=-1.0, le=1.0)
    current_difficulty_target: float = Field(
        default_factory=lambda: difficulty_target_for(0.0, DEFAULT_TUNING.target_success_rate),
        ge=MIN_DIFFICULTY_LEVEL,
        le=MAX_DIFFICULTY_LEVEL,
    )
    inferred_optimal_session_minutes: int = Field(default=15, ge=MIN_SESSION_MINUTES, le=MAX_SESSION_MINUTES)
    inferred_peak_hour: Optional[int] = Field(default=None, ge=0, le=23)
    inferred_speed_preference: SpeedPreference = "moderate"
    accuracy_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    session_length_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    peak_hour_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    difficulty_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    speed_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    total_questions_analyzed: int = Field(default=0, ge=0)
    total_sessions_analyzed: int = Field(default=0, ge=0)
    total_self_assessments: int = Field(default=0, ge=0)
    last_updated: datetime = Field(default_factory=_now)


def initial_state(username: str, *, now: Optional[datetime] = None, tuning: RefinementTuning = DEFAULT_TUNING) -> RefinementState:
    return RefinementState(
        username=username,
        current_difficulty_target=difficulty_target_for(0.0, tuning.target_success_rate, tuning.logistic_steepness),
        last_updated=now or _now(),
    )


@dataclass
class RefinementOutcome:
    state: RefinementState
    updates: List[str] = field(default_factory=list)


def _move_ability(ability: float, observed: float, difficulty_logit: float, weight: float, tuning: RefinementTuning) -> float:
    expected = expected_correctness(ability, difficulty_logit, tuning.logistic_steepness)
    step = tuning.ability_rate * weight * (clamp(observed, 0.0, 1.0) - expected)
    return clamp(ability + step, -ABILITY_BOUND, ABILITY_BOUND)


def _retarget(values: Dict[str, Any], tuning: RefinementTuning) -> None:
    values["current_difficulty_target"] = difficulty_target_for(
        values["estimated_ability"],
        tuning.target_success_rate,
        tuning.logistic_steepness,
    )


def _question_updates(state: RefinementState, signal: QuestionAnswered, tuning: RefinementTuning) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    observed = 1.0 if signal.correct else 0.0

    values["rolling_accuracy"] = clamp(apply_ema(state.rolling_accuracy, observed, tuning.ema_alpha), 0.0, 1.0)
    baseline_time = state.rolling_response_time_ms or signal.response_time_ms
    response_time = int(round(apply_ema(baseline_time, signal.response_time_ms, tuning.ema_alpha)))
    values["rolling_response_time_ms"] = max(response_time, 0)

    values["estimated_ability"] = _move_ability(
        state.estimated_ability,
        observed,
        level_to_logit(signal.difficulty),
        1.0,
        tuning,
    )
    _retarget(values, tuning)

    if response_time < FAST_RESPONSE_MS:
        inferred_speed: SpeedPreference = "fast"
    elif response_time > SLOW_RESPONSE_MS:
        inferred_speed = "slow"
    else:
        inferred_speed = "moderate"
    if inferred_speed != state.inferred_speed_preference:
        speed_confidence = state.speed_confidence + 0.1
        if speed_confidence > 0.7:
            values["inferred_speed_preference"] = inferred_speed
            values["speed_confidence"] = 0.5
        else:
            values["speed_confidence"] = clamp(speed_confidence, 0.0, 1.0)

    total = state.total_questions_analyzed + 1
    values["total_questions_analyzed"] = total
    values["accuracy_confidence"] = calculate_confidence(total)
    values["difficulty_confidence"] = calculate_confidence(total, 20)
    return values


def _session_updates(state: RefinementState, signal: SessionEnded, tuning: RefinementTuning) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    accuracy = signal.accuracy

    if accuracy is not None:
        values["rolling_accuracy"] = clamp(
            apply_ema(state.rolling_accuracy, accuracy, tuning.ema_alpha * tuning.session_weight),
            0.0,
            1.0,
        )
        values["estimated_ability"] = _move_ability(
            state.estimated_ability,
            accuracy,
            level_to_logit(state.current_difficulty_target),
            tuning.session_weight,
            tuning,
        )
        _retarget(values, tuning)

    sessions = state.total_sessions_analyzed + 1
    if signal.cards_reviewed >= 3:
        optimal = apply_ema(state.inferred_optimal_session_minutes, signal.duration_minutes, tuning.session_alpha)
        values["inferred_optimal_session_minutes"] = int(round(clamp(optimal, MIN_SESSION_MINUTES, MAX_SESSION_MINUTES)))
        values["session_length_confidence"] = calculate_confidence(sessions, 5)

    if accuracy is not None and accuracy >= 0.7 and signal.cards_reviewed >= 5 and signal.started_at is not None:
        start_hour = signal.started_at.hour
        if state.inferred_peak_hour is None:
            values["inferred_peak_hour"] = start_hour
        else:
            weighted = apply_ema(state.inferred_peak_hour, start_hour, tuning.session_alpha)
            values["inferred_peak_hour"] = int(round(weighted)) % 24
        values["peak_hour_confidence"] = calculate_confidence(sessions, 10)

    values["total_sessions_analyzed"] = sessions
    return values


def _self_assessment_updates(state: RefinementState, signal: SelfAssessment, tuning: RefinementTuning) -> Dict[str, Any]:
    claimed = clamp(signal.claimed_mastery, 0.0, 1.0)
    gap = claimed - state.rolling_accuracy
    if abs(gap) <= tuning.self_assessment_tolerance:
        return {}

    values: Dict[str, Any] = {}
    values["confidence_calibration"] = clamp(
        apply_ema(state.confidence_calibration, gap, tuning.calibration_alpha),
        -1.0,
        1.0,
    )
    weight = tuning.self_assessment_weight
    values["rolling_accuracy"] = clamp(
        apply_ema(state.rolling_accuracy, claimed, tuning.ema_alpha * weight),
        0.0,
        1.0,
    )
    values["estimated_ability"] = _move_ability(
        state.estimated_ability,
        claimed,
        level_to_logit(state.current_difficulty_target),
        weight,
        tuning,
    )
    _retarget(values, tuning)
    values["total_self_assessments"] = state.total_self_assessments + 1
    return values


def _changed(old: Any, new: Any) -> bool:
    if isinstance(old, (int, float)) and isinstance(new, (int, float)) and not isinstance(old, bool):
        return not math.isclose(float(old), float(new), rel_tol=0.0, abs_tol=CHANGE_TOLERANCE)
    return old != new


def apply_signal(
    state: Optional[RefinementState],
    signal: Union[QuestionAnswered, SessionEnded, SelfAssessment],
    *,
    username: Optional[str] = None,
    now: Optional[datetime] = None,
    tuning: RefinementTuning = DEFAULT_TUNING,
) -> RefinementOutcome:
    """Apply one normalised signal and report which fields moved.

    ``state=None`` starts from a fresh default state for ``username``.
    """
    timestamp = now or _now()
    if state is None:
        if not username:
            raise ValueError("username is required when no refinement state exists.")
        state = initial_state(username, now=timestamp, tuning=tuning)

    if isinstance(signal, QuestionAnswered):
        values = _question_updates(state, signal, tuning)
    elif isinstance(signal, SessionEnded):
        values = _session_updates(state, signal, tuning)
    elif isinstance(signal, SelfAssessment):
        values = _self_assessment_updates(state, signal, tuning)
    else:
        raise InvalidSignal(f"Unsupported signal: {type(signal).__name__}.")

    updates = [
        name
        for name, value in values.items()
        if name not in _UNREPORTED_FIELDS and _changed(getattr(state, name), value)
    ]
    if not updates:
        return RefinementOutcome(state=state, updates=[])

    changed = {name: values[name] for name in updates}
    changed["last_updated"] = timestamp
    return RefinementOutcome(state=state.model_copy(update=changed), updates=updates)


__all__ = [
    "ABILITY_BOUND",
    "DEFAULT_TUNING",
    "RefinementOutcome",
    "RefinementState",
    "RefinementTuning",
    "apply_ema",
    "apply_signal",
    "calculate_confidence",
    "clamp",
    "difficulty_band",
    "difficulty_target_for",
    "expected_correctness",
    "initial_state",
    "level_to_logit",
]
