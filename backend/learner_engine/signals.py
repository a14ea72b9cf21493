"""Learning signal payloads and their boundary validation."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import InvalidSignal

MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 5.0

SIGNAL_TYPES = ("question_answered", "session_ended", "self_assessment")
INITIALIZE_TYPE = "initialize"


class QuestionAnswered(BaseModel):
    """Outcome of a single answered question."""

    model_config = ConfigDict(frozen=True)

    type: Literal["question_answered"] = "question_answered"
    concept_id: Optional[str] = None
    correct: bool
    difficulty: float = Field(allow_inf_nan=False)
    response_time_ms: int = Field(ge=0)
    used_hint: bool = False

    @field_validator("difficulty")
    @classmethod
    def _clamp_difficulty(cls, value: float) -> float:
        return min(max(value, MIN_DIFFICULTY), MAX_DIFFICULTY)


class SessionEnded(BaseModel):
    """Summary emitted when a review session closes."""

    model_config = ConfigDict(frozen=True)

    type: Literal["session_ended"] = "session_ended"
    cards_reviewed: int = Field(ge=0)
    correct_count: int = Field(ge=0)
    duration_ms: int = Field(ge=0)
    started_at: Optional[datetime] = None

    @property
    def accuracy(self) -> Optional[float]:
        if self.cards_reviewed <= 0:
            return None
        return min(self.correct_count / self.cards_reviewed, 1.0)

    @property
    def duration_minutes(self) -> float:
        return self.duration_ms / 60000.0


class SelfAssessment(BaseModel):
    """Learner's own estimate of how well they know a concept."""

    model_config = ConfigDict(frozen=True)

    type: Literal["self_assessment"] = "self_assessment"
    concept_id: str = Field(min_length=1)
    claimed_mastery: float = Field(allow_inf_nan=False)

    @field_validator("claimed_mastery")
    @classmethod
    def _clamp_claimed_mastery(cls, value: float) -> float:
        return min(max(value, 0.0), 1.0)


Signal = Annotated[Union[QuestionAnswered, SessionEnded, SelfAssessment], Field(discriminator="type")]

_signal_adapter: TypeAdapter[Signal] = TypeAdapter(Signal)


class InitializeRequest(BaseModel):
    """Request to create the refinement state without applying a signal."""

    type: Literal["initialize"] = "initialize"


def normalize_signal(payload: Any) -> Union[QuestionAnswered, SessionEnded, SelfAssessment, InitializeRequest]:
    """Validate a raw ``{"type": ..., "data": {...}}`` payload.

    ``initialize`` short-circuits and never looks at ``data``. Every other
    problem (unknown type, missing data, bad fields) raises ``InvalidSignal``.
    """
    if not isinstance(payload, Mapping):
        raise InvalidSignal("Signal payload must be an object.")

    signal_type = payload.get("type")
    if signal_type == INITIALIZE_TYPE:
        return InitializeRequest()
    if signal_type not in SIGNAL_TYPES:
        raise InvalidSignal(
            f"Unsupported signal type: {signal_type!r}.",
            details={"allowed": [*SIGNAL_TYPES, INITIALIZE_TYPE]},
        )

    data = payload.get("data")
    if not isinstance(data, Mapping):
        raise InvalidSignal(f"Signal data is required for '{signal_type}'.")

    try:
        return _signal_adapter.validate_python({**data, "type": signal_type})
    except ValidationError as exc:
        raise InvalidSignal(
            f"Invalid data for '{signal_type}' signal.",
            details=exc.errors(include_url=False, include_context=False),
        ) from exc


__all__ = [
    "INITIALIZE_TYPE",
    "InitializeRequest",
    "QuestionAnswered",
    "SIGNAL_TYPES",
    "SelfAssessment",
    "SessionEnded",
    "Signal",
    "normalize_signal",
]
