"""ORM models backing the learner state store."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin

JSONType = JSON


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class LearnerProfileModel(TimestampMixin, Base):
    __tablename__ = "learner_profiles"
    __table_args__ = (Index("ix_learner_profiles_username", "username", unique=True),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(128), nullable=False)
    education_level: Mapped[str] = mapped_column(String(64), default="high_school", nullable=False)
    study_goal: Mapped[str] = mapped_column(String(64), default="general_learning", nullable=False)
    preferred_study_time: Mapped[str] = mapped_column(String(32), default="varies", nullable=False)
    learning_styles: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    avg_session_length: Mapped[int] = mapped_column(Integer, default=15, nullable=False)
    optimal_session_length: Mapped[int] = mapped_column(Integer, default=15, nullable=False)
    peak_performance_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    speed_preference: Mapped[str] = mapped_column(String(16), default="moderate", nullable=False)
    difficulty_preference: Mapped[str] = mapped_column(String(16), default="moderate", nullable=False)
    strong_subjects: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    weak_subjects: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    locked_attributes: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    attribute_sources: Mapped[dict[str, str]] = mapped_column(JSONType, default=dict, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class RefinementStateModel(TimestampMixin, Base):
    __tablename__ = "learner_refinement_states"
    __table_args__ = (Index("ix_refinement_states_username", "username", unique=True),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(128), nullable=False)
    rolling_accuracy: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rolling_response_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_ability: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    confidence_calibration: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    current_difficulty_target: Mapped[float] = mapped_column(Float, nullable=False)
    inferred_optimal_session_minutes: Mapped[int] = mapped_column(Integer, default=15, nullable=False)
    inferred_peak_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inferred_speed_preference: Mapped[str] = mapped_column(String(16), default="moderate", nullable=False)
    accuracy_confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    session_length_confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    peak_hour_confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    difficulty_confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    speed_confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_questions_analyzed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_sessions_analyzed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_self_assessments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ProfileSnapshotModel(Base):
    __tablename__ = "learner_profile_snapshots"
    __table_args__ = (
        Index("ix_profile_snapshots_username_created", "username", "created_at"),
        UniqueConstraint("snapshot_id", name="uq_profile_snapshot_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[str] = mapped_column(String(36), nullable=False, default=_uuid)
    username: Mapped[str] = mapped_column(String(128), nullable=False)
    snapshot_type: Mapped[str] = mapped_column(String(16), nullable=False)
    profile: Mapped[dict] = mapped_column(JSONType, nullable=False)
    refinement_state: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    locked_attributes: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    trigger_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ConceptMasteryModel(TimestampMixin, Base):
    __tablename__ = "concept_mastery"
    __table_args__ = (
        UniqueConstraint("username", "concept_id", name="uq_concept_mastery_user_concept"),
        Index("ix_concept_mastery_next_review", "username", "next_review_date"),
        CheckConstraint("mastery_level >= 0 AND mastery_level <= 1", name="ck_concept_mastery_level_range"),
        CheckConstraint(
            "successful_recalls + failed_recalls <= total_exposures",
            name="ck_concept_mastery_recalls_within_exposures",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(128), nullable=False)
    concept_id: Mapped[str] = mapped_column(String(128), nullable=False)
    mastery_level: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    peak_mastery: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_exposures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_recalls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_recalls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stability: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    next_review_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    first_encountered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ConceptMappingModel(Base):
    __tablename__ = "content_concept_mappings"
    __table_args__ = (
        Index("ix_concept_mappings_lesson", "course_id", "lesson_index"),
        CheckConstraint(
            "relationship_type IN ('teaches', 'reinforces', 'requires')",
            name="ck_concept_mappings_relationship_type",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lesson_index: Mapped[int] = mapped_column(Integer, nullable=False)
    step_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    concept_id: Mapped[str] = mapped_column(String(128), nullable=False)
    relationship_type: Mapped[str] = mapped_column(String(16), nullable=False)
    relevance_score: Mapped[float] = mapped_column(Float, default=0.8, nullable=False)


class LessonAttemptModel(Base):
    __tablename__ = "lesson_attempts"
    __table_args__ = (Index("ix_lesson_attempts_lookup", "username", "course_id", "lesson_index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(128), nullable=False)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lesson_index: Mapped[int] = mapped_column(Integer, nullable=False)
    correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class LessonProgressModel(TimestampMixin, Base):
    __tablename__ = "lesson_progress"
    __table_args__ = (
        UniqueConstraint("username", "course_id", "lesson_index", name="uq_lesson_progress_lesson"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(128), nullable=False)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lesson_index: Mapped[int] = mapped_column(Integer, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mastery_level: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PersistenceAuditEventModel(Base):
    __tablename__ = "persistence_audit_events"
    __table_args__ = (Index("ix_persistence_audit_events_username", "username"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    actor: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


__all__ = [
    "ConceptMappingModel",
    "ConceptMasteryModel",
    "LearnerProfileModel",
    "LessonAttemptModel",
    "LessonProgressModel",
    "PersistenceAuditEventModel",
    "ProfileSnapshotModel",
    "RefinementStateModel",
]
