"""Learner model schema: profiles, refinement state, snapshots and concept mastery."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_01_learner_model"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "learner_profiles",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("education_level", sa.String(length=64), nullable=False, server_default="high_school"),
        sa.Column("study_goal", sa.String(length=64), nullable=False, server_default="general_learning"),
        sa.Column("preferred_study_time", sa.String(length=32), nullable=False, server_default="varies"),
        sa.Column("learning_styles", sa.JSON(), nullable=False),
        sa.Column("avg_session_length", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("optimal_session_length", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("peak_performance_hour", sa.Integer(), nullable=True),
        sa.Column("speed_preference", sa.String(length=16), nullable=False, server_default="moderate"),
        sa.Column("difficulty_preference", sa.String(length=16), nullable=False, server_default="moderate"),
        sa.Column("strong_subjects", sa.JSON(), nullable=False),
        sa.Column("weak_subjects", sa.JSON(), nullable=False),
        sa.Column("locked_attributes", sa.JSON(), nullable=False),
        sa.Column("attribute_sources", sa.JSON(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_learner_profiles_username", "learner_profiles", ["username"], unique=True)

    op.create_table(
        "learner_refinement_states",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("rolling_accuracy", sa.Float(), nullable=False, server_default="0"),
        sa.Column("rolling_response_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_ability", sa.Float(), nullable=False, server_default="0"),
        sa.Column("confidence_calibration", sa.Float(), nullable=False, server_default="0"),
        sa.Column("current_difficulty_target", sa.Float(), nullable=False),
        sa.Column("inferred_optimal_session_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("inferred_peak_hour", sa.Integer(), nullable=True),
        sa.Column("inferred_speed_preference", sa.String(length=16), nullable=False, server_default="moderate"),
        sa.Column("accuracy_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("session_length_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("peak_hour_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("difficulty_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("speed_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_questions_analyzed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_sessions_analyzed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_self_assessments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_refinement_states_username", "learner_refinement_states", ["username"], unique=True)

    op.create_table(
        "learner_profile_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("snapshot_id", sa.String(length=36), nullable=False),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("snapshot_type", sa.String(length=16), nullable=False),
        sa.Column("profile", sa.JSON(), nullable=False),
        sa.Column("refinement_state", sa.JSON(), nullable=True),
        sa.Column("locked_attributes", sa.JSON(), nullable=False),
        sa.Column("trigger_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("snapshot_id", name="uq_profile_snapshot_id"),
    )
    op.create_index(
        "ix_profile_snapshots_username_created",
        "learner_profile_snapshots",
        ["username", "created_at"],
    )

    op.create_table(
        "concept_mastery",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("concept_id", sa.String(length=128), nullable=False),
        sa.Column("mastery_level", sa.Float(), nullable=False, server_default="0"),
        sa.Column("peak_mastery", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_exposures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_recalls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_recalls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stability", sa.Float(), nullable=False, server_default="1"),
        sa.Column("next_review_date", sa.Date(), nullable=True),
        sa.Column("first_encountered_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("last_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint("username", "concept_id", name="uq_concept_mastery_user_concept"),
        sa.CheckConstraint("mastery_level >= 0 AND mastery_level <= 1", name="ck_concept_mastery_level_range"),
        sa.CheckConstraint(
            "successful_recalls + failed_recalls <= total_exposures",
            name="ck_concept_mastery_recalls_within_exposures",
        ),
    )
    op.create_index("ix_concept_mastery_next_review", "concept_mastery", ["username", "next_review_date"])

    op.create_table(
        "content_concept_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("lesson_index", sa.Integer(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=True),
        sa.Column("concept_id", sa.String(length=128), nullable=False),
        sa.Column("relationship_type", sa.String(length=16), nullable=False),
        sa.Column("relevance_score", sa.Float(), nullable=False, server_default="0.8"),
        sa.CheckConstraint(
            "relationship_type IN ('teaches', 'reinforces', 'requires')",
            name="ck_concept_mappings_relationship_type",
        ),
    )
    op.create_index("ix_concept_mappings_lesson", "content_concept_mappings", ["course_id", "lesson_index"])

    op.create_table(
        "lesson_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("lesson_index", sa.Integer(), nullable=False),
        sa.Column("correct", sa.Boolean(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_lesson_attempts_lookup", "lesson_attempts", ["username", "course_id", "lesson_index"])

    op.create_table(
        "lesson_progress",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("lesson_index", sa.Integer(), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("mastery_level", sa.Float(), nullable=False, server_default="0"),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("username", "course_id", "lesson_index", name="uq_lesson_progress_lesson"),
    )

    op.create_table(
        "persistence_audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("username", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_persistence_audit_events_username", "persistence_audit_events", ["username"])


def downgrade() -> None:
    op.drop_index("ix_persistence_audit_events_username", table_name="persistence_audit_events")
    op.drop_table("persistence_audit_events")
    op.drop_table("lesson_progress")
    op.drop_index("ix_lesson_attempts_lookup", table_name="lesson_attempts")
    op.drop_table("lesson_attempts")
    op.drop_index("ix_concept_mappings_lesson", table_name="content_concept_mappings")
    op.drop_table("content_concept_mappings")
    op.drop_index("ix_concept_mastery_next_review", table_name="concept_mastery")
    op.drop_table("concept_mastery")
    op.drop_index("ix_profile_snapshots_username_created", table_name="learner_profile_snapshots")
    op.drop_table("learner_profile_snapshots")
    op.drop_index("ix_refinement_states_username", table_name="learner_refinement_states")
    op.drop_table("learner_refinement_states")
    op.drop_index("ix_learner_profiles_username", table_name="learner_profiles")
    op.drop_table("learner_profiles")
