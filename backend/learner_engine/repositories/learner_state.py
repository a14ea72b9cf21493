"""Database-backed store for profiles, refinement state, snapshots and concept mastery."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional

from sqlalchemy import delete, inspect, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..concept_mastery import ConceptMapping, ConceptMastery, LessonAttempt, LessonProgress
from ..db.models import (
    ConceptMappingModel,
    ConceptMasteryModel,
    LearnerProfileModel,
    LessonAttemptModel,
    LessonProgressModel,
    PersistenceAuditEventModel,
    ProfileSnapshotModel,
    RefinementStateModel,
)
from ..learner_profile import LearnerProfile, _normalize_username
from ..profile_sync import ProfileSnapshot, SnapshotType
from ..refinement import RefinementState

_PROFILE_COLUMNS = tuple(name for name in LearnerProfile.model_fields if name != "username")
_REFINEMENT_COLUMNS = tuple(name for name in RefinementState.model_fields if name != "username")
_MASTERY_COLUMNS = tuple(name for name in ConceptMastery.model_fields if name not in ("username", "concept_id"))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    payload: Dict[str, Any]
    created_at: Optional[datetime]


@dataclass
class MappingLookup:
    """Result of a concept-mapping lookup.

    ``status`` is ``"not_configured"`` when the mapping table is absent from
    the schema, which callers handle like an empty mapping set.
    """

    status: Literal["ok", "not_configured"]
    mappings: List[ConceptMapping] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.status == "ok"


class LearnerStateRepository:
    """Persistence helper for every per-learner row the engine owns.

    Methods take an open session and never commit; the caller owns the
    transaction.
    """

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, session: Session, username: str) -> LearnerProfile | None:
        model = self._get_profile_model(session, username)
        if model is None:
            return None
        return self._profile_to_domain(model)

    def upsert_profile(self, session: Session, profile: LearnerProfile) -> LearnerProfile:
        normalized = _normalize_username(profile.username)
        model = self._get_profile_model(session, normalized)
        created = model is None
        if model is None:
            model = LearnerProfileModel(username=normalized)
            session.add(model)
        self._apply_profile(model, profile)
        session.flush()
        self._record_audit(session, normalized, "profile_upsert", {"created": created})
        return self._profile_to_domain(model)

    def save_profile(self, session: Session, profile: LearnerProfile, *, force_version_bump: bool = False) -> LearnerProfile:
        model = self._require_profile_model(session, profile.username)
        self._apply_profile(model, profile)
        if force_version_bump:
            flag_modified(model, "locked_attributes")
        session.flush()
        return self._profile_to_domain(model)

    def set_locked_attributes(self, session: Session, username: str, locked: Iterable[str]) -> LearnerProfile:
        model = self._require_profile_model(session, username)
        model.locked_attributes = list(locked)
        session.flush()
        self._record_audit(session, model.username, "locked_attributes_update", {"locked": model.locked_attributes})
        return self._profile_to_domain(model)

    # ------------------------------------------------------------------
    # Refinement state
    # ------------------------------------------------------------------

    def get_refinement_state(self, session: Session, username: str) -> RefinementState | None:
        model = self._get_refinement_model(session, username)
        if model is None:
            return None
        return self._refinement_to_domain(model)

    def save_refinement_state(
        self,
        session: Session,
        state: RefinementState,
        *,
        force_version_bump: bool = False,
    ) -> RefinementState:
        normalized = _normalize_username(state.username)
        model = self._get_refinement_model(session, normalized)
        if model is None:
            model = RefinementStateModel(username=normalized)
            session.add(model)
        for name in _REFINEMENT_COLUMNS:
            setattr(model, name, getattr(state, name))
        if force_version_bump:
            flag_modified(model, "last_updated")
        session.flush()
        return self._refinement_to_domain(model)

    def delete_refinement_state(self, session: Session, username: str) -> bool:
        model = self._get_refinement_model(session, username)
        if model is None:
            return False
        session.delete(model)
        session.flush()
        self._record_audit(session, model.username, "refinement_state_delete", {})
        return True

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create_snapshot(
        self,
        session: Session,
        *,
        username: str,
        snapshot_type: SnapshotType,
        profile: LearnerProfile,
        refinement_state: Optional[RefinementState],
        locked_attributes: Iterable[str],
        trigger_reason: Optional[str] = None,
        retention: Optional[int] = None,
    ) -> ProfileSnapshot:
        normalized = _normalize_username(username)
        model = ProfileSnapshotModel(
            snapshot_id=str(uuid.uuid4()),
            username=normalized,
            snapshot_type=snapshot_type,
            profile=profile.model_dump(mode="json", exclude={"locked_attributes"}),
            refinement_state=refinement_state.model_dump(mode="json") if refinement_state else None,
            locked_attributes=list(locked_attributes),
            trigger_reason=trigger_reason,
            created_at=datetime.now(timezone.utc),
        )
        session.add(model)
        session.flush()
        self._record_audit(
            session,
            normalized,
            "profile_snapshot_create",
            {"snapshot_id": model.snapshot_id, "snapshot_type": snapshot_type},
        )
        if retention is not None:
            self._prune_snapshots(session, normalized, retention)
        return self._snapshot_to_domain(model)

    def list_snapshots(self, session: Session, username: str, *, limit: int = 10, offset: int = 0) -> List[ProfileSnapshot]:
        normalized = _normalize_username(username)
        stmt = (
            select(ProfileSnapshotModel)
            .where(ProfileSnapshotModel.username == normalized)
            .order_by(ProfileSnapshotModel.created_at.desc(), ProfileSnapshotModel.id.desc())
            .offset(max(offset, 0))
            .limit(max(limit, 0))
        )
        return [self._snapshot_to_domain(model) for model in session.execute(stmt).scalars()]

    def get_snapshot(self, session: Session, username: str, snapshot_id: str) -> ProfileSnapshot | None:
        normalized = _normalize_username(username)
        stmt = select(ProfileSnapshotModel).where(
            ProfileSnapshotModel.snapshot_id == snapshot_id,
            ProfileSnapshotModel.username == normalized,
        )
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            return None
        return self._snapshot_to_domain(model)

    def _prune_snapshots(self, session: Session, username: str, retention: int) -> int:
        stale_ids = session.execute(
            select(ProfileSnapshotModel.id)
            .where(ProfileSnapshotModel.username == username)
            .order_by(ProfileSnapshotModel.created_at.desc(), ProfileSnapshotModel.id.desc())
            .offset(max(retention, 1))
        ).scalars().all()
        if not stale_ids:
            return 0
        session.execute(delete(ProfileSnapshotModel).where(ProfileSnapshotModel.id.in_(stale_ids)))
        return len(stale_ids)

    # ------------------------------------------------------------------
    # Concept mastery and mappings
    # ------------------------------------------------------------------

    def get_concept_mastery(self, session: Session, username: str, concept_id: str) -> ConceptMastery | None:
        model = self._get_mastery_model(session, username, concept_id)
        if model is None:
            return None
        return self._mastery_to_domain(model)

    def list_concept_mastery(
        self,
        session: Session,
        username: str,
        concept_ids: Optional[Iterable[str]] = None,
    ) -> List[ConceptMastery]:
        normalized = _normalize_username(username)
        stmt = select(ConceptMasteryModel).where(ConceptMasteryModel.username == normalized)
        if concept_ids is not None:
            stmt = stmt.where(ConceptMasteryModel.concept_id.in_(list(concept_ids)))
        stmt = stmt.order_by(ConceptMasteryModel.concept_id)
        return [self._mastery_to_domain(model) for model in session.execute(stmt).scalars()]

    def save_concept_mastery(self, session: Session, mastery: ConceptMastery) -> ConceptMastery:
        normalized = _normalize_username(mastery.username)
        model = self._get_mastery_model(session, normalized, mastery.concept_id)
        if model is None:
            model = ConceptMasteryModel(username=normalized, concept_id=mastery.concept_id)
            session.add(model)
        for name in _MASTERY_COLUMNS:
            value = getattr(mastery, name)
            if name == "first_encountered_at" and value is None:
                continue
            setattr(model, name, value)
        session.flush()
        return self._mastery_to_domain(model)

    def lookup_mappings(self, session: Session, course_id: str, lesson_index: int) -> MappingLookup:
        if not inspect(session.connection()).has_table(ConceptMappingModel.__tablename__):
            return MappingLookup(status="not_configured")
        stmt = (
            select(ConceptMappingModel)
            .where(
                ConceptMappingModel.course_id == course_id,
                ConceptMappingModel.lesson_index == lesson_index,
            )
            .order_by(ConceptMappingModel.id)
        )
        mappings = [
            ConceptMapping(
                course_id=model.course_id,
                lesson_index=model.lesson_index,
                step_index=model.step_index,
                concept_id=model.concept_id,
                relationship_type=model.relationship_type,
                relevance_score=model.relevance_score,
            )
            for model in session.execute(stmt).scalars()
        ]
        return MappingLookup(status="ok", mappings=mappings)

    def load_mappings(self, session: Session, mappings: Iterable[ConceptMapping]) -> int:
        """Insert static mapping rows (seeding and tests)."""
        count = 0
        for mapping in mappings:
            session.add(
                ConceptMappingModel(
                    course_id=mapping.course_id,
                    lesson_index=mapping.lesson_index,
                    step_index=mapping.step_index,
                    concept_id=mapping.concept_id,
                    relationship_type=mapping.relationship_type,
                    relevance_score=mapping.relevance_score,
                )
            )
            count += 1
        session.flush()
        return count

    # ------------------------------------------------------------------
    # Lesson attempts and progress
    # ------------------------------------------------------------------

    def record_attempt(
        self,
        session: Session,
        *,
        username: str,
        course_id: str,
        lesson_index: int,
        correct: bool,
        attempted_at: Optional[datetime] = None,
    ) -> LessonAttempt:
        model = LessonAttemptModel(
            username=_normalize_username(username),
            course_id=course_id,
            lesson_index=lesson_index,
            correct=correct,
            attempted_at=attempted_at or datetime.now(timezone.utc),
        )
        session.add(model)
        session.flush()
        return LessonAttempt(correct=model.correct, attempted_at=_aware(model.attempted_at))

    def recent_attempts(
        self,
        session: Session,
        username: str,
        course_id: str,
        lesson_index: int,
        *,
        limit: int = 20,
    ) -> List[LessonAttempt]:
        stmt = (
            select(LessonAttemptModel)
            .where(
                LessonAttemptModel.username == _normalize_username(username),
                LessonAttemptModel.course_id == course_id,
                LessonAttemptModel.lesson_index == lesson_index,
            )
            .order_by(LessonAttemptModel.attempted_at.desc(), LessonAttemptModel.id.desc())
            .limit(limit)
        )
        return [
            LessonAttempt(correct=model.correct, attempted_at=_aware(model.attempted_at))
            for model in session.execute(stmt).scalars()
        ]

    def upsert_lesson_progress(self, session: Session, progress: LessonProgress) -> LessonProgress:
        normalized = _normalize_username(progress.username)
        stmt = select(LessonProgressModel).where(
            LessonProgressModel.username == normalized,
            LessonProgressModel.course_id == progress.course_id,
            LessonProgressModel.lesson_index == progress.lesson_index,
        )
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            model = LessonProgressModel(
                username=normalized,
                course_id=progress.course_id,
                lesson_index=progress.lesson_index,
            )
            session.add(model)
        model.completed = progress.completed
        model.mastery_level = progress.mastery_level
        model.accuracy = progress.accuracy
        model.completed_at = progress.completed_at
        session.flush()
        self._record_audit(
            session,
            normalized,
            "lesson_progress_upsert",
            {"course_id": progress.course_id, "lesson_index": progress.lesson_index},
        )
        return LessonProgress(
            username=model.username,
            course_id=model.course_id,
            lesson_index=model.lesson_index,
            completed=model.completed,
            mastery_level=model.mastery_level,
            accuracy=model.accuracy,
            completed_at=_aware(model.completed_at),
        )

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def record_telemetry_event(self, session: Session, username: str, event_type: str, payload: Dict[str, Any]) -> None:
        self._record_audit(session, _normalize_username(username), event_type, dict(payload))

    def recent_telemetry_events(
        self,
        session: Session,
        username: str,
        *,
        event_types: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> List[AuditEvent]:
        stmt = select(PersistenceAuditEventModel).where(
            PersistenceAuditEventModel.username == _normalize_username(username)
        )
        if event_types is not None:
            stmt = stmt.where(PersistenceAuditEventModel.event_type.in_(list(event_types)))
        stmt = stmt.order_by(PersistenceAuditEventModel.created_at.desc()).limit(limit)
        return [
            AuditEvent(
                event_type=model.event_type,
                payload=dict(model.payload or {}),
                created_at=_aware(model.created_at),
            )
            for model in session.execute(stmt).scalars()
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_profile_model(self, session: Session, username: str) -> LearnerProfileModel | None:
        normalized = _normalize_username(username)
        stmt = select(LearnerProfileModel).where(LearnerProfileModel.username == normalized)
        return session.execute(stmt).scalar_one_or_none()

    def _require_profile_model(self, session: Session, username: str) -> LearnerProfileModel:
        model = self._get_profile_model(session, username)
        if model is None:
            raise LookupError(f"Learner profile '{username}' does not exist.")
        return model

    def _get_refinement_model(self, session: Session, username: str) -> RefinementStateModel | None:
        normalized = _normalize_username(username)
        stmt = select(RefinementStateModel).where(RefinementStateModel.username == normalized)
        return session.execute(stmt).scalar_one_or_none()

    def _get_mastery_model(self, session: Session, username: str, concept_id: str) -> ConceptMasteryModel | None:
        stmt = select(ConceptMasteryModel).where(
            ConceptMasteryModel.username == _normalize_username(username),
            ConceptMasteryModel.concept_id == concept_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    def _apply_profile(self, model: LearnerProfileModel, profile: LearnerProfile) -> None:
        payload = profile.model_dump()
        for name in _PROFILE_COLUMNS:
            setattr(model, name, payload[name])
        model.last_updated = profile.last_updated or datetime.now(timezone.utc)

    def _profile_to_domain(self, model: LearnerProfileModel) -> LearnerProfile:
        payload: Dict[str, Any] = {name: getattr(model, name) for name in _PROFILE_COLUMNS}
        payload["username"] = model.username
        payload["learning_styles"] = list(model.learning_styles or [])
        payload["strong_subjects"] = list(model.strong_subjects or [])
        payload["weak_subjects"] = list(model.weak_subjects or [])
        payload["locked_attributes"] = list(model.locked_attributes or [])
        payload["attribute_sources"] = dict(model.attribute_sources or {})
        payload["last_updated"] = _aware(model.last_updated)
        return LearnerProfile.model_validate(payload)

    def _refinement_to_domain(self, model: RefinementStateModel) -> RefinementState:
        payload: Dict[str, Any] = {name: getattr(model, name) for name in _REFINEMENT_COLUMNS}
        payload["username"] = model.username
        payload["last_updated"] = _aware(model.last_updated)
        return RefinementState.model_validate(payload)

    def _mastery_to_domain(self, model: ConceptMasteryModel) -> ConceptMastery:
        payload: Dict[str, Any] = {name: getattr(model, name) for name in _MASTERY_COLUMNS}
        payload["username"] = model.username
        payload["concept_id"] = model.concept_id
        payload["first_encountered_at"] = _aware(model.first_encountered_at)
        payload["last_reviewed_at"] = _aware(model.last_reviewed_at)
        return ConceptMastery.model_validate(payload)

    def _snapshot_to_domain(self, model: ProfileSnapshotModel) -> ProfileSnapshot:
        profile_payload = dict(model.profile or {})
        profile_payload["locked_attributes"] = list(model.locked_attributes or [])
        return ProfileSnapshot(
            snapshot_id=model.snapshot_id,
            username=model.username,
            snapshot_type=model.snapshot_type,
            profile=LearnerProfile.model_validate(profile_payload),
            refinement_state=(
                RefinementState.model_validate(model.refinement_state) if model.refinement_state else None
            ),
            locked_attributes=list(model.locked_attributes or []),
            trigger_reason=model.trigger_reason,
            created_at=_aware(model.created_at),
        )

    def _record_audit(self, session: Session, username: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        event = PersistenceAuditEventModel(
            username=username,
            event_type=event_type,
            payload=payload,
            actor="system",
        )
        session.add(event)


learner_state = LearnerStateRepository()

__all__ = ["AuditEvent", "LearnerStateRepository", "MappingLookup", "learner_state"]
