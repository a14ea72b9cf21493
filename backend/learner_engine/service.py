"""Orchestration layer: transactions, retries and telemetry around the pure learner model."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .concept_mastery import (
    ConceptMastery,
    LessonAttempt,
    LessonProgress,
    apply_lesson_outcome,
    collapse_mappings,
    lesson_mastery,
)
from .config import Settings, get_settings
from .db.session import session_scope
from .errors import (
    InvalidProfileUpdate,
    MissingParameter,
    NoRefinementState,
    ProfileNotFound,
    SnapshotNotFound,
    StorageError,
)
from .knowledge_gaps import KnowledgeGapReport, detect_knowledge_gaps, due_concepts
from .learner_profile import (
    PROFILE_ATTRIBUTES,
    SYNCABLE_ATTRIBUTES,
    EffectiveProfile,
    LearnerProfile,
    _normalize_username,
    calculate_effective_profile,
)
from .locks import lock_attribute, unlock_attribute, validate_attribute
from .profile_sync import ProfileSnapshot, plan_sync
from .refinement import RefinementState, RefinementTuning, apply_signal, clamp, initial_state
from .repositories.learner_state import learner_state
from .signals import InitializeRequest, normalize_signal
from .telemetry import emit_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

SETTINGS_ACTIONS = ("lock", "unlock", "sync", "rollback")

_mapping_notice_logged = False


class SignalResult(BaseModel):
    updates_applied: List[str] = Field(default_factory=list)
    refinement_state: RefinementState
    initialized: bool = False


class EffectiveProfileView(BaseModel):
    effective_profile: EffectiveProfile
    refinement_state: Optional[RefinementState] = None
    locked_attributes: List[str] = Field(default_factory=list)
    history: Optional[List[ProfileSnapshot]] = None


class LockResult(BaseModel):
    success: bool = True
    action: Literal["lock", "unlock"]
    attribute: str
    changed: bool
    locked_attributes: List[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    success: bool = True
    updated_attributes: List[str] = Field(default_factory=list)
    skipped_attributes: List[str] = Field(default_factory=list)
    snapshot_id: str


class RollbackResult(BaseModel):
    success: bool = True
    restored_snapshot_id: str
    pre_rollback_snapshot_id: str


class LessonCompletionResult(BaseModel):
    progress: LessonProgress
    accuracy: float
    mastery_updated: bool
    concepts_updated: List[str] = Field(default_factory=list)
    mapping_status: Literal["ok", "not_configured", "unavailable"] = "ok"


SettingsResult = Union[LockResult, SyncResult, RollbackResult]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LearnerModelService:
    """Runs each learner-model operation as one atomic read-compute-write cycle.

    Optimistic version conflicts and duplicate first inserts retry the whole
    cycle up to ``write_retry_attempts`` times. Any other persistence failure
    surfaces as ``StorageError``.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def tuning(self) -> RefinementTuning:
        return RefinementTuning.from_settings(self.settings)

    # ------------------------------------------------------------------
    # Refinement signals
    # ------------------------------------------------------------------

    def process_signal(self, username: str, payload: Any) -> SignalResult:
        signal = normalize_signal(payload)
        normalized = _normalize_username(username)
        tuning = self.tuning

        def work(session: Session) -> SignalResult:
            existing = learner_state.get_refinement_state(session, normalized)
            if isinstance(signal, InitializeRequest):
                if existing is not None:
                    return SignalResult(refinement_state=existing)
                created = learner_state.save_refinement_state(session, initial_state(normalized, tuning=tuning))
                return SignalResult(refinement_state=created, initialized=True)

            outcome = apply_signal(existing, signal, username=normalized, tuning=tuning)
            if existing is not None and not outcome.updates:
                return SignalResult(refinement_state=existing)
            saved = learner_state.save_refinement_state(session, outcome.state)
            return SignalResult(updates_applied=outcome.updates, refinement_state=saved, initialized=existing is None)

        result = self._transaction("process_signal", work)
        if result.initialized:
            emit_event("refinement_state_initialized", username=normalized)
        emit_event(
            "refinement_signal_processed",
            username=normalized,
            signal_type=signal.type,
            updates=result.updates_applied,
            estimated_ability=result.refinement_state.estimated_ability,
        )
        return result

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, username: str) -> LearnerProfile:
        normalized = _normalize_username(username)
        return self._transaction("get_profile", lambda session: self._require_profile(session, normalized))

    def upsert_profile(self, username: str, updates: Mapping[str, Any]) -> LearnerProfile:
        """Apply user-provided profile values, creating the profile on first use.

        Edits to an existing profile are snapshotted first. Syncable attributes
        set here are marked as user-sourced.
        """
        normalized = _normalize_username(username)
        changes = {key: value for key, value in updates.items() if key in PROFILE_ATTRIBUTES}
        retention = self.settings.snapshot_retention

        def work(session: Session) -> LearnerProfile:
            existing = learner_state.get_profile(session, normalized)
            if existing is None:
                base = LearnerProfile(username=normalized)
            else:
                learner_state.create_snapshot(
                    session,
                    username=normalized,
                    snapshot_type="user_edit",
                    profile=existing,
                    refinement_state=learner_state.get_refinement_state(session, normalized),
                    locked_attributes=existing.locked_attributes,
                    trigger_reason="profile_update",
                    retention=retention,
                )
                base = existing
            sources = dict(base.attribute_sources)
            for attribute in SYNCABLE_ATTRIBUTES:
                if attribute in changes:
                    sources[attribute] = "user"
            try:
                merged = LearnerProfile.model_validate(
                    {
                        **base.model_dump(),
                        **changes,
                        "username": normalized,
                        "attribute_sources": sources,
                        "last_updated": _now(),
                    }
                )
            except ValidationError as exc:
                raise InvalidProfileUpdate(
                    f"Invalid profile update for '{normalized}'.",
                    details=exc.errors(include_url=False, include_context=False),
                ) from exc
            return learner_state.upsert_profile(session, merged)

        return self._transaction("upsert_profile", work)

    def get_effective_profile(
        self,
        username: str,
        *,
        include_history: bool = False,
        history_limit: Optional[int] = None,
    ) -> EffectiveProfileView:
        normalized = _normalize_username(username)
        limit = history_limit or self.settings.history_limit

        def work(session: Session) -> EffectiveProfileView:
            profile = self._require_profile(session, normalized)
            state = learner_state.get_refinement_state(session, normalized)
            history = learner_state.list_snapshots(session, normalized, limit=limit) if include_history else None
            return EffectiveProfileView(
                effective_profile=calculate_effective_profile(profile, state),
                refinement_state=state,
                locked_attributes=list(profile.locked_attributes),
                history=history,
            )

        return self._transaction("get_effective_profile", work)

    def profile_history(self, username: str, *, limit: Optional[int] = None, offset: int = 0) -> List[ProfileSnapshot]:
        normalized = _normalize_username(username)
        page = limit or self.settings.history_limit
        return self._transaction(
            "profile_history",
            lambda session: learner_state.list_snapshots(session, normalized, limit=page, offset=offset),
        )

    # ------------------------------------------------------------------
    # Locks, sync and rollback
    # ------------------------------------------------------------------

    def update_refinement_settings(
        self,
        username: str,
        action: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> SettingsResult:
        params = params or {}
        normalized = _normalize_username(username)
        if action in ("lock", "unlock"):
            attribute = params.get("attribute")
            if not attribute:
                raise MissingParameter(f"'attribute' is required for {action}.")
            return self._change_lock(normalized, action, validate_attribute(str(attribute)))
        if action == "sync":
            return self._sync(normalized, force=bool(params.get("force", False)))
        if action == "rollback":
            snapshot_id = params.get("snapshot_id")
            if not snapshot_id:
                raise MissingParameter("'snapshot_id' is required for rollback.")
            return self._rollback(normalized, str(snapshot_id))
        raise MissingParameter(
            f"Unsupported action: {action!r}.",
            details={"allowed": list(SETTINGS_ACTIONS)},
        )

    def _change_lock(self, username: str, action: Literal["lock", "unlock"], attribute: str) -> LockResult:
        def work(session: Session) -> LockResult:
            profile = self._require_profile(session, username)
            if action == "lock":
                change = lock_attribute(profile.locked_attributes, attribute)
            else:
                change = unlock_attribute(profile.locked_attributes, attribute)
            if change.changed:
                learner_state.set_locked_attributes(session, username, change.locked)
            return LockResult(action=action, attribute=attribute, changed=change.changed, locked_attributes=change.locked)

        result = self._transaction(action, work)
        if result.changed:
            emit_event("attribute_lock_changed", username=username, action=action, attribute=attribute)
        return result

    def _sync(self, username: str, *, force: bool) -> SyncResult:
        retention = self.settings.snapshot_retention

        def work(session: Session) -> SyncResult:
            profile = self._require_profile(session, username)
            state = learner_state.get_refinement_state(session, username)
            if state is None:
                raise NoRefinementState(f"No refinement state to sync for '{username}'.")
            snapshot = learner_state.create_snapshot(
                session,
                username=username,
                snapshot_type="automatic",
                profile=profile,
                refinement_state=state,
                locked_attributes=profile.locked_attributes,
                trigger_reason="forced_sync" if force else "sync",
                retention=retention,
            )
            plan = plan_sync(profile, state, force=force)
            if plan.updated_attributes:
                learner_state.save_profile(session, plan.profile)
            return SyncResult(
                updated_attributes=plan.updated_attributes,
                skipped_attributes=plan.skipped_attributes,
                snapshot_id=snapshot.snapshot_id,
            )

        result = self._transaction("sync", work)
        emit_event(
            "profile_synced",
            username=username,
            force=force,
            updated=result.updated_attributes,
            skipped=result.skipped_attributes,
            snapshot_id=result.snapshot_id,
        )
        return result

    def _rollback(self, username: str, snapshot_id: str) -> RollbackResult:
        retention = self.settings.snapshot_retention

        def work(session: Session) -> RollbackResult:
            target = learner_state.get_snapshot(session, username, snapshot_id)
            if target is None:
                raise SnapshotNotFound(f"Snapshot '{snapshot_id}' does not exist for '{username}'.")
            profile = self._require_profile(session, username)
            current_state = learner_state.get_refinement_state(session, username)
            pre_rollback = learner_state.create_snapshot(
                session,
                username=username,
                snapshot_type="rollback",
                profile=profile,
                refinement_state=current_state,
                locked_attributes=profile.locked_attributes,
                trigger_reason=f"rollback_to:{snapshot_id}",
                retention=retention,
            )
            restored = target.profile.model_copy(
                update={"username": username, "locked_attributes": list(target.locked_attributes)}
            )
            learner_state.save_profile(session, restored, force_version_bump=True)
            if target.refinement_state is None:
                learner_state.delete_refinement_state(session, username)
            else:
                learner_state.save_refinement_state(
                    session,
                    target.refinement_state.model_copy(update={"username": username}),
                    force_version_bump=True,
                )
            return RollbackResult(restored_snapshot_id=snapshot_id, pre_rollback_snapshot_id=pre_rollback.snapshot_id)

        result = self._transaction("rollback", work)
        emit_event(
            "profile_rolled_back",
            username=username,
            snapshot_id=snapshot_id,
            pre_rollback_snapshot_id=result.pre_rollback_snapshot_id,
        )
        return result

    # ------------------------------------------------------------------
    # Lessons and concept mastery
    # ------------------------------------------------------------------

    def record_lesson_attempt(
        self,
        username: str,
        course_id: str,
        lesson_index: int,
        *,
        correct: bool,
        attempted_at: Optional[datetime] = None,
    ) -> LessonAttempt:
        normalized = _normalize_username(username)
        return self._transaction(
            "record_lesson_attempt",
            lambda session: learner_state.record_attempt(
                session,
                username=normalized,
                course_id=course_id,
                lesson_index=lesson_index,
                correct=correct,
                attempted_at=attempted_at,
            ),
        )

    def lesson_mastery(self, username: str, course_id: str, lesson_index: int, *, now: Optional[datetime] = None) -> float:
        normalized = _normalize_username(username)
        window = self.settings.lesson_mastery_window
        attempts = self._transaction(
            "lesson_mastery",
            lambda session: learner_state.recent_attempts(session, normalized, course_id, lesson_index, limit=window),
        )
        return lesson_mastery(attempts, now)

    def record_lesson_completion(
        self,
        username: str,
        course_id: str,
        lesson_index: int,
        accuracy: Optional[float] = None,
        *,
        now: Optional[datetime] = None,
    ) -> LessonCompletionResult:
        """Mark a lesson complete, then propagate its outcome to mapped concepts.

        The progress write is the primary effect and its failures propagate.
        The concept-mastery update runs in its own transaction afterwards and
        its failures are logged and reported as ``mastery_updated=False``.
        """
        normalized = _normalize_username(username)
        now = now or _now()
        window = self.settings.lesson_mastery_window

        def write_progress(session: Session) -> LessonProgress:
            attempts = learner_state.recent_attempts(session, normalized, course_id, lesson_index, limit=window)
            level = lesson_mastery(attempts, now)
            if accuracy is None:
                observed = level
            else:
                observed = clamp(accuracy, 0.0, 1.0)
            progress = LessonProgress(
                username=normalized,
                course_id=course_id,
                lesson_index=lesson_index,
                completed=True,
                mastery_level=level if attempts else observed,
                accuracy=observed,
                completed_at=now,
            )
            return learner_state.upsert_lesson_progress(session, progress)

        progress = self._transaction("record_lesson_completion", write_progress)
        observed_accuracy = progress.accuracy if progress.accuracy is not None else 0.0

        try:
            status, concepts = self._transaction(
                "concept_mastery_update",
                lambda session: self._propagate_mastery(session, normalized, course_id, lesson_index, observed_accuracy, now),
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "Concept mastery update failed for %s lesson %s/%s",
                normalized,
                course_id,
                lesson_index,
                exc_info=True,
            )
            emit_event(
                "concept_mastery_update_failed",
                username=normalized,
                course_id=course_id,
                lesson_index=lesson_index,
            )
            return LessonCompletionResult(
                progress=progress,
                accuracy=observed_accuracy,
                mastery_updated=False,
                mapping_status="unavailable",
            )

        if concepts:
            emit_event(
                "concept_mastery_updated",
                username=normalized,
                course_id=course_id,
                lesson_index=lesson_index,
                concepts=concepts,
                accuracy=observed_accuracy,
            )
        return LessonCompletionResult(
            progress=progress,
            accuracy=observed_accuracy,
            mastery_updated=True,
            concepts_updated=concepts,
            mapping_status=status,
        )

    def _propagate_mastery(
        self,
        session: Session,
        username: str,
        course_id: str,
        lesson_index: int,
        accuracy: float,
        now: datetime,
    ) -> tuple[str, List[str]]:
        global _mapping_notice_logged
        lookup = learner_state.lookup_mappings(session, course_id, lesson_index)
        if not lookup.available:
            if not _mapping_notice_logged:
                logger.info("Concept mapping table is not configured; skipping concept mastery updates.")
                _mapping_notice_logged = True
            return lookup.status, []

        touched: List[str] = []
        for mapping in collapse_mappings(lookup.mappings):
            existing = learner_state.get_concept_mastery(session, username, mapping.concept_id)
            updated = apply_lesson_outcome(existing, username=username, mapping=mapping, accuracy=accuracy, now=now)
            learner_state.save_concept_mastery(session, updated)
            touched.append(mapping.concept_id)
        return lookup.status, touched

    def list_concept_mastery(self, username: str) -> List[ConceptMastery]:
        normalized = _normalize_username(username)
        return self._transaction("list_concept_mastery", lambda session: learner_state.list_concept_mastery(session, normalized))

    def due_concepts(self, username: str, *, today: Optional[date] = None) -> List[ConceptMastery]:
        return due_concepts(self.list_concept_mastery(username), today)

    def check_lesson_prerequisites(
        self,
        username: str,
        course_id: str,
        lesson_index: int,
        *,
        now: Optional[datetime] = None,
    ) -> KnowledgeGapReport:
        normalized = _normalize_username(username)

        def work(session: Session) -> KnowledgeGapReport:
            lookup = learner_state.lookup_mappings(session, course_id, lesson_index)
            mappings = collapse_mappings(lookup.mappings)
            if not mappings:
                return KnowledgeGapReport()
            concept_ids = [mapping.concept_id for mapping in mappings]
            masteries: Dict[str, ConceptMastery] = {
                mastery.concept_id: mastery
                for mastery in learner_state.list_concept_mastery(session, normalized, concept_ids)
            }
            required = [mapping.concept_id for mapping in mappings if mapping.relationship_type == "requires"]
            return detect_knowledge_gaps(masteries, required, related_concepts=concept_ids, now=now)

        return self._transaction("check_lesson_prerequisites", work)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_profile(self, session: Session, username: str) -> LearnerProfile:
        profile = learner_state.get_profile(session, username)
        if profile is None:
            raise ProfileNotFound(f"Learner profile '{username}' does not exist.")
        return profile

    def _transaction(self, operation: str, work: Callable[[Session], T]) -> T:
        attempts = self.settings.write_retry_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                with session_scope() as session:
                    return work(session)
            except (StaleDataError, IntegrityError) as exc:
                last_error = exc
                logger.warning("Write conflict during %s (attempt %s/%s): %s", operation, attempt, attempts, exc)
            except SQLAlchemyError as exc:
                logger.exception("Storage failure during %s", operation)
                raise StorageError(f"Storage failure during {operation}.") from exc
        raise StorageError(
            f"Concurrent updates kept conflicting during {operation}.",
            details={"attempts": attempts},
        ) from last_error


learner_model = LearnerModelService()


def get_learner_model() -> LearnerModelService:
    return learner_model


__all__ = [
    "EffectiveProfileView",
    "LearnerModelService",
    "LessonCompletionResult",
    "LockResult",
    "RollbackResult",
    "SignalResult",
    "SyncResult",
    "get_learner_model",
    "learner_model",
]
