"""Planning how refinement values are written back into the canonical profile."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .learner_profile import MIN_CONFIDENCE_FOR_SYNC, SYNCABLE_ATTRIBUTES, LearnerProfile, refinement_value
from .refinement import RefinementState

SnapshotType = Literal["automatic", "rollback", "user_edit", "milestone"]


class ProfileSnapshot(BaseModel):
    """Immutable capture of a learner's profile, refinement state and locks."""

    snapshot_id: str
    username: str
    snapshot_type: SnapshotType
    profile: LearnerProfile
    refinement_state: Optional[RefinementState] = None
    locked_attributes: List[str] = Field(default_factory=list)
    trigger_reason: Optional[str] = None
    created_at: datetime


@dataclass
class SyncPlan:
    profile: LearnerProfile
    updated_attributes: List[str] = field(default_factory=list)
    skipped_attributes: List[str] = field(default_factory=list)


def plan_sync(
    profile: LearnerProfile,
    refinement_state: RefinementState,
    *,
    force: bool = False,
    now: Optional[datetime] = None,
) -> SyncPlan:
    """Compute the profile that a sync would persist.

    Locked attributes are skipped unless ``force`` is set. Without ``force``
    low-confidence refinement values are skipped too. A peak hour that was
    never inferred is always skipped.
    """
    locked = set(profile.locked_attributes)
    updates: dict[str, object] = {}
    sources = dict(profile.attribute_sources)
    plan = SyncPlan(profile=profile)

    for attribute in SYNCABLE_ATTRIBUTES:
        if attribute in locked and not force:
            plan.skipped_attributes.append(attribute)
            continue
        value, confidence = refinement_value(attribute, refinement_state)
        if value is None or (not force and confidence < MIN_CONFIDENCE_FOR_SYNC):
            plan.skipped_attributes.append(attribute)
            continue
        updates[attribute] = value
        sources[attribute] = "system"
        plan.updated_attributes.append(attribute)

    if updates:
        updates["attribute_sources"] = sources
        updates["last_updated"] = now or datetime.now(timezone.utc)
        plan.profile = profile.model_copy(update=updates, deep=True)
    return plan


__all__ = ["ProfileSnapshot", "SnapshotType", "SyncPlan", "plan_sync"]
