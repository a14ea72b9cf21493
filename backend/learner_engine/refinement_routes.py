"""Profile and refinement REST endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import BaseModel, Field, model_validator

from .learner_profile import LearnerProfile
from .profile_sync import ProfileSnapshot
from .service import EffectiveProfileView, LearnerModelService, SignalResult, get_learner_model

router = APIRouter(prefix="/api/profile", tags=["profile"])
logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100

# Profile fields that may be cleared with an explicit null.
_NULLABLE_PROFILE_FIELDS = frozenset({"peak_performance_hour"})


class ProfileUpdateRequest(BaseModel):
    education_level: Optional[str] = Field(default=None, min_length=1, max_length=64)
    study_goal: Optional[str] = Field(default=None, min_length=1, max_length=64)
    preferred_study_time: Optional[str] = Field(default=None, min_length=1, max_length=32)
    learning_styles: Optional[List[str]] = None
    avg_session_length: Optional[int] = Field(default=None, ge=1, le=240)
    optimal_session_length: Optional[int] = Field(default=None, ge=1, le=240)
    peak_performance_hour: Optional[int] = Field(default=None, ge=0, le=23)
    speed_preference: Optional[Literal["fast", "moderate", "slow"]] = None
    difficulty_preference: Optional[Literal["easy", "moderate", "challenging"]] = None
    strong_subjects: Optional[List[str]] = None
    weak_subjects: Optional[List[str]] = None

    @model_validator(mode="before")
    @classmethod
    def _reject_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            nulls = sorted(key for key, value in data.items() if value is None and key not in _NULLABLE_PROFILE_FIELDS)
            if nulls:
                raise ValueError(f"Fields cannot be null: {', '.join(nulls)}.")
        return data


class SyncOptions(BaseModel):
    force: bool = False


class RefinementSettingsRequest(BaseModel):
    action: Literal["lock", "unlock", "sync", "rollback"]
    attribute: Optional[str] = None
    snapshot_id: Optional[str] = None
    sync_options: Optional[SyncOptions] = None


@router.put("/{username}", response_model=LearnerProfile, status_code=status.HTTP_200_OK)
def upsert_profile(
    username: str,
    payload: ProfileUpdateRequest,
    service: LearnerModelService = Depends(get_learner_model),
) -> LearnerProfile:
    return service.upsert_profile(username, payload.model_dump(exclude_unset=True))


@router.get("/{username}", response_model=LearnerProfile, status_code=status.HTTP_200_OK)
def get_profile(username: str, service: LearnerModelService = Depends(get_learner_model)) -> LearnerProfile:
    return service.get_profile(username)


@router.get("/{username}/refinement", response_model=EffectiveProfileView, status_code=status.HTTP_200_OK)
def get_refinement(
    username: str,
    include_history: bool = Query(default=False),
    history_limit: Optional[int] = Query(default=None, ge=1, le=MAX_HISTORY_LIMIT),
    service: LearnerModelService = Depends(get_learner_model),
) -> EffectiveProfileView:
    return service.get_effective_profile(username, include_history=include_history, history_limit=history_limit)


@router.post("/{username}/refinement", response_model=SignalResult, status_code=status.HTTP_200_OK)
def post_signal(
    username: str,
    payload: Dict[str, Any] = Body(...),
    service: LearnerModelService = Depends(get_learner_model),
) -> SignalResult:
    return service.process_signal(username, payload)


@router.put("/{username}/refinement", status_code=status.HTTP_200_OK)
def update_refinement_settings(
    username: str,
    payload: RefinementSettingsRequest,
    service: LearnerModelService = Depends(get_learner_model),
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "attribute": payload.attribute,
        "snapshot_id": payload.snapshot_id,
        "force": payload.sync_options.force if payload.sync_options else False,
    }
    result = service.update_refinement_settings(username, payload.action, params)
    logger.info("Refinement settings '%s' applied for %s", payload.action, username)
    return {"action": payload.action, **result.model_dump(mode="json")}


@router.get(
    "/{username}/refinement/history",
    response_model=List[ProfileSnapshot],
    status_code=status.HTTP_200_OK,
)
def get_refinement_history(
    username: str,
    limit: Optional[int] = Query(default=None, ge=1, le=MAX_HISTORY_LIMIT),
    offset: int = Query(default=0, ge=0),
    service: LearnerModelService = Depends(get_learner_model),
) -> List[ProfileSnapshot]:
    return service.profile_history(username, limit=limit, offset=offset)


__all__ = ["router"]
