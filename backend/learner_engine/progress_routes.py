"""Lesson progress and concept mastery REST endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from .concept_mastery import ConceptMastery, LessonAttempt
from .knowledge_gaps import KnowledgeGapReport
from .service import LearnerModelService, LessonCompletionResult, get_learner_model

router = APIRouter(prefix="/api/progress", tags=["progress"])


class LessonAttemptRequest(BaseModel):
    correct: bool
    attempted_at: Optional[datetime] = None


class LessonCompletionRequest(BaseModel):
    accuracy: Optional[float] = Field(default=None, allow_inf_nan=False)


@router.post(
    "/{username}/lessons/{course_id}/{lesson_index}/attempts",
    response_model=LessonAttempt,
    status_code=status.HTTP_201_CREATED,
)
def record_attempt(
    username: str,
    course_id: str,
    lesson_index: int,
    payload: LessonAttemptRequest,
    service: LearnerModelService = Depends(get_learner_model),
) -> LessonAttempt:
    return service.record_lesson_attempt(
        username,
        course_id,
        lesson_index,
        correct=payload.correct,
        attempted_at=payload.attempted_at,
    )


@router.post(
    "/{username}/lessons/{course_id}/{lesson_index}/complete",
    response_model=LessonCompletionResult,
    status_code=status.HTTP_200_OK,
)
def complete_lesson(
    username: str,
    course_id: str,
    lesson_index: int,
    payload: Optional[LessonCompletionRequest] = None,
    service: LearnerModelService = Depends(get_learner_model),
) -> LessonCompletionResult:
    accuracy = payload.accuracy if payload else None
    return service.record_lesson_completion(username, course_id, lesson_index, accuracy)


@router.get(
    "/{username}/lessons/{course_id}/{lesson_index}/prerequisites",
    response_model=KnowledgeGapReport,
    status_code=status.HTTP_200_OK,
)
def lesson_prerequisites(
    username: str,
    course_id: str,
    lesson_index: int,
    service: LearnerModelService = Depends(get_learner_model),
) -> KnowledgeGapReport:
    return service.check_lesson_prerequisites(username, course_id, lesson_index)


@router.get("/{username}/concepts", response_model=List[ConceptMastery], status_code=status.HTTP_200_OK)
def list_concepts(
    username: str,
    due_only: bool = Query(default=False),
    service: LearnerModelService = Depends(get_learner_model),
) -> List[ConceptMastery]:
    if due_only:
        return service.due_concepts(username)
    return service.list_concept_mastery(username)


__all__ = ["router"]
