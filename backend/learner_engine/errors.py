"""Error taxonomy for the learner model engine and its HTTP rendering."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LearnerEngineError(Exception):
    """Base class for errors surfaced to callers of the learner model."""

    code = "learner_engine_error"
    status_code = 500

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidSignal(LearnerEngineError):
    code = "invalid_signal"
    status_code = 400


class UnknownAttribute(LearnerEngineError):
    code = "unknown_attribute"
    status_code = 400


class MissingParameter(LearnerEngineError):
    code = "missing_parameter"
    status_code = 400


class InvalidProfileUpdate(LearnerEngineError):
    code = "invalid_profile_update"
    status_code = 400


class NoRefinementState(LearnerEngineError):
    code = "no_refinement_state"
    status_code = 400


class ProfileNotFound(LearnerEngineError):
    code = "profile_not_found"
    status_code = 404


class SnapshotNotFound(LearnerEngineError):
    code = "snapshot_not_found"
    status_code = 404


class StorageError(LearnerEngineError):
    """Persistence collaborator failure. Opaque to callers and safe to retry."""

    code = "storage_error"
    status_code = 503


def error_response(*, code: str, message: str, status_code: int, details: Any = None) -> JSONResponse:
    payload = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=payload)


async def learner_engine_error_handler(request: Request, exc: LearnerEngineError) -> JSONResponse:
    if isinstance(exc, StorageError):
        logger.warning("Storage failure on %s %s: %s", request.method, request.url.path, exc.message)
    return error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )


__all__ = [
    "InvalidProfileUpdate",
    "InvalidSignal",
    "LearnerEngineError",
    "MissingParameter",
    "NoRefinementState",
    "ProfileNotFound",
    "SnapshotNotFound",
    "StorageError",
    "UnknownAttribute",
    "error_response",
    "learner_engine_error_handler",
]
