"""Telemetry listener that persists learner-model milestones to the audit table."""

from __future__ import annotations

import logging
from typing import FrozenSet

from .db.session import session_scope
from .repositories.learner_state import learner_state
from .telemetry import TelemetryEvent, register_listener

logger = logging.getLogger(__name__)

_MONITORED_EVENTS: FrozenSet[str] = frozenset(
    {
        "attribute_lock_changed",
        "concept_mastery_update_failed",
        "profile_rolled_back",
        "profile_synced",
    }
)


def _persist_event(event: TelemetryEvent) -> None:
    username = event.username
    if username is None:
        return
    try:
        with session_scope() as session:
            learner_state.record_telemetry_event(session, username, event.name, event.payload)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to persist telemetry event %s for username=%s", event.name, username)


register_listener(_persist_event, events=_MONITORED_EVENTS)

__all__ = ["_MONITORED_EVENTS"]
