from __future__ import annotations

from learner_engine.db.session import session_scope
from learner_engine.repositories.learner_state import learner_state
from learner_engine.telemetry import emit_event
from learner_engine.telemetry_pipeline import _MONITORED_EVENTS


def _recent(username: str, event_types=None):
    with session_scope() as session:
        return learner_state.recent_telemetry_events(session, username, event_types=event_types)


def test_monitored_events_persist_to_audit_log(database) -> None:
    assert "profile_synced" in _MONITORED_EVENTS

    emit_event(
        "profile_synced",
        username="Ada",
        force=False,
        updated=("optimal_session_length",),
        snapshot_id="snap-1",
    )

    events = _recent("ada", event_types=_MONITORED_EVENTS)
    assert len(events) == 1
    assert events[0].event_type == "profile_synced"
    assert events[0].payload["snapshot_id"] == "snap-1"
    assert events[0].payload["updated"] == ["optimal_session_length"]


def test_unmonitored_or_anonymous_events_are_ignored(database) -> None:
    emit_event("refinement_signal_processed", username="ada", updates=[])
    emit_event("attribute_lock_changed", action="lock", attribute="study_goal")

    assert _recent("ada") == []
