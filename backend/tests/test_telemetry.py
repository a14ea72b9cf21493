from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import List

import pytest
from pydantic import BaseModel

from learner_engine.telemetry import TelemetryEvent, emit_event, register_listener, unregister_listener


class _Recorder:
    def __init__(self) -> None:
        self.events: List[TelemetryEvent] = []

    def __call__(self, event: TelemetryEvent) -> None:
        self.events.append(event)


@pytest.fixture()
def recorder():
    listener = _Recorder()
    yield listener
    unregister_listener(listener)


def test_listener_receives_only_subscribed_events(recorder) -> None:
    register_listener(recorder, events={"profile_synced"})

    emit_event("refinement_signal_processed", username="ada")
    emit_event("profile_synced", username="ada", snapshot_id="snap-1")

    assert [event.name for event in recorder.events] == ["profile_synced"]
    assert recorder.events[0].payload == {"username": "ada", "snapshot_id": "snap-1"}


def test_unregistered_listener_stops_receiving(recorder) -> None:
    register_listener(recorder)
    emit_event("db_pool_status", checked_out=1)
    unregister_listener(recorder)
    emit_event("db_pool_status", checked_out=2)

    assert [event.payload["checked_out"] for event in recorder.events] == [1]


def test_failing_listener_does_not_break_delivery(recorder, caplog) -> None:
    def explode(event: TelemetryEvent) -> None:
        raise RuntimeError("listener down")

    register_listener(explode)
    register_listener(recorder)
    try:
        with caplog.at_level(logging.ERROR, logger="learner_engine.telemetry"):
            emit_event("attribute_lock_changed", username="ada", action="lock")
    finally:
        unregister_listener(explode)

    assert len(recorder.events) == 1
    assert "Telemetry listener failed for attribute_lock_changed" in caplog.text


class _Snapshot(BaseModel):
    snapshot_id: str
    taken_at: datetime


def test_payload_values_are_made_json_friendly(recorder) -> None:
    register_listener(recorder)
    taken_at = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    emit_event(
        "profile_rolled_back",
        username="ada",
        attributes={"study_goal", "learning_styles"},
        updated=("optimal_session_length",),
        day=date(2024, 5, 1),
        snapshot=_Snapshot(snapshot_id="snap-2", taken_at=taken_at),
    )

    payload = recorder.events[0].payload
    assert payload["attributes"] == ["learning_styles", "study_goal"]
    assert payload["updated"] == ["optimal_session_length"]
    assert payload["day"] == "2024-05-01"
    assert payload["snapshot"]["snapshot_id"] == "snap-2"
    assert payload["snapshot"]["taken_at"].startswith("2024-05-01T12:30:00")


@pytest.mark.parametrize("username, expected", [("ada", "ada"), ("   ", None), (None, None), (7, None)])
def test_event_username(username, expected) -> None:
    assert TelemetryEvent(name="profile_synced", payload={"username": username}).username == expected
