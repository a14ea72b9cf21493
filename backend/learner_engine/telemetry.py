"""In-process telemetry bus for learner model events.

Events are logged as one ``TELEMETRY {json}`` line and handed to the
listeners subscribed to them. A listener may subscribe to specific event
names or, with ``events=None``, to everything.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from threading import RLock
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel

logger = logging.getLogger("learner_engine.telemetry")

Listener = Callable[["TelemetryEvent"], None]


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]

    @property
    def username(self) -> Optional[str]:
        value = self.payload.get("username")
        if isinstance(value, str) and value.strip():
            return value
        return None


_subscriptions: List[Tuple[Listener, Optional[FrozenSet[str]]]] = []
_lock = RLock()


def register_listener(listener: Listener, *, events: Optional[Iterable[str]] = None) -> None:
    names = frozenset(events) if events is not None else None
    with _lock:
        _subscriptions.append((listener, names))


def unregister_listener(listener: Listener) -> None:
    with _lock:
        _subscriptions[:] = [entry for entry in _subscriptions if entry[0] is not listener]


def emit_event(name: str, **fields: Any) -> None:
    """Log the event, then deliver it. Listener failures are logged and swallowed."""
    event = TelemetryEvent(name=name, payload={key: _jsonable(value) for key, value in fields.items()})
    logger.info("TELEMETRY %s", json.dumps({"event": name, **event.payload}, default=str))

    with _lock:
        listeners = [listener for listener, names in _subscriptions if names is None or name in names]
    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    return value


__all__ = [
    "Listener",
    "TelemetryEvent",
    "emit_event",
    "register_listener",
    "unregister_listener",
]
