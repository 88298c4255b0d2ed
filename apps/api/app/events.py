from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_trigger_depth
from app.core.events import event_bus

PUBLISHED_EVENTS_LIMIT = 1000

# Recent envelopes, newest last; bounded so a long-lived worker does not grow without limit.
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_LIMIT)


def publish(envelope: dict[str, Any]) -> None:
    """Stamp an envelope with id, time, correlation and trigger depth, then fan it out on the bus."""
    envelope.setdefault("event_id", str(uuid.uuid4()))
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    trigger_depth = get_trigger_depth()
    if trigger_depth is not None and "trigger_depth" not in meta:
        meta["trigger_depth"] = trigger_depth
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def events_of_type(event_type: str) -> list[dict[str, Any]]:
    return [envelope for envelope in published_events if envelope.get("event_type") == event_type]
