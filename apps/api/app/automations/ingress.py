from __future__ import annotations

import logging
from typing import Any

import pydantic

from app import events
from app.automations.schemas import PipelineEvent, TriggerType, pipeline_event_name
from app.context import get_correlation_id, get_trigger_depth
from app.metrics import observe_event


logger = logging.getLogger("app.automations.ingress")

PIPELINE_EVENT_NAMES = [pipeline_event_name(trigger_type) for trigger_type in TriggerType]


def to_envelope(event: PipelineEvent) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "event_type": pipeline_event_name(event.type),
        "occurred_at": event.occurred_at.isoformat(),
        "actor_user_id": event.performed_by,
        "organization_id": str(event.organization_id),
        "correlation_id": event.correlation_id or get_correlation_id(),
        "meta": {"trigger_depth": event.depth},
        "payload": {
            "trigger_type": event.type.value,
            "contact_id": str(event.contact_id),
            "pipeline_id": str(event.pipeline_id),
            "data": event.data,
        },
    }


def from_envelope(envelope: dict[str, Any]) -> PipelineEvent | None:
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
    try:
        depth = int(meta.get("trigger_depth", 0) or 0)
    except (TypeError, ValueError):
        depth = 0
    event_id = str(envelope.get("event_id") or "").strip()
    if not event_id:
        return None
    optional: dict[str, Any] = {}
    if envelope.get("occurred_at"):
        optional["occurred_at"] = envelope["occurred_at"]
    try:
        return PipelineEvent(
            event_id=event_id,
            type=payload.get("trigger_type"),
            contact_id=payload.get("contact_id"),
            organization_id=envelope.get("organization_id"),
            pipeline_id=payload.get("pipeline_id"),
            performed_by=envelope.get("actor_user_id"),
            data=payload.get("data") or {},
            correlation_id=envelope.get("correlation_id"),
            depth=max(depth, 0),
            **optional,
        )
    except pydantic.ValidationError:
        return None


class EventIngress:
    """Entry point the CRM write path calls right after a change commits.

    Publishing never raises into the caller: a failed hand-off is logged and
    counted, and the originating request carries on.
    """

    def emit(self, event: PipelineEvent) -> None:
        if event.depth == 0 and get_trigger_depth():
            event = event.model_copy(update={"depth": get_trigger_depth()})
        envelope = to_envelope(event)
        try:
            events.publish(envelope)
            observe_event(event.type.value, "emitted")
        except Exception as exc:
            observe_event(event.type.value, "ingress_failed")
            logger.exception(
                "automation_ingress_failed",
                extra={
                    "event_type": envelope["event_type"],
                    "event_id": event.event_id,
                    "error": str(exc)[:500],
                },
            )


event_ingress = EventIngress()


def emit(event: PipelineEvent) -> None:
    event_ingress.emit(event)
