from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

from sqlalchemy.orm import Session

from app import audit
from app.automations.ingress import from_envelope
from app.automations.matcher import WorkflowMatcher
from app.automations.scheduler import RunScheduler
from app.automations.schemas import PipelineEvent
from app.core.config import get_settings
from app.core.events import InternalEvent
from app.metrics import observe_event, observe_guardrail_block


logger = logging.getLogger("app.automations.consumer")

SessionScope = Callable[[], AbstractContextManager[Session]]


class AutomationEventConsumer:
    """Event-bus subscriber that turns pipeline events into workflow runs.

    Nothing raised while matching or scheduling reaches the publisher; each
    matched workflow is scheduled independently so one bad workflow does not
    starve the others.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        matcher: WorkflowMatcher,
        scheduler: RunScheduler,
        *,
        enqueue_event: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.session_scope = session_scope
        self.matcher = matcher
        self.scheduler = scheduler
        self.enqueue_event = enqueue_event

    def handle(self, event: InternalEvent) -> None:
        if not isinstance(event.payload, dict):
            return
        try:
            self.process_envelope(event.payload)
        except Exception as exc:
            logger.exception(
                "automation_event_consumer_failed",
                extra={"event_type": event.name, "error": str(exc)[:500]},
            )

    def process_envelope(self, envelope: dict[str, Any]) -> list[uuid.UUID]:
        event = from_envelope(envelope)
        if event is None:
            observe_event(str(envelope.get("event_type") or "unknown"), "rejected")
            logger.warning(
                "automation_event_rejected",
                extra={"event_type": envelope.get("event_type"), "event_id": envelope.get("event_id")},
            )
            return []

        settings = get_settings()
        if event.depth >= settings.automation_max_trigger_depth:
            self._block(event, settings.automation_max_trigger_depth)
            return []

        if settings.automation_dispatch_mode.lower() == "celery" and self.enqueue_event is not None:
            self.enqueue_event(envelope)
            observe_event(event.type.value, "enqueued")
            return []
        return self.dispatch(event)

    def dispatch(self, event: PipelineEvent) -> list[uuid.UUID]:
        run_ids: list[uuid.UUID] = []
        with self.session_scope() as session:
            workflows = self.matcher.match(session, event)
            for workflow in workflows:
                workflow_id = workflow.id
                try:
                    run_ids.append(self.scheduler.schedule(session, workflow, event))
                except Exception as exc:
                    session.rollback()
                    logger.exception(
                        "automation_schedule_failed",
                        extra={
                            "workflow_id": str(workflow_id),
                            "event_id": event.event_id,
                            "error": str(exc)[:500],
                        },
                    )
        observe_event(event.type.value, "matched" if run_ids else "unmatched")
        return run_ids

    def _block(self, event: PipelineEvent, max_depth: int) -> None:
        observe_guardrail_block("MAX_DEPTH")
        observe_event(event.type.value, "blocked")
        logger.warning(
            "automation_guardrail_blocked",
            extra={
                "event_type": event.type.value,
                "event_id": event.event_id,
                "reason": "MAX_DEPTH",
                "trigger_depth": event.depth,
                "max_depth": max_depth,
            },
        )
        audit.record(
            actor_user_id=event.performed_by or "system",
            entity_type="automation.event",
            entity_id=event.event_id,
            action="automation.blocked",
            before=None,
            after={
                "reason": "MAX_DEPTH",
                "event_type": event.type.value,
                "contact_id": str(event.contact_id),
                "trigger_depth": event.depth,
                "max_depth": max_depth,
            },
            correlation_id=event.correlation_id,
            organization_id=str(event.organization_id),
        )
