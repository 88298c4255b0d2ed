from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.automations.conditions import matches_filter
from app.automations.models import AutomationWorkflow
from app.automations.repository import AutomationRepository
from app.automations.schemas import PipelineEvent


logger = logging.getLogger("app.automations.matcher")


def event_context(event: PipelineEvent) -> dict[str, Any]:
    """Filter context: event data at the top level, also reachable as ``data.*``."""
    context: dict[str, Any] = dict(event.data)
    context.update(
        {
            "data": dict(event.data),
            "type": event.type.value,
            "contact_id": str(event.contact_id),
            "pipeline_id": str(event.pipeline_id),
            "organization_id": str(event.organization_id),
        }
    )
    return context


class WorkflowMatcher:
    def __init__(self, repository: AutomationRepository) -> None:
        self.repository = repository

    def match(self, session: Session, event: PipelineEvent) -> list[AutomationWorkflow]:
        candidates = self.repository.candidate_workflows(
            session,
            organization_id=event.organization_id,
            pipeline_id=event.pipeline_id,
            trigger_type=event.type.value,
        )
        context = event_context(event)
        matched: list[AutomationWorkflow] = []
        for workflow in candidates:
            try:
                if matches_filter(workflow.trigger_filter, context):
                    matched.append(workflow)
            except ValueError as exc:
                logger.warning(
                    "automation_trigger_filter_invalid",
                    extra={
                        "workflow_id": str(workflow.id),
                        "event_id": event.event_id,
                        "error": str(exc)[:500],
                    },
                )
        logger.info(
            "automation_event_matched",
            extra={
                "event_type": event.type.value,
                "event_id": event.event_id,
                "organization_id": str(event.organization_id),
                "matched_count": len(matched),
            },
        )
        return matched
