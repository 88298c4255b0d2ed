from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.automations.executor import StepExecutor
from app.automations.models import AutomationRun, AutomationWorkflow, utcnow
from app.automations.repository import AutomationRepository
from app.automations.schemas import PipelineEvent, RunStatus
from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_run_status


logger = logging.getLogger("app.automations.scheduler")


class RunScheduler:
    """Creates runs for matched workflows.

    ``(workflow_id, contact_id, source_event_id)`` identifies a run, so a
    redelivered event returns the existing run instead of starting another.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        executor: StepExecutor,
        *,
        enqueue: Callable[[uuid.UUID], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.enqueue = enqueue
        self.clock = clock

    def schedule(self, session: Session, workflow: AutomationWorkflow, event: PipelineEvent) -> uuid.UUID:
        existing = self.repository.find_run(
            session,
            workflow_id=workflow.id,
            contact_id=event.contact_id,
            source_event_id=event.event_id,
        )
        if existing is not None:
            logger.info(
                "automation_run_duplicate_event",
                extra={"run_id": str(existing.id), "workflow_id": str(workflow.id), "event_id": event.event_id},
            )
            return existing.id

        entry = self.repository.entry_step(session, workflow.id, workflow.version)
        now = self.clock()
        run = AutomationRun(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            contact_id=event.contact_id,
            organization_id=event.organization_id,
            source_event_id=event.event_id,
            triggering_event=event.model_dump(mode="json"),
            trigger_depth=event.depth,
            status=RunStatus.PENDING.value if entry is not None else RunStatus.COMPLETED.value,
            current_step_id=entry.id if entry is not None else None,
            correlation_id=event.correlation_id or get_correlation_id(),
            started_at=None if entry is not None else now,
            completed_at=None if entry is not None else now,
        )
        session.add(run)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = self.repository.find_run(
                session,
                workflow_id=workflow.id,
                contact_id=event.contact_id,
                source_event_id=event.event_id,
            )
            if existing is None:
                raise
            return existing.id

        run_id = run.id
        logger.info(
            "automation_run_created",
            extra={
                "run_id": str(run_id),
                "workflow_id": str(workflow.id),
                "event_id": event.event_id,
                "trigger_depth": event.depth,
            },
        )
        if entry is None:
            observe_run_status(RunStatus.COMPLETED.value)
            return run_id

        observe_run_status(RunStatus.PENDING.value)
        if self.enqueue is not None and get_settings().automation_dispatch_mode.lower() == "celery":
            self.enqueue(run_id)
        else:
            self.executor.execute(session, run_id)
        return run_id
