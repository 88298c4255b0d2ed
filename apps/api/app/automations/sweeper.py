from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.orm import Session

from app.automations.executor import StepExecutor
from app.automations.models import utcnow
from app.automations.repository import AutomationRepository
from app.automations.schemas import RunStatus
from app.core.config import get_settings
from app.metrics import observe_sweep_resumed
from app.otel import get_tracer


logger = logging.getLogger("app.automations.sweeper")
tracer = get_tracer("app.automations.sweeper")


class DelaySweeper:
    def __init__(
        self,
        repository: AutomationRepository,
        executor: StepExecutor,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.clock = clock

    def sweep(self, session: Session, now: datetime | None = None) -> list[uuid.UUID]:
        """Resume waiting runs whose delay has elapsed; returns the ids this pass claimed."""
        cutoff = now or self.clock()
        batch_size = get_settings().automation_sweep_batch_size
        resumed: list[uuid.UUID] = []
        with tracer.start_as_current_span("automation.sweep") as span:
            due = self.repository.due_waiting_runs(session, cutoff, limit=batch_size)
            span.set_attribute("automation.due_count", len(due))
            for run_id in due:
                claimed = self.repository.transition_run_status(
                    session,
                    run_id,
                    expected=RunStatus.WAITING,
                    new=RunStatus.RUNNING,
                    now=cutoff,
                )
                if not claimed:
                    continue
                resumed.append(run_id)
                try:
                    self.executor.resume(session, run_id, cutoff)
                except Exception as exc:
                    span.record_exception(exc)
                    self.executor.abandon(session, run_id, exc)
                    logger.exception(
                        "automation_sweep_resume_failed",
                        extra={"run_id": str(run_id), "error": str(exc)[:500]},
                    )
            span.set_attribute("automation.resumed_count", len(resumed))

        if resumed:
            observe_sweep_resumed(len(resumed))
        logger.info("automation_sweep_completed", extra={"resumed_count": len(resumed)})
        return resumed
