from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from app.automations import ingress
from app.automations.errors import AutomationError
from app.automations.handlers import Advance, Fail, Outcome, StepHandler, Wait
from app.automations.models import AutomationRun, AutomationStep, utcnow
from app.automations.repository import AutomationRepository
from app.automations.schemas import PipelineEvent, RunStatus, StepLogStatus, StepType
from app.context import trigger_scope
from app.core.config import get_settings
from app.crm.models import CRMContact
from app.crm.service import ContactService
from app.metrics import observe_run_status, observe_step_attempt
from app.otel import get_tracer, run_attributes, set_span_attributes


logger = logging.getLogger("app.automations.executor")
tracer = get_tracer("app.automations.executor")


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class StepExecutor:
    """Drives a claimed run one step at a time until it waits or terminates.

    Runs are claimed with a compare-and-set on their status, so a run is only
    ever driven by one worker. Every step is preceded by a checkpoint that
    cancels the run if its workflow was deactivated or deleted, or its contact
    deleted, since the previous step.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        contacts: ContactService,
        handlers: dict[StepType, StepHandler],
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        emit: Callable[[PipelineEvent], None] = ingress.emit,
    ) -> None:
        self.repository = repository
        self.contacts = contacts
        self.handlers = handlers
        self.clock = clock
        self.sleep = sleep
        self.emit = emit

    def execute(self, session: Session, run_id: uuid.UUID) -> AutomationRun | None:
        now = self.clock()
        claimed = self.repository.transition_run_status(
            session,
            run_id,
            expected=RunStatus.PENDING,
            new=RunStatus.RUNNING,
            now=now,
            started_at=now,
        )
        if not claimed:
            logger.info("automation_run_claim_skipped", extra={"run_id": str(run_id), "reason": "not_pending"})
            return self.repository.get_run(session, run_id)
        try:
            return self._drive(session, run_id)
        except Exception as exc:
            self.abandon(session, run_id, exc)
            raise

    def resume(self, session: Session, run_id: uuid.UUID, now: datetime | None = None) -> AutomationRun | None:
        """Continue a run the sweeper has already moved from ``waiting`` to ``running``."""
        try:
            return self._resume(session, run_id, now or self.clock())
        except Exception as exc:
            self.abandon(session, run_id, exc)
            raise

    def abandon(self, session: Session, run_id: uuid.UUID, exc: BaseException) -> bool:
        """Fail a claimed run whose invocation crashed outside a step handler.

        Nothing else moves a run out of ``running``, so the claim must be
        released here. Returns False when the run was no longer running.
        """
        session.rollback()
        now = self.clock()
        error = f"unexpected error: {exc}"
        try:
            failed = self.repository.transition_run_status(
                session,
                run_id,
                expected=RunStatus.RUNNING,
                new=RunStatus.FAILED,
                now=now,
                completed_at=now,
                error_message=error[:2000],
            )
        except Exception:
            session.rollback()
            logger.exception("automation_run_abandon_failed", extra={"run_id": str(run_id), "error": error})
            return False
        if failed:
            observe_run_status(RunStatus.FAILED.value)
            logger.error(
                "automation_run_abandoned",
                extra={"run_id": str(run_id), "status": RunStatus.FAILED.value, "error": error},
            )
        return failed

    def _resume(self, session: Session, run_id: uuid.UUID, resumed_at: datetime) -> AutomationRun | None:
        run = self.repository.get_run(session, run_id)
        if run is None or run.status != RunStatus.RUNNING.value:
            return run

        if run.current_step_id is not None:
            step = self.repository.get_step(session, run.current_step_id)
            if step is not None:
                log = self.repository.latest_log(session, run.id, step.id)
                if log is not None and log.status == StepLogStatus.WAITING.value:
                    log.status = StepLogStatus.COMPLETED.value
                    log.completed_at = resumed_at
                    log.result = {**(log.result or {}), "resumed_at": resumed_at.isoformat()}
                run.current_step_id = step.next_step_id
                run.updated_at = resumed_at
                session.commit()
        return self._drive(session, run_id)

    def _drive(self, session: Session, run_id: uuid.UUID) -> AutomationRun | None:
        run = self.repository.get_run(session, run_id)
        if run is None:
            return None

        deferred: list[PipelineEvent] = []
        with trigger_scope(run.trigger_depth + 1, run.correlation_id):
            with tracer.start_as_current_span("automation.run.execute") as span:
                set_span_attributes(span, run_attributes(run))
                final_status = self._loop(session, run_id, deferred)
                span.set_attribute("automation.run_status", final_status or "")
                if final_status == RunStatus.FAILED.value:
                    span.set_status(Status(StatusCode.ERROR, "run_failed"))
            for event in deferred:
                self.emit(event)
        return self.repository.get_run(session, run_id)

    def _loop(self, session: Session, run_id: uuid.UUID, deferred: list[PipelineEvent]) -> str | None:
        max_retries = get_settings().automation_max_retries
        attempt = 0
        while True:
            run = self.repository.get_run(session, run_id)
            if run is None:
                return None
            if run.status != RunStatus.RUNNING.value:
                return run.status

            reason = self._checkpoint(session, run)
            if reason is not None:
                return self._finish(session, run, RunStatus.CANCELLED, error=reason)
            if run.current_step_id is None:
                return self._finish(session, run, RunStatus.COMPLETED)

            step = self.repository.get_step(session, run.current_step_id)
            if step is None:
                return self._finish(session, run, RunStatus.FAILED, error=f"step {run.current_step_id} not found")
            contact = self.contacts.find_active_contact(session, run.contact_id)
            if contact is None:
                return self._finish(session, run, RunStatus.CANCELLED, error="contact deleted")

            started_at = self.clock()
            log = self.repository.append_log(
                session,
                run=run,
                step=step,
                status=StepLogStatus.RUNNING,
                retry_count=attempt,
                started_at=started_at,
            )
            session.commit()
            log_id = log.id

            timer = time.perf_counter()
            outcome = self._invoke(session, run, step, contact, attempt)
            duration = time.perf_counter() - timer
            log = self.repository.latest_log(session, run_id, step.id)
            if log is None or log.id != log_id:
                return self._finish(session, run, RunStatus.FAILED, error="step log lost during execution")

            if isinstance(outcome, Advance):
                log.status = StepLogStatus.COMPLETED.value
                log.completed_at = self.clock()
                log.result = _json_safe(outcome.result)
                run.current_step_id = outcome.next_step_id
                run.updated_at = log.completed_at
                session.commit()
                deferred.extend(outcome.events)
                observe_step_attempt(step.step_type, StepLogStatus.COMPLETED.value, duration)
                attempt = 0
                continue

            if isinstance(outcome, Wait):
                log.status = StepLogStatus.WAITING.value
                log.resume_at = outcome.resume_at
                log.result = _json_safe(outcome.result)
                session.commit()
                observe_step_attempt(step.step_type, StepLogStatus.WAITING.value, duration)
                self.repository.transition_run_status(
                    session,
                    run_id,
                    expected=RunStatus.RUNNING,
                    new=RunStatus.WAITING,
                    now=self.clock(),
                )
                observe_run_status(RunStatus.WAITING.value)
                logger.info(
                    "automation_run_waiting",
                    extra={"run_id": str(run_id), "step_id": str(step.id), "status": RunStatus.WAITING.value},
                )
                return RunStatus.WAITING.value

            will_retry = outcome.retryable and attempt < max_retries
            log.status = StepLogStatus.FAILED.value
            log.completed_at = self.clock()
            log.result = _json_safe({**outcome.result, "error": outcome.error, "will_retry": will_retry})
            session.commit()
            observe_step_attempt(step.step_type, StepLogStatus.FAILED.value, duration)
            logger.warning(
                "automation_step_failed",
                extra={
                    "run_id": str(run_id),
                    "step_id": str(step.id),
                    "step_type": step.step_type,
                    "attempt": attempt,
                    "will_retry": will_retry,
                    "error": outcome.error[:500],
                },
            )
            if not will_retry:
                return self._finish(session, run, RunStatus.FAILED, error=outcome.error)

            backoff = get_settings().automation_retry_backoff_seconds * (2**attempt)
            if backoff > 0:
                self.sleep(backoff)
            attempt += 1

    def _checkpoint(self, session: Session, run: AutomationRun) -> str | None:
        workflow = self.repository.get_workflow(session, run.workflow_id, include_deleted=True, fresh=True)
        if workflow is None or workflow.deleted_at is not None:
            return "workflow deleted"
        if not workflow.is_active:
            return "workflow deactivated"
        if self.contacts.find_active_contact(session, run.contact_id) is None:
            return "contact deleted"
        return None

    def _invoke(
        self,
        session: Session,
        run: AutomationRun,
        step: AutomationStep,
        contact: CRMContact,
        attempt: int,
    ) -> Outcome:
        with tracer.start_as_current_span("automation.step.execute") as span:
            set_span_attributes(
                span,
                {
                    **run_attributes(run),
                    "automation.step_id": step.id,
                    "automation.step_type": step.step_type,
                    "automation.attempt": attempt,
                },
            )

            try:
                handler = self.handlers[StepType(step.step_type)]
            except (KeyError, ValueError):
                span.set_status(Status(StatusCode.ERROR, "unknown_step_type"))
                return Fail(f"no handler for step type {step.step_type}", retryable=False)

            try:
                outcome = handler.execute(session, run, step, contact)
            except AutomationError as exc:
                session.rollback()
                span.record_exception(exc)
                outcome = Fail(exc.message, retryable=exc.retryable, result={"details": exc.details} if exc.details else {})
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                logger.exception(
                    "automation_step_crashed",
                    extra={
                        "run_id": str(run.id),
                        "step_id": str(step.id),
                        "step_type": step.step_type,
                        "error": str(exc)[:500],
                    },
                )
                outcome = Fail(f"unexpected error: {exc}", retryable=False)

            if isinstance(outcome, Fail):
                span.set_status(Status(StatusCode.ERROR, outcome.error[:200]))
            return outcome

    def _finish(self, session: Session, run: AutomationRun, new_status: RunStatus, *, error: str | None = None) -> str:
        run_id = run.id
        now = self.clock()
        values: dict[str, Any] = {"completed_at": now}
        if error is not None:
            values["error_message"] = error[:2000]
        finished = self.repository.transition_run_status(
            session,
            run_id,
            expected=RunStatus.RUNNING,
            new=new_status,
            now=now,
            **values,
        )
        if not finished:
            current = self.repository.get_run(session, run_id)
            return current.status if current is not None else new_status.value

        observe_run_status(new_status.value)
        log_method = logger.warning if new_status == RunStatus.FAILED else logger.info
        log_method(
            f"automation_run_{new_status.value}",
            extra={
                "run_id": str(run_id),
                "status": new_status.value,
                "trigger_depth": run.trigger_depth,
                **({"reason": error[:500]} if error is not None else {}),
            },
        )
        return new_status.value
