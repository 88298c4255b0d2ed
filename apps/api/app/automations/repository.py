from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from app.automations.models import (
    AutomationEmailTemplate,
    AutomationRun,
    AutomationStep,
    AutomationStepLog,
    AutomationWebhookEndpoint,
    AutomationWorkflow,
)
from app.automations.schemas import RunStatus, StepLogStatus


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything the engine stores is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AutomationRepository:
    """All reads and row-level writes the automation engine performs.

    One instance is created per process and passed to the engine components;
    it holds no state of its own, so tenants never share cached rows.
    """

    def get_workflow(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        *,
        organization_ids: Iterable[uuid.UUID] | None = None,
        include_deleted: bool = False,
        fresh: bool = False,
    ) -> AutomationWorkflow | None:
        query = select(AutomationWorkflow).where(AutomationWorkflow.id == workflow_id)
        if not include_deleted:
            query = query.where(AutomationWorkflow.deleted_at.is_(None))
        if organization_ids is not None:
            query = query.where(AutomationWorkflow.organization_id.in_(list(organization_ids)))
        if fresh:
            query = query.execution_options(populate_existing=True)
        return session.scalar(query)

    def list_workflows(
        self,
        session: Session,
        organization_ids: Iterable[uuid.UUID],
        *,
        pipeline_id: uuid.UUID | None = None,
        trigger_type: str | None = None,
        is_active: bool | None = None,
    ) -> list[AutomationWorkflow]:
        query = select(AutomationWorkflow).where(
            and_(
                AutomationWorkflow.organization_id.in_(list(organization_ids)),
                AutomationWorkflow.deleted_at.is_(None),
            )
        )
        if pipeline_id is not None:
            query = query.where(AutomationWorkflow.pipeline_id == pipeline_id)
        if trigger_type is not None:
            query = query.where(AutomationWorkflow.trigger_type == trigger_type)
        if is_active is not None:
            query = query.where(AutomationWorkflow.is_active.is_(is_active))
        return list(session.scalars(query.order_by(AutomationWorkflow.created_at.asc(), AutomationWorkflow.id.asc())))

    def candidate_workflows(
        self,
        session: Session,
        *,
        organization_id: uuid.UUID,
        pipeline_id: uuid.UUID,
        trigger_type: str,
    ) -> list[AutomationWorkflow]:
        return list(
            session.scalars(
                select(AutomationWorkflow)
                .where(
                    and_(
                        AutomationWorkflow.organization_id == organization_id,
                        AutomationWorkflow.pipeline_id == pipeline_id,
                        AutomationWorkflow.trigger_type == trigger_type,
                        AutomationWorkflow.is_active.is_(True),
                        AutomationWorkflow.deleted_at.is_(None),
                    )
                )
                .order_by(AutomationWorkflow.created_at.asc(), AutomationWorkflow.id.asc())
            )
        )

    def steps_for_version(self, session: Session, workflow_id: uuid.UUID, version: int) -> list[AutomationStep]:
        return list(
            session.scalars(
                select(AutomationStep)
                .where(and_(AutomationStep.workflow_id == workflow_id, AutomationStep.workflow_version == version))
                .order_by(AutomationStep.position.asc())
            )
        )

    def entry_step(self, session: Session, workflow_id: uuid.UUID, version: int) -> AutomationStep | None:
        return session.scalar(
            select(AutomationStep)
            .where(and_(AutomationStep.workflow_id == workflow_id, AutomationStep.workflow_version == version))
            .order_by(AutomationStep.position.asc())
            .limit(1)
        )

    def get_step(self, session: Session, step_id: uuid.UUID) -> AutomationStep | None:
        return session.scalar(select(AutomationStep).where(AutomationStep.id == step_id))

    def find_run(
        self,
        session: Session,
        *,
        workflow_id: uuid.UUID,
        contact_id: uuid.UUID,
        source_event_id: str,
    ) -> AutomationRun | None:
        return session.scalar(
            select(AutomationRun).where(
                and_(
                    AutomationRun.workflow_id == workflow_id,
                    AutomationRun.contact_id == contact_id,
                    AutomationRun.source_event_id == source_event_id,
                )
            )
        )

    def get_run(self, session: Session, run_id: uuid.UUID, *, fresh: bool = True) -> AutomationRun | None:
        query = select(AutomationRun).where(AutomationRun.id == run_id)
        if fresh:
            query = query.execution_options(populate_existing=True)
        return session.scalar(query)

    def list_runs(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        *,
        status: str | None = None,
        limit: int = 100,
    ) -> list[AutomationRun]:
        query = select(AutomationRun).where(AutomationRun.workflow_id == workflow_id)
        if status is not None:
            query = query.where(AutomationRun.status == status)
        return list(session.scalars(query.order_by(AutomationRun.created_at.desc(), AutomationRun.id.desc()).limit(limit)))

    def step_logs(self, session: Session, run_id: uuid.UUID) -> list[AutomationStepLog]:
        return list(
            session.scalars(
                select(AutomationStepLog)
                .where(AutomationStepLog.run_id == run_id)
                .order_by(AutomationStepLog.sequence.asc())
            )
        )

    def latest_log(self, session: Session, run_id: uuid.UUID, step_id: uuid.UUID) -> AutomationStepLog | None:
        return session.scalar(
            select(AutomationStepLog)
            .where(and_(AutomationStepLog.run_id == run_id, AutomationStepLog.step_id == step_id))
            .order_by(AutomationStepLog.sequence.desc())
            .limit(1)
        )

    def append_log(
        self,
        session: Session,
        *,
        run: AutomationRun,
        step: AutomationStep,
        status: StepLogStatus,
        retry_count: int,
        started_at: datetime,
    ) -> AutomationStepLog:
        current = session.scalar(
            select(func.max(AutomationStepLog.sequence)).where(AutomationStepLog.run_id == run.id)
        )
        log = AutomationStepLog(
            run_id=run.id,
            sequence=(current or 0) + 1,
            step_id=step.id,
            step_type=step.step_type,
            status=status.value,
            retry_count=retry_count,
            started_at=started_at,
        )
        session.add(log)
        session.flush()
        return log

    def transition_run_status(
        self,
        session: Session,
        run_id: uuid.UUID,
        *,
        expected: RunStatus | Iterable[RunStatus],
        new: RunStatus,
        now: datetime,
        **values: Any,
    ) -> bool:
        """Compare-and-set the run status; only one caller can win a given transition."""
        expected_values = [expected.value] if isinstance(expected, RunStatus) else [item.value for item in expected]
        result = session.execute(
            update(AutomationRun)
            .where(and_(AutomationRun.id == run_id, AutomationRun.status.in_(expected_values)))
            .values(status=new.value, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def due_waiting_runs(self, session: Session, now: datetime, *, limit: int = 100) -> list[uuid.UUID]:
        query = (
            select(AutomationRun.id)
            .join(
                AutomationStepLog,
                and_(
                    AutomationStepLog.run_id == AutomationRun.id,
                    AutomationStepLog.step_id == AutomationRun.current_step_id,
                    AutomationStepLog.status == StepLogStatus.WAITING.value,
                ),
            )
            .where(
                and_(
                    AutomationRun.status == RunStatus.WAITING.value,
                    AutomationStepLog.resume_at <= now,
                )
            )
            .order_by(AutomationStepLog.resume_at.asc(), AutomationRun.id.asc())
            .limit(limit)
        )
        return list(dict.fromkeys(session.scalars(query)))

    def get_template(
        self,
        session: Session,
        organization_id: uuid.UUID,
        template_id: uuid.UUID,
    ) -> AutomationEmailTemplate | None:
        return session.scalar(
            select(AutomationEmailTemplate).where(
                and_(
                    AutomationEmailTemplate.id == template_id,
                    AutomationEmailTemplate.organization_id == organization_id,
                    AutomationEmailTemplate.deleted_at.is_(None),
                )
            )
        )

    def list_templates(self, session: Session, organization_ids: Iterable[uuid.UUID]) -> list[AutomationEmailTemplate]:
        return list(
            session.scalars(
                select(AutomationEmailTemplate)
                .where(
                    and_(
                        AutomationEmailTemplate.organization_id.in_(list(organization_ids)),
                        AutomationEmailTemplate.deleted_at.is_(None),
                    )
                )
                .order_by(AutomationEmailTemplate.name.asc())
            )
        )

    def get_endpoint(
        self,
        session: Session,
        organization_id: uuid.UUID | Iterable[uuid.UUID],
        endpoint_id: uuid.UUID,
    ) -> AutomationWebhookEndpoint | None:
        org_ids = [organization_id] if isinstance(organization_id, uuid.UUID) else list(organization_id)
        return session.scalar(
            select(AutomationWebhookEndpoint).where(
                and_(
                    AutomationWebhookEndpoint.id == endpoint_id,
                    AutomationWebhookEndpoint.organization_id.in_(org_ids),
                    AutomationWebhookEndpoint.deleted_at.is_(None),
                )
            )
        )

    def list_endpoints(self, session: Session, organization_ids: Iterable[uuid.UUID]) -> list[AutomationWebhookEndpoint]:
        return list(
            session.scalars(
                select(AutomationWebhookEndpoint)
                .where(
                    and_(
                        AutomationWebhookEndpoint.organization_id.in_(list(organization_ids)),
                        AutomationWebhookEndpoint.deleted_at.is_(None),
                    )
                )
                .order_by(AutomationWebhookEndpoint.name.asc())
            )
        )
