from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import audit
from app.automations.errors import ValidationError
from app.automations.graph import build_step_rows, specs_from_builder_graph
from app.automations.models import (
    AutomationEmailTemplate,
    AutomationRun,
    AutomationStep,
    AutomationWebhookEndpoint,
    AutomationWorkflow,
    utcnow,
)
from app.automations.repository import AutomationRepository
from app.automations.schemas import (
    EmailTemplateCreate,
    EmailTemplateRead,
    GraphPublishRequest,
    GraphPublishResponse,
    RunDetailRead,
    RunRead,
    StepLogRead,
    StepRead,
    StepSpec,
    WebhookEndpointCreate,
    WebhookEndpointRead,
    WebhookTestRequest,
    WebhookTestResult,
    WorkflowCreate,
    WorkflowRead,
    WorkflowUpdate,
)
from app.automations.webhooks import WebhookDispatcher
from app.crm.models import CRMPipeline
from app.crm.service import ActorUser, require_current_organization, visible_organizations


def _unprocessable(exc: ValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"message": exc.message, "details": exc.details},
    )


class WorkflowService:
    entity_type = "automation.workflow"

    def __init__(
        self,
        repository: AutomationRepository | None = None,
        dispatcher: WebhookDispatcher | None = None,
    ) -> None:
        self.repository = repository or AutomationRepository()
        self.dispatcher = dispatcher or WebhookDispatcher()

    def create_workflow(self, session: Session, actor_user: ActorUser, dto: WorkflowCreate) -> WorkflowRead:
        organization_id = require_current_organization(actor_user)
        pipeline = session.scalar(
            select(CRMPipeline).where(
                and_(
                    CRMPipeline.id == dto.pipeline_id,
                    CRMPipeline.organization_id == organization_id,
                    CRMPipeline.deleted_at.is_(None),
                )
            )
        )
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")

        workflow = AutomationWorkflow(
            id=uuid.uuid4(),
            organization_id=organization_id,
            pipeline_id=pipeline.id,
            name=dto.name.strip(),
            description=dto.description,
            trigger_type=dto.trigger_type.value,
            trigger_filter=dto.trigger_filter,
            is_active=dto.is_active,
            version=1,
            created_by=actor_user.user_id,
        )
        rows = self._build_rows(workflow.id, workflow.version, dto.steps)
        session.add(workflow)
        session.flush()
        session.add_all(rows)
        session.flush()

        read_model = self._to_read(session, workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return read_model

    def list_workflows(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        pipeline_id: uuid.UUID | None = None,
        trigger_type: str | None = None,
        is_active: bool | None = None,
    ) -> list[WorkflowRead]:
        workflows = self.repository.list_workflows(
            session,
            visible_organizations(actor_user),
            pipeline_id=pipeline_id,
            trigger_type=trigger_type,
            is_active=is_active,
        )
        return [self._to_read(session, workflow) for workflow in workflows]

    def get_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        return self._to_read(session, self._get_visible_workflow(session, actor_user, workflow_id))

    def update_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowUpdate,
    ) -> WorkflowRead:
        workflow = self._get_visible_workflow(session, actor_user, workflow_id)
        before = self._to_read(session, workflow).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)
        if "name" in changes and dto.name is not None:
            workflow.name = dto.name.strip()
        if "description" in changes:
            workflow.description = dto.description
        if "trigger_type" in changes and dto.trigger_type is not None:
            workflow.trigger_type = dto.trigger_type.value
        if "trigger_filter" in changes:
            workflow.trigger_filter = dto.trigger_filter or {}
        workflow.updated_at = utcnow()
        session.flush()

        read_model = self._to_read(session, workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="update",
            before=before,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(workflow.organization_id),
        )
        session.commit()
        return read_model

    def toggle_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        is_active: bool,
    ) -> WorkflowRead:
        workflow = self._get_visible_workflow(session, actor_user, workflow_id)
        previous = workflow.is_active
        workflow.is_active = is_active
        workflow.updated_at = utcnow()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="toggle",
            before={"is_active": previous},
            after={"is_active": is_active},
            correlation_id=actor_user.correlation_id,
            organization_id=str(workflow.organization_id),
        )
        session.commit()
        return self._to_read(session, workflow)

    def delete_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> None:
        workflow = self._get_visible_workflow(session, actor_user, workflow_id)
        now = utcnow()
        workflow.is_active = False
        workflow.deleted_at = now
        workflow.updated_at = now
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="delete",
            before={"name": workflow.name, "version": workflow.version},
            after=None,
            correlation_id=actor_user.correlation_id,
            organization_id=str(workflow.organization_id),
        )
        session.commit()

    def replace_steps(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        steps: list[StepSpec],
    ) -> WorkflowRead:
        workflow = self._get_visible_workflow(session, actor_user, workflow_id)
        previous_version = workflow.version
        rows = self._build_rows(workflow.id, previous_version + 1, steps)
        workflow.version = previous_version + 1
        workflow.updated_at = utcnow()
        session.add_all(rows)
        session.flush()

        read_model = self._to_read(session, workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="replace_steps",
            before={"version": previous_version},
            after={"version": workflow.version, "steps": [step.key for step in steps]},
            correlation_id=actor_user.correlation_id,
            organization_id=str(workflow.organization_id),
        )
        session.commit()
        return read_model

    def publish_graph(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        request: GraphPublishRequest,
    ) -> GraphPublishResponse:
        workflow = self._get_visible_workflow(session, actor_user, workflow_id)
        try:
            published = specs_from_builder_graph(request)
        except ValidationError as exc:
            raise _unprocessable(exc) from exc

        next_version = workflow.version + 1
        rows = self._build_rows(workflow.id, next_version, published.specs)
        if published.trigger_type is not None:
            workflow.trigger_type = published.trigger_type.value
        if published.trigger_filter is not None:
            workflow.trigger_filter = published.trigger_filter
        workflow.graph_data = request.model_dump(mode="json")
        workflow.version = next_version
        workflow.is_active = True
        workflow.updated_at = utcnow()
        session.add_all(rows)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="publish",
            before=None,
            after={"version": next_version, "steps": len(rows), "trigger_type": workflow.trigger_type},
            correlation_id=actor_user.correlation_id,
            organization_id=str(workflow.organization_id),
        )
        session.commit()
        return GraphPublishResponse(success=True, steps=len(rows), version=next_version)

    def list_runs(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        status_filter: str | None = None,
        limit: int = 100,
    ) -> list[RunRead]:
        workflow = self._get_visible_workflow(session, actor_user, workflow_id, include_deleted=True)
        runs = self.repository.list_runs(session, workflow.id, status=status_filter, limit=limit)
        return [RunRead.model_validate(run) for run in runs]

    def get_run_detail(self, session: Session, actor_user: ActorUser, run_id: uuid.UUID) -> RunDetailRead:
        run = self.repository.get_run(session, run_id)
        if run is None or run.organization_id not in visible_organizations(actor_user):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="run not found")
        return self._to_run_detail(session, run)

    def create_endpoint(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: WebhookEndpointCreate,
    ) -> WebhookEndpointRead:
        organization_id = require_current_organization(actor_user)
        endpoint = AutomationWebhookEndpoint(
            organization_id=organization_id,
            name=dto.name.strip(),
            url=dto.url,
            method=dto.method,
            headers=dict(dto.headers),
            is_active=dto.is_active,
        )
        session.add(endpoint)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.webhook_endpoint",
            entity_id=str(endpoint.id),
            action="create",
            before=None,
            after={"name": endpoint.name, "url": endpoint.url, "method": endpoint.method},
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return WebhookEndpointRead.model_validate(endpoint)

    def list_endpoints(self, session: Session, actor_user: ActorUser) -> list[WebhookEndpointRead]:
        endpoints = self.repository.list_endpoints(session, visible_organizations(actor_user))
        return [WebhookEndpointRead.model_validate(endpoint) for endpoint in endpoints]

    def delete_endpoint(self, session: Session, actor_user: ActorUser, endpoint_id: uuid.UUID) -> None:
        endpoint = self._get_visible_endpoint(session, actor_user, endpoint_id)
        now = utcnow()
        endpoint.deleted_at = now
        endpoint.is_active = False
        endpoint.updated_at = now
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.webhook_endpoint",
            entity_id=str(endpoint.id),
            action="delete",
            before={"name": endpoint.name, "url": endpoint.url},
            after=None,
            correlation_id=actor_user.correlation_id,
            organization_id=str(endpoint.organization_id),
        )
        session.commit()

    def test_endpoint(
        self,
        session: Session,
        actor_user: ActorUser,
        endpoint_id: uuid.UUID,
        payload: dict[str, Any] | None = None,
    ) -> WebhookTestResult:
        endpoint = self._get_visible_endpoint(session, actor_user, endpoint_id)
        return self.dispatcher.test_endpoint(endpoint.url, endpoint.method, endpoint.headers, payload)

    def test_url(self, dto: WebhookTestRequest) -> WebhookTestResult:
        return self.dispatcher.test_endpoint(dto.url, dto.method, dto.headers, dto.payload)

    def create_template(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: EmailTemplateCreate,
    ) -> EmailTemplateRead:
        organization_id = require_current_organization(actor_user)
        template = AutomationEmailTemplate(
            organization_id=organization_id,
            name=dto.name.strip(),
            subject=dto.subject,
            body_html=dto.body_html,
        )
        session.add(template)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.email_template",
            entity_id=str(template.id),
            action="create",
            before=None,
            after={"name": template.name, "subject": template.subject},
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return EmailTemplateRead.model_validate(template)

    def list_templates(self, session: Session, actor_user: ActorUser) -> list[EmailTemplateRead]:
        templates = self.repository.list_templates(session, visible_organizations(actor_user))
        return [EmailTemplateRead.model_validate(template) for template in templates]

    def _build_rows(self, workflow_id: uuid.UUID, version: int, steps: list[StepSpec]) -> list[AutomationStep]:
        try:
            return build_step_rows(workflow_id, version, steps)
        except ValidationError as exc:
            raise _unprocessable(exc) from exc

    def _get_visible_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        include_deleted: bool = False,
    ) -> AutomationWorkflow:
        workflow = self.repository.get_workflow(
            session,
            workflow_id,
            organization_ids=visible_organizations(actor_user),
            include_deleted=include_deleted,
        )
        if workflow is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found")
        return workflow

    def _get_visible_endpoint(
        self,
        session: Session,
        actor_user: ActorUser,
        endpoint_id: uuid.UUID,
    ) -> AutomationWebhookEndpoint:
        endpoint = self.repository.get_endpoint(session, visible_organizations(actor_user), endpoint_id)
        if endpoint is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook endpoint not found")
        return endpoint

    def _to_read(self, session: Session, workflow: AutomationWorkflow) -> WorkflowRead:
        steps = self.repository.steps_for_version(session, workflow.id, workflow.version)
        return WorkflowRead(
            id=workflow.id,
            organization_id=workflow.organization_id,
            pipeline_id=workflow.pipeline_id,
            name=workflow.name,
            description=workflow.description,
            trigger_type=workflow.trigger_type,
            trigger_filter=workflow.trigger_filter or {},
            is_active=workflow.is_active,
            version=workflow.version,
            created_by=workflow.created_by,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
            deleted_at=workflow.deleted_at,
            steps=[StepRead.model_validate(step) for step in steps],
        )

    def _to_run_detail(self, session: Session, run: AutomationRun) -> RunDetailRead:
        logs = self.repository.step_logs(session, run.id)
        detail = RunDetailRead.model_validate(RunRead.model_validate(run).model_dump())
        detail.step_logs = [StepLogRead.model_validate(log) for log in logs]
        return detail
