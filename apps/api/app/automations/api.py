from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.automations.schemas import (
    EmailTemplateCreate,
    EmailTemplateRead,
    GraphPublishRequest,
    GraphPublishResponse,
    RunDetailRead,
    RunRead,
    RunStatus,
    TriggerType,
    WebhookEndpointCreate,
    WebhookEndpointRead,
    WebhookTestRequest,
    WebhookTestResult,
    WorkflowCreate,
    WorkflowRead,
    WorkflowStepsReplace,
    WorkflowToggleRequest,
    WorkflowUpdate,
)
from app.automations.service import WorkflowService
from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_permission
from app.crm.service import ActorUser

workflows_router = APIRouter(prefix="/api/automations", tags=["automations.workflows"])
runs_router = APIRouter(prefix="/api/automations", tags=["automations.runs"])
webhooks_router = APIRouter(prefix="/api/automations", tags=["automations.webhooks"])
templates_router = APIRouter(prefix="/api/automations", tags=["automations.email_templates"])
workflow_service = WorkflowService()


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    message = detail.get("message") if isinstance(detail, dict) and "message" in detail else str(detail)
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(message),
        details=detail,
    )


@workflows_router.post("/workflows", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.manage")
        return workflow_service.create_workflow(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_create_failed")


@workflows_router.get("/workflows", response_model=list[WorkflowRead])
def list_workflows(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    trigger_type: TriggerType | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRead] | JSONResponse:
    try:
        require_permission(user, "automations.workflows.read")
        return workflow_service.list_workflows(
            db,
            user,
            pipeline_id=pipeline_id,
            trigger_type=trigger_type.value if trigger_type is not None else None,
            is_active=is_active,
        )
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_list_failed")


@workflows_router.get("/workflows/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.read")
        return workflow_service.get_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_get_failed")


@workflows_router.patch("/workflows/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.manage")
        return workflow_service.update_workflow(db, user, workflow_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_update_failed")


@workflows_router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "automations.workflows.manage")
        workflow_service.delete_workflow(db, user, workflow_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_delete_failed")


@workflows_router.post("/workflows/{workflow_id}/toggle", response_model=WorkflowRead)
def toggle_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowToggleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.manage")
        return workflow_service.toggle_workflow(db, user, workflow_id, dto.is_active)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_toggle_failed")


@workflows_router.put("/workflows/{workflow_id}/steps", response_model=WorkflowRead)
def replace_workflow_steps(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowStepsReplace,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.manage")
        return workflow_service.replace_steps(db, user, workflow_id, dto.steps)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_steps_replace_failed")


@workflows_router.post("/workflows/{workflow_id}/publish", response_model=GraphPublishResponse)
def publish_workflow_graph(
    request: Request,
    workflow_id: uuid.UUID,
    dto: GraphPublishRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> GraphPublishResponse | JSONResponse:
    try:
        require_permission(user, "automations.workflows.manage")
        return workflow_service.publish_graph(db, user, workflow_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_publish_failed")


@runs_router.get("/workflows/{workflow_id}/runs", response_model=list[RunRead])
def list_workflow_runs(
    request: Request,
    workflow_id: uuid.UUID,
    status_filter: RunStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RunRead] | JSONResponse:
    try:
        require_permission(user, "automations.workflows.read")
        return workflow_service.list_runs(
            db,
            user,
            workflow_id,
            status_filter=status_filter.value if status_filter is not None else None,
            limit=limit,
        )
    except HTTPException as exc:
        return _failed(request, exc, "automation_run_list_failed")


@runs_router.get("/runs/{run_id}", response_model=RunDetailRead)
def get_run(
    request: Request,
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RunDetailRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.read")
        return workflow_service.get_run_detail(db, user, run_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_run_get_failed")


@webhooks_router.post("/webhook-endpoints", response_model=WebhookEndpointRead, status_code=status.HTTP_201_CREATED)
def create_webhook_endpoint(
    request: Request,
    dto: WebhookEndpointCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookEndpointRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.manage")
        return workflow_service.create_endpoint(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_webhook_endpoint_create_failed")


@webhooks_router.get("/webhook-endpoints", response_model=list[WebhookEndpointRead])
def list_webhook_endpoints(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WebhookEndpointRead] | JSONResponse:
    try:
        require_permission(user, "automations.workflows.read")
        return workflow_service.list_endpoints(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "automation_webhook_endpoint_list_failed")


@webhooks_router.delete("/webhook-endpoints/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook_endpoint(
    request: Request,
    endpoint_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "automations.workflows.manage")
        workflow_service.delete_endpoint(db, user, endpoint_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "automation_webhook_endpoint_delete_failed")


@webhooks_router.post(
    "/webhook-endpoints/{endpoint_id}/test",
    response_model=WebhookTestResult,
    response_model_exclude_none=True,
    response_model_by_alias=True,
)
def test_webhook_endpoint(
    request: Request,
    endpoint_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookTestResult | JSONResponse:
    try:
        require_permission(user, "automations.webhooks.test")
        return workflow_service.test_endpoint(db, user, endpoint_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_webhook_test_failed")


@webhooks_router.post(
    "/webhooks/test",
    response_model=WebhookTestResult,
    response_model_exclude_none=True,
    response_model_by_alias=True,
)
def test_webhook_url(
    request: Request,
    dto: WebhookTestRequest,
    user: ActorUser = Depends(get_current_user),
) -> WebhookTestResult | JSONResponse:
    try:
        require_permission(user, "automations.webhooks.test")
        return workflow_service.test_url(dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_webhook_test_failed")


@templates_router.post("/email-templates", response_model=EmailTemplateRead, status_code=status.HTTP_201_CREATED)
def create_email_template(
    request: Request,
    dto: EmailTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_permission(user, "automations.workflows.manage")
        return workflow_service.create_template(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_email_template_create_failed")


@templates_router.get("/email-templates", response_model=list[EmailTemplateRead])
def list_email_templates(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[EmailTemplateRead] | JSONResponse:
    try:
        require_permission(user, "automations.workflows.read")
        return workflow_service.list_templates(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "automation_email_template_list_failed")
