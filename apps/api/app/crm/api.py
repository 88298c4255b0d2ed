from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.schemas import (
    ContactCreate,
    ContactRead,
    ContactStageChangeRequest,
    ContactTagRequest,
    FormSubmissionCreate,
    FormSubmissionRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    TagCreate,
    TagRead,
)
from app.crm.service import ActorUser, ContactService, PipelineService, TagService

pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
forms_router = APIRouter(prefix="/api/crm", tags=["crm.forms"])
pipeline_service = PipelineService()
tag_service = TagService()
contact_service = ContactService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _parse_uuid_list(values: list[str]) -> list[uuid.UUID]:
    return [uuid.UUID(value) for value in values]


def _token_organizations(auth_user: AuthUser) -> list[uuid.UUID]:
    raw = list(auth_user.organizations)
    if auth_user.organization_id and auth_user.organization_id not in raw:
        raw.append(auth_user.organization_id)
    try:
        return _parse_uuid_list(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token organization claims must be UUIDs")


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    """Resolve the acting user and the organizations it may touch.

    Organization claims in the token are authoritative: the
    ``x-allowed-organizations`` header can only narrow them and an
    ``x-organization-id`` outside them is refused. Tokens without
    organization claims fall back to the headers alone.
    """
    context = getattr(request.state, "context", None)
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    try:
        header_current = getattr(context, "organization_id", None)
        current_organization_id = uuid.UUID(header_current) if header_current else None
        header_allowed = _parse_uuid_list(getattr(context, "allowed_organizations", None) or [])
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="organization headers must be UUIDs")

    token_organizations = _token_organizations(auth_user)
    if token_organizations:
        if header_allowed:
            allowed_organizations = [org for org in token_organizations if org in header_allowed]
        else:
            allowed_organizations = token_organizations
        if current_organization_id is None and auth_user.organization_id:
            current_organization_id = uuid.UUID(auth_user.organization_id)
        if current_organization_id is not None and current_organization_id not in token_organizations:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="organization not granted by token")
    else:
        allowed_organizations = header_allowed

    if not allowed_organizations and current_organization_id is not None:
        allowed_organizations = [current_organization_id]

    return ActorUser(
        user_id=auth_user.sub,
        allowed_organization_ids=allowed_organizations,
        current_organization_id=current_organization_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return pipeline_service.list_pipelines(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return pipeline_service.get_pipeline(db, user, pipeline_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.add_stage(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post("/tags", response_model=TagRead, status_code=status.HTTP_201_CREATED)
def create_tag(
    request: Request,
    dto: TagCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TagRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return tag_service.create_tag(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_tag_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/tags", response_model=list[TagRead])
def list_tags(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TagRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return tag_service.list_tags(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_tag_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_contacts(db, user, pipeline_id=pipeline_id, stage_id=stage_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.delete("/contacts/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.contacts.write")
        contact_service.soft_delete_contact(db, user, contact_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/{contact_id}/stage", response_model=ContactRead)
def change_contact_stage(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactStageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.change_stage(db, user, contact_id, dto.stage_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_stage_change_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/{contact_id}/tags", response_model=ContactRead)
def add_contact_tag(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactTagRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.add_tag(db, user, contact_id, dto.tag_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_tag_add_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.delete("/contacts/{contact_id}/tags/{tag_id}", response_model=ContactRead)
def remove_contact_tag(
    request: Request,
    contact_id: uuid.UUID,
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.remove_tag(db, user, contact_id, tag_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_tag_remove_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@forms_router.post(
    "/forms/{form_id}/submissions",
    response_model=FormSubmissionRead,
    status_code=status.HTTP_201_CREATED,
)
def submit_form(
    request: Request,
    form_id: str,
    dto: FormSubmissionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FormSubmissionRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.submit_form(db, user, form_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_form_submission_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
