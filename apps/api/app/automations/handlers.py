from __future__ import annotations

import html
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar

import pydantic
from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.automations.conditions import evaluate, resolve_path
from app.automations.errors import NotFoundError, PermanentExternalError, ValidationError
from app.automations.models import AutomationRun, AutomationStep
from app.automations.notifications import EmailMessage, EmailSender
from app.automations.repository import AutomationRepository
from app.automations.schemas import (
    ConditionConfig,
    DelayConfig,
    MoveStageConfig,
    PipelineEvent,
    SendEmailConfig,
    StepType,
    TagConfig,
    WebhookConfig,
)
from app.automations.webhooks import MAX_CAPTURED_BODY, WebhookDispatcher
from app.core.config import get_settings
from app.crm.models import CRMContact
from app.crm.service import ActorUser, ContactService

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


@dataclass(slots=True)
class Advance:
    next_step_id: uuid.UUID | None
    result: dict[str, Any] = field(default_factory=dict)
    events: list[PipelineEvent] = field(default_factory=list)


@dataclass(slots=True)
class Wait:
    resume_at: datetime
    result: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Fail:
    error: str
    retryable: bool
    result: dict[str, Any] = field(default_factory=dict)


Outcome = Advance | Wait | Fail


@dataclass(slots=True)
class HandlerDependencies:
    repository: AutomationRepository
    contacts: ContactService
    dispatcher: WebhookDispatcher
    email_sender: EmailSender
    clock: Callable[[], datetime]


def runtime_actor(run: AutomationRun) -> ActorUser:
    """The identity automation steps act as when they write back to the CRM."""
    return ActorUser(
        user_id=f"automation:{run.workflow_id}",
        allowed_organization_ids=[run.organization_id],
        current_organization_id=run.organization_id,
        permissions=set(),
        correlation_id=run.correlation_id,
    )


def render_template(template: str, context: dict[str, Any], *, escape: bool) -> str:
    def _replace(match: re.Match[str]) -> str:
        found, value = resolve_path(context, match.group(1))
        if not found or value is None:
            return ""
        text = str(value)
        return html.escape(text) if escape else text

    return _PLACEHOLDER.sub(_replace, template)


class StepHandler:
    """Executes one step type.

    Handlers either return an ``Outcome`` or raise an ``AutomationError``; the
    executor turns raised errors into ``Fail`` using the error's ``retryable``
    flag.
    """

    step_type: ClassVar[StepType]
    config_model: ClassVar[type[pydantic.BaseModel]]

    def __init__(self, deps: HandlerDependencies) -> None:
        self.deps = deps

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        raise NotImplementedError

    def parse_config(self, step: AutomationStep) -> Any:
        try:
            return self.config_model.model_validate(step.config or {})
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"invalid {self.step_type.value} config",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def _crm_write(self, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except HTTPException as exc:
            if exc.status_code == 404:
                raise NotFoundError(str(exc.detail)) from exc
            raise ValidationError(str(exc.detail), details={"status_code": exc.status_code}) from exc


class SendEmailHandler(StepHandler):
    step_type = StepType.SEND_EMAIL
    config_model = SendEmailConfig

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        config: SendEmailConfig = self.parse_config(step)
        template = self.deps.repository.get_template(session, run.organization_id, config.template_id)
        if template is None:
            raise NotFoundError("email template not found", details={"template_id": str(config.template_id)})
        if not contact.email:
            raise PermanentExternalError("contact has no email address", details={"contact_id": str(contact.id)})

        snapshot = self.deps.contacts.snapshot(contact)
        context = {**snapshot, "contact": snapshot}
        sender_address = get_settings().email_from_address
        from_address = f"{config.from_name} <{sender_address}>" if config.from_name else sender_address
        message_id = self.deps.email_sender.send(
            EmailMessage(
                to=contact.email,
                subject=render_template(template.subject, context, escape=False),
                html=render_template(template.body_html, context, escape=True),
                from_address=from_address,
                idempotency_key=f"{run.id}:{step.id}",
            )
        )
        return Advance(
            step.next_step_id,
            result={"template_id": str(template.id), "to": contact.email, "message_id": message_id},
        )


class MoveStageHandler(StepHandler):
    step_type = StepType.MOVE_STAGE
    config_model = MoveStageConfig

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        config: MoveStageConfig = self.parse_config(step)
        emitted: list[PipelineEvent] = []
        self._crm_write(
            lambda: self.deps.contacts.change_stage(
                session,
                runtime_actor(run),
                contact.id,
                config.stage_id,
                deferred=emitted,
            )
        )
        return Advance(
            step.next_step_id,
            result={"stage_id": str(config.stage_id), "changed": bool(emitted)},
            events=emitted,
        )


class AddTagHandler(StepHandler):
    step_type = StepType.ADD_TAG
    config_model = TagConfig

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        config: TagConfig = self.parse_config(step)
        emitted: list[PipelineEvent] = []
        self._crm_write(
            lambda: self.deps.contacts.add_tag(session, runtime_actor(run), contact.id, config.tag_id, deferred=emitted)
        )
        return Advance(step.next_step_id, result={"tag_id": str(config.tag_id), "changed": bool(emitted)}, events=emitted)


class RemoveTagHandler(StepHandler):
    step_type = StepType.REMOVE_TAG
    config_model = TagConfig

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        config: TagConfig = self.parse_config(step)
        emitted: list[PipelineEvent] = []
        self._crm_write(
            lambda: self.deps.contacts.remove_tag(session, runtime_actor(run), contact.id, config.tag_id, deferred=emitted)
        )
        return Advance(step.next_step_id, result={"tag_id": str(config.tag_id), "changed": bool(emitted)}, events=emitted)


class WebhookHandler(StepHandler):
    step_type = StepType.WEBHOOK
    config_model = WebhookConfig

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        config: WebhookConfig = self.parse_config(step)
        if config.endpoint_id is not None:
            endpoint = self.deps.repository.get_endpoint(session, run.organization_id, config.endpoint_id)
            if endpoint is None or not endpoint.is_active:
                raise NotFoundError("webhook endpoint not found or inactive", details={"endpoint_id": str(config.endpoint_id)})
            url, method = endpoint.url, endpoint.method
            headers = {**(endpoint.headers or {}), **config.headers}
        else:
            url, method, headers = str(config.url), config.method, dict(config.headers)

        workflow = self.deps.repository.get_workflow(session, run.workflow_id, include_deleted=True)
        payload = {
            "event": run.triggering_event,
            "contact": self.deps.contacts.snapshot(contact),
            "workflow": {
                "id": str(run.workflow_id),
                "name": workflow.name if workflow is not None else None,
                "version": run.workflow_version,
            },
            "timestamp": self.deps.clock().isoformat(),
        }
        headers["X-Automation-Delivery-Id"] = f"{run.id}:{step.id}"

        response = self.deps.dispatcher.deliver(url, method, headers, payload)
        result = {"status_code": response.status_code, "body": response.body[:MAX_CAPTURED_BODY]}
        if response.is_success:
            return Advance(step.next_step_id, result=result)
        if response.status_code >= 500:
            return Fail(f"webhook returned HTTP {response.status_code}", retryable=True, result=result)
        return Fail(f"webhook returned HTTP {response.status_code}", retryable=False, result=result)


class DelayHandler(StepHandler):
    step_type = StepType.DELAY
    config_model = DelayConfig

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        config: DelayConfig = self.parse_config(step)
        resume_at = self.deps.clock() + timedelta(minutes=config.duration_minutes)
        return Wait(resume_at, result={"duration_minutes": config.duration_minutes, "resume_at": resume_at.isoformat()})


class ConditionHandler(StepHandler):
    step_type = StepType.CONDITION
    config_model = ConditionConfig

    def execute(self, session: Session, run: AutomationRun, step: AutomationStep, contact: CRMContact) -> Outcome:
        try:
            config: ConditionConfig = self.parse_config(step)
        except ValidationError as exc:
            return Fail(exc.message, retryable=False, result=exc.details)

        snapshot = self.deps.contacts.snapshot(contact)
        trigger_data = (run.triggering_event or {}).get("data") or {}
        context = {**snapshot, "contact": snapshot, "event": trigger_data}
        try:
            matched = evaluate(config.expression, context)
        except ValueError as exc:
            return Fail(f"condition could not be evaluated: {exc}", retryable=False)
        return Advance(
            step.true_step_id if matched else step.false_step_id,
            result={"branch": "true" if matched else "false"},
        )


HANDLER_TYPES: dict[StepType, type[StepHandler]] = {
    StepType.SEND_EMAIL: SendEmailHandler,
    StepType.MOVE_STAGE: MoveStageHandler,
    StepType.ADD_TAG: AddTagHandler,
    StepType.REMOVE_TAG: RemoveTagHandler,
    StepType.WEBHOOK: WebhookHandler,
    StepType.DELAY: DelayHandler,
    StepType.CONDITION: ConditionHandler,
}

_unhandled = set(StepType) - set(HANDLER_TYPES)
if _unhandled:
    raise RuntimeError(f"step types without a handler: {sorted(_unhandled)}")


def build_handlers(deps: HandlerDependencies) -> dict[StepType, StepHandler]:
    return {step_type: handler_type(deps) for step_type, handler_type in HANDLER_TYPES.items()}
