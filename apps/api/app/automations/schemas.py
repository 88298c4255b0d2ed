from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TriggerType(StrEnum):
    CONTACT_CREATED = "contact_created"
    STAGE_CHANGED = "stage_changed"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    FORM_SUBMITTED = "form_submitted"


class StepType(StrEnum):
    SEND_EMAIL = "send_email"
    MOVE_STAGE = "move_stage"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    WEBHOOK = "webhook"
    DELAY = "delay"
    CONDITION = "condition"


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class StepLogStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


def pipeline_event_name(trigger_type: TriggerType | str) -> str:
    return f"pipeline.{trigger_type}"


ConditionOp = Literal["eq", "neq", "in", "contains", "gt", "gte", "lt", "lte", "exists", "not_exists"]


class ConditionLeaf(BaseModel):
    path: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None


class ConditionAll(BaseModel):
    all: list["Condition"] = Field(min_length=1)


class ConditionAny(BaseModel):
    any: list["Condition"] = Field(min_length=1)


class ConditionNot(BaseModel):
    not_: "Condition" = Field(alias="not")

    model_config = ConfigDict(populate_by_name=True)


Condition = ConditionLeaf | ConditionAll | ConditionAny | ConditionNot


def parse_condition(value: Any) -> Condition:
    if not isinstance(value, dict):
        raise ValueError("condition must be an object")

    if "all" in value:
        items = value.get("all")
        if not isinstance(items, list) or not items:
            raise ValueError("all must be a non-empty list")
        return ConditionAll(all=[parse_condition(item) for item in items])

    if "any" in value:
        items = value.get("any")
        if not isinstance(items, list) or not items:
            raise ValueError("any must be a non-empty list")
        return ConditionAny(any=[parse_condition(item) for item in items])

    if "not" in value:
        return ConditionNot.model_validate({"not": parse_condition(value.get("not"))})

    return ConditionLeaf.model_validate(value)


def normalize_filter(value: dict[str, Any] | None) -> dict[str, Any]:
    """An empty filter means "always match"; anything else must parse as a condition tree."""
    if not value:
        return {}
    return parse_condition(value).model_dump(by_alias=True)


class SendEmailConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template_id: UUID
    from_name: str | None = None


class MoveStageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stage_id: UUID


class TagConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tag_id: UUID


class WebhookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    endpoint_id: UUID | None = None
    url: str | None = None
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_target(self) -> "WebhookConfig":
        if (self.endpoint_id is None) == (self.url is None):
            raise ValueError("webhook step needs exactly one of endpoint_id or url")
        if self.url is not None and not self.url.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        return self


class DelayConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    duration_minutes: int = Field(default=60, ge=1)


class ConditionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expression: dict[str, Any]

    @model_validator(mode="after")
    def validate_expression(self) -> "ConditionConfig":
        self.expression = parse_condition(self.expression).model_dump(by_alias=True)
        return self


STEP_CONFIG_MODELS: dict[StepType, type[BaseModel]] = {
    StepType.SEND_EMAIL: SendEmailConfig,
    StepType.MOVE_STAGE: MoveStageConfig,
    StepType.ADD_TAG: TagConfig,
    StepType.REMOVE_TAG: TagConfig,
    StepType.WEBHOOK: WebhookConfig,
    StepType.DELAY: DelayConfig,
    StepType.CONDITION: ConditionConfig,
}


def validate_step_config(step_type: StepType, config: dict[str, Any]) -> dict[str, Any]:
    model = STEP_CONFIG_MODELS[step_type]
    return model.model_validate(config).model_dump(mode="json", exclude_none=True)


class StepSpec(BaseModel):
    """One node of an authored step graph.

    Steps reference each other by ``key``. A linear step that omits ``next``
    continues with the following step in the list; an explicit ``null`` ends
    the run. Condition steps must name both branches (either may be ``null``).
    """

    key: str = Field(min_length=1, max_length=128)
    step_type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    next: str | None = None
    true_next: str | None = None
    false_next: str | None = None

    @model_validator(mode="after")
    def validate_config(self) -> "StepSpec":
        self.config = validate_step_config(self.step_type, self.config)
        if self.step_type == StepType.CONDITION:
            if "next" in self.model_fields_set and self.next is not None:
                raise ValueError("condition steps branch with true_next/false_next, not next")
            missing = {"true_next", "false_next"} - self.model_fields_set
            if missing:
                raise ValueError(f"condition step {self.key} must set {', '.join(sorted(missing))}")
        elif self.true_next is not None or self.false_next is not None:
            raise ValueError(f"step {self.key} is not a condition and cannot branch")
        return self


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    pipeline_id: UUID
    trigger_type: TriggerType
    trigger_filter: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    steps: list[StepSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_trigger_filter(self) -> "WorkflowCreate":
        self.trigger_filter = normalize_filter(self.trigger_filter)
        return self


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger_type: TriggerType | None = None
    trigger_filter: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_trigger_filter(self) -> "WorkflowUpdate":
        if self.trigger_filter is not None:
            self.trigger_filter = normalize_filter(self.trigger_filter)
        return self


class WorkflowStepsReplace(BaseModel):
    steps: list[StepSpec]


class WorkflowToggleRequest(BaseModel):
    is_active: bool


class StepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    workflow_version: int
    step_key: str | None
    step_type: StepType
    config: dict[str, Any]
    position: int
    next_step_id: UUID | None
    true_step_id: UUID | None
    false_step_id: UUID | None


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    pipeline_id: UUID
    name: str
    description: str | None
    trigger_type: TriggerType
    trigger_filter: dict[str, Any]
    is_active: bool
    version: int
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    steps: list[StepRead] = Field(default_factory=list)


class GraphNode(BaseModel):
    id: str = Field(min_length=1)
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = None


class GraphEdge(BaseModel):
    id: str | None = None
    source: str
    target: str
    sourceHandle: str | None = None


class GraphPublishRequest(BaseModel):
    nodes: list[GraphNode]
    edges: list[GraphEdge] = Field(default_factory=list)


class GraphPublishResponse(BaseModel):
    success: bool
    steps: int
    version: int


class RunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    workflow_version: int
    contact_id: UUID
    organization_id: UUID
    source_event_id: str
    triggering_event: dict[str, Any]
    trigger_depth: int
    status: RunStatus
    current_step_id: UUID | None
    correlation_id: str | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


class StepLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_id: UUID
    sequence: int
    step_id: UUID
    step_type: StepType
    status: StepLogStatus
    retry_count: int
    started_at: datetime
    completed_at: datetime | None
    resume_at: datetime | None
    result: dict[str, Any] | None


class RunDetailRead(RunRead):
    step_logs: list[StepLogRead] = Field(default_factory=list)


class WebhookEndpointCreate(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True

    @model_validator(mode="after")
    def validate_url(self) -> "WebhookEndpointCreate":
        if not self.url.startswith(("http://", "https://")):
            raise ValueError("url must be http(s)")
        return self


class WebhookEndpointRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    url: str
    method: str
    headers: dict[str, str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class WebhookTestRequest(WebhookEndpointCreate):
    name: str = "ad-hoc"
    payload: dict[str, Any] | None = None


class WebhookTestResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status_code: int | None = Field(default=None, serialization_alias="statusCode")
    error: str | None = None


class EmailTemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    body_html: str = Field(min_length=1)


class EmailTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    subject: str
    body_html: str
    created_at: datetime
    updated_at: datetime


class PipelineEvent(BaseModel):
    """An immutable pipeline occurrence as handed from the CRM write path to the engine."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: TriggerType
    contact_id: UUID
    organization_id: UUID
    pipeline_id: UUID
    performed_by: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = None
    depth: int = Field(default=0, ge=0)
