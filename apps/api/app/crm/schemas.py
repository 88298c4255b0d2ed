from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    stages: list[str] = Field(default_factory=list)


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int | None = Field(default=None, ge=1)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    stages: list[PipelineStageRead] = Field(default_factory=list)


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    created_at: datetime


class ContactCreate(BaseModel):
    pipeline_id: UUID
    stage_id: UUID | None = None
    full_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    value_cents: int | None = Field(default=None, ge=0)
    source: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class ContactRead(BaseModel):
    id: UUID
    organization_id: UUID
    pipeline_id: UUID
    stage_id: UUID | None
    full_name: str
    email: str | None
    phone: str | None
    company: str | None
    value_cents: int | None
    source: str | None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class ContactStageChangeRequest(BaseModel):
    stage_id: UUID


class ContactTagRequest(BaseModel):
    tag_id: UUID


class FormSubmissionCreate(BaseModel):
    pipeline_id: UUID
    contact_id: UUID | None = None
    full_name: str | None = None
    email: EmailStr | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class FormSubmissionRead(BaseModel):
    form_id: str
    contact: ContactRead
    created_contact: bool
