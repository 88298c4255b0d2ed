from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit
from app.automations import ingress
from app.automations.schemas import PipelineEvent, TriggerType
from app.context import get_trigger_depth
from app.crm.models import CRMContact, CRMContactTag, CRMPipeline, CRMPipelineStage, CRMTag
from app.crm.schemas import (
    ContactCreate,
    ContactRead,
    FormSubmissionCreate,
    FormSubmissionRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    TagCreate,
    TagRead,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    allowed_organization_ids: list[uuid.UUID]
    current_organization_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def require_current_organization(actor_user: ActorUser) -> uuid.UUID:
    if actor_user.current_organization_id is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="x-organization-id header is required")
    if actor_user.allowed_organization_ids and actor_user.current_organization_id not in actor_user.allowed_organization_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="organization not allowed")
    return actor_user.current_organization_id


def visible_organizations(actor_user: ActorUser) -> list[uuid.UUID]:
    if actor_user.allowed_organization_ids:
        return list(actor_user.allowed_organization_ids)
    if actor_user.current_organization_id is not None:
        return [actor_user.current_organization_id]
    return []


class PipelineService:
    entity_type = "crm.pipeline"

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        organization_id = require_current_organization(actor_user)
        pipeline = CRMPipeline(organization_id=organization_id, name=dto.name.strip())
        session.add(pipeline)
        session.flush()
        for position, stage_name in enumerate(dto.stages, start=1):
            session.add(CRMPipelineStage(pipeline_id=pipeline.id, name=stage_name.strip(), position=position))
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="duplicate stage names")

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={"name": pipeline.name, "stages": list(dto.stages)},
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return self.get_pipeline(session, actor_user, pipeline.id)

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        pipeline = self._get_visible_pipeline(session, actor_user, pipeline_id)
        position = dto.position
        if position is None:
            current = session.scalar(
                select(func.max(CRMPipelineStage.position)).where(CRMPipelineStage.pipeline_id == pipeline.id)
            )
            position = (current or 0) + 1

        stage = CRMPipelineStage(pipeline_id=pipeline.id, name=dto.name.strip(), position=position)
        session.add(stage)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage name or position already used")

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.stage",
            entity_id=str(stage.id),
            action="create",
            before=None,
            after={"pipeline_id": str(pipeline.id), "name": stage.name, "position": stage.position},
            correlation_id=actor_user.correlation_id,
            organization_id=str(pipeline.organization_id),
        )
        session.commit()
        return PipelineStageRead.model_validate(stage)

    def get_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = self._get_visible_pipeline(session, actor_user, pipeline_id)
        return self._to_pipeline_read(pipeline)

    def list_pipelines(self, session: Session, actor_user: ActorUser) -> list[PipelineRead]:
        pipelines = session.scalars(
            select(CRMPipeline)
            .where(
                and_(
                    CRMPipeline.organization_id.in_(visible_organizations(actor_user)),
                    CRMPipeline.deleted_at.is_(None),
                )
            )
            .options(selectinload(CRMPipeline.stages))
            .order_by(CRMPipeline.created_at.asc())
        )
        return [self._to_pipeline_read(pipeline) for pipeline in pipelines]

    def list_stages(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> list[PipelineStageRead]:
        pipeline = self._get_visible_pipeline(session, actor_user, pipeline_id)
        return self._to_pipeline_read(pipeline).stages

    def _get_visible_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = session.scalar(
            select(CRMPipeline).where(
                and_(
                    CRMPipeline.id == pipeline_id,
                    CRMPipeline.organization_id.in_(visible_organizations(actor_user)),
                    CRMPipeline.deleted_at.is_(None),
                )
            )
        )
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        return pipeline

    def _to_pipeline_read(self, pipeline: CRMPipeline) -> PipelineRead:
        stages = [stage for stage in pipeline.stages if stage.deleted_at is None]
        read = PipelineRead.model_validate(pipeline, from_attributes=True)
        read.stages = [PipelineStageRead.model_validate(stage) for stage in stages]
        return read


class TagService:
    entity_type = "crm.tag"

    def create_tag(self, session: Session, actor_user: ActorUser, dto: TagCreate) -> TagRead:
        organization_id = require_current_organization(actor_user)
        tag = CRMTag(organization_id=organization_id, name=dto.name.strip())
        session.add(tag)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="tag already exists")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(tag.id),
            action="create",
            before=None,
            after={"name": tag.name},
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return TagRead.model_validate(tag)

    def list_tags(self, session: Session, actor_user: ActorUser) -> list[TagRead]:
        tags = session.scalars(
            select(CRMTag)
            .where(and_(CRMTag.organization_id.in_(visible_organizations(actor_user)), CRMTag.deleted_at.is_(None)))
            .order_by(CRMTag.name.asc())
        )
        return [TagRead.model_validate(tag) for tag in tags]


class ContactService:
    """Contact write path.

    Every mutation commits first and then hands a ``PipelineEvent`` to event
    ingress. Callers running inside an automation pass ``deferred`` to collect
    the events instead; the executor emits them once its invocation chain ends.
    No-op mutations produce no event.
    """

    entity_type = "crm.contact"

    def create_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: ContactCreate,
        *,
        deferred: list[PipelineEvent] | None = None,
    ) -> ContactRead:
        contact = self._insert_contact(session, actor_user, dto)
        read_model = self._to_read(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(contact.organization_id),
        )
        session.commit()
        self._dispatch(
            [self._event(actor_user, contact, TriggerType.CONTACT_CREATED, {"source": contact.source})],
            deferred,
        )
        return read_model

    def list_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        pipeline_id: uuid.UUID | None = None,
        stage_id: uuid.UUID | None = None,
    ) -> list[ContactRead]:
        query = select(CRMContact).where(
            and_(
                CRMContact.organization_id.in_(visible_organizations(actor_user)),
                CRMContact.deleted_at.is_(None),
            )
        )
        if pipeline_id is not None:
            query = query.where(CRMContact.pipeline_id == pipeline_id)
        if stage_id is not None:
            query = query.where(CRMContact.stage_id == stage_id)
        contacts = session.scalars(query.order_by(CRMContact.created_at.asc(), CRMContact.id.asc()))
        return [self._to_read(contact) for contact in contacts]

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return self._to_read(self._get_visible_contact(session, actor_user, contact_id))

    def find_active_contact(self, session: Session, contact_id: uuid.UUID) -> CRMContact | None:
        return session.scalar(
            select(CRMContact)
            .where(and_(CRMContact.id == contact_id, CRMContact.deleted_at.is_(None)))
            .execution_options(populate_existing=True)
        )

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        stage_id: uuid.UUID,
        *,
        deferred: list[PipelineEvent] | None = None,
    ) -> ContactRead:
        contact = self._get_visible_contact(session, actor_user, contact_id)
        stage = session.scalar(
            select(CRMPipelineStage).where(
                and_(CRMPipelineStage.id == stage_id, CRMPipelineStage.deleted_at.is_(None))
            )
        )
        if stage is None or stage.pipeline_id != contact.pipeline_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found in contact pipeline")
        if contact.stage_id == stage.id:
            return self._to_read(contact)

        previous_stage = contact.stage
        before = self._to_read(contact).model_dump(mode="json")
        contact.stage_id = stage.id
        contact.stage = stage
        contact.updated_at = utcnow()
        session.flush()
        after = self._to_read(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="change_stage",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(contact.organization_id),
        )
        session.commit()
        self._dispatch(
            [
                self._event(
                    actor_user,
                    contact,
                    TriggerType.STAGE_CHANGED,
                    {
                        "from_stage_id": str(previous_stage.id) if previous_stage is not None else None,
                        "from_stage_name": previous_stage.name if previous_stage is not None else None,
                        "to_stage_id": str(stage.id),
                        "to_stage_name": stage.name,
                    },
                )
            ],
            deferred,
        )
        return after

    def add_tag(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        tag_id: uuid.UUID,
        *,
        deferred: list[PipelineEvent] | None = None,
    ) -> ContactRead:
        contact = self._get_visible_contact(session, actor_user, contact_id)
        tag = self._get_tag(session, contact.organization_id, tag_id)
        if any(link.tag_id == tag.id for link in contact.tag_links):
            return self._to_read(contact)

        session.add(CRMContactTag(contact_id=contact.id, tag_id=tag.id))
        contact.updated_at = utcnow()
        session.flush()
        session.expire(contact, ["tag_links"])
        after = self._to_read(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="add_tag",
            before=None,
            after={"tag_id": str(tag.id), "tag_name": tag.name},
            correlation_id=actor_user.correlation_id,
            organization_id=str(contact.organization_id),
        )
        session.commit()
        self._dispatch(
            [self._event(actor_user, contact, TriggerType.TAG_ADDED, {"tag_id": str(tag.id), "tag_name": tag.name})],
            deferred,
        )
        return after

    def remove_tag(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        tag_id: uuid.UUID,
        *,
        deferred: list[PipelineEvent] | None = None,
    ) -> ContactRead:
        contact = self._get_visible_contact(session, actor_user, contact_id)
        tag = self._get_tag(session, contact.organization_id, tag_id)
        link = next((item for item in contact.tag_links if item.tag_id == tag.id), None)
        if link is None:
            return self._to_read(contact)

        contact.tag_links.remove(link)
        contact.updated_at = utcnow()
        session.flush()
        after = self._to_read(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="remove_tag",
            before={"tag_id": str(tag.id), "tag_name": tag.name},
            after=None,
            correlation_id=actor_user.correlation_id,
            organization_id=str(contact.organization_id),
        )
        session.commit()
        self._dispatch(
            [self._event(actor_user, contact, TriggerType.TAG_REMOVED, {"tag_id": str(tag.id), "tag_name": tag.name})],
            deferred,
        )
        return after

    def submit_form(
        self,
        session: Session,
        actor_user: ActorUser,
        form_id: str,
        dto: FormSubmissionCreate,
    ) -> FormSubmissionRead:
        contact: CRMContact | None = None
        created = False
        if dto.contact_id is not None:
            contact = self._get_visible_contact(session, actor_user, dto.contact_id)
            if contact.pipeline_id != dto.pipeline_id:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="contact is in another pipeline")
        elif dto.email is not None:
            contact = session.scalar(
                select(CRMContact).where(
                    and_(
                        CRMContact.organization_id.in_(visible_organizations(actor_user)),
                        CRMContact.pipeline_id == dto.pipeline_id,
                        func.lower(CRMContact.email) == str(dto.email).lower(),
                        CRMContact.deleted_at.is_(None),
                    )
                )
            )

        if contact is None:
            if not dto.full_name and dto.email is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="full_name or email is required for a new contact",
                )
            contact = self._insert_contact(
                session,
                actor_user,
                ContactCreate(
                    pipeline_id=dto.pipeline_id,
                    full_name=dto.full_name or str(dto.email),
                    email=dto.email,
                    source=f"form:{form_id}",
                ),
            )
            created = True

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="form_submitted",
            before=None,
            after={"form_id": form_id, "fields": dto.fields, "created_contact": created},
            correlation_id=actor_user.correlation_id,
            organization_id=str(contact.organization_id),
        )
        session.commit()

        pending: list[PipelineEvent] = []
        if created:
            pending.append(self._event(actor_user, contact, TriggerType.CONTACT_CREATED, {"source": contact.source}))
        pending.append(
            self._event(actor_user, contact, TriggerType.FORM_SUBMITTED, {"form_id": form_id, "fields": dto.fields})
        )
        self._dispatch(pending, None)
        return FormSubmissionRead(form_id=form_id, contact=self._to_read(contact), created_contact=created)

    def soft_delete_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        contact = self._get_visible_contact(session, actor_user, contact_id)
        before = self._to_read(contact).model_dump(mode="json")
        contact.deleted_at = utcnow()
        contact.updated_at = contact.deleted_at
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
            organization_id=str(contact.organization_id),
        )
        session.commit()

    def snapshot(self, contact: CRMContact) -> dict[str, Any]:
        """Flat view of a contact used by condition steps, email templates and webhook payloads."""
        stage = contact.stage if contact.stage is not None and contact.stage.deleted_at is None else None
        return {
            "id": str(contact.id),
            "full_name": contact.full_name,
            "email": contact.email,
            "phone": contact.phone,
            "company": contact.company,
            "value_cents": contact.value_cents,
            "source": contact.source,
            "pipeline_id": str(contact.pipeline_id),
            "stage_id": str(stage.id) if stage is not None else None,
            "stage_name": stage.name if stage is not None else None,
            "tags": self._tag_names(contact),
            "custom_fields": dict(contact.custom_fields or {}),
        }

    def _insert_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> CRMContact:
        pipeline = session.scalar(
            select(CRMPipeline).where(
                and_(
                    CRMPipeline.id == dto.pipeline_id,
                    CRMPipeline.organization_id.in_(visible_organizations(actor_user)),
                    CRMPipeline.deleted_at.is_(None),
                )
            )
        )
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")

        if dto.stage_id is not None:
            stage = session.scalar(
                select(CRMPipelineStage).where(
                    and_(
                        CRMPipelineStage.id == dto.stage_id,
                        CRMPipelineStage.pipeline_id == pipeline.id,
                        CRMPipelineStage.deleted_at.is_(None),
                    )
                )
            )
            if stage is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found in pipeline")
        else:
            stage = session.scalar(
                select(CRMPipelineStage)
                .where(and_(CRMPipelineStage.pipeline_id == pipeline.id, CRMPipelineStage.deleted_at.is_(None)))
                .order_by(CRMPipelineStage.position.asc())
                .limit(1)
            )

        contact = CRMContact(
            organization_id=pipeline.organization_id,
            pipeline_id=pipeline.id,
            stage_id=stage.id if stage is not None else None,
            full_name=dto.full_name.strip(),
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            company=dto.company,
            value_cents=dto.value_cents,
            source=dto.source,
            custom_fields=dict(dto.custom_fields),
        )
        session.add(contact)
        session.flush()
        session.refresh(contact)
        return contact

    def _get_visible_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> CRMContact:
        contact = session.scalar(
            select(CRMContact).where(
                and_(
                    CRMContact.id == contact_id,
                    CRMContact.organization_id.in_(visible_organizations(actor_user)),
                    CRMContact.deleted_at.is_(None),
                )
            )
        )
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        return contact

    def _get_tag(self, session: Session, organization_id: uuid.UUID, tag_id: uuid.UUID) -> CRMTag:
        tag = session.scalar(
            select(CRMTag).where(
                and_(CRMTag.id == tag_id, CRMTag.organization_id == organization_id, CRMTag.deleted_at.is_(None))
            )
        )
        if tag is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="tag not found")
        return tag

    def _tag_names(self, contact: CRMContact) -> list[str]:
        return sorted(link.tag.name for link in contact.tag_links if link.tag is not None and link.tag.deleted_at is None)

    def _event(
        self,
        actor_user: ActorUser,
        contact: CRMContact,
        trigger_type: TriggerType,
        data: dict[str, Any],
    ) -> PipelineEvent:
        return PipelineEvent(
            type=trigger_type,
            contact_id=contact.id,
            organization_id=contact.organization_id,
            pipeline_id=contact.pipeline_id,
            performed_by=actor_user.user_id,
            data=data,
            correlation_id=actor_user.correlation_id,
            depth=get_trigger_depth() or 0,
        )

    def _dispatch(self, pending: list[PipelineEvent], deferred: list[PipelineEvent] | None) -> None:
        if deferred is not None:
            deferred.extend(pending)
            return
        for event in pending:
            ingress.emit(event)

    def _to_read(self, contact: CRMContact) -> ContactRead:
        return ContactRead(
            id=contact.id,
            organization_id=contact.organization_id,
            pipeline_id=contact.pipeline_id,
            stage_id=contact.stage_id,
            full_name=contact.full_name,
            email=contact.email,
            phone=contact.phone,
            company=contact.company,
            value_cents=contact.value_cents,
            source=contact.source,
            tags=self._tag_names(contact),
            custom_fields=dict(contact.custom_fields or {}),
            created_at=contact.created_at,
            updated_at=contact.updated_at,
            deleted_at=contact.deleted_at,
        )
