from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx

from app.automations.consumer import AutomationEventConsumer, SessionScope
from app.automations.executor import StepExecutor
from app.automations.handlers import HandlerDependencies, build_handlers
from app.automations.ingress import PIPELINE_EVENT_NAMES
from app.automations.matcher import WorkflowMatcher
from app.automations.models import utcnow
from app.automations.notifications import EmailSender, build_email_sender
from app.automations.repository import AutomationRepository
from app.automations.scheduler import RunScheduler
from app.automations.sweeper import DelaySweeper
from app.automations.webhooks import WebhookDispatcher
from app.core.events import InProcessEventBus, event_bus
from app.crm.service import ContactService


def _enqueue_event(envelope: dict[str, Any]) -> None:
    from app.automations.tasks import process_event

    process_event.delay(envelope)


def _enqueue_run(run_id: uuid.UUID) -> None:
    from app.automations.tasks import execute_run

    execute_run.delay(str(run_id))


class AutomationEngine:
    """Wires the engine components around one repository and one clock."""

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        transport: httpx.BaseTransport | None = None,
        email_sender: EmailSender | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = AutomationRepository()
        self.contacts = ContactService()
        self.dispatcher = WebhookDispatcher(transport=transport)
        self.email_sender = email_sender or build_email_sender()
        self.handlers = build_handlers(
            HandlerDependencies(
                repository=self.repository,
                contacts=self.contacts,
                dispatcher=self.dispatcher,
                email_sender=self.email_sender,
                clock=clock,
            )
        )
        self.executor = StepExecutor(self.repository, self.contacts, self.handlers, clock=clock, sleep=sleep)
        self.scheduler = RunScheduler(self.repository, self.executor, enqueue=_enqueue_run, clock=clock)
        self.matcher = WorkflowMatcher(self.repository)
        self.sweeper = DelaySweeper(self.repository, self.executor, clock=clock)
        self.consumer = AutomationEventConsumer(
            session_scope,
            self.matcher,
            self.scheduler,
            enqueue_event=_enqueue_event,
        )

    def subscribe(self, bus: InProcessEventBus = event_bus) -> None:
        bus.subscribe_many(PIPELINE_EVENT_NAMES, self.consumer.handle)

    def unsubscribe(self, bus: InProcessEventBus = event_bus) -> None:
        bus.unsubscribe_many(PIPELINE_EVENT_NAMES, self.consumer.handle)
