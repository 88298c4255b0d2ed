from __future__ import annotations

import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automations.engine import AutomationEngine
from app.automations.notifications import StubEmailSender
from app.automations.repository import as_utc
from app.automations.schemas import RunStatus, StepLogStatus, WorkflowCreate
from app.automations.service import WorkflowService
from app.core.config import get_settings
from app.core.database import Base
from app.core.events import event_bus
from app.crm.schemas import ContactCreate, PipelineCreate, TagCreate
from app.crm.service import ActorUser, ContactService, PipelineService, TagService


START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    monkeypatch.setenv("AUTOMATION_RETRY_BACKOFF_SECONDS", "0")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> ActorUser:
    organization_id = uuid.uuid4()
    return ActorUser(
        user_id="owner-1",
        allowed_organization_ids=[organization_id],
        current_organization_id=organization_id,
    )


@pytest.fixture()
def setup(db_session: Session, actor: ActorUser) -> Generator[SimpleNamespace, None, None]:
    webhook_calls: list[httpx.Request] = []

    def respond(request: httpx.Request) -> httpx.Response:
        webhook_calls.append(request)
        return httpx.Response(200, json={"ok": True})

    @contextmanager
    def session_scope():
        yield db_session

    clock = FakeClock(START)
    engine = AutomationEngine(
        session_scope,
        transport=httpx.MockTransport(respond),
        email_sender=StubEmailSender(),
        clock=clock,
        sleep=lambda seconds: None,
    )
    pipeline = PipelineService().create_pipeline(db_session, actor, PipelineCreate(name="Sales", stages=["New"]))
    tag = TagService().create_tag(db_session, actor, TagCreate(name="nurture"))
    workflow = WorkflowService().create_workflow(
        db_session,
        actor,
        WorkflowCreate(
            name="Nurture",
            pipeline_id=pipeline.id,
            trigger_type="tag_added",
            steps=[
                {"key": "wait", "step_type": "delay", "config": {"duration_minutes": 90}},
                {"key": "ping", "step_type": "webhook", "config": {"url": "https://hooks.example.com/nurture"}},
            ],
        ),
    )
    engine.subscribe(event_bus)
    try:
        yield SimpleNamespace(
            engine=engine,
            clock=clock,
            pipeline_id=pipeline.id,
            tag_id=tag.id,
            workflow_id=workflow.id,
            webhook_calls=webhook_calls,
        )
    finally:
        engine.unsubscribe(event_bus)


def _park_contacts(db_session: Session, actor: ActorUser, setup: SimpleNamespace, count: int) -> list[uuid.UUID]:
    contacts = ContactService()
    for index in range(count):
        contact = contacts.create_contact(
            db_session,
            actor,
            ContactCreate(pipeline_id=setup.pipeline_id, full_name=f"Lead {index}", email=f"lead{index}@example.com"),
        )
        contacts.add_tag(db_session, actor, contact.id, setup.tag_id)
    runs = setup.engine.repository.list_runs(db_session, setup.workflow_id)
    assert len(runs) == count
    assert all(run.status == RunStatus.WAITING.value for run in runs)
    return [run.id for run in runs]


def test_delay_resumes_within_one_sweep_interval_of_its_wake_time(
    db_session: Session,
    actor: ActorUser,
    setup: SimpleNamespace,
) -> None:
    (run_id,) = _park_contacts(db_session, actor, setup, 1)
    interval = timedelta(seconds=get_settings().automation_sweep_interval_seconds)
    wake_at = START + timedelta(minutes=90)

    resumed_at = None
    tick = START
    while resumed_at is None and tick <= wake_at + 2 * interval:
        tick += interval
        setup.clock.now = tick
        if setup.engine.sweeper.sweep(db_session) == [run_id]:
            resumed_at = tick

    assert resumed_at is not None
    assert wake_at <= resumed_at <= wake_at + interval
    run = setup.engine.repository.get_run(db_session, run_id)
    assert run.status == RunStatus.COMPLETED.value
    delay_log = setup.engine.repository.step_logs(db_session, run_id)[0]
    assert delay_log.status == StepLogStatus.COMPLETED.value
    assert as_utc(delay_log.resume_at) == wake_at
    assert delay_log.result["resumed_at"] == resumed_at.isoformat()


def test_sweep_never_resumes_before_wake_time(
    db_session: Session,
    actor: ActorUser,
    setup: SimpleNamespace,
) -> None:
    (run_id,) = _park_contacts(db_session, actor, setup, 1)

    assert setup.engine.sweeper.sweep(db_session, START + timedelta(minutes=89, seconds=59)) == []
    assert setup.engine.repository.get_run(db_session, run_id).status == RunStatus.WAITING.value
    assert setup.webhook_calls == []

    assert setup.engine.sweeper.sweep(db_session, START + timedelta(minutes=90)) == [run_id]
    assert len(setup.webhook_calls) == 1
    assert setup.engine.sweeper.sweep(db_session, START + timedelta(minutes=91)) == []


def test_sweep_claims_at_most_batch_size_runs(
    db_session: Session,
    actor: ActorUser,
    setup: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTOMATION_SWEEP_BATCH_SIZE", "2")
    get_settings.cache_clear()
    run_ids = _park_contacts(db_session, actor, setup, 3)
    later = START + timedelta(hours=2)

    first = setup.engine.sweeper.sweep(db_session, later)
    second = setup.engine.sweeper.sweep(db_session, later)

    assert len(first) == 2
    assert len(second) == 1
    assert sorted(first + second) == sorted(run_ids)
    assert setup.engine.sweeper.sweep(db_session, later) == []


def test_failure_resuming_one_run_does_not_stop_the_pass(
    db_session: Session,
    actor: ActorUser,
    setup: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _park_contacts(db_session, actor, setup, 2)
    later = START + timedelta(hours=2)
    due = setup.engine.repository.due_waiting_runs(db_session, later)
    broken = due[0]
    resume = setup.engine.executor.resume

    def flaky_resume(session: Session, run_id: uuid.UUID, now: datetime | None = None):
        if run_id == broken:
            raise RuntimeError("worker lost")
        return resume(session, run_id, now)

    monkeypatch.setattr(setup.engine.executor, "resume", flaky_resume)

    assert setup.engine.sweeper.sweep(db_session, later) == due
    assert setup.engine.repository.get_run(db_session, due[1]).status == RunStatus.COMPLETED.value
    stuck = setup.engine.repository.get_run(db_session, broken)
    assert stuck.status == RunStatus.FAILED.value
    assert stuck.error_message == "unexpected error: worker lost"
    assert stuck.completed_at is not None
    assert setup.engine.sweeper.sweep(db_session, later + timedelta(days=1)) == []


def test_crash_inside_resume_fails_the_run_instead_of_orphaning_it(
    db_session: Session,
    actor: ActorUser,
    setup: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (run_id,) = _park_contacts(db_session, actor, setup, 1)
    later = START + timedelta(hours=2)

    def lost_connection(session: Session, run_id: uuid.UUID):
        raise RuntimeError("db blip")

    monkeypatch.setattr(setup.engine.executor, "_drive", lost_connection)

    assert setup.engine.sweeper.sweep(db_session, later) == [run_id]
    run = setup.engine.repository.get_run(db_session, run_id)
    assert run.status == RunStatus.FAILED.value
    assert run.error_message == "unexpected error: db blip"
    assert run.completed_at is not None

    for days in (1, 2, 3):
        assert setup.engine.sweeper.sweep(db_session, later + timedelta(days=days)) == []
    assert setup.engine.repository.get_run(db_session, run_id).status == RunStatus.FAILED.value
