from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.pipelines.manage",
    "crm.contacts.read",
    "crm.contacts.write",
    "automations.workflows.read",
    "automations.workflows.manage",
}


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
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session, organization_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            allowed_organization_ids=[organization_id],
            current_organization_id=organization_id,
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/pipelines",
        json={"name": "Traced", "stages": ["New"]},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_run_and_step_spans_carry_run_identity(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Traced", "stages": ["New"]}).json()
    tag = client.post("/api/crm/tags", json={"name": "traced"}).json()
    workflow = client.post(
        "/api/automations/workflows",
        json={
            "name": "Trace",
            "pipeline_id": pipeline["id"],
            "trigger_type": "contact_created",
            "steps": [{"key": "tag", "step_type": "add_tag", "config": {"tag_id": tag["id"]}}],
        },
    ).json()

    created = client.post(
        "/api/crm/contacts",
        json={"pipeline_id": pipeline["id"], "full_name": "Traced Contact"},
        headers={"X-Correlation-Id": "otel-run-corr-1"},
    )
    assert created.status_code == 201
    run = client.get(f"/api/automations/workflows/{workflow['id']}/runs").json()[0]

    spans = span_exporter.get_finished_spans()
    run_spans = [span for span in spans if span.name == "automation.run.execute"]
    assert any(
        span.attributes.get("automation.run_id") == run["id"]
        and span.attributes.get("automation.workflow_id") == workflow["id"]
        and span.attributes.get("automation.run_status") == "completed"
        and span.attributes.get("correlation_id") == "otel-run-corr-1"
        for span in run_spans
    )
    step_spans = [span for span in spans if span.name == "automation.step.execute"]
    assert any(
        span.attributes.get("automation.step_type") == "add_tag"
        and span.attributes.get("automation.attempt") == 0
        for span in step_spans
    )
