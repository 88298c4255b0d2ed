from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


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


def _create_pipeline(client: TestClient, correlation_id: str | None = None) -> dict:
    headers = {"X-Correlation-Id": correlation_id} if correlation_id else {}
    response = client.post("/api/crm/pipelines", json={"name": "Default", "stages": ["New"]}, headers=headers)
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/contacts/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/automations/workflows/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_pipeline(client, "corr-audit-1")

    pipeline_audits = audit.entries_for("crm.pipeline")
    assert pipeline_audits
    assert pipeline_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    pipeline = _create_pipeline(client)
    response = client.post(
        "/api/crm/contacts",
        json={"pipeline_id": pipeline["id"], "full_name": "Corr Contact"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = events.events_of_type("pipeline.contact_created")
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_run_and_cascaded_events_keep_triggering_correlation_id(client: TestClient) -> None:
    pipeline = _create_pipeline(client)
    tag = client.post("/api/crm/tags", json={"name": "new-lead"}).json()
    workflow = client.post(
        "/api/automations/workflows",
        json={
            "name": "Tag new leads",
            "pipeline_id": pipeline["id"],
            "trigger_type": "contact_created",
            "steps": [{"key": "tag", "step_type": "add_tag", "config": {"tag_id": tag["id"]}}],
        },
    )
    assert workflow.status_code == 201

    created = client.post(
        "/api/crm/contacts",
        json={"pipeline_id": pipeline["id"], "full_name": "Cascade Contact"},
        headers={"X-Correlation-Id": "corr-run-1"},
    )
    assert created.status_code == 201

    runs = client.get(f"/api/automations/workflows/{workflow.json()['id']}/runs").json()
    assert [run["correlation_id"] for run in runs] == ["corr-run-1"]

    tag_events = events.events_of_type("pipeline.tag_added")
    assert tag_events
    assert tag_events[-1]["correlation_id"] == "corr-run-1"
    assert tag_events[-1]["meta"]["trigger_depth"] == 1

    step_audits = [entry for entry in audit.entries_for("crm.contact") if entry["action"] == "add_tag"]
    assert step_audits
    assert step_audits[-1]["correlation_id"] == "corr-run-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post("/api/crm/tags", json={"name": "Rate Limit 1"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert first.status_code == 201

    second = client.post("/api/crm/tags", json={"name": "Rate Limit 2"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
