from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, organization_id: uuid.UUID, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            allowed_organization_ids=[organization_id],
            current_organization_id=organization_id,
            permissions={
                "crm.pipelines.manage",
                "crm.contacts.read",
                "crm.contacts.write",
                "automations.workflows.read",
                "automations.workflows.manage",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_automation_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    pipeline = client.post("/api/crm/pipelines", json={"name": "Metrics Pipeline", "stages": ["New", "Won"]})
    assert pipeline.status_code == 201
    tag = client.post("/api/crm/tags", json={"name": "measured"})
    assert tag.status_code == 201

    workflow = client.post(
        "/api/automations/workflows",
        json={
            "name": "Measure",
            "pipeline_id": pipeline.json()["id"],
            "trigger_type": "contact_created",
            "steps": [{"key": "tag", "step_type": "add_tag", "config": {"tag_id": tag.json()["id"]}}],
        },
    )
    assert workflow.status_code == 201

    contact = client.post(
        "/api/crm/contacts",
        json={"pipeline_id": pipeline.json()["id"], "full_name": "Metrics Contact"},
    )
    assert contact.status_code == 201

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "automation_events_total" in body
    assert "automation_runs_total" in body
    assert "automation_step_attempts_total" in body
    assert "automation_step_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/contacts"' in body
    assert 'event_type="contact_created",outcome="matched"' in body
    assert 'step_type="add_tag",status="completed"' in body
    assert 'status="completed"' in body


def test_metrics_require_role(client: TestClient, roles: list[str]) -> None:
    roles.clear()
    roles.append("user")
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    assert client.get("/metrics").status_code == 404
