from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.middleware.rate_limit import reset_rate_limiter
from app.main import app


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/contacts/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/contacts/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_run_context_and_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    pipeline = client.post("/api/crm/pipelines", json={"name": "Default", "stages": ["New"]}).json()
    tag = client.post("/api/crm/tags", json={"name": "welcome"}).json()
    workflow = client.post(
        "/api/automations/workflows",
        json={
            "name": "Welcome",
            "pipeline_id": pipeline["id"],
            "trigger_type": "contact_created",
            "steps": [{"key": "tag", "step_type": "add_tag", "config": {"tag_id": tag["id"]}}],
        },
    ).json()

    created = client.post(
        "/api/crm/contacts",
        json={"pipeline_id": pipeline["id"], "full_name": "Logged Contact"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert created.status_code == 201
    run = client.get(f"/api/automations/workflows/{workflow['id']}/runs").json()[0]

    run_records = [record for record in caplog.records if record.name.startswith("app.automations")]
    assert any(
        record.getMessage() == "automation_run_created"
        and getattr(record, "run_id", None) == run["id"]
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in run_records
    )
    assert any(
        record.getMessage() == "automation_run_completed"
        and getattr(record, "run_id", None) == run["id"]
        and getattr(record, "trigger_depth", None) == 0
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in run_records
    )


def test_json_formatter_merges_context_and_extra_fields() -> None:
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, "automation_run_created", None, None)
    record.run_id = "run-1"
    payload = JsonLogFormatter().format(record)
    assert '"msg": "automation_run_created"' in payload
    assert '"fields": {"run_id": "run-1"}' in payload
    assert '"logger": "app.test"' in payload
