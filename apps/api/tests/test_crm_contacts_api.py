from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import create_access_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {"crm.pipelines.manage", "crm.contacts.read", "crm.contacts.write"}


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
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
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
def permissions() -> set[str]:
    return set(ALL_PERMISSIONS)


@pytest.fixture()
def client(db_session: Session, organization_id: uuid.UUID, permissions: set[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            allowed_organization_ids=[organization_id],
            current_organization_id=organization_id,
            permissions=permissions,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def pipeline(client: TestClient) -> dict[str, Any]:
    response = client.post("/api/crm/pipelines", json={"name": "Sales", "stages": ["New", "Qualified", "Won"]})
    assert response.status_code == 201
    return response.json()


def _stage_id(pipeline: dict[str, Any], name: str) -> str:
    return next(stage["id"] for stage in pipeline["stages"] if stage["name"] == name)


def _create_contact(client: TestClient, pipeline_id: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"pipeline_id": pipeline_id, "full_name": "Ada Lovelace", "email": "ada@example.com"}
    payload.update(overrides)
    response = client.post("/api/crm/contacts", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_pipeline_and_stages(client: TestClient, pipeline: dict[str, Any]) -> None:
    assert [(stage["name"], stage["position"]) for stage in pipeline["stages"]] == [
        ("New", 1),
        ("Qualified", 2),
        ("Won", 3),
    ]

    added = client.post(f"/api/crm/pipelines/{pipeline['id']}/stages", json={"name": "Lost"})
    assert added.status_code == 201
    assert added.json()["position"] == 4

    duplicate = client.post(f"/api/crm/pipelines/{pipeline['id']}/stages", json={"name": "Won"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "crm_pipeline_stage_create_failed"

    fetched = client.get(f"/api/crm/pipelines/{pipeline['id']}")
    assert [stage["name"] for stage in fetched.json()["stages"]] == ["New", "Qualified", "Won", "Lost"]
    assert [item["id"] for item in client.get("/api/crm/pipelines").json()] == [pipeline["id"]]


def test_tags_are_unique_per_organization(client: TestClient) -> None:
    assert client.post("/api/crm/tags", json={"name": "vip"}).status_code == 201
    duplicate = client.post("/api/crm/tags", json={"name": "vip"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "crm_tag_create_failed"
    assert [tag["name"] for tag in client.get("/api/crm/tags").json()] == ["vip"]


def test_create_contact_lands_in_first_stage_and_emits_event(
    client: TestClient,
    pipeline: dict[str, Any],
    organization_id: uuid.UUID,
) -> None:
    contact = _create_contact(client, pipeline["id"], source="web", custom_fields={"plan": "pro"})

    assert contact["stage_id"] == _stage_id(pipeline, "New")
    assert contact["organization_id"] == str(organization_id)
    assert contact["custom_fields"] == {"plan": "pro"}

    created = events.events_of_type("pipeline.contact_created")
    assert len(created) == 1
    envelope = created[0]
    assert envelope["payload"]["contact_id"] == contact["id"]
    assert envelope["payload"]["pipeline_id"] == pipeline["id"]
    assert envelope["payload"]["data"] == {"source": "web"}
    assert envelope["meta"]["trigger_depth"] == 0
    assert envelope["actor_user_id"] == "user-1"


def test_stage_change_emits_from_and_to(client: TestClient, pipeline: dict[str, Any]) -> None:
    contact = _create_contact(client, pipeline["id"])
    qualified = _stage_id(pipeline, "Qualified")

    moved = client.post(f"/api/crm/contacts/{contact['id']}/stage", json={"stage_id": qualified})
    assert moved.status_code == 200
    assert moved.json()["stage_id"] == qualified

    again = client.post(f"/api/crm/contacts/{contact['id']}/stage", json={"stage_id": qualified})
    assert again.status_code == 200

    changes = events.events_of_type("pipeline.stage_changed")
    assert len(changes) == 1
    data = changes[0]["payload"]["data"]
    assert data["from_stage_name"] == "New"
    assert data["to_stage_name"] == "Qualified"
    assert data["to_stage_id"] == qualified

    foreign_stage = client.post(f"/api/crm/contacts/{contact['id']}/stage", json={"stage_id": str(uuid.uuid4())})
    assert foreign_stage.status_code == 404
    assert foreign_stage.json()["code"] == "crm_contact_stage_change_failed"


def test_tag_add_and_remove_emit_events_only_on_change(client: TestClient, pipeline: dict[str, Any]) -> None:
    contact = _create_contact(client, pipeline["id"])
    tag_id = client.post("/api/crm/tags", json={"name": "vip"}).json()["id"]

    added = client.post(f"/api/crm/contacts/{contact['id']}/tags", json={"tag_id": tag_id})
    assert added.status_code == 200
    assert added.json()["tags"] == ["vip"]
    client.post(f"/api/crm/contacts/{contact['id']}/tags", json={"tag_id": tag_id})

    removed = client.delete(f"/api/crm/contacts/{contact['id']}/tags/{tag_id}")
    assert removed.status_code == 200
    assert removed.json()["tags"] == []
    client.delete(f"/api/crm/contacts/{contact['id']}/tags/{tag_id}")

    assert len(events.events_of_type("pipeline.tag_added")) == 1
    removed_events = events.events_of_type("pipeline.tag_removed")
    assert len(removed_events) == 1
    assert removed_events[0]["payload"]["data"] == {"tag_id": tag_id, "tag_name": "vip"}


def test_form_submission_creates_contact_then_reuses_it(client: TestClient, pipeline: dict[str, Any]) -> None:
    first = client.post(
        "/api/crm/forms/demo-request/submissions",
        json={"pipeline_id": pipeline["id"], "full_name": "Grace Hopper", "email": "grace@example.com", "fields": {"seats": 10}},
    )
    assert first.status_code == 201
    body = first.json()
    assert body["form_id"] == "demo-request"
    assert body["created_contact"] is True
    assert body["contact"]["source"] == "form:demo-request"

    second = client.post(
        "/api/crm/forms/demo-request/submissions",
        json={"pipeline_id": pipeline["id"], "email": "GRACE@example.com", "fields": {"seats": 12}},
    )
    assert second.status_code == 201
    assert second.json()["created_contact"] is False
    assert second.json()["contact"]["id"] == body["contact"]["id"]

    assert len(events.events_of_type("pipeline.contact_created")) == 1
    submitted = events.events_of_type("pipeline.form_submitted")
    assert [item["payload"]["data"]["fields"]["seats"] for item in submitted] == [10, 12]
    assert all(item["payload"]["data"]["form_id"] == "demo-request" for item in submitted)

    anonymous = client.post("/api/crm/forms/demo-request/submissions", json={"pipeline_id": pipeline["id"]})
    assert anonymous.status_code == 422
    assert anonymous.json()["code"] == "crm_form_submission_failed"


def test_list_filters_and_soft_delete(client: TestClient, pipeline: dict[str, Any]) -> None:
    first = _create_contact(client, pipeline["id"], email="one@example.com")
    second = _create_contact(client, pipeline["id"], email="two@example.com", stage_id=_stage_id(pipeline, "Won"))

    by_stage = client.get("/api/crm/contacts", params={"stage_id": _stage_id(pipeline, "Won")})
    assert [item["id"] for item in by_stage.json()] == [second["id"]]
    by_pipeline = client.get("/api/crm/contacts", params={"pipeline_id": pipeline["id"]})
    assert [item["id"] for item in by_pipeline.json()] == [first["id"], second["id"]]

    deleted = client.delete(f"/api/crm/contacts/{first['id']}")
    assert deleted.status_code == 204
    missing = client.get(f"/api/crm/contacts/{first['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "crm_contact_get_failed"
    assert [item["id"] for item in client.get("/api/crm/contacts").json()] == [second["id"]]

    actions = [entry["action"] for entry in audit.entries_for("crm.contact", first["id"])]
    assert actions == ["create", "delete"]


def test_contact_writes_require_permission(
    client: TestClient,
    pipeline: dict[str, Any],
    permissions: set[str],
) -> None:
    permissions.discard("crm.contacts.write")
    response = client.post(
        "/api/crm/contacts",
        json={"pipeline_id": pipeline["id"], "full_name": "Blocked"},
    )
    assert response.status_code == 403
    assert response.json()["code"] == "crm_contact_create_failed"
    assert client.get("/api/crm/contacts").status_code == 200
    assert events.events_of_type("pipeline.contact_created") == []


def test_organization_headers_resolve_actor(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    organization = uuid.uuid4()
    token = create_access_token("user-9", ["crm.pipelines.manage", "crm.contacts.read"])
    auth = {"Authorization": f"Bearer {token}"}
    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as client:
            headers = {**auth, "x-organization-id": str(organization), "x-allowed-organizations": f" {organization} ,"}
            created = client.post("/api/crm/pipelines", json={"name": "Header org", "stages": ["New"]}, headers=headers)
            assert created.status_code == 201
            assert created.json()["organization_id"] == str(organization)

            other = uuid.uuid4()
            hidden = client.get(
                f"/api/crm/pipelines/{created.json()['id']}",
                headers={**auth, "x-organization-id": str(other)},
            )
            assert hidden.status_code == 404

            malformed = client.get("/api/crm/pipelines", headers={**auth, "x-organization-id": "not-a-uuid"})
            assert malformed.status_code == 400
    finally:
        app.dependency_overrides.clear()


def test_token_organizations_cannot_be_widened_by_headers(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    org_a = str(uuid.uuid4())
    org_b = str(uuid.uuid4())
    roles = ["crm.pipelines.manage", "crm.contacts.read"]
    token_a = create_access_token("user-a", roles, organization_id=org_a, organizations=[org_a])
    token_b = create_access_token("user-b", roles, organization_id=org_b, organizations=[org_b])
    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as client:
            secret = client.post(
                "/api/crm/pipelines",
                json={"name": "B secret", "stages": ["New"]},
                headers={"Authorization": f"Bearer {token_b}"},
            )
            assert secret.status_code == 201
            assert secret.json()["organization_id"] == org_b

            auth_a = {"Authorization": f"Bearer {token_a}"}
            widened = client.get(
                f"/api/crm/pipelines/{secret.json()['id']}",
                headers={**auth_a, "x-allowed-organizations": org_b},
            )
            assert widened.status_code == 404
            assert client.get("/api/crm/pipelines", headers={**auth_a, "x-allowed-organizations": f"{org_a},{org_b}"}).json() == []

            switched = client.get(f"/api/crm/pipelines/{secret.json()['id']}", headers={**auth_a, "x-organization-id": org_b})
            assert switched.status_code == 403
            written = client.post(
                "/api/crm/pipelines",
                json={"name": "Planted", "stages": ["New"]},
                headers={**auth_a, "x-organization-id": org_b, "x-allowed-organizations": org_b},
            )
            assert written.status_code == 403

            own = client.post("/api/crm/pipelines", json={"name": "A own", "stages": ["New"]}, headers=auth_a)
            assert own.status_code == 201
            assert own.json()["organization_id"] == org_a
    finally:
        app.dependency_overrides.clear()
