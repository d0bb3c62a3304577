from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from opportunity_automation import audit, events
from opportunity_automation.core.config import get_settings
from opportunity_automation.core.database import Base, get_db
from opportunity_automation.crm.api import get_current_user
from opportunity_automation.crm.models import CRMNotificationOutbox
from opportunity_automation.crm.service import ActorUser
from opportunity_automation.main import app


ALL_PERMISSIONS = {
    "crm.opportunities.read",
    "crm.opportunities.write",
    "crm.reference_data.write",
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
    monkeypatch.setenv("NOTIFICATION_BACKEND", "outbox")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def permissions() -> set[str]:
    return set(ALL_PERMISSIONS)


@pytest.fixture()
def client(db_session: Session, permissions: set[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=permissions,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_user(client: TestClient, name: str, email: str) -> dict:
    response = client.post("/api/crm/users", json={"name": name, "email": email})
    assert response.status_code == 201
    return response.json()


def _create_account(client: TestClient, name: str, industry: str | None = None) -> dict:
    response = client.post("/api/crm/accounts", json={"name": name, "industry": industry})
    assert response.status_code == 201
    return response.json()


def _create_contact(client: TestClient, account_id: str, first_name: str, title: str) -> dict:
    response = client.post(
        "/api/crm/contacts",
        json={"account_id": account_id, "first_name": first_name, "last_name": "Jones", "title": title},
    )
    assert response.status_code == 201
    return response.json()


def test_batch_insert_returns_per_record_results(client: TestClient) -> None:
    response = client.post(
        "/api/crm/opportunities/batch",
        json={
            "records": [
                {"name": "Too small", "amount": "1200"},
                {"name": "Big enough", "amount": "15000"},
            ]
        },
        headers={"X-Correlation-Id": "corr-batch-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["operation"] == "insert"
    assert [item["success"] for item in body["results"]] == [False, True]
    assert body["results"][0]["errors"] == ["Opportunity amount must be greater than 5000"]

    created_id = body["results"][1]["id"]
    fetched = client.get(f"/api/crm/opportunities/{created_id}")
    assert fetched.status_code == 200
    assert fetched.json()["type"] == "New Customer"
    assert fetched.json()["row_version"] == 1

    missing = client.get(f"/api/crm/opportunities/{body['results'][0]['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "crm_opportunity_get_failed"

    tasks = client.get(f"/api/crm/opportunities/{created_id}/tasks")
    assert tasks.status_code == 200
    assert [task["subject"] for task in tasks.json()] == ["Call Primary Contact"]

    created_events = [event for event in events.published_events if event["event_type"] == "crm.opportunity.created"]
    assert len(created_events) == 1
    assert created_events[0]["correlation_id"] == "corr-batch-1"


def test_empty_batch_is_rejected(client: TestClient) -> None:
    response = client.post("/api/crm/opportunities/batch", json={"records": []})
    assert response.status_code == 422


def test_batch_update_backfills_ceo_contact(client: TestClient) -> None:
    account = _create_account(client, "Initech")
    _create_contact(client, account["id"], "Bill", "CEO")
    amy = _create_contact(client, account["id"], "Amy", "CEO")
    inserted = client.post(
        "/api/crm/opportunities/batch",
        json={"records": [{"name": "Renewal", "amount": "8000", "account_id": account["id"]}]},
    ).json()
    opportunity_id = inserted["results"][0]["id"]

    response = client.patch(
        "/api/crm/opportunities/batch",
        json={"records": [{"id": opportunity_id, "stage_name": "Negotiation"}]},
    )

    assert response.status_code == 200
    assert response.json()["results"][0]["success"] is True
    body = client.get(f"/api/crm/opportunities/{opportunity_id}").json()
    assert body["primary_contact_id"] == amy["id"]
    assert body["stage_name"] == "Negotiation"
    assert "Stage Change:Negotiation:" in body["description"]


def test_batch_delete_and_undelete_round_trip(client: TestClient, db_session: Session) -> None:
    owner = _create_user(client, "Dana", "dana@example.com")
    bank = _create_account(client, "Big Bank", "Banking")
    vp = _create_contact(client, bank["id"], "Val", "VP Sales")
    inserted = client.post(
        "/api/crm/opportunities/batch",
        json={
            "records": [
                {"name": "Won at bank", "amount": "50000", "stage_name": "Closed Won", "account_id": bank["id"]},
                {"name": "Open at bank", "amount": "6000", "account_id": bank["id"], "owner_user_id": owner["id"]},
            ]
        },
    ).json()
    won_id, open_id = (item["id"] for item in inserted["results"])

    deleted = client.post("/api/crm/opportunities/batch-delete", json={"ids": [won_id, open_id]})
    assert deleted.status_code == 200
    results = deleted.json()["results"]
    assert results[0] == {
        "id": won_id,
        "success": False,
        "errors": ["Cannot delete closed opportunity for a banking account that is won"],
    }
    assert results[1]["success"] is True
    assert client.get(f"/api/crm/opportunities/{open_id}").status_code == 404

    outbox = db_session.scalars(select(CRMNotificationOutbox)).all()
    assert [row.recipient_email for row in outbox] == ["dana@example.com"]
    assert outbox[0].subject == "Opportunity Deleted : Open at bank"

    restored = client.post("/api/crm/opportunities/batch-undelete", json={"ids": [open_id]})
    assert restored.status_code == 200
    assert restored.json()["results"][0]["success"] is True
    body = client.get(f"/api/crm/opportunities/{open_id}").json()
    assert body["deleted_at"] is None
    assert body["primary_contact_id"] == vp["id"]


def test_contact_with_unknown_account_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/crm/contacts",
        json={"account_id": "00000000-0000-4000-8000-000000000000", "first_name": "No", "last_name": "Body"},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "crm_contact_create_failed"


@pytest.mark.parametrize("permissions", [{"crm.opportunities.read"}])
def test_write_requires_permission(client: TestClient) -> None:
    response = client.post(
        "/api/crm/opportunities/batch",
        json={"records": [{"name": "Denied", "amount": "9000"}]},
        headers={"X-Correlation-Id": "corr-denied"},
    )
    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "crm_opportunity_insert_failed"
    assert body["message"] == "Missing permission: crm.opportunities.write"
    assert body["correlation_id"] == "corr-denied"


def test_batch_update_with_null_name_keeps_sibling_update(client: TestClient) -> None:
    inserted = client.post(
        "/api/crm/opportunities/batch",
        json={"records": [{"name": "Keep name", "amount": "6000"}, {"name": "Grow", "amount": "6000"}]},
    ).json()
    keep_id, grow_id = (item["id"] for item in inserted["results"])

    response = client.patch(
        "/api/crm/opportunities/batch",
        json={"records": [{"id": keep_id, "name": None}, {"id": grow_id, "amount": "9500"}]},
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert results[0] == {"id": keep_id, "success": False, "errors": ["Opportunity name is required"]}
    assert results[1]["success"] is True
    assert client.get(f"/api/crm/opportunities/{keep_id}").json()["name"] == "Keep name"
    assert Decimal(client.get(f"/api/crm/opportunities/{grow_id}").json()["amount"]) == Decimal("9500")
