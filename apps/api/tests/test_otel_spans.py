from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from opportunity_automation.core.config import get_settings
from opportunity_automation.core.database import Base, get_db
from opportunity_automation.crm.api import get_current_user as crm_get_current_user
from opportunity_automation.crm.service import ActorUser
from opportunity_automation.main import app
from opportunity_automation.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
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
        "/api/crm/opportunities/batch",
        json={"records": [{"name": "Traced", "amount": "6500"}]},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_trigger_phases_and_notifications_emit_spans(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    owner = client.post("/api/crm/users", json={"name": "Tracy", "email": "tracy@example.com"}).json()
    inserted = client.post(
        "/api/crm/opportunities/batch",
        json={"records": [{"name": "Traced delete", "amount": "6500", "owner_user_id": owner["id"]}]},
    ).json()
    opportunity_id = inserted["results"][0]["id"]

    deleted = client.post("/api/crm/opportunities/batch-delete", json={"ids": [opportunity_id]})
    assert deleted.status_code == 200

    spans = span_exporter.get_finished_spans()
    names = {span.name for span in spans}
    assert {"trigger.before_insert", "trigger.after_insert", "trigger.before_delete", "trigger.after_delete"} <= names
    assert "notifications.outbox.send" in names

    after_delete = [span for span in spans if span.name == "trigger.after_delete"]
    assert after_delete[0].attributes.get("record_count") == 1
    assert after_delete[0].attributes.get("transaction_id")
