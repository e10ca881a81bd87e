from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit, events
from stageflow.core.config import get_settings
from stageflow.core.database import Base, get_db
from stageflow.main import app
from stageflow.pipeline.api import get_current_user
from stageflow.pipeline.models import PipelineHistoryEntry
from stageflow.pipeline.service import ActorUser


ALL_PERMISSIONS = {
    "pipeline.projects.read",
    "pipeline.projects.write",
    "pipeline.quotes.write",
    "pipeline.stage.override",
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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


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
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _accepted_project(client: TestClient, correlation_id: str) -> dict:
    project = client.post(
        "/api/pipeline/projects",
        json={"name": "Corr Project", "status": "devis_negociation"},
    ).json()
    quote = client.post(f"/api/pipeline/projects/{project['id']}/quotes", json={"amount": "250"}).json()
    response = client.patch(
        f"/api/pipeline/quotes/{quote['id']}",
        json={"status": "accepte"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 200
    return project


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/pipeline/projects/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/pipeline/projects/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_entry_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    project = _accepted_project(client, "corr-audit-1")

    entry = db_session.scalar(
        select(PipelineHistoryEntry).where(PipelineHistoryEntry.project_id == uuid.UUID(project["id"]))
    )
    assert entry is not None
    assert entry.correlation_id == "corr-audit-1"
    assert audit.audit_entries[-1]["correlation_id"] == "corr-audit-1"


def test_change_events_include_correlation_id(client: TestClient) -> None:
    _accepted_project(client, "corr-event-1")

    transition_events = [item for item in events.published_events if item["table"] == "stage_history"]
    assert transition_events
    assert transition_events[-1]["correlation_id"] == "corr-event-1"
