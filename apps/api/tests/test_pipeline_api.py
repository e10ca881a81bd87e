from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit, events
from stageflow.core.config import get_settings
from stageflow.core.database import Base, get_db
from stageflow.main import app
from stageflow.pipeline.api import get_current_user
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
def permissions() -> set[str]:
    return set(ALL_PERMISSIONS)


@pytest.fixture()
def client(db_session: Session, permissions: set[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="sales-1",
            permissions=permissions,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_project(client: TestClient, status: str = "devis_negociation") -> dict:
    response = client.post(
        "/api/pipeline/projects",
        json={"name": "Cuisine Martin", "status": status, "assigned_user_id": "designer-1"},
    )
    assert response.status_code == 201
    return response.json()


def _create_quote(client: TestClient, project_id: str, amount: str = "1200") -> dict:
    response = client.post(f"/api/pipeline/projects/{project_id}/quotes", json={"amount": amount})
    assert response.status_code == 201
    return response.json()


def test_project_crud(client: TestClient) -> None:
    created = _create_project(client, "qualifie")
    assert created["status"] == "qualifie"
    assert created["status_label"] == "Qualifié"
    assert created["owner_user_id"] == "sales-1"
    assert created["quotes"] == []

    listed = client.get("/api/pipeline/projects", params={"status": "qualifie"})
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [created["id"]]

    other = client.get("/api/pipeline/projects", params={"status": "accepte"})
    assert other.json() == []

    fetched = client.get(f"/api/pipeline/projects/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Cuisine Martin"

    deleted = client.delete(f"/api/pipeline/projects/{created['id']}")
    assert deleted.status_code == 204
    missing = client.get(f"/api/pipeline/projects/{created['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "pipeline_project_get_failed"


def test_quote_patch_drives_project_status(client: TestClient) -> None:
    project = _create_project(client)
    quote = _create_quote(client, project["id"])
    assert quote["status"] == "en_attente"

    accepted = client.patch(f"/api/pipeline/quotes/{quote['id']}", json={"status": "accepte"})
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepte"
    assert accepted.json()["decided_at"] is not None

    refreshed = client.get(f"/api/pipeline/projects/{project['id']}").json()
    assert refreshed["status"] == "accepte"
    assert refreshed["last_known_status"] == "devis_negociation"
    assert refreshed["quotes"][0]["status"] == "accepte"

    settled = client.patch(f"/api/pipeline/quotes/{quote['id']}", json={"invoice_settled": True})
    assert settled.status_code == 200
    assert client.get(f"/api/pipeline/projects/{project['id']}").json()["status"] == "facture_reglee"

    timeline = client.get(f"/api/pipeline/projects/{project['id']}/timeline")
    assert timeline.status_code == 200
    entries = timeline.json()
    assert [entry["new_status"] for entry in entries] == ["facture_reglee", "accepte"]
    assert entries[-1]["description"] == 'Statut changé de "Devis/Négociation" vers "Accepté"'

    history = client.get(f"/api/pipeline/projects/{project['id']}/stage-history")
    assert history.status_code == 200
    open_stages = [item["stage_name"] for item in history.json() if item["ended_at"] is None]
    assert open_stages == ["facture_reglee"]

    durations = client.get(f"/api/pipeline/projects/{project['id']}/stage-durations")
    assert durations.status_code == 200
    active = [item for item in durations.json() if item["is_active"]]
    assert [item["stage_name"] for item in active] == ["facture_reglee"]
    assert active[0]["label"] == "Facture réglée"


def test_quote_errors_use_envelope(client: TestClient) -> None:
    project = _create_project(client)
    quote = _create_quote(client, project["id"])

    premature = client.patch(
        f"/api/pipeline/quotes/{quote['id']}",
        json={"invoice_settled": True},
        headers={"X-Correlation-Id": "corr-quote-1"},
    )
    assert premature.status_code == 422
    body = premature.json()
    assert body["code"] == "pipeline_quote_update_failed"
    assert body["message"] == "invoice_settled requires an accepted quote"
    assert body["correlation_id"] == "corr-quote-1"
    assert premature.headers.get("x-correlation-id") == "corr-quote-1"

    stale = client.patch(
        f"/api/pipeline/quotes/{quote['id']}",
        json={"amount": "10", "row_version": quote["row_version"] + 1},
    )
    assert stale.status_code == 409

    missing = client.patch(f"/api/pipeline/quotes/{uuid.uuid4()}", json={"status": "refuse"})
    assert missing.status_code == 404

    invalid = client.post(f"/api/pipeline/projects/{project['id']}/quotes", json={"amount": "-5"})
    assert invalid.status_code == 422


def test_quote_delete_rederives(client: TestClient) -> None:
    project = _create_project(client)
    refused = _create_quote(client, project["id"])
    pending = _create_quote(client, project["id"])
    assert client.patch(f"/api/pipeline/quotes/{refused['id']}", json={"status": "refuse"}).status_code == 200

    deleted = client.delete(f"/api/pipeline/quotes/{pending['id']}")

    assert deleted.status_code == 204
    assert client.get(f"/api/pipeline/projects/{project['id']}").json()["status"] == "refuse"


def test_recompute_endpoint_reports_outcome(client: TestClient) -> None:
    project = _create_project(client, "projet_en_cours")
    quote = _create_quote(client, project["id"])
    client.patch(f"/api/pipeline/quotes/{quote['id']}", json={"status": "accepte"})

    response = client.post(f"/api/pipeline/projects/{project['id']}/recompute")

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "rejected"
    assert body["status"] == "projet_en_cours"
    assert body["candidate_status"] == "accepte"
    assert body["transition_id"] is None


def test_stage_override(client: TestClient) -> None:
    project = _create_project(client)
    quote = _create_quote(client, project["id"])

    blocked = client.post(f"/api/pipeline/projects/{project['id']}/stage", json={"status": "premier_depot"})
    assert blocked.status_code == 422
    assert blocked.json()["message"] == "Au moins un devis doit être accepté pour avancer le projet."

    client.patch(f"/api/pipeline/quotes/{quote['id']}", json={"status": "accepte"})
    moved = client.post(f"/api/pipeline/projects/{project['id']}/stage", json={"status": "premier_depot"})
    assert moved.status_code == 200
    assert moved.json()["outcome"] == "overridden"
    assert moved.json()["transition_id"]

    timeline = client.get(f"/api/pipeline/projects/{project['id']}/timeline").json()
    assert timeline[0]["action"] == "stage.manual_override"


def test_payment_summary_with_warnings(client: TestClient) -> None:
    project = _create_project(client)

    empty = client.get(f"/api/pipeline/projects/{project['id']}/payment-summary")
    assert empty.status_code == 200
    assert empty.json()["warnings"] == ["Aucun devis créé pour ce projet"]
    assert empty.json()["progress"] == 0

    first = _create_quote(client, project["id"], "300")
    second = _create_quote(client, project["id"], "100")
    client.patch(f"/api/pipeline/quotes/{first['id']}", json={"status": "accepte", "invoice_settled": True})
    client.patch(f"/api/pipeline/quotes/{second['id']}", json={"status": "accepte"})

    summary = client.get(f"/api/pipeline/projects/{project['id']}/payment-summary").json()
    assert Decimal(str(summary["total_accepted"])) == Decimal("400")
    assert Decimal(str(summary["total_paid"])) == Decimal("300")
    assert summary["progress"] == 75
    assert summary["all_paid"] is False
    assert summary["has_accepted_quote"] is True


def test_notifications_for_current_user(client: TestClient) -> None:
    project = _create_project(client)
    quote = _create_quote(client, project["id"])
    client.patch(f"/api/pipeline/quotes/{quote['id']}", json={"status": "accepte"})

    listed = client.get("/api/pipeline/notifications", params={"unread_only": "true"})
    assert listed.status_code == 200
    items = listed.json()
    assert len(items) == 1
    assert items[0]["recipient_user_id"] == "sales-1"
    assert items[0]["status_value"] == "accepte"
    assert items[0]["priority"] == "high"
    assert items[0]["message"] == 'Le projet "Cuisine Martin" est passé à l\'étape "Accepté"'

    read = client.post(f"/api/pipeline/notifications/{items[0]['id']}/read")
    assert read.status_code == 200
    assert read.json()["read_at"] is not None
    assert client.get("/api/pipeline/notifications", params={"unread_only": "true"}).json() == []

    unknown = client.post(f"/api/pipeline/notifications/{uuid.uuid4()}/read")
    assert unknown.status_code == 404


def test_writes_publish_change_events_with_correlation(client: TestClient) -> None:
    project = _create_project(client)
    quote = _create_quote(client, project["id"])
    events.published_events.clear()

    client.patch(
        f"/api/pipeline/quotes/{quote['id']}",
        json={"status": "accepte"},
        headers={"X-Correlation-Id": "corr-feed-1"},
    )

    assert [(item["table"], item["event_type"]) for item in events.published_events] == [
        ("quotes", "update"),
        ("projects", "update"),
        ("stage_history", "update"),
        ("stage_history", "insert"),
        ("history", "insert"),
    ]
    assert all(item["correlation_id"] == "corr-feed-1" for item in events.published_events)
    assert audit.audit_entries[-1]["correlation_id"] == "corr-feed-1"


@pytest.mark.parametrize(
    ("permissions", "method", "path_template"),
    [
        ({"pipeline.projects.read"}, "post", "/api/pipeline/projects/{project_id}/quotes"),
        ({"pipeline.projects.read", "pipeline.quotes.write"}, "post", "/api/pipeline/projects/{project_id}/stage"),
        (set(), "get", "/api/pipeline/projects/{project_id}"),
    ],
)
def test_missing_permission_is_forbidden(
    client: TestClient,
    method: str,
    path_template: str,
) -> None:
    path = path_template.format(project_id=uuid.uuid4())
    body = {"status": "conception", "amount": "10"} if method == "post" else None

    response = client.request(method.upper(), path, json=body)

    assert response.status_code == 403
    assert response.json()["message"].startswith("Missing permission: ")


def test_health_and_readiness(client: TestClient) -> None:
    assert client.get("/health").json()["status"] == "ok"

    ready = client.get("/health/ready")
    assert ready.status_code == 200
    body = ready.json()
    assert body["status"] == "ready"
    assert set(body["feed_subscribers"]) == {"projects", "quotes", "stage_history", "history"}
