from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import httpx
import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow.core.config import get_settings
from stageflow.core.database import Base
from stageflow.pipeline.models import PipelineNotification, PipelineProject
from stageflow.pipeline.notifications import (
    DeliveryResult,
    LoggingNotificationChannel,
    NotificationDispatcher,
    WebhookNotificationChannel,
    build_intents,
    default_channel,
    resolve_stakeholders,
)


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


class RecordingChannel:
    def __init__(self, result: DeliveryResult | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.result = result or DeliveryResult(delivered=True)

    def notify(self, user_id: str, payload: dict[str, Any]) -> DeliveryResult:
        self.calls.append((user_id, payload))
        return self.result


class ExplodingChannel:
    def notify(self, user_id: str, payload: dict[str, Any]) -> DeliveryResult:
        raise ConnectionError("push gateway unreachable")


@pytest.fixture()
def project(db_session: Session) -> PipelineProject:
    project = PipelineProject(name="Cuisine Martin", assigned_user_id="designer-1", owner_user_id="sales-1")
    db_session.add(project)
    db_session.commit()
    return project


def _count(db_session: Session) -> int:
    return db_session.scalar(select(func.count()).select_from(PipelineNotification)) or 0


def test_stakeholders_are_deduplicated() -> None:
    project = PipelineProject(name="x", assigned_user_id="user-1", owner_user_id="user-1")
    assert resolve_stakeholders(project) == ["user-1"]
    assert resolve_stakeholders(PipelineProject(name="y")) == []


def test_retried_transition_creates_one_notification_per_stakeholder(
    db_session: Session, project: PipelineProject
) -> None:
    channel = RecordingChannel()
    dispatcher = NotificationDispatcher(channel, deliver_async=False)

    for _ in range(5):
        intents = build_intents(
            project,
            previous_status="devis_negociation",
            new_status="accepte",
            transition_id=uuid.uuid4(),
            actor_user_id="user-9",
        )
        dispatcher.dispatch(db_session, intents)

    assert _count(db_session) == 2
    assert sorted(user_id for user_id, _ in channel.calls) == ["designer-1", "sales-1"]
    rows = db_session.scalars(select(PipelineNotification)).all()
    assert {row.delivery_status for row in rows} == {"Delivered"}
    assert all(row.priority == "high" for row in rows)
    assert "Accepté" in rows[0].message


def test_a_new_status_is_a_new_notification(db_session: Session, project: PipelineProject) -> None:
    dispatcher = NotificationDispatcher(RecordingChannel(), deliver_async=False)
    for status_value in ("accepte", "facture_reglee"):
        dispatcher.dispatch(
            db_session,
            build_intents(
                project,
                previous_status=None,
                new_status=status_value,
                transition_id=uuid.uuid4(),
                actor_user_id="user-9",
            ),
        )
    assert _count(db_session) == 4


def test_delivery_failure_is_recorded_not_raised(db_session: Session, project: PipelineProject) -> None:
    dispatcher = NotificationDispatcher(ExplodingChannel(), deliver_async=False)
    created = dispatcher.dispatch(
        db_session,
        build_intents(
            project,
            previous_status="accepte",
            new_status="facture_reglee",
            transition_id=uuid.uuid4(),
            actor_user_id="user-9",
        ),
    )

    assert len(created) == 2
    for notification in created:
        assert notification.delivery_status == "Failed"
        assert "push gateway unreachable" in (notification.delivery_error or "")


def test_unique_key_race_is_treated_as_duplicate(
    db_session: Session, project: PipelineProject, monkeypatch: pytest.MonkeyPatch
) -> None:
    dispatcher = NotificationDispatcher(RecordingChannel(), deliver_async=False)
    intent = build_intents(
        project,
        previous_status=None,
        new_status="accepte",
        transition_id=uuid.uuid4(),
        actor_user_id="user-9",
    )[0]
    db_session.add(
        PipelineNotification(
            recipient_user_id=intent.recipient_user_id,
            notification_type="project_status_changed",
            title="t",
            message="m",
            linked_id=intent.project_id,
            status_value=intent.status_value,
            transition_id=uuid.uuid4(),
            payload_json={},
        )
    )
    db_session.commit()

    # Another writer stored the row between the existence check and the insert.
    monkeypatch.setattr(db_session, "scalar", lambda *args, **kwargs: None)
    assert dispatcher._store(db_session, intent) is None  # noqa: SLF001
    monkeypatch.undo()
    assert _count(db_session) == 1


def test_mark_read_and_unread_filter(db_session: Session, project: PipelineProject) -> None:
    dispatcher = NotificationDispatcher(RecordingChannel(), deliver_async=False)
    created = dispatcher.dispatch(
        db_session,
        build_intents(
            project,
            previous_status=None,
            new_status="refuse",
            transition_id=uuid.uuid4(),
            actor_user_id="user-9",
        ),
    )
    mine = [item for item in created if item.recipient_user_id == "sales-1"][0]
    dispatcher.mark_read(db_session, mine)

    assert dispatcher.list_for_user(db_session, "sales-1", unread_only=True) == []
    assert len(dispatcher.list_for_user(db_session, "sales-1")) == 1


def test_webhook_channel_reports_http_failures() -> None:
    seen: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append({"url": str(request.url), "body": request.read()})
        if b"user-2" in request.content:
            return httpx.Response(503)
        return httpx.Response(202)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    channel = WebhookNotificationChannel("https://hooks.example.test/notify", client=client)

    assert channel.notify("user-1", {"id": "n-1"}).delivered is True
    failed = channel.notify("user-2", {"id": "n-2"})
    assert failed.delivered is False
    assert failed.error == "HTTP 503"
    assert seen[0]["url"] == "https://hooks.example.test/notify"


def test_webhook_channel_reports_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    result = WebhookNotificationChannel("https://hooks.example.test/notify", client=client).notify("user-1", {})
    assert result.delivered is False
    assert result.error is not None and result.error.startswith("ConnectError")


def test_default_channel_follows_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(default_channel(), LoggingNotificationChannel)

    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.test/notify")
    get_settings.cache_clear()
    channel = default_channel()
    assert isinstance(channel, WebhookNotificationChannel)
    assert channel.url == "https://hooks.example.test/notify"


def test_async_delivery_hands_off_to_celery(
    db_session: Session, project: PipelineProject, monkeypatch: pytest.MonkeyPatch
) -> None:
    from stageflow.core import celery_app

    queued: list[str] = []
    monkeypatch.setattr(celery_app.deliver_notification_task, "delay", lambda notification_id, correlation_id=None: queued.append(notification_id))
    channel = RecordingChannel()
    dispatcher = NotificationDispatcher(channel, deliver_async=True)

    created = dispatcher.dispatch(
        db_session,
        build_intents(
            project,
            previous_status=None,
            new_status="accepte",
            transition_id=uuid.uuid4(),
            actor_user_id="user-9",
        ),
    )

    assert queued == [str(item.id) for item in created]
    assert channel.calls == []
    assert {item.delivery_status for item in created} == {"Queued"}


def test_failed_handoff_marks_row_failed_and_continues(
    db_session: Session, project: PipelineProject, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    attempts: list[str] = []

    def broken_enqueue(notification: PipelineNotification) -> None:
        attempts.append(notification.recipient_user_id)
        raise ConnectionError("broker unreachable")

    dispatcher = NotificationDispatcher(RecordingChannel(), deliver_async=True)
    monkeypatch.setattr(dispatcher, "_enqueue", broken_enqueue)
    intents = build_intents(
        project,
        previous_status=None,
        new_status="accepte",
        transition_id=uuid.uuid4(),
        actor_user_id="user-9",
    )

    with caplog.at_level("ERROR", logger="stageflow.pipeline.notifications"):
        created = dispatcher.dispatch(db_session, intents)

    assert attempts == ["designer-1", "sales-1"]
    assert sorted(item.recipient_user_id for item in created) == ["designer-1", "sales-1"]
    rows = db_session.scalars(select(PipelineNotification)).all()
    assert {row.delivery_status for row in rows} == {"Failed"}
    assert all("ConnectionError" in (row.delivery_error or "") for row in rows)
    assert [record.msg for record in caplog.records].count("notification.handoff_failed") == 2
