from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stageflow.context import get_correlation_id
from stageflow.core.config import get_settings
from stageflow.metrics import observe_notification
from stageflow.pipeline.models import PipelineNotification, PipelineProject, utcnow
from stageflow.pipeline.statuses import ProjectStatus, status_label


logger = logging.getLogger("stageflow.pipeline.notifications")

NOTIFICATION_TYPE = "project_status_changed"
HIGH_PRIORITY_STATUSES = frozenset({ProjectStatus.ACCEPTED, ProjectStatus.REFUSED, ProjectStatus.DELIVERED})


@dataclass(slots=True)
class DeliveryResult:
    delivered: bool
    error: str | None = None


class NotificationChannel(Protocol):
    def notify(self, user_id: str, payload: dict[str, Any]) -> DeliveryResult: ...


class LoggingNotificationChannel:
    def notify(self, user_id: str, payload: dict[str, Any]) -> DeliveryResult:
        logger.info(
            "notification.delivered",
            extra={"recipient_user_id": user_id, "notification_id": payload.get("id")},
        )
        return DeliveryResult(delivered=True)


class WebhookNotificationChannel:
    def __init__(self, url: str, *, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.client = client

    def notify(self, user_id: str, payload: dict[str, Any]) -> DeliveryResult:
        body = {"user_id": user_id, "notification": payload}
        try:
            if self.client is not None:
                response = self.client.post(self.url, json=body, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            return DeliveryResult(delivered=False, error=f"{type(exc).__name__}: {exc}")

        if response.status_code >= 400:
            return DeliveryResult(delivered=False, error=f"HTTP {response.status_code}")
        return DeliveryResult(delivered=True)


def default_channel() -> NotificationChannel:
    settings = get_settings()
    if settings.notification_webhook_url:
        return WebhookNotificationChannel(
            settings.notification_webhook_url,
            timeout=settings.notification_webhook_timeout_seconds,
        )
    return LoggingNotificationChannel()


@dataclass(slots=True)
class NotificationIntent:
    recipient_user_id: str
    project_id: uuid.UUID
    status_value: str
    transition_id: uuid.UUID
    title: str
    message: str
    priority: str = "medium"
    payload: dict[str, Any] = field(default_factory=dict)


def resolve_stakeholders(project: PipelineProject) -> list[str]:
    stakeholders: list[str] = []
    for user_id in (project.assigned_user_id, project.owner_user_id):
        if user_id and user_id not in stakeholders:
            stakeholders.append(user_id)
    return stakeholders


def build_intents(
    project: PipelineProject,
    *,
    previous_status: str | None,
    new_status: str,
    transition_id: uuid.UUID,
    actor_user_id: str,
) -> list[NotificationIntent]:
    label = status_label(new_status)
    priority = "high" if ProjectStatus(new_status) in HIGH_PRIORITY_STATUSES else "medium"
    return [
        NotificationIntent(
            recipient_user_id=user_id,
            project_id=project.id,
            status_value=new_status,
            transition_id=transition_id,
            title="Changement de statut",
            message=f'Le projet "{project.name}" est passé à l\'étape "{label}"',
            priority=priority,
            payload={
                "project_id": str(project.id),
                "previous_status": previous_status,
                "new_status": new_status,
                "actor_user_id": actor_user_id,
            },
        )
        for user_id in resolve_stakeholders(project)
    ]


class NotificationDispatcher:
    """Stores at most one notification per (recipient, project, status) and delivers it.

    Persistence is idempotent on that key, delivery is best-effort: a failed
    channel marks the row ``Failed`` and is logged, never raised.
    """

    def __init__(self, channel: NotificationChannel | None = None, *, deliver_async: bool | None = None) -> None:
        self._channel = channel
        self._deliver_async = deliver_async

    @property
    def channel(self) -> NotificationChannel:
        if self._channel is None:
            self._channel = default_channel()
        return self._channel

    @property
    def deliver_async(self) -> bool:
        if self._deliver_async is None:
            return get_settings().notifications_async
        return self._deliver_async

    def dispatch(self, session: Session, intents: list[NotificationIntent]) -> list[PipelineNotification]:
        created: list[PipelineNotification] = []
        for intent in intents:
            notification = self._store(session, intent)
            if notification is None:
                continue
            created.append(notification)
            try:
                if self.deliver_async:
                    self._enqueue(notification)
                else:
                    self.deliver(session, notification)
            except Exception as exc:
                session.rollback()
                self._mark_failed(session, notification, f"{type(exc).__name__}: {exc}")
        return created

    def _store(self, session: Session, intent: NotificationIntent) -> PipelineNotification | None:
        existing = session.scalar(
            select(PipelineNotification.id).where(
                and_(
                    PipelineNotification.recipient_user_id == intent.recipient_user_id,
                    PipelineNotification.linked_id == intent.project_id,
                    PipelineNotification.status_value == intent.status_value,
                )
            )
        )
        if existing is not None:
            observe_notification("duplicate")
            return None

        notification = PipelineNotification(
            recipient_user_id=intent.recipient_user_id,
            notification_type=NOTIFICATION_TYPE,
            priority=intent.priority,
            title=intent.title,
            message=intent.message,
            linked_type="project",
            linked_id=intent.project_id,
            status_value=intent.status_value,
            transition_id=intent.transition_id,
            payload_json=intent.payload,
        )
        session.add(notification)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent dispatcher stored the same key first.
            session.rollback()
            observe_notification("duplicate")
            return None

        observe_notification("created")
        return notification

    def _mark_failed(self, session: Session, notification: PipelineNotification, error: str) -> None:
        observe_notification("failed")
        logger.exception(
            "notification.handoff_failed",
            extra={
                "notification_id": str(notification.id),
                "recipient_user_id": notification.recipient_user_id,
                "error": error,
            },
        )
        notification.delivery_status = "Failed"
        notification.delivery_error = error[:500]
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("notification.status_update_failed", extra={"notification_id": str(notification.id)})

    def _enqueue(self, notification: PipelineNotification) -> None:
        from stageflow.core.celery_app import deliver_notification_task

        deliver_notification_task.delay(str(notification.id), get_correlation_id())

    def deliver(self, session: Session, notification: PipelineNotification) -> PipelineNotification:
        payload = {
            "id": str(notification.id),
            "type": notification.notification_type,
            "priority": notification.priority,
            "title": notification.title,
            "message": notification.message,
            "linked_type": notification.linked_type,
            "linked_id": str(notification.linked_id),
            **dict(notification.payload_json or {}),
        }
        try:
            result = self.channel.notify(notification.recipient_user_id, payload)
        except Exception as exc:
            result = DeliveryResult(delivered=False, error=f"{type(exc).__name__}: {exc}")

        if result.delivered:
            notification.delivery_status = "Delivered"
            notification.delivery_error = None
            notification.delivered_at = utcnow()
            observe_notification("delivered")
        else:
            notification.delivery_status = "Failed"
            notification.delivery_error = result.error
            observe_notification("failed")
            logger.warning(
                "notification.delivery_failed",
                extra={
                    "notification_id": str(notification.id),
                    "recipient_user_id": notification.recipient_user_id,
                    "error": result.error,
                },
            )
        session.commit()
        return notification

    def list_for_user(self, session: Session, user_id: str, *, unread_only: bool = False) -> list[PipelineNotification]:
        stmt = select(PipelineNotification).where(PipelineNotification.recipient_user_id == user_id)
        if unread_only:
            stmt = stmt.where(PipelineNotification.read_at.is_(None))
        return list(session.scalars(stmt.order_by(PipelineNotification.created_at.desc())))

    def mark_read(self, session: Session, notification: PipelineNotification) -> PipelineNotification:
        if notification.read_at is None:
            notification.read_at = utcnow()
            session.commit()
        return notification
