import logging
import uuid

from celery import Celery

from stageflow.context import bound_context
from stageflow.core.config import get_settings
from stageflow.core.database import SessionLocal
from stageflow.pipeline.models import PipelineNotification
from stageflow.pipeline.notifications import NotificationDispatcher

settings = get_settings()
logger = logging.getLogger("stageflow.tasks")

celery_app = Celery("stageflow_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.task_acks_late = True


@celery_app.task(name="stageflow.tasks.deliver_notification")
def deliver_notification_task(notification_id: str, correlation_id: str | None = None) -> str:
    with bound_context(correlation_id=correlation_id), SessionLocal() as session:
        notification = session.get(PipelineNotification, uuid.UUID(notification_id))
        if notification is None:
            logger.warning("notification.missing", extra={"notification_id": notification_id})
            return "missing"
        if notification.delivery_status != "Queued":
            return notification.delivery_status
        NotificationDispatcher(deliver_async=False).deliver(session, notification)
        return notification.delivery_status
