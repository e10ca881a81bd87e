from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from stageflow.context import get_correlation_id, set_actor_user_id
from stageflow.core.auth import AuthUser, get_current_user as get_auth_user
from stageflow.core.config import get_settings
from stageflow.core.database import get_db
from stageflow.core.events import ChangeEvent, change_feed
from stageflow.events import FEED_TABLES
from stageflow.pipeline.records import interval_record, project_record
from stageflow.pipeline.schemas import (
    HistoryEntryRead,
    NotificationRead,
    PaymentSummaryRead,
    ProjectCreate,
    ProjectRead,
    QuoteCreate,
    QuoteRead,
    QuoteUpdate,
    StageChange,
    StageDurationRead,
    StageIntervalRead,
    TransitionRead,
)
from stageflow.pipeline.service import ActorUser, PipelineService
from stageflow.pipeline.statuses import ProjectStatus


logger = logging.getLogger("stageflow.pipeline.api")

projects_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.projects"])
quotes_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.quotes"])
notifications_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.notifications"])
changes_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.changes"])
service = PipelineService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


async def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    set_actor_user_id(auth_user.sub)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _project_read(project: Any) -> ProjectRead:
    return ProjectRead.model_validate(project_record(project, include_quotes=True))


@projects_router.post("/projects", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    request: Request,
    dto: ProjectCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProjectRead | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.write")
        return _project_read(service.create_project(db, user, dto))
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_project_create_failed")


@projects_router.get("/projects", response_model=list[ProjectRead])
def list_projects(
    request: Request,
    status_filter: ProjectStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ProjectRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        return [_project_read(project) for project in service.list_projects(db, status_filter=status_filter)]
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_project_list_failed")


@projects_router.get("/projects/{project_id}", response_model=ProjectRead)
def get_project(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProjectRead | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        return _project_read(service.get_project(db, project_id))
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_project_get_failed")


@projects_router.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "pipeline.projects.write")
        service.delete_project(db, user, project_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_project_delete_failed")


@projects_router.post("/projects/{project_id}/quotes", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote(
    request: Request,
    project_id: uuid.UUID,
    dto: QuoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        require_permission(user, "pipeline.quotes.write")
        return QuoteRead.model_validate(service.create_quote(db, user, project_id, dto))
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_quote_create_failed")


@projects_router.post("/projects/{project_id}/recompute", response_model=TransitionRead)
def recompute_project_status(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionRead | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.write")
        return TransitionRead.model_validate(service.recompute(db, user, project_id).to_read())
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_recompute_failed")


@projects_router.post("/projects/{project_id}/stage", response_model=TransitionRead)
def change_project_stage(
    request: Request,
    project_id: uuid.UUID,
    dto: StageChange,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionRead | JSONResponse:
    try:
        require_permission(user, "pipeline.stage.override")
        return TransitionRead.model_validate(service.change_stage(db, user, project_id, dto).to_read())
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_stage_change_failed")


@projects_router.get("/projects/{project_id}/stage-history", response_model=list[StageIntervalRead])
def get_stage_history(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageIntervalRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        return [
            StageIntervalRead.model_validate(interval_record(interval))
            for interval in service.stage_history(db, project_id)
        ]
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_stage_history_failed")


@projects_router.get("/projects/{project_id}/stage-durations", response_model=list[StageDurationRead])
def get_stage_durations(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageDurationRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        return [
            StageDurationRead.model_validate(item, from_attributes=True)
            for item in service.stage_durations(db, project_id)
        ]
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_stage_durations_failed")


@projects_router.get("/projects/{project_id}/timeline", response_model=list[HistoryEntryRead])
def get_timeline(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[HistoryEntryRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        return [HistoryEntryRead.model_validate(entry) for entry in service.timeline(db, project_id)]
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_timeline_failed")


@projects_router.get("/projects/{project_id}/payment-summary", response_model=PaymentSummaryRead)
def get_payment_summary(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PaymentSummaryRead | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        summary, warnings = service.payment_overview(db, project_id)
        return PaymentSummaryRead(
            total_accepted=summary.total_accepted,
            total_paid=summary.total_paid,
            progress=summary.progress,
            all_paid=summary.all_paid,
            has_accepted_quote=summary.has_accepted_quote,
            warnings=warnings,
        )
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_payment_summary_failed")


@quotes_router.patch("/quotes/{quote_id}", response_model=QuoteRead)
def update_quote(
    request: Request,
    quote_id: uuid.UUID,
    dto: QuoteUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        require_permission(user, "pipeline.quotes.write")
        return QuoteRead.model_validate(service.update_quote(db, user, quote_id, dto))
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_quote_update_failed")


@quotes_router.delete("/quotes/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quote(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "pipeline.quotes.write")
        service.delete_quote(db, user, quote_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_quote_delete_failed")


@notifications_router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        return [
            NotificationRead.model_validate(item)
            for item in service.list_notifications(db, user, unread_only=unread_only)
        ]
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_notification_list_failed")


@notifications_router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        require_permission(user, "pipeline.projects.read")
        return NotificationRead.model_validate(service.mark_notification_read(db, user, notification_id))
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_notification_read_failed")


def _parse_tables(raw: str | None) -> list[str] | None:
    if not raw:
        return list(FEED_TABLES)
    tables = [item.strip() for item in raw.split(",") if item.strip()]
    if any(table not in FEED_TABLES for table in tables):
        return None
    return tables


@changes_router.websocket("/ws/changes")
async def stream_changes(
    websocket: WebSocket,
    tables: str | None = Query(default=None),
    auth_user: AuthUser = Depends(get_auth_user),
) -> None:
    if "pipeline.projects.read" not in auth_user.roles:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing permission: pipeline.projects.read")
        return
    requested = _parse_tables(tables)
    if requested is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="unknown table")
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=get_settings().feed_subscriber_queue_size)
    overflowed = asyncio.Event()

    def enqueue(payload: dict[str, Any]) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            overflowed.set()

    def relay(event: ChangeEvent) -> None:
        # Publishers run on worker threads; hand the event to this socket's loop.
        loop.call_soon_threadsafe(enqueue, event.to_dict())

    subscriptions = [change_feed.subscribe(table, relay) for table in requested]

    async def pump() -> None:
        while True:
            await websocket.send_json(await queue.get())

    async def watch() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = {
        asyncio.create_task(pump()),
        asyncio.create_task(watch()),
        asyncio.create_task(overflowed.wait()),
    }
    try:
        await websocket.send_json({"type": "subscribed", "tables": requested})
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        if overflowed.is_set():
            logger.warning("change_feed.relay_overflow", extra={"table": ",".join(requested)})
            await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.info("change_feed.relay_closed", extra={"error": str(task.exception())[:500]})
    finally:
        for task in tasks:
            task.cancel()
        for subscription in subscriptions:
            subscription.unsubscribe()
