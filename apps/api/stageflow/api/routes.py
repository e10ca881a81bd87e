import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stageflow.core.auth import AuthUser, get_current_user
from stageflow.core.config import get_settings
from stageflow.core.database import get_db
from stageflow.core.events import change_feed
from stageflow.events import FEED_TABLES
from stageflow.metrics import generate_metrics_payload, metrics_content_type
from stageflow.pipeline.api import changes_router, notifications_router, projects_router, quotes_router

logger = logging.getLogger("stageflow.system")

router = APIRouter()
for pipeline_router in (projects_router, quotes_router, notifications_router, changes_router):
    router.include_router(pipeline_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/health/ready", tags=["system"], response_model=None)
def readiness(db: Session = Depends(get_db)) -> dict[str, object] | JSONResponse:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("system.database_unavailable", extra={"error": str(exc)[:500]})
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "unavailable"})
    return {
        "status": "ready",
        "feed_subscribers": {table: change_feed.subscriber_count(table) for table in FEED_TABLES},
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
