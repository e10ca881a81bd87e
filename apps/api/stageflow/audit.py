from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from stageflow.context import get_correlation_id
from stageflow.pipeline.models import PipelineHistoryEntry, utcnow
from stageflow.pipeline.statuses import ProjectStatus, status_label

audit_entries: list[dict[str, Any]] = []


def describe_status_change(previous_status: ProjectStatus | str | None, new_status: ProjectStatus | str) -> str:
    return f'Statut changé de "{status_label(previous_status)}" vers "{status_label(new_status)}"'


def record_transition(
    session: Session,
    *,
    project_id: uuid.UUID,
    previous_status: ProjectStatus | str | None,
    new_status: ProjectStatus | str,
    actor_user_id: str,
    action: str = "stage.derived",
    occurred_at: datetime | None = None,
    correlation_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> PipelineHistoryEntry:
    resolved_correlation_id = correlation_id or get_correlation_id()
    previous_value = ProjectStatus(previous_status).value if previous_status is not None else None
    new_value = ProjectStatus(new_status).value
    entry = PipelineHistoryEntry(
        project_id=project_id,
        entry_type="statut",
        action=action,
        description=describe_status_change(previous_value, new_value),
        actor_user_id=actor_user_id,
        previous_status=previous_value,
        new_status=new_value,
        correlation_id=resolved_correlation_id,
        entry_metadata=metadata or {},
        occurred_at=occurred_at or utcnow(),
    )
    session.add(entry)
    session.flush()
    audit_entries.append(
        {
            "id": str(entry.id),
            "actor_user_id": actor_user_id,
            "entity_type": "project",
            "entity_id": str(project_id),
            "action": action,
            "before": {"status": previous_value},
            "after": {"status": new_value},
            "correlation_id": resolved_correlation_id,
            "occurred_at": entry.occurred_at.isoformat(),
        }
    )
    return entry
