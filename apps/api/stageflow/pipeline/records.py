from __future__ import annotations

from datetime import datetime
from typing import Any

from stageflow.pipeline.models import (
    PipelineHistoryEntry,
    PipelineProject,
    PipelineQuote,
    PipelineStageInterval,
    as_utc,
)
from stageflow.pipeline.statuses import status_label


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def quote_record(quote: PipelineQuote) -> dict[str, Any]:
    return {
        "id": str(quote.id),
        "project_id": str(quote.project_id),
        "reference": quote.reference,
        "amount": str(quote.amount),
        "status": quote.status,
        "invoice_settled": bool(quote.invoice_settled),
        "decided_at": _iso(quote.decided_at),
        "settled_at": _iso(quote.settled_at),
        "created_at": _iso(quote.created_at),
        "updated_at": _iso(quote.updated_at),
        "row_version": quote.row_version,
    }


def project_record(project: PipelineProject, *, include_quotes: bool = False) -> dict[str, Any]:
    record = {
        "id": str(project.id),
        "name": project.name,
        "status": project.status,
        "status_label": status_label(project.status),
        "last_known_status": project.last_known_status,
        "assigned_user_id": project.assigned_user_id,
        "owner_user_id": project.owner_user_id,
        "status_changed_at": _iso(project.status_changed_at),
        "created_at": _iso(project.created_at),
        "updated_at": _iso(project.updated_at),
        "row_version": project.row_version,
    }
    if include_quotes:
        record["quotes"] = [quote_record(quote) for quote in project.quotes]
    return record


def interval_record(interval: PipelineStageInterval) -> dict[str, Any]:
    return {
        "id": str(interval.id),
        "project_id": str(interval.project_id),
        "stage_name": interval.stage_name,
        "started_at": _iso(interval.started_at),
        "ended_at": _iso(interval.ended_at),
        "duration_seconds": interval.duration_seconds,
        "changed_by": interval.changed_by,
        "created_at": _iso(interval.created_at),
    }


def history_record(entry: PipelineHistoryEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "project_id": str(entry.project_id),
        "entry_type": entry.entry_type,
        "action": entry.action,
        "description": entry.description,
        "actor_user_id": entry.actor_user_id,
        "previous_status": entry.previous_status,
        "new_status": entry.new_status,
        "correlation_id": entry.correlation_id,
        "metadata": dict(entry.entry_metadata or {}),
        "occurred_at": _iso(entry.occurred_at),
    }
