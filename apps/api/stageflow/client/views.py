from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from stageflow.pipeline.statuses import ProjectStatus, QuoteStatus


class EntityState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    LOCAL_ONLY = "local_only"
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    STALE = "stale"


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str) and value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class QuoteView:
    id: str
    project_id: str
    status: QuoteStatus
    invoice_settled: bool
    amount: Decimal
    updated_at: datetime
    reference: str | None = None
    row_version: int = 1

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> QuoteView:
        return cls(
            id=str(record["id"]),
            project_id=str(record["project_id"]),
            status=QuoteStatus(record.get("status") or QuoteStatus.PENDING.value),
            invoice_settled=bool(record.get("invoice_settled", False)),
            amount=Decimal(str(record.get("amount") or "0")),
            updated_at=parse_timestamp(record.get("updated_at")) or _EPOCH,
            reference=record.get("reference"),
            row_version=int(record.get("row_version") or 1),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "invoice_settled": self.invoice_settled,
            "amount": str(self.amount),
            "updated_at": _iso(self.updated_at),
            "reference": self.reference,
            "row_version": self.row_version,
        }


@dataclass
class ProjectView:
    id: str
    name: str
    status: ProjectStatus
    updated_at: datetime
    status_changed_at: datetime
    quotes: dict[str, QuoteView] = field(default_factory=dict)
    history: dict[str, dict[str, Any]] = field(default_factory=dict)
    assigned_user_id: str | None = None
    row_version: int = 1
    state: EntityState = EntityState.UNLOADED

    @classmethod
    def from_record(cls, record: dict[str, Any], *, state: EntityState = EntityState.LOADED) -> ProjectView:
        updated_at = parse_timestamp(record.get("updated_at")) or _EPOCH
        view = cls(
            id=str(record["id"]),
            name=str(record.get("name") or ""),
            status=ProjectStatus(record["status"]),
            updated_at=updated_at,
            status_changed_at=parse_timestamp(record.get("status_changed_at")) or updated_at,
            assigned_user_id=record.get("assigned_user_id"),
            row_version=int(record.get("row_version") or 1),
            state=state,
        )
        for item in record.get("quotes") or []:
            quote = QuoteView.from_record(item)
            view.quotes[quote.id] = quote
        for item in record.get("history") or []:
            view.history[str(item["id"])] = dict(item)
        return view

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "updated_at": _iso(self.updated_at),
            "status_changed_at": _iso(self.status_changed_at),
            "assigned_user_id": self.assigned_user_id,
            "row_version": self.row_version,
            "quotes": [quote.to_record() for quote in self.quotes.values()],
            "history": self.timeline(),
        }

    def timeline(self) -> list[dict[str, Any]]:
        return sorted(self.history.values(), key=lambda item: str(item.get("occurred_at") or ""), reverse=True)

    def copy(self) -> ProjectView:
        return copy.deepcopy(self)
