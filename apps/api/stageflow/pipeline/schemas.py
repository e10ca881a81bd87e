from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from stageflow.pipeline.statuses import ProjectStatus, QuoteStatus


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    status: ProjectStatus = ProjectStatus.QUALIFICATION
    assigned_user_id: str | None = None
    owner_user_id: str | None = None


class QuoteCreate(BaseModel):
    reference: str | None = None
    amount: Decimal = Field(default=Decimal("0"), ge=0)


class QuoteUpdate(BaseModel):
    status: QuoteStatus | None = None
    invoice_settled: bool | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    reference: str | None = None
    row_version: int | None = None


class StageChange(BaseModel):
    status: ProjectStatus
    row_version: int | None = None


class QuoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: UUID
    reference: str | None
    amount: Decimal
    status: QuoteStatus
    invoice_settled: bool
    decided_at: datetime | None
    settled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    status: ProjectStatus
    status_label: str
    last_known_status: ProjectStatus | None
    assigned_user_id: str | None
    owner_user_id: str | None
    status_changed_at: datetime
    created_at: datetime
    updated_at: datetime
    row_version: int
    quotes: list[QuoteRead] = Field(default_factory=list)


class StageIntervalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: UUID
    stage_name: ProjectStatus
    started_at: datetime
    ended_at: datetime | None
    duration_seconds: int | None
    changed_by: str | None


class StageDurationRead(BaseModel):
    stage_name: ProjectStatus
    label: str
    total_seconds: int
    interval_count: int
    is_active: bool
    display: str
    display_detailed: str


class HistoryEntryRead(BaseModel):
    id: UUID
    project_id: UUID
    entry_type: str
    action: str
    description: str
    actor_user_id: str
    previous_status: ProjectStatus | None
    new_status: ProjectStatus
    correlation_id: str | None
    metadata: dict[str, Any]
    occurred_at: datetime


class TransitionRead(BaseModel):
    project_id: UUID
    outcome: str
    previous_status: ProjectStatus
    status: ProjectStatus
    candidate_status: ProjectStatus | None
    transition_id: UUID | None = None


class PaymentSummaryRead(BaseModel):
    total_accepted: Decimal
    total_paid: Decimal
    progress: int
    all_paid: bool
    has_accepted_quote: bool
    warnings: list[str]


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    recipient_user_id: str
    notification_type: str
    priority: str
    title: str
    message: str
    linked_type: str
    linked_id: UUID
    status_value: str
    delivery_status: str
    delivery_error: str | None
    delivered_at: datetime | None
    read_at: datetime | None
    created_at: datetime
