from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stageflow.core.database import Base
from stageflow.pipeline.statuses import ProjectStatus, QuoteStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PipelineProject(Base):
    __tablename__ = "pipeline_project"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ProjectStatus.QUALIFICATION.value,
        server_default=ProjectStatus.QUALIFICATION.value,
    )
    last_known_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    assigned_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    owner_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    quotes: Mapped[list[PipelineQuote]] = relationship(
        "PipelineQuote",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PipelineQuote.created_at",
    )
    stage_intervals: Mapped[list[PipelineStageInterval]] = relationship(
        "PipelineStageInterval",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PipelineQuote(Base):
    __tablename__ = "pipeline_quote"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_project.id", ondelete="CASCADE"),
        nullable=False,
    )
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=QuoteStatus.PENDING.value,
        server_default=QuoteStatus.PENDING.value,
    )
    invoice_settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    project: Mapped[PipelineProject] = relationship("PipelineProject", back_populates="quotes")


class PipelineStageInterval(Base):
    __tablename__ = "pipeline_stage_interval"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_project.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_name: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    project: Mapped[PipelineProject] = relationship("PipelineProject", back_populates="stage_intervals")


class PipelineHistoryEntry(Base):
    __tablename__ = "pipeline_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False, default="statut", server_default="statut")
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entry_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PipelineNotification(Base):
    __tablename__ = "pipeline_notification"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recipient_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium", server_default="medium")
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    linked_type: Mapped[str] = mapped_column(String(32), nullable=False, default="project", server_default="project")
    linked_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    status_value: Mapped[str] = mapped_column(String(32), nullable=False)
    transition_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    delivery_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="Queued",
        server_default="Queued",
    )
    delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "recipient_user_id",
            "linked_id",
            "status_value",
            name="uq_pipeline_notification_recipient_project_status",
        ),
    )


Index("ix_pipeline_project_status", PipelineProject.status)
Index("ix_pipeline_project_assigned_user_id", PipelineProject.assigned_user_id)
Index("ix_pipeline_quote_project_id", PipelineQuote.project_id)
Index("ix_pipeline_stage_interval_project_open", PipelineStageInterval.project_id, PipelineStageInterval.ended_at)
Index("ix_pipeline_stage_interval_project_stage", PipelineStageInterval.project_id, PipelineStageInterval.stage_name)
Index("ix_pipeline_history_project_occurred", PipelineHistoryEntry.project_id, PipelineHistoryEntry.occurred_at)
Index(
    "ix_pipeline_notification_recipient_read_created",
    PipelineNotification.recipient_user_id,
    PipelineNotification.read_at,
    PipelineNotification.created_at,
)
