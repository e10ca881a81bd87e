from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.pipeline.ledger import LedgerWrite, StageHistoryLedger, stage_ledger
from stageflow.pipeline.models import PipelineHistoryEntry, PipelineProject, PipelineQuote
from stageflow.pipeline.statuses import ProjectStatus


class WriteOutcome(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


class PipelineRepository:
    """SQL persistence for the transition path.

    Nothing here commits; the service decides where the transaction ends.
    """

    def __init__(self, ledger: StageHistoryLedger | None = None) -> None:
        self.ledger = ledger or stage_ledger

    def get_project(self, session: Session, project_id: uuid.UUID, *, for_update: bool = False) -> PipelineProject | None:
        stmt = select(PipelineProject).where(PipelineProject.id == project_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return session.scalar(stmt)

    def read_quotes(self, session: Session, project_id: uuid.UUID) -> list[PipelineQuote]:
        return list(
            session.scalars(
                select(PipelineQuote)
                .where(PipelineQuote.project_id == project_id)
                .order_by(PipelineQuote.created_at.asc(), PipelineQuote.id.asc())
            )
        )

    def write_project_status(
        self,
        session: Session,
        project: PipelineProject,
        new_status: ProjectStatus,
        at: datetime,
        *,
        expected_row_version: int,
    ) -> WriteOutcome:
        previous_status = project.status
        result = session.execute(
            update(PipelineProject)
            .where(
                and_(
                    PipelineProject.id == project.id,
                    PipelineProject.row_version == expected_row_version,
                )
            )
            .values(
                status=new_status.value,
                last_known_status=previous_status,
                status_changed_at=at,
                updated_at=at,
                row_version=PipelineProject.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return WriteOutcome.CONFLICT

        session.refresh(project)
        return WriteOutcome.OK

    def append_audit_entry(
        self,
        session: Session,
        *,
        project_id: uuid.UUID,
        previous_status: str | None,
        new_status: str,
        actor_user_id: str,
        action: str,
        occurred_at: datetime,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineHistoryEntry:
        return audit.record_transition(
            session,
            project_id=project_id,
            previous_status=previous_status,
            new_status=new_status,
            actor_user_id=actor_user_id,
            action=action,
            occurred_at=occurred_at,
            correlation_id=correlation_id,
            metadata=metadata,
        )

    def upsert_stage_interval(
        self,
        session: Session,
        project_id: uuid.UUID,
        stage_name: str,
        at: datetime,
        *,
        changed_by: str | None = None,
    ) -> LedgerWrite:
        return self.ledger.open_interval(session, project_id, stage_name, at, changed_by=changed_by)

    def list_history(self, session: Session, project_id: uuid.UUID) -> list[PipelineHistoryEntry]:
        return list(
            session.scalars(
                select(PipelineHistoryEntry)
                .where(PipelineHistoryEntry.project_id == project_id)
                .order_by(PipelineHistoryEntry.occurred_at.desc(), PipelineHistoryEntry.id.desc())
            )
        )
