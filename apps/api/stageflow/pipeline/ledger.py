from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stageflow.metrics import observe_ledger_reconciliation
from stageflow.pipeline.locks import ProjectLockRegistry, project_locks
from stageflow.pipeline.models import PipelineStageInterval, as_utc, utcnow


logger = logging.getLogger("stageflow.pipeline.ledger")


@dataclass(slots=True)
class LedgerWrite:
    opened: PipelineStageInterval
    closed: list[PipelineStageInterval] = field(default_factory=list)


@dataclass(slots=True)
class StageDuration:
    stage_name: str
    total_seconds: int
    interval_count: int
    is_active: bool


def _seconds_between(started_at: datetime, ended_at: datetime) -> int:
    return max(0, int((as_utc(ended_at) - as_utc(started_at)).total_seconds()))


class StageHistoryLedger:
    """Append-only store of stage intervals.

    Callers own the transaction: ``open_interval`` flushes but never commits, so
    the close of the previous interval and the insert of the next one land in
    the same commit as the status write that caused them.
    """

    def __init__(self, locks: ProjectLockRegistry | None = None) -> None:
        self.locks = locks or project_locks

    def open_interval(
        self,
        session: Session,
        project_id: uuid.UUID,
        stage_name: str,
        at: datetime,
        *,
        changed_by: str | None = None,
    ) -> LedgerWrite:
        with self.locks.hold(project_id):
            closed = self.reconcile_open_intervals(session, project_id)
            current = self.current_interval(session, project_id)
            if current is not None:
                ended_at = max(as_utc(at), as_utc(current.started_at))
                current.ended_at = ended_at
                current.duration_seconds = _seconds_between(current.started_at, ended_at)
                current.updated_at = utcnow()
                closed.append(current)

            opened = PipelineStageInterval(
                project_id=project_id,
                stage_name=stage_name,
                started_at=at,
                ended_at=None,
                changed_by=changed_by,
            )
            session.add(opened)
            session.flush()
            return LedgerWrite(opened=opened, closed=closed)

    def reconcile_open_intervals(self, session: Session, project_id: uuid.UUID) -> list[PipelineStageInterval]:
        with self.locks.hold(project_id):
            open_intervals = self._open_intervals(session, project_id)
            if len(open_intervals) <= 1:
                return []

            latest, stale = open_intervals[0], open_intervals[1:]
            for interval in stale:
                ended_at = max(as_utc(latest.started_at), as_utc(interval.started_at))
                interval.ended_at = ended_at
                interval.duration_seconds = _seconds_between(interval.started_at, ended_at)
                interval.updated_at = utcnow()
            session.flush()

            observe_ledger_reconciliation(len(stale))
            logger.warning(
                "stage_ledger.reconciled",
                extra={
                    "project_id": str(project_id),
                    "closed_interval_ids": [str(item.id) for item in stale],
                },
            )
            return list(stale)

    def current_interval(self, session: Session, project_id: uuid.UUID) -> PipelineStageInterval | None:
        open_intervals = self._open_intervals(session, project_id)
        return open_intervals[0] if open_intervals else None

    def list_intervals(self, session: Session, project_id: uuid.UUID) -> list[PipelineStageInterval]:
        rows = session.scalars(
            select(PipelineStageInterval)
            .where(PipelineStageInterval.project_id == project_id)
            .order_by(PipelineStageInterval.started_at.asc(), PipelineStageInterval.created_at.asc())
        ).all()
        return list(rows)

    def duration_in_stage(
        self,
        session: Session,
        project_id: uuid.UUID,
        stage_name: str,
        *,
        now: datetime | None = None,
    ) -> int:
        reference = now or utcnow()
        rows = session.scalars(
            select(PipelineStageInterval).where(
                and_(
                    PipelineStageInterval.project_id == project_id,
                    PipelineStageInterval.stage_name == stage_name,
                )
            )
        ).all()
        return sum(_seconds_between(row.started_at, row.ended_at or reference) for row in rows)

    def stage_durations(
        self,
        session: Session,
        project_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> list[StageDuration]:
        reference = now or utcnow()
        totals: dict[str, StageDuration] = {}
        for row in self.list_intervals(session, project_id):
            entry = totals.get(row.stage_name)
            if entry is None:
                entry = StageDuration(stage_name=row.stage_name, total_seconds=0, interval_count=0, is_active=False)
                totals[row.stage_name] = entry
            entry.total_seconds += _seconds_between(row.started_at, row.ended_at or reference)
            entry.interval_count += 1
            if row.ended_at is None:
                entry.is_active = True
        return list(totals.values())

    def _open_intervals(self, session: Session, project_id: uuid.UUID) -> list[PipelineStageInterval]:
        rows = session.scalars(
            select(PipelineStageInterval).where(
                and_(
                    PipelineStageInterval.project_id == project_id,
                    PipelineStageInterval.ended_at.is_(None),
                )
            )
        ).all()
        return sorted(rows, key=lambda row: (as_utc(row.started_at), as_utc(row.created_at)), reverse=True)


stage_ledger = StageHistoryLedger()
