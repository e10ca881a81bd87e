from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, delete, select, update
from sqlalchemy.orm import Session

from stageflow.core.config import get_settings
from stageflow.core.events import ChangeFeed
from stageflow.events import HISTORY_TABLE, PROJECTS_TABLE, QUOTES_TABLE, STAGE_HISTORY_TABLE, publish_change
from stageflow.metrics import observe_side_effect_failure, observe_transition, observe_transition_conflict
from stageflow.otel import transition_span
from stageflow.pipeline.derivation import GuardDecision, GuardOutcome, evaluate_transition
from stageflow.pipeline.durations import format_duration_detailed, stage_display_duration
from stageflow.pipeline.ledger import LedgerWrite, StageDuration
from stageflow.pipeline.locks import ProjectLockRegistry, project_locks
from stageflow.pipeline.models import (
    PipelineHistoryEntry,
    PipelineNotification,
    PipelineProject,
    PipelineQuote,
    PipelineStageInterval,
    utcnow,
)
from stageflow.pipeline.notifications import NotificationDispatcher, build_intents
from stageflow.pipeline.payments import PaymentSummary, can_move_to_status, payment_summary, quote_warnings
from stageflow.pipeline.records import history_record, interval_record, project_record, quote_record
from stageflow.pipeline.repository import PipelineRepository, WriteOutcome
from stageflow.pipeline.schemas import ProjectCreate, QuoteCreate, QuoteUpdate, StageChange
from stageflow.pipeline.statuses import ProjectStatus, QuoteStatus, status_label


logger = logging.getLogger("stageflow.pipeline")

DERIVED_ACTION = "stage.derived"
MANUAL_ACTION = "stage.manual_override"
OVERRIDDEN = "overridden"


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


@dataclass(slots=True)
class Transition:
    transition_id: uuid.UUID
    project_id: uuid.UUID
    previous_status: ProjectStatus
    new_status: ProjectStatus
    occurred_at: datetime
    actor_user_id: str
    source: str
    action: str


@dataclass(slots=True)
class TransitionResult:
    project_id: uuid.UUID
    outcome: str
    previous_status: ProjectStatus
    status: ProjectStatus
    candidate: ProjectStatus | None
    transition: Transition | None = None
    ledger_write: LedgerWrite | None = None

    @property
    def changed(self) -> bool:
        return self.transition is not None

    def to_read(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "outcome": self.outcome,
            "previous_status": self.previous_status,
            "status": self.status,
            "candidate_status": self.candidate,
            "transition_id": self.transition.transition_id if self.transition else None,
        }


@dataclass
class StageDurationView:
    stage_name: str
    label: str
    total_seconds: int
    interval_count: int
    is_active: bool
    display: str
    display_detailed: str


class PipelineService:
    def __init__(
        self,
        *,
        repository: PipelineRepository | None = None,
        dispatcher: NotificationDispatcher | None = None,
        locks: ProjectLockRegistry | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self.repository = repository or PipelineRepository()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.locks = locks or project_locks
        self.feed = feed

    # Projects

    def create_project(self, session: Session, actor_user: ActorUser, dto: ProjectCreate) -> PipelineProject:
        now = utcnow()
        project = PipelineProject(
            name=dto.name.strip(),
            status=dto.status.value,
            assigned_user_id=dto.assigned_user_id,
            owner_user_id=dto.owner_user_id or actor_user.user_id,
            status_changed_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(project)
        session.flush()
        ledger_write = self.repository.upsert_stage_interval(
            session,
            project.id,
            project.status,
            now,
            changed_by=actor_user.user_id,
        )
        session.commit()
        session.refresh(project)

        self._publish(PROJECTS_TABLE, "insert", project_record(project))
        self._publish(STAGE_HISTORY_TABLE, "insert", interval_record(ledger_write.opened))
        return project

    def list_projects(self, session: Session, *, status_filter: ProjectStatus | None = None) -> list[PipelineProject]:
        stmt = select(PipelineProject)
        if status_filter is not None:
            stmt = stmt.where(PipelineProject.status == status_filter.value)
        return list(session.scalars(stmt.order_by(PipelineProject.created_at.desc(), PipelineProject.id.asc())))

    def get_project(self, session: Session, project_id: uuid.UUID) -> PipelineProject:
        project = self.repository.get_project(session, project_id)
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project not found")
        return project

    def delete_project(self, session: Session, actor_user: ActorUser, project_id: uuid.UUID) -> None:
        project = self.get_project(session, project_id)
        record = project_record(project)
        quote_records = [quote_record(quote) for quote in project.quotes]
        intervals = self.repository.ledger.list_intervals(session, project_id)
        interval_records = [interval_record(item) for item in intervals]
        session.execute(delete(PipelineStageInterval).where(PipelineStageInterval.project_id == project_id))
        session.delete(project)
        session.commit()

        for item in quote_records:
            self._publish(QUOTES_TABLE, "delete", item)
        for item in interval_records:
            self._publish(STAGE_HISTORY_TABLE, "delete", item)
        self._publish(PROJECTS_TABLE, "delete", record)
        logger.info("pipeline.project_deleted", extra={"project_id": str(project_id)})

    # Quotes

    def create_quote(
        self,
        session: Session,
        actor_user: ActorUser,
        project_id: uuid.UUID,
        dto: QuoteCreate,
    ) -> PipelineQuote:
        self.get_project(session, project_id)
        quote = PipelineQuote(
            project_id=project_id,
            reference=dto.reference,
            amount=dto.amount,
            status=QuoteStatus.PENDING.value,
            invoice_settled=False,
        )
        session.add(quote)
        session.commit()
        session.refresh(quote)

        self._publish(QUOTES_TABLE, "insert", quote_record(quote))
        self.derive_after_write(session, actor_user, project_id, source="quote.create")
        return quote

    def get_quote(self, session: Session, quote_id: uuid.UUID) -> PipelineQuote:
        quote = session.scalar(select(PipelineQuote).where(PipelineQuote.id == quote_id))
        if quote is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="quote not found")
        return quote

    def update_quote(
        self,
        session: Session,
        actor_user: ActorUser,
        quote_id: uuid.UUID,
        dto: QuoteUpdate,
    ) -> PipelineQuote:
        quote = self.get_quote(session, quote_id)
        if dto.row_version is not None and dto.row_version != quote.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        now = utcnow()
        changes: dict[str, Any] = {}
        current_status = QuoteStatus(quote.status)
        effective_status = current_status

        if dto.status is not None and dto.status is not current_status:
            if dto.status is QuoteStatus.PENDING:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="quote cannot return to pending",
                )
            if current_status is not QuoteStatus.PENDING:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="quote already decided")
            changes["status"] = dto.status.value
            changes["decided_at"] = now
            effective_status = dto.status

        if dto.invoice_settled is not None and dto.invoice_settled != quote.invoice_settled:
            if effective_status is not QuoteStatus.ACCEPTED:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="invoice_settled requires an accepted quote",
                )
            changes["invoice_settled"] = dto.invoice_settled
            changes["settled_at"] = now if dto.invoice_settled else None

        if dto.amount is not None and Decimal(dto.amount) != Decimal(quote.amount):
            changes["amount"] = dto.amount
        if dto.reference is not None and dto.reference != quote.reference:
            changes["reference"] = dto.reference

        if not changes:
            return quote

        changes["updated_at"] = now
        changes["row_version"] = PipelineQuote.row_version + 1
        result = session.execute(
            update(PipelineQuote)
            .where(and_(PipelineQuote.id == quote.id, PipelineQuote.row_version == quote.row_version))
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        session.commit()
        session.refresh(quote)

        self._publish(QUOTES_TABLE, "update", quote_record(quote))
        self.derive_after_write(session, actor_user, quote.project_id, source="quote.update")
        return quote

    def delete_quote(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> None:
        quote = self.get_quote(session, quote_id)
        project_id = quote.project_id
        record = quote_record(quote)
        session.delete(quote)
        session.commit()

        self._publish(QUOTES_TABLE, "delete", record)
        self.derive_after_write(session, actor_user, project_id, source="quote.delete")

    # Transitions

    def derive_after_write(
        self,
        session: Session,
        actor_user: ActorUser,
        project_id: uuid.UUID,
        *,
        source: str,
    ) -> TransitionResult | None:
        """Run derivation after a committed quote write.

        The quote write is already durable, so nothing raised here reaches the
        caller; a failed pass is healed by ``recompute`` or the next quote write.
        """
        try:
            return self.recompute(session, actor_user, project_id, source=source)
        except Exception as exc:
            session.rollback()
            observe_side_effect_failure("transition")
            logger.exception(
                "pipeline.transition_failed",
                extra={"project_id": str(project_id), "error": str(exc)[:500]},
            )
            return None

    def recompute(
        self,
        session: Session,
        actor_user: ActorUser,
        project_id: uuid.UUID,
        *,
        source: str = "recompute",
    ) -> TransitionResult:
        started = time.perf_counter()
        with transition_span(project_id, source) as span:
            result = self._apply_derived_status(session, actor_user, project_id)
            span.set_attribute("pipeline.outcome", result.outcome)

        observe_transition(source, result.outcome, time.perf_counter() - started)
        if result.transition is not None:
            self._after_transition(session, actor_user, result)
        return result

    def _apply_derived_status(self, session: Session, actor_user: ActorUser, project_id: uuid.UUID) -> TransitionResult:
        max_attempts = max(1, get_settings().transition_max_retries)
        with self.locks.hold(project_id):
            for attempt in range(1, max_attempts + 1):
                project = self.repository.get_project(session, project_id, for_update=True)
                if project is None:
                    session.rollback()
                    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project not found")

                quotes = self.repository.read_quotes(session, project_id)
                decision = evaluate_transition(project.status, quotes)
                if not decision.advanced:
                    session.rollback()
                    self._log_decision(project_id, decision)
                    return TransitionResult(
                        project_id=project_id,
                        outcome=decision.outcome.value,
                        previous_status=decision.current,
                        status=decision.current,
                        candidate=decision.candidate,
                    )

                new_status = decision.candidate
                if new_status is None:
                    raise RuntimeError("advanced decision without a candidate status")
                at = utcnow()
                outcome = self.repository.write_project_status(
                    session,
                    project,
                    new_status,
                    at,
                    expected_row_version=project.row_version,
                )
                if outcome is WriteOutcome.CONFLICT:
                    session.rollback()
                    observe_transition_conflict()
                    logger.warning(
                        "pipeline.transition_conflict",
                        extra={"project_id": str(project_id), "attempt": attempt},
                    )
                    continue

                ledger_write = self.repository.upsert_stage_interval(
                    session,
                    project_id,
                    new_status.value,
                    at,
                    changed_by=actor_user.user_id,
                )
                session.commit()
                logger.info(
                    "pipeline.transition_applied",
                    extra={
                        "project_id": str(project_id),
                        "from_status": decision.current.value,
                        "to_status": new_status.value,
                        "outcome": decision.outcome.value,
                    },
                )
                return TransitionResult(
                    project_id=project_id,
                    outcome=decision.outcome.value,
                    previous_status=decision.current,
                    status=new_status,
                    candidate=new_status,
                    transition=Transition(
                        transition_id=uuid.uuid4(),
                        project_id=project_id,
                        previous_status=decision.current,
                        new_status=new_status,
                        occurred_at=at,
                        actor_user_id=actor_user.user_id,
                        source="derived",
                        action=DERIVED_ACTION,
                    ),
                    ledger_write=ledger_write,
                )

        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="project status write conflict")

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        project_id: uuid.UUID,
        dto: StageChange,
    ) -> TransitionResult:
        target = dto.status
        with self.locks.hold(project_id):
            project = self.repository.get_project(session, project_id, for_update=True)
            if project is None:
                session.rollback()
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project not found")
            if dto.row_version is not None and dto.row_version != project.row_version:
                session.rollback()
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

            current = ProjectStatus(project.status)
            if target is current:
                session.rollback()
                observe_transition("manual", GuardOutcome.UNCHANGED.value)
                return TransitionResult(
                    project_id=project_id,
                    outcome=GuardOutcome.UNCHANGED.value,
                    previous_status=current,
                    status=current,
                    candidate=target,
                )

            allowed, reason = can_move_to_status(self.repository.read_quotes(session, project_id), target)
            if not allowed:
                session.rollback()
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=reason)

            at = utcnow()
            outcome = self.repository.write_project_status(
                session,
                project,
                target,
                at,
                expected_row_version=project.row_version,
            )
            if outcome is WriteOutcome.CONFLICT:
                session.rollback()
                observe_transition_conflict()
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

            ledger_write = self.repository.upsert_stage_interval(
                session,
                project_id,
                target.value,
                at,
                changed_by=actor_user.user_id,
            )
            session.commit()

        logger.info(
            "pipeline.stage_overridden",
            extra={"project_id": str(project_id), "from_status": current.value, "to_status": target.value},
        )
        observe_transition("manual", OVERRIDDEN)
        result = TransitionResult(
            project_id=project_id,
            outcome=OVERRIDDEN,
            previous_status=current,
            status=target,
            candidate=target,
            transition=Transition(
                transition_id=uuid.uuid4(),
                project_id=project_id,
                previous_status=current,
                new_status=target,
                occurred_at=at,
                actor_user_id=actor_user.user_id,
                source="manual",
                action=MANUAL_ACTION,
            ),
            ledger_write=ledger_write,
        )
        self._after_transition(session, actor_user, result)
        return result

    def _log_decision(self, project_id: uuid.UUID, decision: GuardDecision) -> None:
        if decision.outcome is GuardOutcome.REJECTED:
            logger.info(
                "pipeline.regression_rejected",
                extra={
                    "project_id": str(project_id),
                    "from_status": decision.current.value,
                    "candidate_status": decision.candidate.value if decision.candidate else None,
                    "outcome": decision.outcome.value,
                },
            )
        else:
            logger.debug(
                "pipeline.transition_skipped",
                extra={"project_id": str(project_id), "outcome": decision.outcome.value},
            )

    def _after_transition(self, session: Session, actor_user: ActorUser, result: TransitionResult) -> None:
        transition = result.transition
        if transition is None:
            raise RuntimeError("side effects requested for a result without a transition")

        entry: PipelineHistoryEntry | None = None
        try:
            entry = self.repository.append_audit_entry(
                session,
                project_id=transition.project_id,
                previous_status=transition.previous_status.value,
                new_status=transition.new_status.value,
                actor_user_id=transition.actor_user_id,
                action=transition.action,
                occurred_at=transition.occurred_at,
                correlation_id=actor_user.correlation_id,
                metadata={"transition_id": str(transition.transition_id), "source": transition.source},
            )
            session.commit()
        except Exception as exc:
            session.rollback()
            entry = None
            observe_side_effect_failure("audit")
            logger.exception(
                "pipeline.audit_failed",
                extra={"project_id": str(transition.project_id), "error": str(exc)[:500]},
            )

        try:
            project = self.repository.get_project(session, transition.project_id)
            if project is not None:
                self._publish(PROJECTS_TABLE, "update", project_record(project))
            if result.ledger_write is not None:
                for interval in result.ledger_write.closed:
                    self._publish(STAGE_HISTORY_TABLE, "update", interval_record(interval))
                self._publish(STAGE_HISTORY_TABLE, "insert", interval_record(result.ledger_write.opened))
            if entry is not None:
                self._publish(HISTORY_TABLE, "insert", history_record(entry))
        except Exception as exc:
            observe_side_effect_failure("feed")
            logger.exception(
                "pipeline.publish_failed",
                extra={"project_id": str(transition.project_id), "error": str(exc)[:500]},
            )

        if not get_settings().notifications_enabled:
            return
        try:
            project = self.repository.get_project(session, transition.project_id)
            if project is None:
                return
            intents = build_intents(
                project,
                previous_status=transition.previous_status.value,
                new_status=transition.new_status.value,
                transition_id=transition.transition_id,
                actor_user_id=transition.actor_user_id,
            )
            self.dispatcher.dispatch(session, intents)
        except Exception as exc:
            session.rollback()
            observe_side_effect_failure("notification")
            logger.exception(
                "pipeline.notification_failed",
                extra={"project_id": str(transition.project_id), "error": str(exc)[:500]},
            )

    def _publish(self, table: str, event_type: str, record: dict[str, Any]) -> None:
        publish_change(table, event_type, record, feed=self.feed)  # type: ignore[arg-type]

    # Read models

    def stage_history(self, session: Session, project_id: uuid.UUID) -> list[PipelineStageInterval]:
        self.get_project(session, project_id)
        return self.repository.ledger.list_intervals(session, project_id)

    def stage_durations(
        self,
        session: Session,
        project_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> list[StageDurationView]:
        self.get_project(session, project_id)
        durations: list[StageDuration] = self.repository.ledger.stage_durations(session, project_id, now=now)
        return [
            StageDurationView(
                stage_name=item.stage_name,
                label=status_label(item.stage_name),
                total_seconds=item.total_seconds,
                interval_count=item.interval_count,
                is_active=item.is_active,
                display=stage_display_duration(item.total_seconds, is_active=item.is_active),
                display_detailed=format_duration_detailed(item.total_seconds),
            )
            for item in durations
        ]

    def timeline(self, session: Session, project_id: uuid.UUID) -> list[dict[str, Any]]:
        self.get_project(session, project_id)
        return [history_record(entry) for entry in self.repository.list_history(session, project_id)]

    def payment_overview(self, session: Session, project_id: uuid.UUID) -> tuple[PaymentSummary, list[str]]:
        project = self.get_project(session, project_id)
        quotes = self.repository.read_quotes(session, project_id)
        return payment_summary(quotes), quote_warnings(project.status, quotes)

    # Notifications

    def list_notifications(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        unread_only: bool = False,
    ) -> list[PipelineNotification]:
        return self.dispatcher.list_for_user(session, actor_user.user_id, unread_only=unread_only)

    def mark_notification_read(
        self,
        session: Session,
        actor_user: ActorUser,
        notification_id: uuid.UUID,
    ) -> PipelineNotification:
        notification = session.scalar(
            select(PipelineNotification).where(
                and_(
                    PipelineNotification.id == notification_id,
                    PipelineNotification.recipient_user_id == actor_user.user_id,
                )
            )
        )
        if notification is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
        return self.dispatcher.mark_read(session, notification)
