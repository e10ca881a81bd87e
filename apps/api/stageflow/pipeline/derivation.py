"""Quote-driven status derivation and the forward-only progression guard.

``derive_candidate_status`` is a pure function of the quote set. ``guard_transition``
decides whether a candidate may replace the current status using the fixed
order in :mod:`stageflow.pipeline.statuses`. ``evaluate_transition`` chains the
two and is what both the server and the client reconciliation store call.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from stageflow.pipeline.statuses import ACCEPTED_POSITION, ProjectStatus, QuoteStatus, position


class QuoteLike(Protocol):
    @property
    def status(self) -> str: ...

    @property
    def invoice_settled(self) -> bool: ...


class GuardOutcome(str, Enum):
    ADVANCE = "advanced"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    NO_CANDIDATE = "no_candidate"


@dataclass(frozen=True, slots=True)
class GuardDecision:
    outcome: GuardOutcome
    current: ProjectStatus
    candidate: ProjectStatus | None

    @property
    def advanced(self) -> bool:
        return self.outcome is GuardOutcome.ADVANCE

    @property
    def new_status(self) -> ProjectStatus | None:
        return self.candidate if self.advanced else None


def derive_candidate_status(quotes: Iterable[QuoteLike]) -> ProjectStatus | None:
    quote_list = list(quotes)
    if not quote_list:
        return None

    statuses = [QuoteStatus(quote.status) for quote in quote_list]
    accepted = [quote for quote, quote_status in zip(quote_list, statuses) if quote_status is QuoteStatus.ACCEPTED]
    if accepted:
        if all(quote.invoice_settled for quote in accepted):
            return ProjectStatus.INVOICE_SETTLED
        return ProjectStatus.ACCEPTED

    if all(quote_status is QuoteStatus.REFUSED for quote_status in statuses):
        return ProjectStatus.REFUSED

    return None


def guard_transition(current: ProjectStatus | str, candidate: ProjectStatus | str | None) -> GuardDecision:
    current_status = ProjectStatus(current)
    if candidate is None:
        return GuardDecision(GuardOutcome.NO_CANDIDATE, current_status, None)

    candidate_status = ProjectStatus(candidate)
    if candidate_status is current_status:
        return GuardDecision(GuardOutcome.UNCHANGED, current_status, candidate_status)

    current_position = position(current_status)
    if candidate_status is ProjectStatus.REFUSED:
        # Unanimous refusal cannot pull a project back out of the accepted half of the chain.
        if current_position >= ACCEPTED_POSITION:
            return GuardDecision(GuardOutcome.REJECTED, current_status, candidate_status)
        return GuardDecision(GuardOutcome.ADVANCE, current_status, candidate_status)

    candidate_position = position(candidate_status)
    if current_position >= ACCEPTED_POSITION:
        # Past acceptance only a strictly later stage is taken.
        if candidate_position > current_position:
            return GuardDecision(GuardOutcome.ADVANCE, current_status, candidate_status)
        if candidate_position == current_position:
            return GuardDecision(GuardOutcome.UNCHANGED, current_status, candidate_status)
        return GuardDecision(GuardOutcome.REJECTED, current_status, candidate_status)

    if candidate_position < current_position:
        return GuardDecision(GuardOutcome.REJECTED, current_status, candidate_status)
    if candidate_position == current_position:
        return GuardDecision(GuardOutcome.UNCHANGED, current_status, candidate_status)
    return GuardDecision(GuardOutcome.ADVANCE, current_status, candidate_status)


def evaluate_transition(current: ProjectStatus | str, quotes: Iterable[QuoteLike]) -> GuardDecision:
    return guard_transition(current, derive_candidate_status(quotes))
