from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from stageflow.pipeline.statuses import POST_ACCEPTANCE_STATUSES, ProjectStatus, QuoteStatus


class PricedQuote(Protocol):
    @property
    def status(self) -> str: ...

    @property
    def invoice_settled(self) -> bool: ...

    @property
    def amount(self) -> Decimal: ...


@dataclass(slots=True)
class PaymentSummary:
    total_accepted: Decimal
    total_paid: Decimal
    progress: int
    all_paid: bool
    has_accepted_quote: bool


def _accepted(quotes: Iterable[PricedQuote]) -> list[PricedQuote]:
    return [quote for quote in quotes if QuoteStatus(quote.status) is QuoteStatus.ACCEPTED]


def payment_summary(quotes: Sequence[PricedQuote]) -> PaymentSummary:
    accepted = _accepted(quotes)
    total_accepted = sum((Decimal(quote.amount) for quote in accepted), Decimal("0"))
    total_paid = sum((Decimal(quote.amount) for quote in accepted if quote.invoice_settled), Decimal("0"))
    progress = (
        int((total_paid / total_accepted * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)) if total_accepted > 0 else 0
    )
    return PaymentSummary(
        total_accepted=total_accepted,
        total_paid=total_paid,
        progress=progress,
        all_paid=bool(accepted) and all(quote.invoice_settled for quote in accepted),
        has_accepted_quote=bool(accepted),
    )


def quote_warnings(status: ProjectStatus | str, quotes: Sequence[PricedQuote]) -> list[str]:
    if not quotes:
        return ["Aucun devis créé pour ce projet"]

    project_status = ProjectStatus(status)
    warnings: list[str] = []
    accepted = _accepted(quotes)

    if all(QuoteStatus(quote.status) is QuoteStatus.REFUSED for quote in quotes):
        warnings.append("Tous les devis ont été refusés - le projet devrait être marqué comme 'Refusé'")

    if project_status in POST_ACCEPTANCE_STATUSES and not accepted:
        warnings.append("Le projet avance sans devis accepté")

    unpaid = [quote for quote in accepted if not quote.invoice_settled]
    if project_status is ProjectStatus.DELIVERED and unpaid:
        warnings.append(f"{len(unpaid)} facture(s) non réglée(s) - vérifiez avant de finaliser")

    return warnings


def can_move_to_status(quotes: Sequence[PricedQuote], target: ProjectStatus | str) -> tuple[bool, str | None]:
    target_status = ProjectStatus(target)
    accepted = _accepted(quotes)
    all_paid = bool(accepted) and all(quote.invoice_settled for quote in accepted)

    if target_status is ProjectStatus.DELIVERED and accepted and not all_paid:
        return False, "Toutes les factures des devis acceptés doivent être réglées avant de marquer le projet comme terminé."

    if target_status in POST_ACCEPTANCE_STATUSES and not accepted:
        return False, "Au moins un devis doit être accepté pour avancer le projet."

    return True, None
