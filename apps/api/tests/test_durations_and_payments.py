from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import pytest

from stageflow.pipeline.durations import format_duration, format_duration_detailed, stage_display_duration
from stageflow.pipeline.payments import can_move_to_status, payment_summary, quote_warnings
from stageflow.pipeline.statuses import ProjectStatus, status_label


@dataclass
class Quote:
    status: str
    amount: Decimal = Decimal("100")
    invoice_settled: bool = False


@pytest.mark.parametrize(
    ("seconds", "compact", "detailed"),
    [
        (0, "Récent", "Instant"),
        (4, "Récent", "4 secondes"),
        (1, "Récent", "1 seconde"),
        (182, "3m", "3 minutes 2s"),
        (120, "2m", "2 minutes"),
        (3900, "1h", "1 heure 5m"),
        (2 * 86400 + 3 * 3600, "2j", "2 jours 3h"),
        (86400, "1j", "1 jour"),
    ],
)
def test_duration_renderings(seconds: int, compact: str, detailed: str) -> None:
    assert format_duration(seconds) == compact
    assert format_duration_detailed(seconds) == detailed


def test_active_stage_display() -> None:
    assert stage_display_duration(7200, is_active=True) == "En cours · 2h"
    assert stage_display_duration(7200, is_active=False) == "2h"


def test_status_labels() -> None:
    assert status_label(ProjectStatus.DELIVERED) == "Livraison & Terminé"
    assert status_label("devis_negociation") == "Devis/Négociation"
    assert status_label(None) == "Inconnu"
    assert status_label("archived") == "archived"


def test_payment_summary_rounds_progress() -> None:
    quotes = [
        Quote("accepte", Decimal("300"), invoice_settled=True),
        Quote("accepte", Decimal("600")),
        Quote("refuse", Decimal("5000"), invoice_settled=True),
    ]

    summary = payment_summary(quotes)

    assert summary.total_accepted == Decimal("900")
    assert summary.total_paid == Decimal("300")
    assert summary.progress == 33
    assert summary.all_paid is False
    assert summary.has_accepted_quote is True


def test_payment_progress_rounds_half_up() -> None:
    quotes = [Quote("accepte", Decimal("100"), invoice_settled=True)] + [Quote("accepte", Decimal("100")) for _ in range(7)]

    assert payment_summary(quotes).progress == 13


def test_payment_summary_without_accepted_quotes() -> None:
    summary = payment_summary([Quote("en_attente")])

    assert summary.progress == 0
    assert summary.all_paid is False
    assert summary.has_accepted_quote is False


def test_quote_warnings() -> None:
    assert quote_warnings(ProjectStatus.QUALIFICATION, []) == ["Aucun devis créé pour ce projet"]
    assert quote_warnings(ProjectStatus.QUOTE_NEGOTIATION, [Quote("refuse"), Quote("refuse")]) == [
        "Tous les devis ont été refusés - le projet devrait être marqué comme 'Refusé'"
    ]
    assert quote_warnings(ProjectStatus.IN_PROGRESS, [Quote("en_attente")]) == ["Le projet avance sans devis accepté"]
    assert quote_warnings(ProjectStatus.DELIVERED, [Quote("accepte"), Quote("accepte")]) == [
        "2 facture(s) non réglée(s) - vérifiez avant de finaliser"
    ]
    assert quote_warnings(ProjectStatus.DELIVERED, [Quote("accepte", invoice_settled=True)]) == []


@pytest.mark.parametrize(
    ("quotes", "target", "allowed"),
    [
        ([], ProjectStatus.DESIGN, True),
        ([], ProjectStatus.FIRST_PAYMENT, False),
        ([Quote("refuse")], ProjectStatus.IN_PROGRESS, False),
        ([Quote("accepte")], ProjectStatus.IN_PROGRESS, True),
        ([Quote("accepte")], ProjectStatus.DELIVERED, False),
        ([Quote("accepte", invoice_settled=True)], ProjectStatus.DELIVERED, True),
        ([Quote("accepte")], ProjectStatus.REFUSED, True),
    ],
)
def test_can_move_to_status(quotes: list[Quote], target: ProjectStatus, allowed: bool) -> None:
    result, reason = can_move_to_status(quotes, target)

    assert result is allowed
    assert (reason is None) is allowed
