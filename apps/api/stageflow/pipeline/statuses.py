from __future__ import annotations

from enum import Enum


class ProjectStatus(str, Enum):
    QUALIFICATION = "qualifie"
    NEEDS_ASSESSMENT = "prise_de_besoin"
    DEPOSIT_RECEIVED = "acompte_recu"
    DESIGN = "conception"
    QUOTE_NEGOTIATION = "devis_negociation"
    ACCEPTED = "accepte"
    FIRST_PAYMENT = "premier_depot"
    IN_PROGRESS = "projet_en_cours"
    INVOICE_SETTLED = "facture_reglee"
    DELIVERED = "livraison_termine"
    REFUSED = "refuse"


class QuoteStatus(str, Enum):
    PENDING = "en_attente"
    ACCEPTED = "accepte"
    REFUSED = "refuse"


# Earliest to latest. REFUSED is a side branch and is not part of the chain.
FORWARD_CHAIN: tuple[ProjectStatus, ...] = (
    ProjectStatus.QUALIFICATION,
    ProjectStatus.NEEDS_ASSESSMENT,
    ProjectStatus.DEPOSIT_RECEIVED,
    ProjectStatus.DESIGN,
    ProjectStatus.QUOTE_NEGOTIATION,
    ProjectStatus.ACCEPTED,
    ProjectStatus.FIRST_PAYMENT,
    ProjectStatus.IN_PROGRESS,
    ProjectStatus.INVOICE_SETTLED,
    ProjectStatus.DELIVERED,
)

STATUS_POSITION: dict[ProjectStatus, int] = {item: index for index, item in enumerate(FORWARD_CHAIN)}
# A refused project compares like one still in negotiation, so a later
# acceptance moves it forward again.
STATUS_POSITION[ProjectStatus.REFUSED] = STATUS_POSITION[ProjectStatus.QUOTE_NEGOTIATION]

ACCEPTED_POSITION = STATUS_POSITION[ProjectStatus.ACCEPTED]

POST_ACCEPTANCE_STATUSES = frozenset(
    {
        ProjectStatus.FIRST_PAYMENT,
        ProjectStatus.IN_PROGRESS,
        ProjectStatus.INVOICE_SETTLED,
        ProjectStatus.DELIVERED,
    }
)

STATUS_LABELS: dict[ProjectStatus, str] = {
    ProjectStatus.QUALIFICATION: "Qualifié",
    ProjectStatus.NEEDS_ASSESSMENT: "Prise de besoin",
    ProjectStatus.DEPOSIT_RECEIVED: "Acompte reçu",
    ProjectStatus.DESIGN: "Conception",
    ProjectStatus.QUOTE_NEGOTIATION: "Devis/Négociation",
    ProjectStatus.ACCEPTED: "Accepté",
    ProjectStatus.FIRST_PAYMENT: "Premier dépôt",
    ProjectStatus.IN_PROGRESS: "Projet en cours",
    ProjectStatus.INVOICE_SETTLED: "Facture réglée",
    ProjectStatus.DELIVERED: "Livraison & Terminé",
    ProjectStatus.REFUSED: "Refusé",
}


def position(value: ProjectStatus | str) -> int:
    return STATUS_POSITION[ProjectStatus(value)]


def status_label(value: ProjectStatus | str | None) -> str:
    if value is None:
        return "Inconnu"
    try:
        return STATUS_LABELS[ProjectStatus(value)]
    except ValueError:
        return str(value)
