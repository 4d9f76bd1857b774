"""Canonical request status vocabulary and its display labels.

Statuses are stored as short codes; operators see locale labels. Each
locale table must map codes to labels one-to-one, otherwise filters and
kanban columns built from labels silently drop records.
"""

from __future__ import annotations

from enum import Enum


class RequestStatus(str, Enum):
    NEW = "new"
    REVIEW = "review"
    PENDING = "pending"
    APPROVED = "approved"
    AWAITING_POST = "awaiting_post"
    RECEIVED_DC = "received_dc"
    CLOSED = "closed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({
    RequestStatus.REJECTED,
    RequestStatus.CLOSED,
    RequestStatus.COMPLETED,
})

DEFAULT_LOCALE = "pt-BR"

STATUS_LABELS: dict[str, dict[RequestStatus, str]] = {
    "pt-BR": {
        RequestStatus.NEW: "Nova",
        RequestStatus.REVIEW: "Em análise",
        RequestStatus.PENDING: "Pendente",
        RequestStatus.APPROVED: "Aprovada",
        RequestStatus.AWAITING_POST: "Aguardando postagem",
        RequestStatus.RECEIVED_DC: "Recebida no CD",
        RequestStatus.CLOSED: "Finalizada",
        RequestStatus.PROCESSING: "Em processamento",
        RequestStatus.COMPLETED: "Concluída",
        RequestStatus.REJECTED: "Recusada",
    },
    "en": {
        RequestStatus.NEW: "New",
        RequestStatus.REVIEW: "Under review",
        RequestStatus.PENDING: "Pending",
        RequestStatus.APPROVED: "Approved",
        RequestStatus.AWAITING_POST: "Awaiting shipment",
        RequestStatus.RECEIVED_DC: "Received at DC",
        RequestStatus.CLOSED: "Closed",
        RequestStatus.PROCESSING: "Processing",
        RequestStatus.COMPLETED: "Completed",
        RequestStatus.REJECTED: "Rejected",
    },
    "es": {
        RequestStatus.NEW: "Nueva",
        RequestStatus.REVIEW: "En revisión",
        RequestStatus.PENDING: "Pendiente",
        RequestStatus.APPROVED: "Aprobada",
        RequestStatus.AWAITING_POST: "Esperando envío",
        RequestStatus.RECEIVED_DC: "Recibida en CD",
        RequestStatus.CLOSED: "Cerrada",
        RequestStatus.PROCESSING: "En proceso",
        RequestStatus.COMPLETED: "Completada",
        RequestStatus.REJECTED: "Rechazada",
    },
}


def check_label_tables(tables: dict[str, dict[RequestStatus, str]]) -> None:
    """Raise ValueError unless every locale table is total and bijective."""
    for locale, labels in tables.items():
        missing = [s.value for s in RequestStatus if s not in labels]
        if missing:
            raise ValueError(f"Locale {locale} has no label for: {', '.join(missing)}")
        seen: dict[str, RequestStatus] = {}
        for status, label in labels.items():
            key = label.casefold()
            if key in seen:
                raise ValueError(
                    f"Locale {locale} uses label '{label}' for both "
                    f"{seen[key].value} and {status.value}"
                )
            seen[key] = status


check_label_tables(STATUS_LABELS)

_REVERSE = {
    locale: {label.casefold(): status for status, label in labels.items()}
    for locale, labels in STATUS_LABELS.items()
}


def _locale_table(locale: str) -> dict[RequestStatus, str]:
    if locale not in STATUS_LABELS:
        raise ValueError(f"Unsupported locale: {locale}")
    return STATUS_LABELS[locale]


def parse_status(value: str) -> RequestStatus:
    try:
        return RequestStatus(value)
    except ValueError:
        raise ValueError(f"Invalid status: {value}") from None


def label_for(status: RequestStatus | str, locale: str = DEFAULT_LOCALE) -> str:
    if not isinstance(status, RequestStatus):
        status = parse_status(status)
    return _locale_table(locale)[status]


def status_from_label(label: str, locale: str = DEFAULT_LOCALE) -> RequestStatus:
    _locale_table(locale)
    try:
        return _REVERSE[locale][label.strip().casefold()]
    except KeyError:
        raise ValueError(f"Unknown status label for {locale}: {label}") from None


def is_terminal(status: RequestStatus | str) -> bool:
    if not isinstance(status, RequestStatus):
        status = parse_status(status)
    return status in TERMINAL_STATUSES


def label_table(locale: str = DEFAULT_LOCALE) -> list[dict]:
    """Code/label pairs in declaration order, for filter dropdowns."""
    labels = _locale_table(locale)
    return [{"code": s.value, "label": labels[s]} for s in RequestStatus]
