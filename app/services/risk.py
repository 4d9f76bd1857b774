"""Risk scoring for incoming requests.

Everything here is a total, deterministic function of its arguments: no
clock, no randomness, no I/O. Malformed numbers are coerced instead of
raising so scoring can run inside request creation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from app.services.statuses import RequestStatus

DEFAULT_AUTO_APPROVE_LIMIT = Decimal("100")
LOW_RISK_THRESHOLD = 30

# (exclusive lower bound, points) checked from the top
AMOUNT_BANDS = (
    (Decimal("1000"), 35),
    (Decimal("500"), 25),
    (Decimal("200"), 15),
    (Decimal("100"), 5),
)
NO_ATTACHMENTS_POINTS = 25
NO_ITEMS_POINTS = 15
NO_HISTORY_POINTS = 15


@dataclass(frozen=True)
class CustomerHistory:
    total_orders: int = 0
    total_refunds: int = 0
    account_age_days: int = 0


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    initial_status: RequestStatus
    category: str

    @property
    def auto_approved(self) -> bool:
        return self.initial_status == RequestStatus.APPROVED


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        if isinstance(value, float) and not math.isfinite(value):
            return Decimal("0")
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")
    if not result.is_finite():
        return Decimal("0")
    return result


def _history_points(history: Optional[CustomerHistory]) -> int:
    if history is None:
        return NO_HISTORY_POINTS

    points = 0
    age = history.account_age_days or 0
    if age < 30:
        points += 15
    elif age < 90:
        points += 10

    orders = history.total_orders or 0
    refunds = history.total_refunds or 0
    if orders > 0:
        rate = refunds / orders
        if rate > 0.5:
            points += 10
        elif rate > 0.3:
            points += 5
    elif refunds > 0:
        points += 20
    return points


def calculate_risk_score(
    amount,
    has_attachments: bool,
    has_items: bool,
    history: Optional[CustomerHistory] = None,
) -> int:
    """Score 0-100; larger and less substantiated requests score higher."""
    value = _to_decimal(amount)
    score = 0
    for bound, points in AMOUNT_BANDS:
        if value > bound:
            score += points
            break
    if not has_attachments:
        score += NO_ATTACHMENTS_POINTS
    if not has_items:
        score += NO_ITEMS_POINTS
    score += _history_points(history)
    return min(max(score, 0), 100)


def initial_status(
    score: int,
    amount,
    auto_approve_limit=None,
    low_risk_threshold: int = LOW_RISK_THRESHOLD,
) -> RequestStatus:
    limit = _to_decimal(auto_approve_limit) if auto_approve_limit is not None else DEFAULT_AUTO_APPROVE_LIMIT
    if score < low_risk_threshold and _to_decimal(amount) <= limit:
        return RequestStatus.APPROVED
    return RequestStatus.PENDING


def risk_category(score: int) -> dict:
    if score >= 70:
        return {"level": "high", "description": "Requires detailed manual review"}
    if score >= 40:
        return {"level": "medium", "description": "Requires additional verification"}
    return {"level": "low", "description": "Eligible for automatic approval"}


def assess(
    amount,
    has_attachments: bool,
    has_items: bool,
    auto_approve_limit=None,
    history: Optional[CustomerHistory] = None,
    low_risk_threshold: int = LOW_RISK_THRESHOLD,
) -> RiskAssessment:
    score = calculate_risk_score(amount, has_attachments, has_items, history)
    return RiskAssessment(
        score=score,
        initial_status=initial_status(score, amount, auto_approve_limit, low_risk_threshold),
        category=risk_category(score)["level"],
    )
