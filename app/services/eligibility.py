"""Eligibility rules for public return / exchange / refund submissions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from app.services.policy import PolicyRules

# Reasons that always go through a human.
MANUAL_REVIEW_REASONS = {"regret", "did_not_like"}
EXCHANGE_AUTO_APPROVE_DAYS = 7


@dataclass
class EligibilityDraft:
    request_type: str
    order_age_days: Optional[int] = None
    reason: str = ""
    has_attachments: bool = False
    amount: Decimal = Decimal("0")
    categories: list[str] = field(default_factory=list)


@dataclass
class EligibilityResult:
    is_eligible: bool
    auto_approve: bool
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if not self.is_eligible:
            return "reject"
        return "auto_approve" if self.auto_approve else "manual_review"

    def to_dict(self) -> dict:
        return {
            "isEligible": self.is_eligible,
            "autoApprove": self.auto_approve,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "outcome": self.outcome,
        }


def order_age_days(purchase_date: Optional[date], today: date) -> Optional[int]:
    if purchase_date is None:
        return None
    return max(0, (today - purchase_date).days)


def check_eligibility(draft: EligibilityDraft, rules: PolicyRules) -> EligibilityResult:
    """Evaluate every rule independently and combine the verdict.

    Window and blocked categories decide eligibility. Missing photos, a value
    under the minimum and the manual-review triggers only add warnings, and
    any warning turns auto-approval off.
    """
    reasons: list[str] = []
    warnings: list[str] = []

    age = draft.order_age_days
    if age is None:
        warnings.append("Order date not provided - manual review required")
    elif age > rules.window_days:
        reasons.append(f"Return window exceeded: {age} days (limit: {rules.window_days} days)")

    blocked = sorted({c for c in draft.categories if c in rules.blocked_categories})
    if blocked:
        reasons.append(f"Blocked category: {', '.join(blocked)}")

    if rules.require_photos and not draft.has_attachments:
        warnings.append("Required photos were not attached - manual review required")

    # Zero means no value was requested, so there is nothing to compare.
    amount = draft.amount or Decimal("0")
    if amount > 0 and amount < rules.min_value:
        warnings.append(f"Value below minimum: {amount:.2f} (minimum: {rules.min_value:.2f})")

    if draft.reason in MANUAL_REVIEW_REASONS:
        warnings.append("Reason requires manual review by the team")

    if draft.request_type == "exchange" and age is not None and age > EXCHANGE_AUTO_APPROVE_DAYS:
        warnings.append(f"Exchanges older than {EXCHANGE_AUTO_APPROVE_DAYS} days require manual approval")

    is_eligible = not reasons
    return EligibilityResult(
        is_eligible=is_eligible,
        auto_approve=is_eligible and rules.auto_approve and not warnings,
        reasons=reasons,
        warnings=warnings,
    )
