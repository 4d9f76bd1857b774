"""Eligibility validator and policy parsing tests."""

from datetime import date
from decimal import Decimal

import pytest

from app.errors import ValidationFailed
from app.services.eligibility import EligibilityDraft, check_eligibility, order_age_days
from app.services.policy import (
    FormField,
    PolicyConfigError,
    PolicyRules,
    missing_required_fields,
    parse_policy,
    raise_for_fields,
    validate_refund_fields,
)


def _rules(**kwargs) -> PolicyRules:
    return PolicyRules.model_validate(kwargs)


def _draft(**overrides) -> EligibilityDraft:
    defaults = dict(request_type="return", order_age_days=3, reason="defect", has_attachments=True)
    defaults.update(overrides)
    return EligibilityDraft(**defaults)


class TestEligibility:
    def test_within_window_photos_missing(self):
        result = check_eligibility(
            _draft(order_age_days=5, has_attachments=False),
            _rules(janelaDias=15, exigirFotos=True, aprovarAuto=True),
        )
        assert result.is_eligible is True
        assert result.auto_approve is False
        assert any("photos" in w for w in result.warnings)
        assert result.outcome == "manual_review"

    def test_window_exceeded(self):
        result = check_eligibility(_draft(order_age_days=16), _rules(janelaDias=15))
        assert result.is_eligible is False
        assert result.outcome == "reject"
        assert "16 days" in result.reasons[0]

    def test_window_boundary_inclusive(self):
        assert check_eligibility(_draft(order_age_days=15), _rules(janelaDias=15)).is_eligible

    def test_blocked_category(self):
        result = check_eligibility(
            _draft(categories=["underwear", "shoes"]),
            _rules(categoriasBloqueadas=["underwear"]),
        )
        assert result.is_eligible is False
        assert "underwear" in result.reasons[0]

    def test_every_failing_rule_reported(self):
        result = check_eligibility(
            _draft(order_age_days=40, categories=["underwear"]),
            _rules(janelaDias=30, categoriasBloqueadas=["underwear"]),
        )
        assert len(result.reasons) == 2

    def test_below_minimum_is_warning(self):
        result = check_eligibility(_draft(amount=Decimal("20")), _rules(valorMinimo=50, aprovarAuto=True))
        assert result.is_eligible is True
        assert result.auto_approve is False
        assert "minimum" in result.warnings[0]

    def test_suspicious_reason(self):
        result = check_eligibility(_draft(reason="regret"), _rules(aprovarAuto=True))
        assert result.auto_approve is False
        assert result.warnings

    def test_old_exchange_needs_manual_approval(self):
        result = check_eligibility(
            _draft(request_type="exchange", order_age_days=8),
            _rules(janelaDias=30, aprovarAuto=True),
        )
        assert result.is_eligible is True
        assert result.auto_approve is False

    def test_missing_order_date_needs_review(self):
        result = check_eligibility(_draft(order_age_days=None), _rules(aprovarAuto=True))
        assert result.is_eligible is True
        assert result.auto_approve is False

    def test_clean_submission_auto_approved(self):
        result = check_eligibility(_draft(), _rules(aprovarAuto=True))
        assert result.outcome == "auto_approve"
        assert result.to_dict()["autoApprove"] is True

    @pytest.mark.parametrize("flag", [True, False])
    @pytest.mark.parametrize("minimum", [0, 50])
    @pytest.mark.parametrize("window", [0, 15])
    def test_zero_amount_zero_age(self, flag, minimum, window):
        result = check_eligibility(
            _draft(order_age_days=0, amount=Decimal("0"), has_attachments=False),
            _rules(janelaDias=window, valorMinimo=minimum, exigirFotos=False, aprovarAuto=flag),
        )
        assert result.is_eligible is True
        assert result.auto_approve is flag


class TestOrderAge:
    def test_age(self):
        assert order_age_days(date(2026, 10, 1), date(2026, 10, 6)) == 5

    def test_future_date_clamped(self):
        assert order_age_days(date(2026, 10, 10), date(2026, 10, 6)) == 0

    def test_unknown(self):
        assert order_age_days(None, date(2026, 10, 6)) is None


class TestPolicyParsing:
    def test_aliases_and_defaults(self):
        policy = parse_policy("returns", {"janelaDias": 30, "exigirFotos": True}, [])
        assert policy.rules.window_days == 30
        assert policy.rules.require_photos is True
        assert policy.rules.auto_approve is False
        assert policy.rules.auto_approve_limit is None

    def test_empty_blob(self):
        assert parse_policy("refunds", None, None).rules.window_days == 15

    def test_unknown_key_rejected(self):
        with pytest.raises(PolicyConfigError):
            parse_policy("returns", {"janelaDias": 30, "surprise": 1}, [])

    def test_wrong_type_rejected(self):
        with pytest.raises(PolicyConfigError):
            parse_policy("returns", {"janelaDias": "thirty"}, [])

    def test_bad_form_field_rejected(self):
        with pytest.raises(PolicyConfigError):
            parse_policy("returns", {}, [{"name": "cpf", "type": "hologram"}])


class TestFieldValidation:
    def test_missing_required(self):
        fields = [
            FormField(name="order_code", label="Order", required=True),
            FormField(name="cpf", label="CPF", required=True),
            FormField(name="notes"),
        ]
        errors = missing_required_fields(fields, {"order_code": "#1001", "cpf": "  "})
        assert errors == {"cpf": "CPF is required"}

    def test_select_options(self):
        fields = [FormField(name="size", type="select", options=["P", "M", "G"])]
        assert missing_required_fields(fields, {"size": "XL"})
        assert not missing_required_fields(fields, {"size": "M"})

    def test_refund_fields(self):
        errors = validate_refund_fields("", "", Decimal("0"), None)
        assert set(errors) == {"order_code", "customer_name", "method", "amount"}

    def test_refund_fields_complete(self):
        assert validate_refund_fields("#1", "Ana", Decimal("10"), "pix") == {}

    def test_raise_for_fields(self):
        raise_for_fields({})
        with pytest.raises(ValidationFailed) as exc:
            raise_for_fields({"cpf": "CPF is required"})
        assert exc.value.to_dict()["fields"] == {"cpf": "CPF is required"}
        assert exc.value.http_status == 422
