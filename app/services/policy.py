"""Store policy configuration, validated at the boundary.

``policy_configs.rules`` and ``policy_configs.form_fields`` are JSON blobs
written by the setup editors. They are parsed into these models before any
rule runs; unknown keys or wrong types are rejected rather than ignored.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.errors import PortalError, ValidationFailed

LinkType = Literal["returns", "refunds"]

# Submission attributes a form field may refer to directly.
BUILTIN_FIELDS = ("order_code", "customer_name", "customer_email", "reason", "notes", "method", "amount")


class PolicyRules(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    window_days: int = Field(15, ge=0, alias="janelaDias")
    min_value: Decimal = Field(Decimal("0"), ge=0, alias="valorMinimo")
    require_photos: bool = Field(False, alias="exigirFotos")
    auto_approve: bool = Field(False, alias="aprovarAuto")
    auto_approve_limit: Optional[Decimal] = Field(None, ge=0, alias="autoApproveLimit")
    blocked_categories: list[str] = Field(default_factory=list, alias="categoriasBloqueadas")


class FormField(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    label: str = ""
    type: Literal["text", "email", "textarea", "select", "number", "date", "file"] = "text"
    required: bool = False
    options: list[str] = Field(default_factory=list)


class StorePolicy(BaseModel):
    link_type: LinkType
    rules: PolicyRules = Field(default_factory=PolicyRules)
    form_fields: list[FormField] = Field(default_factory=list)


class PolicyConfigError(PortalError):
    code = "invalid_policy_config"
    http_status = 500


def link_type_for(request_type: str) -> LinkType:
    return "refunds" if request_type == "refund" else "returns"


def parse_policy(link_type: str, rules: Any, form_fields: Any) -> StorePolicy:
    """Parse a stored policy blob or raise PolicyConfigError."""
    try:
        return StorePolicy(
            link_type=link_type,
            rules=PolicyRules.model_validate(rules or {}),
            form_fields=[FormField.model_validate(f) for f in (form_fields or [])],
        )
    except ValidationError as e:
        raise PolicyConfigError(f"Stored {link_type} policy is invalid: {e.errors()[0]['msg']}") from e


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def missing_required_fields(form_fields: list[FormField], values: dict[str, Any]) -> dict[str, str]:
    """Field name -> message for every required field without a value."""
    errors: dict[str, str] = {}
    for f in form_fields:
        if f.required and _is_blank(values.get(f.name)):
            errors[f.name] = f"{f.label or f.name} is required"
        elif f.type == "select" and f.options and not _is_blank(values.get(f.name)):
            if values[f.name] not in f.options:
                errors[f.name] = f"{f.label or f.name} must be one of: {', '.join(f.options)}"
    return errors


def validate_refund_fields(
    order_code: str,
    customer_name: str,
    amount: Decimal,
    method: Optional[str],
) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not order_code or not order_code.strip():
        errors["order_code"] = "Order number is required"
    if not customer_name or not customer_name.strip():
        errors["customer_name"] = "Customer name is required"
    if not method:
        errors["method"] = "Refund method is required"
    if amount is None or amount <= 0:
        errors["amount"] = "Amount must be greater than zero"
    return errors


def raise_for_fields(errors: dict[str, str]) -> None:
    if errors:
        raise ValidationFailed(errors)
