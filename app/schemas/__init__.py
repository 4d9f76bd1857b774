"""Pydantic schemas for the portal API."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

RequestType = Literal["exchange", "return", "refund"]
RefundMethod = Literal["card", "pix", "boleto", "voucher"]


# ── Requests ─────────────────────────────────────────────
class ItemIn(BaseModel):
    name: str = ""
    sku: str = ""
    quantity: int = Field(1, ge=1)
    price: Decimal = Field(Decimal("0"), ge=0)
    category: str = ""


class CustomerHistoryIn(BaseModel):
    total_orders: int = Field(0, ge=0)
    total_refunds: int = Field(0, ge=0)
    account_age_days: int = Field(0, ge=0)


class PublicSubmission(BaseModel):
    type: RequestType
    order_code: str = ""
    customer_name: str = ""
    customer_email: str = ""
    reason: str = ""
    notes: str = ""
    amount: Decimal = Field(Decimal("0"), ge=0)
    method: Optional[RefundMethod] = None
    purchase_date: Optional[date] = None
    items: list[ItemIn] = Field(default_factory=list)
    attachments: list[str] = Field(default_factory=list)
    fields: dict[str, Any] = Field(default_factory=dict)


class RequestCreate(PublicSubmission):
    """Operator-created request; skips eligibility."""
    store_id: UUID
    history: Optional[CustomerHistoryIn] = None


class SubmissionOut(BaseModel):
    accepted: bool
    protocol: Optional[str] = None
    status: Optional[str] = None
    message: str
    eligibility: dict


class ItemOut(BaseModel):
    name: str
    sku: str
    quantity: int
    price: Decimal

    model_config = {"from_attributes": True}


class RequestOut(BaseModel):
    id: UUID
    store_id: UUID
    protocol: str
    type: str
    status: str
    status_label: str = ""
    customer_name: str
    customer_email: str
    order_code: str
    reason: str
    notes: str
    amount: Decimal
    approved_amount: Optional[Decimal] = None
    currency: str
    method: Optional[str] = None
    risk_score: int
    origin: str
    attachments: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RequestDetail(RequestOut):
    items: list[ItemOut] = Field(default_factory=list)
    allowed_transitions: list[str] = Field(default_factory=list)
    can_revert: bool = False


class EventOut(BaseModel):
    seq: int
    from_status: Optional[str] = None
    to_status: str
    reason: str
    actor: str
    created_at: datetime

    model_config = {"from_attributes": True}


class TransitionIn(BaseModel):
    to_status: str
    reason: str = ""
    approved_amount: Optional[Decimal] = Field(None, ge=0)


class RevertIn(BaseModel):
    reason: str = Field(..., min_length=1)


# ── Sync ─────────────────────────────────────────────────
class SyncStartIn(BaseModel):
    store_id: UUID
    period_start: date
    period_end: date

    @model_validator(mode="after")
    def check_period(self):
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        return self


class SummaryIn(BaseModel):
    revenue_total: Decimal = Decimal("0")
    revenue_campaigns: Decimal = Decimal("0")
    revenue_flows: Decimal = Decimal("0")
    orders_attributed: int = 0
    conversions_campaigns: int = 0
    conversions_flows: int = 0
    leads_total: int = 0
    campaign_count: int = 0
    flow_count: int = 0
    top_campaigns: list[dict] = Field(default_factory=list)
    raw: dict = Field(default_factory=dict)


class ChannelIn(BaseModel):
    channel: str = Field(..., min_length=1)
    revenue: Decimal = Decimal("0")
    orders_count: int = 0


class SyncCallbackIn(BaseModel):
    request_id: str = Field(..., min_length=1)
    status: Literal["SUCCESS", "ERROR"]
    error: Optional[str] = None
    summary: SummaryIn = Field(default_factory=SummaryIn)
    channels: list[ChannelIn] = Field(default_factory=list)


class SyncJobOut(BaseModel):
    id: UUID
    store_id: UUID
    period_start: date
    period_end: date
    status: str
    request_id: str
    external_id: str = ""
    created_by: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    model_config = {"from_attributes": True}


# ── Auth ─────────────────────────────────────────────────
class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserInfo(BaseModel):
    email: str
    role: str = "admin"
