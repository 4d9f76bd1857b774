"""Return / exchange / refund request models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, JSON, UniqueConstraint, Uuid,
)

from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Request(Base):
    """Customer post-purchase request.

    ``status`` holds a code from ``app.services.statuses.RequestStatus`` and is
    only ever written together with a ``RequestEvent``.
    """
    __tablename__ = "requests"
    __table_args__ = (UniqueConstraint("store_id", "protocol", name="uq_requests_store_protocol"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    protocol = Column(String(32), nullable=False, index=True)
    type = Column(Enum("exchange", "return", "refund", name="request_type"), nullable=False)
    status = Column(String(30), nullable=False, index=True)
    customer_name = Column(String(300), default="")
    customer_email = Column(String(320), default="")
    order_code = Column(String(100), default="", index=True)
    reason = Column(String(100), default="")
    notes = Column(Text, default="")
    amount = Column(Numeric(10, 2), default=0)
    approved_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), default="BRL")
    method = Column(Enum("card", "pix", "boleto", "voucher", name="refund_method"), nullable=True)
    risk_score = Column(Integer, default=0)
    origin = Column(Enum("internal", "public", name="request_origin"), default="internal")
    attachments = Column(JSON, default=list)  # uploaded evidence URLs
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RequestItem(Base):
    __tablename__ = "request_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id = Column(Uuid, ForeignKey("requests.id"), nullable=False, index=True)
    name = Column(String(500), default="")
    sku = Column(String(100), default="")
    quantity = Column(Integer, default=1)
    price = Column(Numeric(10, 2), default=0)


class RequestEvent(Base):
    """Append-only timeline entry. ``seq`` orders events within a request."""
    __tablename__ = "request_events"
    __table_args__ = (UniqueConstraint("request_id", "seq", name="uq_request_events_seq"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id = Column(Uuid, ForeignKey("requests.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=False)
    reason = Column(Text, default="")
    actor = Column(String(320), default="system")
    created_at = Column(DateTime(timezone=True), default=utcnow)
