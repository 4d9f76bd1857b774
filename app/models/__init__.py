"""Portal data models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, String, JSON, UniqueConstraint, Uuid,
)

from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Store(Base):
    """Merchant store; every other record is scoped to one."""
    __tablename__ = "stores"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    slug = Column(String(120), unique=True, nullable=False, index=True)
    name = Column(String(300), nullable=False)
    currency = Column(String(3), default="BRL")
    klaviyo_private_key = Column(String(200), default="")
    klaviyo_site_id = Column(String(100), default="")
    shopify_domain = Column(String(300), default="")
    active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def has_sync_credentials(self) -> bool:
        return bool(self.klaviyo_private_key and self.klaviyo_site_id)


class PolicyConfig(Base):
    """Per-store, per-link-type policy blob as written by the setup editors."""
    __tablename__ = "policy_configs"
    __table_args__ = (UniqueConstraint("store_id", "link_type", name="uq_policy_store_link"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    link_type = Column(Enum("returns", "refunds", name="link_type"), nullable=False)
    rules = Column(JSON, default=dict)
    form_fields = Column(JSON, default=list)  # [{name, label, required, type}]
    theme = Column(JSON, default=dict)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


from app.models.requests import Request, RequestEvent, RequestItem  # noqa: E402
from app.models.sync import ChannelRevenue, StoreSummary, SyncJob  # noqa: E402

__all__ = [
    "Store", "PolicyConfig",
    "Request", "RequestItem", "RequestEvent",
    "SyncJob", "StoreSummary", "ChannelRevenue",
    "utcnow",
]
