"""Dashboard sync job and aggregate models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, JSON, UniqueConstraint, Uuid,
)

from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class SyncJob(Base):
    """Tracked external data-fetch for one (store, period) scope key."""
    __tablename__ = "sync_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    status = Column(
        Enum("QUEUED", "PROCESSING", "SUCCESS", "ERROR", name="sync_job_status"),
        default="QUEUED",
        index=True,
    )
    request_id = Column(String(64), unique=True, nullable=False, index=True)
    external_id = Column(String(200), default="")
    source = Column(String(50), default="klaviyo")
    created_by = Column(String(320), default="")
    started_at = Column(DateTime(timezone=True), default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)


class StoreSummary(Base):
    """Computed attribution summary for one scope key."""
    __tablename__ = "store_summaries"
    __table_args__ = (
        UniqueConstraint("store_id", "period_start", "period_end", name="uq_summary_scope"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    revenue_total = Column(Numeric(12, 2), default=0)
    revenue_campaigns = Column(Numeric(12, 2), default=0)
    revenue_flows = Column(Numeric(12, 2), default=0)
    orders_attributed = Column(Integer, default=0)
    conversions_campaigns = Column(Integer, default=0)
    conversions_flows = Column(Integer, default=0)
    leads_total = Column(Integer, default=0)
    campaign_count = Column(Integer, default=0)
    flow_count = Column(Integer, default=0)
    top_campaigns = Column(JSON, default=list)
    raw = Column(JSON, default=dict)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ChannelRevenue(Base):
    """Store revenue for one sales channel within a scope key."""
    __tablename__ = "channel_revenue"
    __table_args__ = (
        UniqueConstraint("store_id", "period_start", "period_end", "channel", name="uq_channel_scope"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    channel = Column(String(50), nullable=False)
    revenue = Column(Numeric(12, 2), default=0)
    orders_count = Column(Integer, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
