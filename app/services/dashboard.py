"""Dashboard KPI derivation from synced summary rows.

Turns the per-period attribution summary and channel revenue rows written
by sync callbacks into the KPI figures and channel breakdown the
dashboard renders.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import ChannelRevenue, StoreSummary, SyncJob
from app.services.realtime import ViewContext

CENT = Decimal("0.01")


@dataclass
class ChannelShare:
    channel: str
    revenue: Decimal
    orders: int
    share_pct: Decimal


@dataclass
class DashboardKpis:
    period_start: date
    period_end: date
    revenue_total: Decimal = Decimal("0")
    revenue_campaigns: Decimal = Decimal("0")
    revenue_flows: Decimal = Decimal("0")
    orders_attributed: int = 0
    leads_total: int = 0
    store_revenue: Decimal = Decimal("0")
    attributed_share_pct: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None


@dataclass
class DashboardSnapshot:
    store_id: str
    period_start: date
    period_end: date
    kpis: Optional[DashboardKpis] = None
    channels: list[ChannelShare] = field(default_factory=list)
    last_job: Optional[dict] = None

    @property
    def needs_sync(self) -> bool:
        return self.kpis is None


def _dec(value) -> Decimal:
    return Decimal(str(value or 0))


def _pct(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= 0:
        return Decimal("0")
    return (part / whole * 100).quantize(CENT)


def channel_breakdown(rows: Sequence[ChannelRevenue]) -> list[ChannelShare]:
    total = sum((_dec(r.revenue) for r in rows), Decimal("0"))
    shares = [
        ChannelShare(
            channel=r.channel,
            revenue=_dec(r.revenue).quantize(CENT),
            orders=r.orders_count or 0,
            share_pct=_pct(_dec(r.revenue), total),
        )
        for r in rows
    ]
    shares.sort(key=lambda s: (-s.revenue, s.channel))
    return shares


def build_kpis(summary: StoreSummary, channels: Sequence[ChannelShare]) -> DashboardKpis:
    store_revenue = sum((c.revenue for c in channels), Decimal("0"))
    revenue_total = _dec(summary.revenue_total).quantize(CENT)
    return DashboardKpis(
        period_start=summary.period_start,
        period_end=summary.period_end,
        revenue_total=revenue_total,
        revenue_campaigns=_dec(summary.revenue_campaigns).quantize(CENT),
        revenue_flows=_dec(summary.revenue_flows).quantize(CENT),
        orders_attributed=summary.orders_attributed or 0,
        leads_total=summary.leads_total or 0,
        store_revenue=store_revenue,
        attributed_share_pct=_pct(revenue_total, store_revenue),
        updated_at=summary.updated_at,
    )


async def load_snapshot(db: AsyncSession, store_id, period_start: date, period_end: date) -> DashboardSnapshot:
    scope = (
        (StoreSummary.store_id == store_id)
        & (StoreSummary.period_start == period_start)
        & (StoreSummary.period_end == period_end)
    )
    summary = (await db.execute(select(StoreSummary).where(scope))).scalar_one_or_none()

    rows = (await db.execute(
        select(ChannelRevenue).where(
            ChannelRevenue.store_id == store_id,
            ChannelRevenue.period_start == period_start,
            ChannelRevenue.period_end == period_end,
        )
    )).scalars().all()

    job = (await db.execute(
        select(SyncJob)
        .where(
            SyncJob.store_id == store_id,
            SyncJob.period_start == period_start,
            SyncJob.period_end == period_end,
        )
        .order_by(SyncJob.started_at.desc())
        .limit(1)
    )).scalar_one_or_none()

    channels = channel_breakdown(rows)
    return DashboardSnapshot(
        store_id=str(store_id),
        period_start=period_start,
        period_end=period_end,
        kpis=build_kpis(summary, channels) if summary else None,
        channels=channels,
        last_job={
            "id": str(job.id),
            "status": job.status,
            "error": job.error,
            "started_at": job.started_at,
            "finished_at": job.finished_at,
        } if job else None,
    )


def database_loader(session_factory: async_sessionmaker):
    """Snapshot loader for ``DashboardSession`` backed by a session factory."""

    async def load(view: ViewContext) -> DashboardSnapshot:
        async with session_factory() as db:
            return await load_snapshot(db, _uuid(view.store_id), view.period_start, view.period_end)

    return load


def _uuid(value):
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def snapshot_to_dict(snapshot: DashboardSnapshot) -> dict:
    kpis = snapshot.kpis
    return {
        "store_id": snapshot.store_id,
        "period_start": snapshot.period_start.isoformat(),
        "period_end": snapshot.period_end.isoformat(),
        "needs_sync": snapshot.needs_sync,
        "kpis": {
            "revenue_total": float(kpis.revenue_total),
            "revenue_campaigns": float(kpis.revenue_campaigns),
            "revenue_flows": float(kpis.revenue_flows),
            "orders_attributed": kpis.orders_attributed,
            "leads_total": kpis.leads_total,
            "store_revenue": float(kpis.store_revenue),
            "attributed_share_pct": float(kpis.attributed_share_pct),
            "updated_at": kpis.updated_at.isoformat() if kpis.updated_at else None,
        } if kpis else None,
        "channels": [
            {
                "channel": c.channel,
                "revenue": float(c.revenue),
                "orders": c.orders,
                "share_pct": float(c.share_pct),
            }
            for c in snapshot.channels
        ],
        "last_job": {
            **snapshot.last_job,
            "started_at": snapshot.last_job["started_at"].isoformat() if snapshot.last_job["started_at"] else None,
            "finished_at": snapshot.last_job["finished_at"].isoformat() if snapshot.last_job["finished_at"] else None,
        } if snapshot.last_job else None,
    }
