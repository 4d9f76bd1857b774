"""Dashboard sync job orchestration.

A sync fetches attribution data for one (store, period) scope key from the
external workflow. Jobs move QUEUED -> PROCESSING -> SUCCESS | ERROR; the
workflow reports back through ``complete_job`` / ``fail_job``. Jobs that
never report back are reclaimed before a new one starts:

- any job of the store active for more than 30 minutes (coarse pass)
- any job of the same scope active for more than 10 minutes (scoped pass)
"""

from __future__ import annotations

import copy
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.errors import NotFound, SyncError, ValidationFailed
from app.models import ChannelRevenue, Store, StoreSummary, SyncJob
from app.services.notification import NotificationEvent, NotificationService, notification_service
from app.services.realtime import ChangeFeed, WatchedTable, change_feed

logger = logging.getLogger(__name__)

AUTO_SYNC_ACTOR = "system:auto-sync"
COARSE_TIMEOUT_MESSAGE = "Job timeout - auto cleanup after {minutes} minutes"
SCOPED_TIMEOUT_MESSAGE = "Job timeout - superseded by a new sync for the same period after {minutes} minutes"

SUMMARY_FIELDS = {
    "revenue_total": Decimal("0"),
    "revenue_campaigns": Decimal("0"),
    "revenue_flows": Decimal("0"),
    "orders_attributed": 0,
    "conversions_campaigns": 0,
    "conversions_flows": 0,
    "leads_total": 0,
    "campaign_count": 0,
    "flow_count": 0,
    "top_campaigns": [],
    "raw": {},
}


def utcnow():
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


@dataclass(frozen=True)
class SyncScope:
    store_id: uuid.UUID
    period_start: date
    period_end: date

    def key(self) -> tuple[str, str, str]:
        return str(self.store_id), self.period_start.isoformat(), self.period_end.isoformat()


@dataclass
class TriggerResult:
    external_id: str = ""


@dataclass
class SyncStarted:
    job_id: uuid.UUID
    request_id: str
    status: str
    reclaimed: int = 0

    def to_dict(self) -> dict:
        return {
            "job_id": str(self.job_id),
            "request_id": self.request_id,
            "status": self.status,
            "reclaimed": self.reclaimed,
        }


SyncTrigger = Callable[[Store, SyncScope, str], Awaitable[TriggerResult]]


def new_request_id(now: datetime) -> str:
    return f"req_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def job_to_dict(job: SyncJob) -> dict:
    return {
        "id": str(job.id),
        "store_id": str(job.store_id),
        "period_start": job.period_start,
        "period_end": job.period_end,
        "status": job.status,
        "request_id": job.request_id,
        "external_id": job.external_id,
        "error": job.error,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
    }


class HttpSyncTrigger:
    """Starts the external fetch workflow through its webhook."""

    def __init__(self, url: str, timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def __call__(self, store: Store, scope: SyncScope, request_id: str) -> TriggerResult:
        if not store.has_sync_credentials:
            raise SyncError(
                "missing_credentials",
                "Klaviyo credentials not configured: set the private API key and Site ID in the store settings",
            )
        if not self._url:
            raise SyncError("unknown", "Sync webhook URL is not configured")

        payload = {
            "store_id": str(store.id),
            "period_start": scope.period_start.isoformat(),
            "period_end": scope.period_end.isoformat(),
            "request_id": request_id,
            "klaviyo_site_id": store.klaviyo_site_id,
            "shopify_domain": store.shopify_domain,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json=payload)
        except httpx.TimeoutException as e:
            raise SyncError("timeout", f"Sync trigger timed out after {self._timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise SyncError("unknown", f"Sync trigger failed: {e}") from e

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            if resp.status_code in (401, 403) or "credential" in detail.lower():
                raise SyncError("missing_credentials", detail or "Sync credentials were rejected")
            raise SyncError("unknown", f"Sync trigger returned HTTP {resp.status_code}: {detail}")

        data = _json_or_empty(resp)
        return TriggerResult(external_id=str(data.get("execution_id") or data.get("job_id") or ""))


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_detail(resp: httpx.Response) -> str:
    data = _json_or_empty(resp)
    return str(data.get("error") or data.get("message") or resp.text[:200])


class SyncJobOrchestrator:
    """Creates, reclaims and settles dashboard sync jobs."""

    def __init__(
        self,
        trigger: SyncTrigger,
        feed: Optional[ChangeFeed] = None,
        notifier: Optional[NotificationService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._trigger = trigger
        self._feed = feed or change_feed
        self._notifier = notifier or notification_service
        self._settings = settings or get_settings()
        self._clock = clock

    # ── Start ────────────────────────────────────────────

    async def start_sync(
        self,
        db: AsyncSession,
        store_id,
        period_start: date,
        period_end: date,
        *,
        actor: Optional[str],
    ) -> SyncStarted:
        """Reclaim stale jobs, record a new one and fire the trigger.

        Raises SyncError when the caller is anonymous or the trigger fails;
        a failed trigger leaves the new job in ERROR.
        """
        if not actor:
            raise SyncError("unauthenticated", "Session expired: sign in again to start a sync")
        if period_start > period_end:
            raise ValidationFailed({"period_start": "Period start must not be after period end"})

        store = await db.get(Store, store_id)
        if store is None:
            raise NotFound(f"Store not found: {store_id}")
        scope = SyncScope(store.id, period_start, period_end)
        now = self._clock()

        reclaimed = await self.reclaim_stale(
            db, store.id,
            older_than=timedelta(minutes=self._settings.stale_job_minutes),
            restarting=scope,
            message=COARSE_TIMEOUT_MESSAGE.format(minutes=self._settings.stale_job_minutes),
        )
        reclaimed += await self.reclaim_stale(
            db, store.id,
            older_than=timedelta(minutes=self._settings.scoped_stale_job_minutes),
            scope=scope,
            restarting=scope,
            message=SCOPED_TIMEOUT_MESSAGE.format(minutes=self._settings.scoped_stale_job_minutes),
        )

        job = SyncJob(
            id=uuid.uuid4(),
            store_id=store.id,
            period_start=period_start,
            period_end=period_end,
            status=JobStatus.QUEUED.value,
            request_id=new_request_id(now),
            created_by=actor,
            started_at=now,
        )
        db.add(job)
        await db.commit()
        self._publish_job(job)
        logger.info(f"Sync {job.request_id} queued for store {store.slug} {period_start}..{period_end}")

        try:
            result = await self._trigger(store, scope, job.request_id)
        except SyncError as e:
            await self._settle(db, job, JobStatus.ERROR, error=e.message)
            logger.error(f"Sync {job.request_id} trigger failed ({e.code}): {e.message}")
            raise
        except Exception as e:
            message = f"Sync trigger failed: {e}"
            await self._settle(db, job, JobStatus.ERROR, error=message)
            logger.exception(f"Sync {job.request_id} trigger raised unexpectedly")
            raise SyncError("unknown", message) from e

        job.status = JobStatus.PROCESSING.value
        job.external_id = result.external_id
        await db.commit()
        self._publish_job(job)
        self._notifier.notify_sync(NotificationEvent.SYNC_STARTED, job_to_dict(job))
        return SyncStarted(job_id=job.id, request_id=job.request_id, status=job.status, reclaimed=len(reclaimed))

    async def reclaim_stale(
        self,
        db: AsyncSession,
        store_id,
        *,
        older_than: timedelta,
        scope: Optional[SyncScope] = None,
        restarting: Optional[SyncScope] = None,
        message: str = "",
    ) -> list[SyncJob]:
        """Move active jobs started before ``now - older_than`` to ERROR.

        Reclaimed jobs are published flagged ``reclaimed`` so viewers do not
        show the timeout as a failure; ``restarted`` marks the ones whose
        period matches ``restarting``, the sync about to replace them.
        """
        cutoff = self._clock() - older_than
        stmt = select(SyncJob).where(
            SyncJob.store_id == store_id,
            SyncJob.status.in_(ACTIVE_STATUSES),
            SyncJob.started_at < cutoff,
        )
        if scope is not None:
            stmt = stmt.where(
                SyncJob.period_start == scope.period_start,
                SyncJob.period_end == scope.period_end,
            )
        stale = list((await db.execute(stmt)).scalars().all())
        if not stale:
            return []

        now = self._clock()
        for job in stale:
            job.status = JobStatus.ERROR.value
            job.error = message or "Job timeout"
            job.finished_at = now
        await db.commit()

        for job in stale:
            restarted = restarting is not None and (job.period_start, job.period_end) == (
                restarting.period_start, restarting.period_end,
            )
            self._publish_job(job, reclaimed=True, restarted=restarted)
            self._notifier.notify_sync(NotificationEvent.SYNC_RECLAIMED, job_to_dict(job))
        logger.warning(f"Reclaimed {len(stale)} stale sync job(s) for store {store_id}")
        return stale

    # ── Callbacks ────────────────────────────────────────

    async def _by_request_id(self, db: AsyncSession, request_id: str) -> SyncJob:
        job = (await db.execute(
            select(SyncJob).where(SyncJob.request_id == request_id)
        )).scalar_one_or_none()
        if job is None:
            raise NotFound(f"Sync job not found: {request_id}")
        return job

    async def complete_job(
        self,
        db: AsyncSession,
        request_id: str,
        summary: dict[str, Any],
        channels: list[dict[str, Any]],
    ) -> SyncJob:
        """Store the fetched aggregates and mark the job SUCCESS.

        Results for jobs that already reached SUCCESS or ERROR are ignored,
        so a reclaimed job cannot overwrite newer data.
        """
        job = await self._by_request_id(db, request_id)
        if job.status not in ACTIVE_STATUSES:
            logger.warning(f"Ignoring result for {job.status} sync job {job.request_id}")
            return job

        now = self._clock()
        row = (await db.execute(
            select(StoreSummary).where(
                StoreSummary.store_id == job.store_id,
                StoreSummary.period_start == job.period_start,
                StoreSummary.period_end == job.period_end,
            )
        )).scalar_one_or_none()
        if row is None:
            row = StoreSummary(
                id=uuid.uuid4(),
                store_id=job.store_id,
                period_start=job.period_start,
                period_end=job.period_end,
            )
            db.add(row)
        for name, default in SUMMARY_FIELDS.items():
            setattr(row, name, summary[name] if name in summary else copy.deepcopy(default))
        row.updated_at = now

        channel_rows = []
        for entry in channels:
            name = entry["channel"]
            ch = (await db.execute(
                select(ChannelRevenue).where(
                    ChannelRevenue.store_id == job.store_id,
                    ChannelRevenue.period_start == job.period_start,
                    ChannelRevenue.period_end == job.period_end,
                    ChannelRevenue.channel == name,
                )
            )).scalar_one_or_none()
            if ch is None:
                ch = ChannelRevenue(
                    id=uuid.uuid4(),
                    store_id=job.store_id,
                    period_start=job.period_start,
                    period_end=job.period_end,
                    channel=name,
                )
                db.add(ch)
            ch.revenue = entry.get("revenue", 0)
            ch.orders_count = entry.get("orders_count", 0)
            ch.updated_at = now
            channel_rows.append(ch)

        job.status = JobStatus.SUCCESS.value
        job.finished_at = now
        job.error = None
        await db.commit()

        # Aggregates first so a refetch triggered by the job event sees them.
        scope = {"period_start": job.period_start, "period_end": job.period_end}
        self._feed.emit(WatchedTable.STORE_SUMMARIES, row.id, job.store_id, {**scope, "updated_at": now})
        for ch in channel_rows:
            self._feed.emit(WatchedTable.CHANNEL_REVENUE, ch.id, job.store_id, {**scope, "channel": ch.channel})
        self._publish_job(job)
        self._notifier.notify_sync(NotificationEvent.SYNC_SUCCEEDED, job_to_dict(job))
        logger.info(f"Sync {job.request_id} finished with {len(channel_rows)} channel row(s)")
        return job

    async def fail_job(self, db: AsyncSession, request_id: str, error: str) -> SyncJob:
        job = await self._by_request_id(db, request_id)
        if job.status not in ACTIVE_STATUSES:
            logger.warning(f"Ignoring failure for {job.status} sync job {job.request_id}")
            return job
        await self._settle(db, job, JobStatus.ERROR, error=error or "Sync failed")
        logger.error(f"Sync {job.request_id} failed: {job.error}")
        return job

    async def _settle(self, db: AsyncSession, job: SyncJob, status: JobStatus, error: Optional[str] = None) -> None:
        job.status = status.value
        job.error = error
        job.finished_at = self._clock()
        await db.commit()
        self._publish_job(job)
        if status == JobStatus.ERROR:
            self._notifier.notify_sync(NotificationEvent.SYNC_FAILED, job_to_dict(job))

    def _publish_job(self, job: SyncJob, reclaimed: bool = False, restarted: bool = False) -> None:
        values = {
            "status": job.status,
            "period_start": job.period_start,
            "period_end": job.period_end,
            "request_id": job.request_id,
            "error": job.error,
        }
        if reclaimed:
            values.update(reclaimed=True, restarted=restarted)
        self._feed.emit(WatchedTable.SYNC_JOBS, job.id, job.store_id, values)

    # ── Queries ──────────────────────────────────────────

    async def get_job(self, db: AsyncSession, job_id, store_id=None) -> SyncJob:
        stmt = select(SyncJob).where(SyncJob.id == job_id)
        if store_id is not None:
            stmt = stmt.where(SyncJob.store_id == store_id)
        job = (await db.execute(stmt)).scalar_one_or_none()
        if job is None:
            raise NotFound(f"Sync job not found: {job_id}")
        return job

    async def list_jobs(self, db: AsyncSession, store_id, status: Optional[str] = None, limit: int = 20) -> list[SyncJob]:
        stmt = select(SyncJob).where(SyncJob.store_id == store_id)
        if status:
            stmt = stmt.where(SyncJob.status == status)
        stmt = stmt.order_by(SyncJob.started_at.desc()).limit(limit)
        return list((await db.execute(stmt)).scalars().all())

    # ── Scheduled ────────────────────────────────────────

    async def auto_sync_all(self, db: AsyncSession, today: Optional[date] = None) -> list[dict]:
        """Start a sync of the trailing window for every active store.

        Stores without credentials, or with a job for the same window started
        in the last hour that did not fail, are skipped.
        """
        today = today or self._clock().date()
        period_start = today - timedelta(days=self._settings.auto_sync_days)
        period_end = today
        recent_cutoff = self._clock() - timedelta(minutes=self._settings.recent_sync_minutes)

        stores = (await db.execute(
            select(Store).where(Store.active.is_(True)).order_by(Store.slug)
        )).scalars().all()

        results = []
        for store in stores:
            entry = {"store_id": str(store.id), "slug": store.slug}
            if not store.has_sync_credentials:
                results.append({**entry, "status": "skipped", "reason": "missing_credentials"})
                continue

            recent = (await db.execute(
                select(SyncJob.id).where(
                    SyncJob.store_id == store.id,
                    SyncJob.period_start == period_start,
                    SyncJob.period_end == period_end,
                    SyncJob.status != JobStatus.ERROR.value,
                    SyncJob.started_at >= recent_cutoff,
                ).limit(1)
            )).first()
            if recent is not None:
                results.append({**entry, "status": "skipped", "reason": "recent_sync_exists"})
                continue

            try:
                started = await self.start_sync(db, store.id, period_start, period_end, actor=AUTO_SYNC_ACTOR)
            except SyncError as e:
                results.append({**entry, "status": "error", "reason": e.code, "error": e.message})
                continue
            results.append({**entry, "status": "started", **started.to_dict()})

        logger.info(
            f"Auto-sync {period_start}..{period_end}: "
            f"{sum(1 for r in results if r['status'] == 'started')}/{len(results)} store(s) started"
        )
        return results
