"""Dashboard sync API: start, inspect and settle sync jobs."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.schemas import SyncCallbackIn, SyncJobOut, SyncStartIn
from app.services.auth import actor_of, get_current_user, optional_auth
from app.services.sync import HttpSyncTrigger, SyncJobOrchestrator

router = APIRouter(prefix="/sync", tags=["sync"])
settings = get_settings()

_orchestrator = SyncJobOrchestrator(
    HttpSyncTrigger(settings.sync_webhook_url, timeout=settings.sync_timeout_seconds),
)


def get_orchestrator() -> SyncJobOrchestrator:
    return _orchestrator


@router.post("/start", status_code=202)
async def start_sync(
    body: SyncStartIn,
    db: AsyncSession = Depends(get_db),
    user: Optional[dict] = Depends(optional_auth),
):
    """Start a sync; an anonymous caller gets an ``unauthenticated`` sync error."""
    started = await get_orchestrator().start_sync(
        db, body.store_id, body.period_start, body.period_end, actor=actor_of(user),
    )
    return started.to_dict()


@router.get("/jobs", response_model=list[SyncJobOut])
async def list_jobs(
    store_id: UUID,
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    return await get_orchestrator().list_jobs(db, store_id, status, limit)


@router.get("/jobs/{job_id}", response_model=SyncJobOut)
async def get_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    return await get_orchestrator().get_job(db, job_id)


@router.post("/callback", response_model=SyncJobOut)
async def sync_callback(body: SyncCallbackIn, db: AsyncSession = Depends(get_db)):
    """Result report from the fetch workflow, matched by ``request_id``."""
    orchestrator = get_orchestrator()
    if body.status == "ERROR":
        return await orchestrator.fail_job(db, body.request_id, body.error or "")
    return await orchestrator.complete_job(
        db,
        body.request_id,
        body.summary.model_dump(),
        [c.model_dump() for c in body.channels],
    )


@router.post("/auto")
async def auto_sync(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    results = await get_orchestrator().auto_sync_all(db)
    return {"results": results}
