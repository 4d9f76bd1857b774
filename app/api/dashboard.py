"""Dashboard KPI API."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import NotFound, ValidationFailed
from app.models import Store
from app.services.auth import get_current_user
from app.services.dashboard import load_snapshot, snapshot_to_dict

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/{store_id}/kpis")
async def get_kpis(
    store_id: UUID,
    period_start: date,
    period_end: date,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    if period_start > period_end:
        raise ValidationFailed({"period_start": "Period start must not be after period end"})
    if await db.get(Store, store_id) is None:
        raise NotFound(f"Store not found: {store_id}")
    snapshot = await load_snapshot(db, store_id, period_start, period_end)
    return snapshot_to_dict(snapshot)
