"""Public portal API: anonymous submission and protocol tracking."""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.requests import check_locale, get_service, to_draft
from app.database import get_db
from app.schemas import PublicSubmission, SubmissionOut

router = APIRouter(prefix="/public", tags=["public"])


@router.post("/{store_slug}/requests", response_model=SubmissionOut)
async def submit_request(store_slug: str, body: PublicSubmission, db: AsyncSession = Depends(get_db)):
    """Submit a request; ineligible submissions get the verdict back and nothing is stored."""
    result = await get_service().submit_public(db, store_slug, to_draft(body))
    out = SubmissionOut(
        accepted=result.request is not None,
        protocol=result.protocol,
        status=result.status,
        message=result.message,
        eligibility=result.eligibility.to_dict(),
    )
    return JSONResponse(status_code=201 if out.accepted else 200, content=out.model_dump(mode="json"))


@router.get("/track/{protocol}")
async def track_request(
    protocol: str,
    store: Optional[str] = None,
    locale: str = "pt-BR",
    db: AsyncSession = Depends(get_db),
):
    check_locale(locale)
    return await get_service().track(db, protocol, store_slug=store, locale=locale)
