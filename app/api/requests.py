"""Operator request API: create, list, inspect and move requests."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import NotFound, ValidationFailed
from app.models import Request, Store
from app.schemas import (
    EventOut, ItemOut, PublicSubmission, RequestCreate, RequestDetail, RequestOut, RevertIn, TransitionIn,
)
from app.services import lifecycle
from app.services.auth import actor_of, get_current_user
from app.services.requests import ItemData, RequestDraft, RequestService
from app.services.risk import CustomerHistory
from app.services.statuses import STATUS_LABELS, label_for, parse_status

router = APIRouter(prefix="/requests", tags=["requests"])

_service = RequestService()


def get_service() -> RequestService:
    return _service


def check_locale(locale: str) -> str:
    if locale not in STATUS_LABELS:
        raise ValidationFailed({"locale": f"Unsupported locale: {locale}"})
    return locale


def to_draft(body: PublicSubmission) -> RequestDraft:
    history = getattr(body, "history", None)
    return RequestDraft(
        type=body.type,
        order_code=body.order_code,
        customer_name=body.customer_name,
        customer_email=body.customer_email,
        reason=body.reason,
        notes=body.notes,
        amount=body.amount,
        method=body.method,
        items=[ItemData(**item.model_dump()) for item in body.items],
        attachments=list(body.attachments),
        purchase_date=body.purchase_date,
        fields=dict(body.fields),
        history=CustomerHistory(**history.model_dump()) if history else None,
    )


def to_out(request: Request, locale: str = "pt-BR") -> RequestOut:
    out = RequestOut.model_validate(request)
    out.status_label = label_for(request.status, locale)
    return out


# --- Endpoints ---

@router.post("/", response_model=RequestOut, status_code=201)
async def create_request(
    body: RequestCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    store = await db.get(Store, body.store_id)
    if store is None:
        raise NotFound(f"Store not found: {body.store_id}")
    request = await get_service().create_request(
        db,
        store.id,
        to_draft(body),
        origin="internal",
        actor=actor_of(user),
        currency=store.currency or "BRL",
    )
    return to_out(request)


@router.get("/", response_model=list[RequestOut])
async def list_requests(
    store_id: UUID,
    type: Optional[str] = None,
    status: Optional[str] = None,
    origin: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    locale: str = "pt-BR",
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    check_locale(locale)
    rows = await get_service().list_requests(db, store_id, type, status, origin, skip, limit)
    return [to_out(r, locale) for r in rows]


@router.get("/stats")
async def request_stats(
    store_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    return await get_service().stats(db, store_id)


@router.get("/{request_id}", response_model=RequestDetail)
async def get_request(
    request_id: UUID,
    locale: str = "pt-BR",
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    check_locale(locale)
    service = get_service()
    request = await service.get_request(db, request_id)
    items = await service.get_items(db, request.id)
    detail = RequestDetail(
        **to_out(request, locale).model_dump(),
        items=[ItemOut.model_validate(i) for i in items],
        allowed_transitions=[s.value for s in lifecycle.allowed_targets(request.type, request.status)],
        can_revert=lifecycle.revert_target(request.type, request.status) is not None,
    )
    return detail


@router.get("/{request_id}/timeline", response_model=list[EventOut])
async def get_timeline(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    service = get_service()
    await service.get_request(db, request_id)
    return await service.get_timeline(db, request_id)


@router.post("/{request_id}/transition", response_model=RequestOut)
async def transition_request(
    request_id: UUID,
    body: TransitionIn,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    request = await get_service().transition(
        db,
        request_id,
        _target(body.to_status),
        actor=actor_of(user),
        reason=body.reason,
        approved_amount=body.approved_amount,
    )
    return to_out(request)


@router.post("/{request_id}/advance", response_model=RequestOut)
async def advance_request(
    request_id: UUID,
    reason: str = "",
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    request = await get_service().advance(db, request_id, actor=actor_of(user), reason=reason)
    return to_out(request)


@router.post("/{request_id}/revert", response_model=RequestOut)
async def revert_request(
    request_id: UUID,
    body: RevertIn,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    request = await get_service().revert(db, request_id, actor=actor_of(user), reason=body.reason)
    return to_out(request)


def _target(value: str):
    try:
        return parse_status(value)
    except ValueError as e:
        raise ValidationFailed({"to_status": str(e)}) from e
