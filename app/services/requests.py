"""Return / exchange / refund request service.

Creates requests (internal or public portal), applies lifecycle
transitions and answers read queries. Every status write goes through
``_apply`` or ``create_request``, which persist the status together with
its timeline event in one commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.errors import NotFound, PortalError, TransitionError, ValidationFailed
from app.models import PolicyConfig, Request, RequestEvent, RequestItem, Store
from app.services import lifecycle
from app.services.eligibility import EligibilityDraft, EligibilityResult, check_eligibility, order_age_days
from app.services.notification import NotificationService, notification_service
from app.services.policy import (
    StorePolicy, link_type_for, missing_required_fields, parse_policy, raise_for_fields,
    validate_refund_fields,
)
from app.services.protocols import generate_protocol
from app.services.risk import CustomerHistory, RiskAssessment, assess
from app.services.statuses import RequestStatus, label_for

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
PUBLIC_ACTOR = "public-portal"

ExecutionHook = Callable[[Request, RequestEvent], Awaitable[None]]


def utcnow():
    return datetime.now(timezone.utc)


@dataclass
class ItemData:
    name: str = ""
    sku: str = ""
    quantity: int = 1
    price: Decimal = Decimal("0")
    category: str = ""


@dataclass
class RequestDraft:
    type: str
    order_code: str = ""
    customer_name: str = ""
    customer_email: str = ""
    reason: str = ""
    notes: str = ""
    amount: Decimal = Decimal("0")
    method: Optional[str] = None
    items: list[ItemData] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    purchase_date: Optional[date] = None
    fields: dict[str, Any] = field(default_factory=dict)
    history: Optional[CustomerHistory] = None

    @property
    def items_total(self) -> Decimal:
        return sum((Decimal(str(i.price)) * i.quantity for i in self.items), Decimal("0"))

    @property
    def effective_amount(self) -> Decimal:
        """Requested amount, falling back to the item total."""
        if self.amount and self.amount > 0:
            return Decimal(str(self.amount))
        return self.items_total

    def form_values(self) -> dict[str, Any]:
        values = {
            "order_code": self.order_code,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "reason": self.reason,
            "notes": self.notes,
            "method": self.method,
            "amount": self.amount if self.amount else None,
        }
        values.update(self.fields)
        return values


@dataclass
class SubmissionResult:
    eligibility: EligibilityResult
    request: Optional[Request] = None

    @property
    def protocol(self) -> Optional[str]:
        return self.request.protocol if self.request else None

    @property
    def status(self) -> Optional[str]:
        return self.request.status if self.request else None

    @property
    def message(self) -> str:
        if self.request is None:
            return "Request not eligible: " + "; ".join(self.eligibility.reasons)
        if self.request.status == RequestStatus.APPROVED.value:
            return "Your request was approved automatically"
        return "Your request was received and will be reviewed by the store"


class RequestService:
    """Request intake and lifecycle service."""

    VALID_TYPES = set(lifecycle.REQUEST_TYPES)
    VALID_METHODS = {"card", "pix", "boleto", "voucher"}

    def __init__(
        self,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationService] = None,
        executor: Optional[ExecutionHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings or get_settings()
        self._notifier = notifier or notification_service
        self._executor = executor
        self._clock = clock

    # ── Intake ───────────────────────────────────────────

    async def load_policy(self, db: AsyncSession, store_id, link_type: str) -> StorePolicy:
        row = (await db.execute(
            select(PolicyConfig).where(
                PolicyConfig.store_id == store_id,
                PolicyConfig.link_type == link_type,
            )
        )).scalar_one_or_none()
        if row is None:
            return StorePolicy(link_type=link_type)
        return parse_policy(link_type, row.rules, row.form_fields)

    def _validate_draft(self, draft: RequestDraft) -> None:
        errors: dict[str, str] = {}
        if draft.type not in self.VALID_TYPES:
            errors["type"] = f"Invalid request type: {draft.type}"
        if draft.method is not None and draft.method not in self.VALID_METHODS:
            errors["method"] = f"Invalid refund method: {draft.method}"
        if draft.amount is not None and draft.amount < 0:
            errors["amount"] = "Amount cannot be negative"
        for idx, item in enumerate(draft.items):
            if item.quantity < 1:
                errors[f"items.{idx}.quantity"] = "Quantity must be at least 1"
            if Decimal(str(item.price)) < 0:
                errors[f"items.{idx}.price"] = "Price cannot be negative"
        if draft.type == "refund":
            errors.update(validate_refund_fields(
                draft.order_code, draft.customer_name, draft.effective_amount, draft.method,
            ))
        elif not draft.order_code or not draft.order_code.strip():
            errors["order_code"] = "Order number is required"
        raise_for_fields(errors)

    async def _protocol_taken(self, db: AsyncSession, store_id, protocol: str) -> bool:
        found = (await db.execute(
            select(Request.id).where(Request.store_id == store_id, Request.protocol == protocol)
        )).first()
        return found is not None

    def _initial_transitions(
        self,
        draft: RequestDraft,
        risk: RiskAssessment,
        actor: str,
        origin: str,
        auto_approve: bool,
    ) -> list[lifecycle.Transition]:
        created = f"Request created via {'public portal' if origin == 'public' else 'operator'}"
        if draft.type == "refund":
            reason = f"{created}; risk score {risk.score} ({risk.category})"
            if risk.auto_approved:
                reason += "; auto-approved"
            return [lifecycle.creation(risk.initial_status, actor, reason)]

        steps = [lifecycle.creation(RequestStatus.NEW, actor, created)]
        if auto_approve:
            steps.append(lifecycle.plan_transition(
                draft.type, RequestStatus.NEW, RequestStatus.APPROVED,
                actor=SYSTEM_ACTOR, reason="Auto-approved by store policy",
            ))
        return steps

    async def create_request(
        self,
        db: AsyncSession,
        store_id,
        draft: RequestDraft,
        *,
        origin: str = "internal",
        actor: str = SYSTEM_ACTOR,
        auto_approve: bool = False,
        auto_approve_limit: Optional[Decimal] = None,
        currency: str = "BRL",
    ) -> Request:
        """Persist a new request with its items and opening timeline.

        Refunds get their initial status from the risk engine; returns and
        exchanges open as ``new`` and are moved to ``approved`` by the system
        only when ``auto_approve`` is set.
        """
        self._validate_draft(draft)

        amount = draft.effective_amount
        # Scored on the item total whenever items carry prices.
        risk_amount = draft.items_total if draft.items_total > 0 else amount
        limit = auto_approve_limit if auto_approve_limit is not None else self._settings.default_auto_approve_limit
        risk = assess(
            risk_amount,
            has_attachments=bool(draft.attachments),
            has_items=bool(draft.items),
            auto_approve_limit=limit,
            history=draft.history,
            low_risk_threshold=self._settings.low_risk_threshold,
        )
        steps = self._initial_transitions(draft, risk, actor, origin, auto_approve)
        final = steps[-1].to_status
        now = self._clock()

        for attempt in range(1, self._settings.protocol_max_attempts + 1):
            protocol = generate_protocol(draft.type, now)
            if await self._protocol_taken(db, store_id, protocol):
                logger.warning(f"Protocol collision on {protocol} (attempt {attempt})")
                continue

            request = Request(
                id=uuid.uuid4(),
                store_id=store_id,
                protocol=protocol,
                type=draft.type,
                status=final.value,
                customer_name=draft.customer_name.strip(),
                customer_email=draft.customer_email.strip(),
                order_code=draft.order_code.strip(),
                reason=draft.reason,
                notes=draft.notes,
                amount=amount,
                approved_amount=amount if final == RequestStatus.APPROVED else None,
                currency=currency,
                method=draft.method,
                risk_score=risk.score,
                origin=origin,
                attachments=list(draft.attachments),
                created_at=now,
                updated_at=now,
            )
            db.add(request)
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                logger.warning(f"Protocol {protocol} taken concurrently (attempt {attempt})")
                continue
            for item in draft.items:
                db.add(RequestItem(
                    request_id=request.id,
                    name=item.name,
                    sku=item.sku,
                    quantity=item.quantity,
                    price=Decimal(str(item.price)),
                ))
            for seq, step in enumerate(steps, start=1):
                db.add(RequestEvent(
                    request_id=request.id,
                    seq=seq,
                    from_status=step.from_status.value if step.from_status else None,
                    to_status=step.to_status.value,
                    reason=step.reason,
                    actor=step.actor,
                    created_at=now,
                ))
            await db.commit()

            logger.info(
                f"Created {draft.type} {protocol} for store {store_id}: "
                f"status={final.value} risk={risk.score} origin={origin}"
            )
            self._notifier.notify_request_created(request_summary(request))
            return request

        raise PortalError(
            "Could not allocate a unique protocol code, please retry",
            code="protocol_unavailable",
            http_status=503,
        )

    async def submit_public(self, db: AsyncSession, store_slug: str, draft: RequestDraft) -> SubmissionResult:
        """Public portal submission: validate fields, check eligibility, create."""
        store = (await db.execute(
            select(Store).where(Store.slug == store_slug, Store.active.is_(True))
        )).scalar_one_or_none()
        if store is None:
            raise NotFound(f"Store not found: {store_slug}")
        if draft.type not in self.VALID_TYPES:
            raise ValidationFailed({"type": f"Invalid request type: {draft.type}"})

        policy = await self.load_policy(db, store.id, link_type_for(draft.type))
        raise_for_fields(missing_required_fields(policy.form_fields, draft.form_values()))

        verdict = check_eligibility(
            EligibilityDraft(
                request_type=draft.type,
                order_age_days=order_age_days(draft.purchase_date, self._clock().date()),
                reason=draft.reason,
                has_attachments=bool(draft.attachments),
                amount=draft.effective_amount,
                categories=[i.category for i in draft.items if i.category],
            ),
            policy.rules,
        )
        if not verdict.is_eligible:
            logger.info(f"Ineligible {draft.type} submission for {store_slug}: {verdict.reasons}")
            return SubmissionResult(eligibility=verdict)

        request = await self.create_request(
            db,
            store.id,
            draft,
            origin="public",
            actor=PUBLIC_ACTOR,
            auto_approve=verdict.auto_approve and draft.type != "refund",
            auto_approve_limit=policy.rules.auto_approve_limit,
            currency=store.currency or "BRL",
        )
        return SubmissionResult(eligibility=verdict, request=request)

    # ── Lifecycle ────────────────────────────────────────

    async def _locked(self, db: AsyncSession, request_id, store_id=None) -> Request:
        stmt = (
            select(Request)
            .where(Request.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if store_id is not None:
            stmt = stmt.where(Request.store_id == store_id)
        request = (await db.execute(stmt)).scalar_one_or_none()
        if request is None:
            raise NotFound(f"Request not found: {request_id}")
        return request

    async def _last_event(self, db: AsyncSession, request_id) -> Optional[RequestEvent]:
        return (await db.execute(
            select(RequestEvent)
            .where(RequestEvent.request_id == request_id)
            .order_by(RequestEvent.seq.desc())
            .limit(1)
        )).scalar_one_or_none()

    async def _apply(
        self,
        db: AsyncSession,
        request: Request,
        step: lifecycle.Transition,
        approved_amount: Optional[Decimal] = None,
    ) -> Request:
        last = await self._last_event(db, request.id)
        if last is None or last.to_status != request.status:
            raise TransitionError(
                f"Timeline of {request.protocol} is out of sync "
                f"(status {request.status}, last event {last.to_status if last else 'none'})"
            )
        if approved_amount is not None and approved_amount < 0:
            raise ValidationFailed({"approved_amount": "Approved amount cannot be negative"})

        now = self._clock()
        protocol = request.protocol
        event = RequestEvent(
            request_id=request.id,
            seq=last.seq + 1,
            from_status=step.from_status.value,
            to_status=step.to_status.value,
            reason=step.reason,
            actor=step.actor,
            created_at=now,
        )
        db.add(event)
        request.status = step.to_status.value
        request.updated_at = now
        if step.to_status == RequestStatus.APPROVED and not step.revert:
            if approved_amount is not None:
                request.approved_amount = approved_amount
            elif request.approved_amount is None:
                request.approved_amount = request.amount

        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise TransitionError(
                f"Request {protocol} was changed concurrently; reload and retry"
            ) from e

        logger.info(
            f"{request.protocol}: {step.from_status.value} -> {step.to_status.value} "
            f"by {step.actor}{' (revert)' if step.revert else ''}"
        )
        self._notifier.notify_status_changed(
            request_summary(request), step.from_status.value, step.reason, revert=step.revert,
        )
        if step.triggers_execution and self._executor is not None:
            try:
                await self._executor(request, event)
            except Exception as e:
                logger.error(f"Execution hook failed for {request.protocol} ({step.to_status.value}): {e}")
        return request

    async def transition(
        self,
        db: AsyncSession,
        request_id,
        target: RequestStatus | str,
        *,
        actor: str,
        reason: str = "",
        approved_amount: Optional[Decimal] = None,
        store_id=None,
    ) -> Request:
        request = await self._locked(db, request_id, store_id)
        step = lifecycle.plan_transition(request.type, request.status, target, actor=actor, reason=reason)
        return await self._apply(db, request, step, approved_amount)

    async def advance(self, db: AsyncSession, request_id, *, actor: str, reason: str = "", store_id=None) -> Request:
        request = await self._locked(db, request_id, store_id)
        target = lifecycle.next_status(request.type, request.status)
        if target is None:
            raise TransitionError(f"Request {request.protocol} has no next step from {request.status}")
        step = lifecycle.plan_transition(request.type, request.status, target, actor=actor, reason=reason)
        return await self._apply(db, request, step)

    async def revert(self, db: AsyncSession, request_id, *, actor: str, reason: str, store_id=None) -> Request:
        request = await self._locked(db, request_id, store_id)
        step = lifecycle.plan_revert(request.type, request.status, actor=actor, reason=reason)
        return await self._apply(db, request, step)

    # ── Queries ──────────────────────────────────────────

    async def get_request(self, db: AsyncSession, request_id, store_id=None) -> Request:
        stmt = select(Request).where(Request.id == request_id)
        if store_id is not None:
            stmt = stmt.where(Request.store_id == store_id)
        request = (await db.execute(stmt)).scalar_one_or_none()
        if request is None:
            raise NotFound(f"Request not found: {request_id}")
        return request

    async def get_items(self, db: AsyncSession, request_id) -> list[RequestItem]:
        result = await db.execute(select(RequestItem).where(RequestItem.request_id == request_id))
        return list(result.scalars().all())

    async def get_timeline(self, db: AsyncSession, request_id, newest_first: bool = False) -> list[RequestEvent]:
        order = RequestEvent.seq.desc() if newest_first else RequestEvent.seq.asc()
        result = await db.execute(
            select(RequestEvent).where(RequestEvent.request_id == request_id).order_by(order)
        )
        return list(result.scalars().all())

    async def list_requests(
        self,
        db: AsyncSession,
        store_id,
        type: Optional[str] = None,
        status: Optional[str] = None,
        origin: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[Request]:
        stmt = select(Request).where(Request.store_id == store_id)
        if type:
            stmt = stmt.where(Request.type == type)
        if status:
            stmt = stmt.where(Request.status == status)
        if origin:
            stmt = stmt.where(Request.origin == origin)
        stmt = stmt.order_by(Request.created_at.desc()).offset(skip).limit(limit)
        return list((await db.execute(stmt)).scalars().all())

    async def track(self, db: AsyncSession, protocol: str, store_slug: Optional[str] = None, locale: str = "pt-BR") -> dict:
        """Public-safe view of a request and its timeline, newest event first."""
        stmt = select(Request).where(Request.protocol == protocol.strip().upper())
        if store_slug:
            stmt = stmt.join(Store, Store.id == Request.store_id).where(Store.slug == store_slug)
        matches = list((await db.execute(stmt.limit(2))).scalars().all())
        if len(matches) != 1:
            raise NotFound(f"Tracking code not found: {protocol}")
        request = matches[0]

        items = await self.get_items(db, request.id)
        events = await self.get_timeline(db, request.id, newest_first=True)
        return {
            "protocol": request.protocol,
            "type": request.type,
            "status": request.status,
            "status_label": label_for(request.status, locale),
            "created_at": request.created_at,
            "order_code": request.order_code,
            "customer_name": request.customer_name,
            "items": [{"name": i.name, "sku": i.sku, "quantity": i.quantity} for i in items],
            "timeline": [
                {
                    "status": e.to_status,
                    "status_label": label_for(e.to_status, locale),
                    "description": e.reason,
                    "created_at": e.created_at,
                }
                for e in events
            ],
        }

    async def stats(self, db: AsyncSession, store_id) -> dict:
        async def grouped(column) -> dict[str, int]:
            rows = await db.execute(
                select(column, func.count(Request.id)).where(Request.store_id == store_id).group_by(column)
            )
            return {key or "": count for key, count in rows.all()}

        by_status = await grouped(Request.status)
        by_type = await grouped(Request.type)
        by_reason = await grouped(Request.reason)
        totals = (await db.execute(
            select(
                func.coalesce(func.sum(Request.amount), 0),
                func.coalesce(func.sum(Request.approved_amount), 0),
            ).where(Request.store_id == store_id)
        )).one()
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
            "by_reason": by_reason,
            "total_requested": round(float(totals[0] or 0), 2),
            "total_approved": round(float(totals[1] or 0), 2),
        }


def request_summary(request: Request) -> dict:
    return {
        "id": str(request.id),
        "store_id": str(request.store_id),
        "protocol": request.protocol,
        "type": request.type,
        "status": request.status,
        "order_code": request.order_code,
        "amount": request.amount,
        "risk_score": request.risk_score,
    }
