"""Request service tests against the SQLite session."""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFound, PortalError, TransitionError, ValidationFailed
from app.models import Request, RequestEvent
from app.services import requests as requests_module
from app.services.notification import NotificationChannel, build_notification_service
from app.services.requests import ItemData, RequestDraft, RequestService
from app.services.risk import CustomerHistory

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(notifier):
    return RequestService(notifier=notifier, clock=lambda: NOW)


def refund_draft(**overrides) -> RequestDraft:
    defaults = dict(
        type="refund",
        order_code="#1001",
        customer_name="Ana Souza",
        customer_email="ana@example.com",
        reason="defect",
        amount=Decimal("80"),
        method="pix",
        items=[ItemData(name="Camiseta", sku="CAM-01", quantity=1, price=Decimal("80"))],
        attachments=["https://cdn.example.com/foto1.jpg"],
    )
    defaults.update(overrides)
    return RequestDraft(**defaults)


def return_draft(**overrides) -> RequestDraft:
    defaults = dict(
        type="return",
        order_code="#2002",
        customer_name="Bruno Lima",
        customer_email="bruno@example.com",
        reason="wrong_size",
        purchase_date=date(2026, 10, 14),
        items=[ItemData(name="Tenis", sku="TEN-42", quantity=1, price=Decimal("250"), category="shoes")],
    )
    defaults.update(overrides)
    return RequestDraft(**defaults)


async def assert_status_matches_timeline(db, request_id):
    request = (await db.execute(
        select(Request).where(Request.id == request_id).execution_options(populate_existing=True)
    )).scalar_one()
    last = (await db.execute(
        select(RequestEvent).where(RequestEvent.request_id == request_id).order_by(RequestEvent.seq.desc())
    )).scalars().first()
    assert last is not None
    assert request.status == last.to_status


class TestCreate:
    @pytest.mark.asyncio
    async def test_low_risk_refund_approved(self, db, store, service):
        request = await service.create_request(db, store.id, refund_draft())
        assert request.status == "approved"
        assert request.risk_score == 15
        assert request.approved_amount == Decimal("80")
        assert request.protocol.startswith("RB-2026-")
        await assert_status_matches_timeline(db, request.id)

    @pytest.mark.asyncio
    async def test_high_value_refund_pending(self, db, store, service):
        draft = refund_draft(
            amount=Decimal("5000"),
            attachments=[],
            items=[ItemData(name="Notebook", quantity=1, price=Decimal("5000"))],
        )
        request = await service.create_request(db, store.id, draft)
        assert request.status == "pending"
        assert request.approved_amount is None

    @pytest.mark.asyncio
    async def test_history_lowers_risk(self, db, store, service):
        history = CustomerHistory(total_orders=30, total_refunds=1, account_age_days=700)
        request = await service.create_request(db, store.id, refund_draft(history=history))
        assert request.risk_score == 0

    @pytest.mark.asyncio
    async def test_items_and_creation_event_stored(self, db, store, service):
        request = await service.create_request(db, store.id, refund_draft(), actor="ops@loja.com")
        items = await service.get_items(db, request.id)
        assert [i.sku for i in items] == ["CAM-01"]

        events = await service.get_timeline(db, request.id)
        assert len(events) == 1
        assert events[0].seq == 1
        assert events[0].from_status is None
        assert events[0].actor == "ops@loja.com"

    @pytest.mark.asyncio
    async def test_return_starts_new(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft())
        assert request.status == "new"
        assert request.protocol.startswith("RET-")

    @pytest.mark.asyncio
    async def test_auto_approved_return_has_two_events(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft(), auto_approve=True)
        assert request.status == "approved"
        events = await service.get_timeline(db, request.id)
        assert [(e.from_status, e.to_status) for e in events] == [(None, "new"), ("new", "approved")]
        assert events[1].actor == "system"

    @pytest.mark.asyncio
    async def test_refund_validation_errors(self, db, store, service):
        with pytest.raises(ValidationFailed) as exc:
            await service.create_request(db, store.id, refund_draft(method=None, items=[], amount=Decimal("0")))
        assert set(exc.value.fields) == {"method", "amount"}
        assert (await db.execute(select(Request))).first() is None

    @pytest.mark.asyncio
    async def test_invalid_type(self, db, store, service):
        with pytest.raises(ValidationFailed):
            await service.create_request(db, store.id, return_draft(type="swap"))

    @pytest.mark.asyncio
    async def test_protocol_collision_retried(self, db, store, service, monkeypatch):
        codes = iter(["RET-AAAAAAAA", "RET-AAAAAAAA", "RET-BBBBBBBB"])
        monkeypatch.setattr(requests_module, "generate_protocol", lambda *_: next(codes))
        first = await service.create_request(db, store.id, return_draft())
        second = await service.create_request(db, store.id, return_draft())
        assert first.protocol == "RET-AAAAAAAA"
        assert second.protocol == "RET-BBBBBBBB"

    @pytest.mark.asyncio
    async def test_protocol_attempts_exhausted(self, db, store, service, monkeypatch):
        monkeypatch.setattr(requests_module, "generate_protocol", lambda *_: "RET-SAMESAME")
        await service.create_request(db, store.id, return_draft())
        with pytest.raises(PortalError) as exc:
            await service.create_request(db, store.id, return_draft())
        assert exc.value.code == "protocol_unavailable"


class TestPublicSubmission:
    @pytest.mark.asyncio
    async def test_photos_required_goes_to_review(self, db, store, service, make_policy):
        await make_policy(store, "returns", {"janelaDias": 15, "exigirFotos": True, "aprovarAuto": True})
        result = await service.submit_public(db, store.slug, return_draft())
        assert result.eligibility.is_eligible
        assert result.eligibility.warnings
        assert result.status == "new"
        assert result.request.origin == "public"

    @pytest.mark.asyncio
    async def test_auto_approve_policy(self, db, store, service, make_policy):
        await make_policy(store, "returns", {"janelaDias": 15, "aprovarAuto": True})
        result = await service.submit_public(db, store.slug, return_draft())
        assert result.status == "approved"
        assert "automatically" in result.message

    @pytest.mark.asyncio
    async def test_ineligible_creates_nothing(self, db, store, service, make_policy):
        await make_policy(store, "returns", {"janelaDias": 3})
        result = await service.submit_public(db, store.slug, return_draft())
        assert result.request is None
        assert result.protocol is None
        assert "window" in result.message.lower()
        assert (await db.execute(select(Request))).first() is None

    @pytest.mark.asyncio
    async def test_required_form_fields(self, db, store, service, make_policy):
        await make_policy(store, "returns", {}, [
            {"name": "cpf", "label": "CPF", "required": True},
            {"name": "customer_email", "label": "E-mail", "required": True},
        ])
        with pytest.raises(ValidationFailed) as exc:
            await service.submit_public(db, store.slug, return_draft(customer_email=""))
        assert set(exc.value.fields) == {"cpf", "customer_email"}

    @pytest.mark.asyncio
    async def test_default_policy_when_unconfigured(self, db, store, service):
        result = await service.submit_public(db, store.slug, return_draft())
        assert result.status == "new"

    @pytest.mark.asyncio
    async def test_refund_uses_policy_limit(self, db, store, service, make_policy):
        await make_policy(store, "refunds", {"autoApproveLimit": 50})
        result = await service.submit_public(db, store.slug, refund_draft())
        assert result.status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_store(self, db, service):
        with pytest.raises(NotFound):
            await service.submit_public(db, "nope", return_draft())


class TestTransitions:
    @pytest.mark.asyncio
    async def test_full_return_flow_keeps_invariant(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft())
        for target in ["review", "approved", "awaiting_post", "received_dc", "closed"]:
            await service.transition(db, request.id, target, actor="ops")
            await assert_status_matches_timeline(db, request.id)

        events = await service.get_timeline(db, request.id)
        assert [e.seq for e in events] == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_terminal_rejects_everything(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft())
        await service.transition(db, request.id, "rejected", actor="ops", reason="Used item")
        with pytest.raises(TransitionError):
            await service.transition(db, request.id, "review", actor="ops")
        with pytest.raises(TransitionError):
            await service.revert(db, request.id, actor="ops", reason="reopen")
        assert len(await service.get_timeline(db, request.id)) == 2
        await assert_status_matches_timeline(db, request.id)

    @pytest.mark.asyncio
    async def test_illegal_transition_leaves_record_unchanged(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft())
        with pytest.raises(TransitionError):
            await service.transition(db, request.id, "closed", actor="ops")
        fresh = await service.get_request(db, request.id)
        assert fresh.status == "new"
        assert len(await service.get_timeline(db, request.id)) == 1

    @pytest.mark.asyncio
    async def test_revert_records_reason(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft())
        await service.transition(db, request.id, "review", actor="ops")
        await service.transition(db, request.id, "approved", actor="ops")
        await service.revert(db, request.id, actor="lead@loja.com", reason="Wrong photo attached")

        events = await service.get_timeline(db, request.id, newest_first=True)
        assert events[0].from_status == "approved"
        assert events[0].to_status == "review"
        assert events[0].reason == "Wrong photo attached"
        await assert_status_matches_timeline(db, request.id)

    @pytest.mark.asyncio
    async def test_approved_amount_override(self, db, store, service):
        draft = refund_draft(amount=Decimal("500"), items=[ItemData(name="Jaqueta", price=Decimal("500"))])
        request = await service.create_request(db, store.id, draft)
        assert request.status == "pending"
        request = await service.transition(db, request.id, "approved", actor="ops", approved_amount=Decimal("350"))
        assert request.approved_amount == Decimal("350")

    @pytest.mark.asyncio
    async def test_advance(self, db, store, service):
        request = await service.create_request(db, store.id, refund_draft())
        request = await service.advance(db, request.id, actor="ops")
        assert request.status == "processing"
        request = await service.advance(db, request.id, actor="ops")
        assert request.status == "completed"
        with pytest.raises(TransitionError, match="no next step"):
            await service.advance(db, request.id, actor="ops")

    @pytest.mark.asyncio
    async def test_timeline_mismatch_rejected(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft())
        # Status written without an event breaks the pairing.
        request.status = "review"
        await db.commit()
        with pytest.raises(TransitionError, match="out of sync"):
            await service.transition(db, request.id, "approved", actor="ops")

    @pytest.mark.asyncio
    async def test_concurrent_append_conflict(self, db, store, service, monkeypatch):
        request = await service.create_request(db, store.id, return_draft())
        request_id = request.id
        stale = await service._last_event(db, request.id)

        async with AsyncSession(db.bind, expire_on_commit=False) as other:
            other.add(RequestEvent(request_id=request.id, seq=2, to_status="review", reason="racer", actor="other"))
            await other.commit()

        async def last_event_before_race(session, request_id):
            return stale

        monkeypatch.setattr(service, "_last_event", last_event_before_race)
        with pytest.raises(TransitionError, match="changed concurrently"):
            await service.transition(db, request_id, "rejected", actor="ops")

        events = await service.get_timeline(db, request_id)
        assert [(e.seq, e.actor) for e in events] == [(1, "system"), (2, "other")]

    @pytest.mark.asyncio
    async def test_execution_hook_after_commit(self, db, store, notifier):
        calls = []

        async def executor(request, event):
            calls.append((request.protocol, event.to_status))

        service = RequestService(notifier=notifier, executor=executor, clock=lambda: NOW)
        request = await service.create_request(db, store.id, refund_draft())
        await service.transition(db, request.id, "processing", actor="ops")
        assert calls == [(request.protocol, "processing")]

    @pytest.mark.asyncio
    async def test_execution_hook_failure_keeps_decision(self, db, store, notifier):
        async def executor(request, event):
            raise RuntimeError("gateway down")

        service = RequestService(notifier=notifier, executor=executor, clock=lambda: NOW)
        request = await service.create_request(db, store.id, refund_draft())
        request = await service.transition(db, request.id, "processing", actor="ops")
        assert request.status == "processing"
        await assert_status_matches_timeline(db, request.id)

    @pytest.mark.asyncio
    async def test_notifications_emitted(self, db, store, service, notifier):
        request = await service.create_request(db, store.id, return_draft())
        await service.transition(db, request.id, "review", actor="ops")
        events = [n.event.value for n in notifier.get_history()]
        assert events == ["request.created", "request.status_changed"]

    @pytest.mark.asyncio
    async def test_slow_webhook_does_not_hold_transition(self, db, store):
        release = asyncio.Event()

        async def slow_hook(request):
            await release.wait()
            return httpx.Response(204)

        notifier = build_notification_service("http://hooks.example.com/portal", transport=httpx.MockTransport(slow_hook))
        service = RequestService(notifier=notifier, clock=lambda: NOW)
        request = await service.create_request(db, store.id, return_draft())
        request = await asyncio.wait_for(service.transition(db, request.id, "review", actor="ops"), timeout=1)
        assert request.status == "review"
        assert notifier.pending == 2

        release.set()
        await notifier.flush()
        webhooks = notifier.get_history(channel=NotificationChannel.WEBHOOK)
        assert [n.delivered for n in webhooks] == [True, True]

    @pytest.mark.asyncio
    async def test_store_scoping(self, db, store, bare_store, service):
        request = await service.create_request(db, store.id, return_draft())
        with pytest.raises(NotFound):
            await service.transition(db, request.id, "review", actor="ops", store_id=bare_store.id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_track_newest_first(self, db, store, service):
        request = await service.create_request(db, store.id, return_draft())
        await service.transition(db, request.id, "review", actor="ops", reason="Checking photos")

        tracked = await service.track(db, request.protocol.lower(), locale="en")
        assert tracked["status_label"] == "Under review"
        assert [t["status"] for t in tracked["timeline"]] == ["review", "new"]
        assert "customer_email" not in tracked
        assert tracked["items"][0]["sku"] == "TEN-42"

    @pytest.mark.asyncio
    async def test_track_unknown(self, db, service):
        with pytest.raises(NotFound):
            await service.track(db, "RET-00000000")

    @pytest.mark.asyncio
    async def test_list_and_stats(self, db, store, service):
        await service.create_request(db, store.id, refund_draft())
        await service.create_request(db, store.id, return_draft())
        await service.create_request(db, store.id, return_draft(reason="regret"))

        refunds = await service.list_requests(db, store.id, type="refund")
        assert len(refunds) == 1
        assert len(await service.list_requests(db, store.id, status="new")) == 2

        stats = await service.stats(db, store.id)
        assert stats["total"] == 3
        assert stats["by_type"] == {"refund": 1, "return": 2}
        assert stats["by_status"]["approved"] == 1
        assert stats["by_reason"]["regret"] == 1
        assert stats["total_approved"] == 80.0
