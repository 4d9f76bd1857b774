"""Operator notifications for request and sync events.

Each notification is tagged with the store it concerns so the operator
feed can be read per store. Delivery goes to the log by default and to
a webhook when one is configured.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Coroutine, Optional
from uuid import UUID
import asyncio
import inspect
import json
import logging

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Request and sync lifecycle events."""
    REQUEST_CREATED = "request.created"
    REQUEST_AUTO_APPROVED = "request.auto_approved"
    REQUEST_STATUS_CHANGED = "request.status_changed"
    REQUEST_REVERTED = "request.reverted"
    SYNC_STARTED = "sync.started"
    SYNC_SUCCEEDED = "sync.succeeded"
    SYNC_FAILED = "sync.failed"
    SYNC_RECLAIMED = "sync.reclaimed"


class NotificationChannel(str, Enum):
    LOG = "log"
    WEBHOOK = "webhook"


class PortalEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, UUID):
            return str(obj)
        return super().default(obj)


@dataclass
class Notification:
    event: NotificationEvent
    title: str
    message: str
    data: dict = field(default_factory=dict)
    store_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    channel: NotificationChannel = NotificationChannel.LOG
    delivered: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event": self.event.value,
            "store_id": self.store_id,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "channel": self.channel.value,
            "delivered": self.delivered,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), cls=PortalEncoder)


Handler = Callable[[Notification], Any]


class NotificationService:
    """Routes each event to its subscribed channels and keeps a bounded feed."""

    def __init__(self, max_history: int = 1000):
        self._handlers: dict[NotificationChannel, list[Handler]] = {}
        self._routes: dict[NotificationEvent, list[NotificationChannel]] = {}
        self._history: list[Notification] = []
        self._max_history = max_history
        self._pending: set[asyncio.Task] = set()

    def register_handler(self, channel: NotificationChannel, handler: Handler) -> None:
        self._handlers.setdefault(channel, []).append(handler)

    def subscribe(self, event: NotificationEvent, channels: list[NotificationChannel]) -> None:
        self._routes[event] = list(channels)

    def notify(
        self,
        event: NotificationEvent,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> list[Notification]:
        """Deliver one notification per routed channel.

        Delivery failures are recorded on the notification; they never
        propagate to the operation that raised the event.
        """
        data = data or {}
        store_id = str(data["store_id"]) if data.get("store_id") else None
        sent = []
        for channel in self._routes.get(event, [NotificationChannel.LOG]):
            notification = Notification(
                event=event, title=title, message=message, data=data, store_id=store_id, channel=channel,
            )
            self._deliver(notification)
            sent.append(notification)

        self._history.extend(sent)
        del self._history[:-self._max_history]
        return sent

    def _deliver(self, notification: Notification) -> None:
        handlers = self._handlers.get(notification.channel)
        if not handlers:
            logger.info(f"[{notification.event.value}] {notification.title}: {notification.message}")
            notification.delivered = True
            return
        for handler in handlers:
            try:
                result = handler(notification)
            except Exception as e:
                self._failed(notification, e)
                continue
            if inspect.iscoroutine(result):
                self._schedule(notification, result)
            else:
                notification.delivered = True

    def _schedule(self, notification: Notification, delivery: Coroutine) -> None:
        """Run an async handler off the caller's path.

        Inside an event loop the delivery becomes a background task; with
        no loop running (CLI, scripts) it runs to completion here.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._complete(notification, delivery))
            return
        task = loop.create_task(self._complete(notification, delivery))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _complete(self, notification: Notification, delivery: Coroutine) -> None:
        try:
            await delivery
        except Exception as e:
            self._failed(notification, e)
        else:
            notification.delivered = True

    def _failed(self, notification: Notification, error: Exception) -> None:
        notification.error = str(error)
        logger.error(f"Notification {notification.event.value} via {notification.channel.value} failed: {error}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for background deliveries started so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    # ── Domain events ────────────────────────────────────

    def notify_request_created(self, request: dict) -> list[Notification]:
        protocol = request.get("protocol", "N/A")
        status = request.get("status", "")
        event = (
            NotificationEvent.REQUEST_AUTO_APPROVED
            if status == "approved"
            else NotificationEvent.REQUEST_CREATED
        )
        return self.notify(
            event=event,
            title=f"New {request.get('type', 'request')}: {protocol}",
            message=f"Request {protocol} for order {request.get('order_code', '')} is {status}",
            data=request,
        )

    def notify_status_changed(self, request: dict, from_status: str, reason: str = "", revert: bool = False) -> list[Notification]:
        protocol = request.get("protocol", "N/A")
        message = f"Request {protocol}: {from_status} -> {request.get('status', '')}"
        if reason:
            message += f" ({reason})"
        return self.notify(
            event=NotificationEvent.REQUEST_REVERTED if revert else NotificationEvent.REQUEST_STATUS_CHANGED,
            title=f"Request {protocol} updated",
            message=message,
            data=request,
        )

    def notify_sync(self, event: NotificationEvent, job: dict) -> list[Notification]:
        scope = f"{job.get('period_start')}..{job.get('period_end')}"
        if event == NotificationEvent.SYNC_FAILED:
            message = f"Sync {scope} failed: {job.get('error') or 'unknown error'}"
        elif event == NotificationEvent.SYNC_RECLAIMED:
            message = f"Sync {scope} timed out and was restarted"
        elif event == NotificationEvent.SYNC_SUCCEEDED:
            message = f"Sync {scope} finished"
        else:
            message = f"Sync {scope} started"
        return self.notify(
            event=event,
            title=f"Dashboard sync {job.get('status', '').lower()}",
            message=message,
            data=job,
        )

    # ── Feed ─────────────────────────────────────────────

    def get_history(
        self,
        event: Optional[NotificationEvent] = None,
        channel: Optional[NotificationChannel] = None,
        store_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Notification]:
        items = [
            n for n in self._history
            if (event is None or n.event == event)
            and (channel is None or n.channel == channel)
            and (store_id is None or n.store_id == str(store_id))
        ]
        return items[-limit:]

    def stats(self, store_id: Optional[str] = None) -> dict:
        items = self.get_history(store_id=store_id, limit=len(self._history) or 1)
        by_event: dict[str, int] = {}
        for n in items:
            by_event[n.event.value] = by_event.get(n.event.value, 0) + 1
        return {
            "total": len(items),
            "delivered": sum(1 for n in items if n.delivered),
            "failed": sum(1 for n in items if n.error),
            "by_event": by_event,
        }


def create_webhook_handler(
    url: str,
    timeout: int = 10,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Handler:
    """POST each notification as JSON; raises on transport or HTTP errors.

    The handler is async, so the service delivers it in the background.
    """

    async def handler(notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(
                url,
                content=notification.to_json(),
                headers={
                    "Content-Type": "application/json",
                    "X-Portal-Event": notification.event.value,
                },
            )
            resp.raise_for_status()

    return handler


def build_notification_service(
    webhook_url: str = "",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> NotificationService:
    service = NotificationService()
    if webhook_url:
        service.register_handler(NotificationChannel.WEBHOOK, create_webhook_handler(webhook_url, transport=transport))
        for event in NotificationEvent:
            service.subscribe(event, [NotificationChannel.LOG, NotificationChannel.WEBHOOK])
    return service


# Module-level singleton
notification_service = build_notification_service(get_settings().notification_webhook_url)
