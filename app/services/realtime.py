"""Change notifications and dashboard reconciliation.

Writers publish a ``ChangeEvent`` whenever a sync job, summary or channel
revenue row changes. A ``DashboardSession`` subscribes for one store,
filters events with the pure ``react`` function and rebuilds its state
wholesale from the loader; there is no polling and no partial merge.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class WatchedTable(str, Enum):
    SYNC_JOBS = "sync_jobs"
    STORE_SUMMARIES = "store_summaries"
    CHANNEL_REVENUE = "channel_revenue"


class ChangeEvent(BaseModel):
    """Inbound change notification; validated on construction."""

    table: WatchedTable
    record_id: str = Field(..., min_length=1)
    store_id: str = Field(..., min_length=1)
    new_values: dict[str, Any] = Field(default_factory=dict)

    def period(self) -> Optional[tuple[date, date]]:
        start = _as_date(self.new_values.get("period_start"))
        end = _as_date(self.new_values.get("period_end"))
        if start is None or end is None:
            return None
        return start, end


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


# ── Feed ─────────────────────────────────────────────────

@dataclass(eq=False)
class Subscription:
    store_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)

    async def get(self) -> ChangeEvent:
        return await self.queue.get()


class ChangeFeed:
    """In-process broker fanning events out to store-scoped subscribers."""

    def __init__(self):
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, store_id: str) -> Subscription:
        sub = Subscription(store_id=str(store_id))
        self._subscribers[sub.store_id].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.store_id, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.store_id, None)

    def subscriber_count(self, store_id: Optional[str] = None) -> int:
        if store_id is None:
            return sum(len(s) for s in self._subscribers.values())
        return len(self._subscribers.get(str(store_id), []))

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to every subscriber of the event's store; returns the count."""
        subs = list(self._subscribers.get(event.store_id, []))
        for sub in subs:
            sub.queue.put_nowait(event)
        return len(subs)

    def emit(self, table: WatchedTable, record_id: Any, store_id: Any, new_values: dict) -> int:
        return self.publish(ChangeEvent(
            table=table,
            record_id=str(record_id),
            store_id=str(store_id),
            new_values=_jsonable(new_values),
        ))


def _jsonable(values: dict) -> dict:
    out = {}
    for key, value in values.items():
        if isinstance(value, (date, datetime)):
            out[key] = value.isoformat()
        elif isinstance(value, (str, int, float, bool)) or value is None:
            out[key] = value
        else:
            out[key] = str(value)
    return out


# ── Pure reconciliation ──────────────────────────────────

@dataclass(frozen=True)
class ViewContext:
    store_id: str
    period_start: date
    period_end: date


@dataclass(frozen=True)
class Reaction:
    refetch: bool = False
    syncing: Optional[bool] = None  # None leaves the indicator unchanged
    notice: Optional[str] = None
    error: Optional[str] = None

    @property
    def ignored(self) -> bool:
        return self == IGNORE


IGNORE = Reaction()


def matches_view(event: ChangeEvent, view: ViewContext) -> bool:
    if event.store_id != str(view.store_id):
        return False
    return event.period() == (view.period_start, view.period_end)


def react(event: ChangeEvent, view: ViewContext) -> Reaction:
    """Decide what an event means for the current view."""
    if not matches_view(event, view):
        return IGNORE

    if event.table == WatchedTable.SYNC_JOBS:
        status = event.new_values.get("status")
        if status == "SUCCESS":
            return Reaction(refetch=True, syncing=False, notice="Dashboard data updated")
        if status == "ERROR" and event.new_values.get("reclaimed"):
            # A timed-out job replaced by a new sync is a retry, not a failure.
            if event.new_values.get("restarted"):
                return Reaction(syncing=True, notice="Sync restarted")
            return Reaction(syncing=False, notice="Stale sync cleared")
        if status == "ERROR":
            return Reaction(syncing=False, error=event.new_values.get("error") or "Sync failed")
        if status in ("QUEUED", "PROCESSING"):
            return Reaction(syncing=True)
        return IGNORE

    return Reaction(refetch=True)


# ── Session ──────────────────────────────────────────────

@dataclass
class DashboardState:
    snapshot: Any = None
    syncing: bool = False
    last_error: Optional[str] = None
    notices: list[str] = field(default_factory=list)
    refreshed_at: Optional[datetime] = None
    refresh_count: int = 0


SnapshotLoader = Callable[[ViewContext], Awaitable[Any]]


class DashboardSession:
    """Viewing-session context: owns the cached aggregates and the subscription.

    ``attach`` subscribes to one store and loads the initial snapshot;
    ``detach`` tears the subscription down before the context is reused.
    Sessions are built by the process serving the dashboard UI, one per
    viewer, on top of the shared ``change_feed``.
    """

    def __init__(self, feed: ChangeFeed, loader: SnapshotLoader, period_start: date, period_end: date):
        self._feed = feed
        self._loader = loader
        self._period = (period_start, period_end)
        self._store_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self.state = DashboardState()

    @property
    def view(self) -> Optional[ViewContext]:
        if self._store_id is None:
            return None
        return ViewContext(self._store_id, *self._period)

    @property
    def attached(self) -> bool:
        return self._subscription is not None

    async def attach(self, store_id: Any) -> None:
        if self.attached:
            await self.detach()
        self._store_id = str(store_id)
        self.state = DashboardState()
        self._subscription = self._feed.subscribe(self._store_id)
        self._task = asyncio.create_task(self._pump(self._subscription))
        await self.refresh()

    async def detach(self) -> None:
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._store_id = None

    async def select_period(self, period_start: date, period_end: date) -> None:
        self._period = (period_start, period_end)
        self.state.syncing = False
        self.state.last_error = None
        if self.attached:
            await self.refresh()

    def mark_syncing(self) -> None:
        self.state.syncing = True
        self.state.last_error = None

    async def refresh(self) -> None:
        view = self.view
        if view is None:
            return
        self.state.snapshot = await self._loader(view)
        self.state.refreshed_at = datetime.now(timezone.utc)
        self.state.refresh_count += 1

    async def handle(self, event: ChangeEvent) -> Reaction:
        view = self.view
        if view is None:
            return IGNORE
        reaction = react(event, view)
        if reaction.ignored:
            return reaction
        if reaction.syncing is not None:
            self.state.syncing = reaction.syncing
        if reaction.syncing:
            self.state.last_error = None
        if reaction.error:
            self.state.last_error = reaction.error
        if reaction.refetch:
            await self.refresh()
        if reaction.notice:
            self.state.notices.append(reaction.notice)
        return reaction

    async def drain(self) -> None:
        """Wait until every event delivered so far has been handled."""
        if self._subscription is not None:
            await self._subscription.queue.join()

    async def _pump(self, sub: Subscription) -> None:
        while True:
            event = await sub.get()
            try:
                await self.handle(event)
            except Exception as e:
                self.state.last_error = str(e)
                logger.error(f"Dashboard reconciliation failed for {event.table.value}/{event.record_id}: {e}")
            finally:
                sub.queue.task_done()


# Module-level singleton. SyncJobOrchestrator publishes here; the process
# embedding the dashboard UI builds one DashboardSession per viewer on it.
change_feed = ChangeFeed()
