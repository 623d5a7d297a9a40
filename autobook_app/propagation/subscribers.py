"""
Subscribers fed by the change propagation bus.

Every subscriber receives transition events in global commit order and may
see an event more than once after a restart; each one deduplicates on the
event id.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from ..delivery.base import NotificationSender
from ..persistence.session_store import SessionStore
from ..state.models import (
    STATE_PROGRESS,
    Notification,
    NotificationCategory,
    SessionState,
    TransitionEvent,
)
from ..utils.time import utc_now

logger = structlog.get_logger(__name__)


class BaseSubscriber(ABC):
    """Base class for bus subscribers with in-memory event id deduplication."""

    def __init__(self, name: str, dedupe_window: int = 10000):
        self.name = name
        self.dedupe_window = dedupe_window
        self.logger = logger.bind(subscriber=name)
        self._seen: OrderedDict[int, None] = OrderedDict()
        self._delivery_count = 0
        self._duplicate_count = 0
        self._error_count = 0

    async def deliver(self, event: TransitionEvent) -> bool:
        """
        Hand an event to the subscriber unless it was already handled.

        Returns:
            True if the event was handled, False for a duplicate
        """
        if event.id in self._seen:
            self._duplicate_count += 1
            self.logger.debug("Duplicate event skipped", event_id=event.id)
            return False

        try:
            await self.handle(event)
        except Exception:
            self._error_count += 1
            raise

        self._remember(event.id)
        self._delivery_count += 1
        return True

    @abstractmethod
    async def handle(self, event: TransitionEvent) -> None:
        """Process one transition event."""

    def _remember(self, event_id: int) -> None:
        self._seen[event_id] = None
        while len(self._seen) > self.dedupe_window:
            self._seen.popitem(last=False)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "delivered": self._delivery_count,
            "duplicates": self._duplicate_count,
            "errors": self._error_count,
        }


@dataclass(frozen=True)
class StatusUpdate:
    """Live status item pushed to an owner's connected clients."""
    session_id: str
    state: SessionState
    progress: int
    stage: Optional[dict[str, Any]] = None   # In-state progress, None for transitions


class StatusFeed(ABC):
    """Live status channel towards the owner's UI."""

    @abstractmethod
    async def push(self, owner: str, session_id: str, new_state: SessionState) -> None:
        """Publish a session's new state to the owner."""

    async def push_progress(
        self,
        owner: str,
        session_id: str,
        state: SessionState,
        stage: dict[str, Any]
    ) -> None:
        """Publish progress within a state. Feeds showing only states ignore it."""


class InMemoryStatusFeed(StatusFeed):
    """Status feed fanning updates out to per-owner asyncio queues."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._queues: dict[str, list[asyncio.Queue]] = {}
        self._latest: dict[str, StatusUpdate] = {}

    def subscribe(self, owner: str) -> asyncio.Queue:
        """Open a queue receiving every future update of an owner."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._queues.setdefault(owner, []).append(queue)
        return queue

    def unsubscribe(self, owner: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(owner, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._queues.pop(owner, None)

    def latest(self, owner: str) -> Optional[StatusUpdate]:
        """Get the last update pushed for an owner."""
        return self._latest.get(owner)

    async def push(self, owner: str, session_id: str, new_state: SessionState) -> None:
        self._publish(owner, StatusUpdate(
            session_id=session_id,
            state=new_state,
            progress=STATE_PROGRESS[new_state],
        ))

    async def push_progress(
        self,
        owner: str,
        session_id: str,
        state: SessionState,
        stage: dict[str, Any]
    ) -> None:
        self._publish(owner, StatusUpdate(
            session_id=session_id,
            state=state,
            progress=STATE_PROGRESS[state],
            stage=dict(stage),
        ))

    def _publish(self, owner: str, update: StatusUpdate) -> None:
        self._latest[owner] = update

        for queue in self._queues.get(owner, []):
            if queue.full():
                # Slow client: drop its oldest update
                queue.get_nowait()
            queue.put_nowait(update)


class LiveStatusSubscriber(BaseSubscriber):
    """Forwards every committed state to the live status feed."""

    def __init__(self, feed: StatusFeed, name: str = "live_status", dedupe_window: int = 10000):
        super().__init__(name, dedupe_window)
        self.feed = feed

    async def handle(self, event: TransitionEvent) -> None:
        await self.feed.push(event.owner, event.session_id, event.to_state)


class NotificationPreferences:
    """Per-owner opt-out of transactional messages."""

    def __init__(self) -> None:
        self._email_enabled: dict[str, bool] = {}

    def set_email_notifications(self, owner: str, enabled: bool) -> None:
        self._email_enabled[owner] = enabled

    def is_enabled(self, owner: str, category: NotificationCategory) -> bool:
        """Owners receive messages unless they switched them off."""
        return self._email_enabled.get(owner, True)


def categorize(event: TransitionEvent) -> Optional[NotificationCategory]:
    """Map a transition event to the notification it triggers, if any."""
    if event.to_state == SessionState.INITIALIZING and event.attempt == 1:
        return NotificationCategory.BOOKING_STARTED
    if event.to_state == SessionState.SUCCEEDED:
        return NotificationCategory.BOOKING_SUCCESS
    if event.to_state == SessionState.FAILED and event.terminal:
        return NotificationCategory.BOOKING_FAILED
    return None


class NotificationDispatcher(BaseSubscriber):
    """
    Turns lifecycle milestones into transactional notifications.

    Each (event, category) pair is recorded in the store before sending, so
    a redelivered event never produces a second message. Sending is best
    effort: failures are logged and not retried.
    """

    def __init__(
        self,
        store: SessionStore,
        sender: NotificationSender,
        preferences: Optional[NotificationPreferences] = None,
        name: str = "notifications",
        dedupe_window: int = 10000
    ):
        super().__init__(name, dedupe_window)
        self.store = store
        self.sender = sender
        self.preferences = preferences or NotificationPreferences()
        self._sent_count = 0
        self._failed_count = 0
        self._suppressed_count = 0

    async def handle(self, event: TransitionEvent) -> None:
        category = categorize(event)
        if category is None:
            return

        if not self.preferences.is_enabled(event.owner, category):
            self._suppressed_count += 1
            self.logger.debug(
                "Notification suppressed by owner preference",
                owner=event.owner,
                category=category.value
            )
            return

        first = await asyncio.to_thread(
            self.store.record_notification, event.id, category.value, event.owner
        )
        if not first:
            self.logger.debug(
                "Notification already produced",
                event_id=event.id,
                category=category.value
            )
            return

        await self._send(Notification(
            event_id=event.id,
            owner=event.owner,
            category=category,
            detail=self._build_detail(event, category),
            created_at=utc_now(),
        ))

    async def dispatch(self, notification: Notification) -> None:
        """Send a notification not tied to a transition, honoring preferences."""
        if not self.preferences.is_enabled(notification.owner, notification.category):
            self._suppressed_count += 1
            return
        await self._send(notification)

    async def _send(self, notification: Notification) -> None:
        try:
            await self.sender.send(notification)
        except Exception as e:
            self._failed_count += 1
            self.logger.warning(
                "Notification delivery failed",
                owner=notification.owner,
                category=notification.category.value,
                event_id=notification.event_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return

        self._sent_count += 1
        self.logger.info(
            "Notification sent",
            owner=notification.owner,
            category=notification.category.value,
            event_id=notification.event_id
        )

    def _build_detail(self, event: TransitionEvent, category: NotificationCategory) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "session_id": event.session_id,
            "attempt": event.attempt,
        }
        if category == NotificationCategory.BOOKING_SUCCESS:
            detail["booking"] = event.detail
        elif category == NotificationCategory.BOOKING_FAILED:
            detail["error"] = event.detail
        return detail

    def get_stats(self) -> dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "sent": self._sent_count,
            "send_failures": self._failed_count,
            "suppressed": self._suppressed_count,
        })
        return stats
