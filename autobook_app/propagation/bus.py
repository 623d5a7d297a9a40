"""
Change propagation bus.

Delivers committed transition events to subscribers. The session store's
event log is the outbox: each subscriber has its own pump reading events
after a persisted cursor, in global commit order. The cursor only advances
once the subscriber has handled (or dead-lettered) an event, which makes
delivery at-least-once. Commits never wait on subscribers; the store merely
wakes the pumps up through `notify`.
"""

import asyncio
from typing import Any, Optional

import structlog

from ..config.defaults import PropagationParams
from ..errors import PersistenceError, UnrecoverableError
from ..persistence.session_store import SessionStore
from ..state.models import TransitionEvent
from .subscribers import BaseSubscriber

logger = structlog.get_logger(__name__)


class ChangePropagationBus:
    """Fans committed transitions out to subscribers."""

    def __init__(self, store: SessionStore, params: Optional[PropagationParams] = None):
        self.store = store
        self.params = params or PropagationParams()

        self._subscribers: dict[str, BaseSubscriber] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cursors: dict[str, int] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

        self._delivered = 0
        self._retries = 0
        self._dead_lettered = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, subscriber: BaseSubscriber) -> None:
        """Register a subscriber; names identify cursors and must be unique."""
        if subscriber.name in self._subscribers:
            raise ValueError(f"Subscriber {subscriber.name} already registered")

        self._subscribers[subscriber.name] = subscriber
        if self._running:
            self._start_pump(subscriber)

        logger.info("Subscriber registered", subscriber=subscriber.name)

    async def start(self) -> None:
        """Start one pump per subscriber and listen for store commits."""
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._running = True
        self.store.add_commit_listener(self.notify)

        for subscriber in self._subscribers.values():
            self._start_pump(subscriber)

        logger.info("Change propagation bus started", subscribers=len(self._subscribers))

    async def stop(self) -> None:
        """Stop all pumps. Undelivered events stay in the log for the next start."""
        if not self._running:
            return

        self._running = False
        self.store.remove_commit_listener(self.notify)

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._wakeups.clear()
        logger.info("Change propagation bus stopped")

    def notify(self, event: Optional[TransitionEvent] = None) -> None:
        """
        Wake every pump up. Safe to call from any thread.

        Registered as a store commit listener, so it runs in whichever worker
        thread committed the transition.
        """
        loop = self._loop
        if loop is None or loop.is_closed() or not self._running:
            return
        loop.call_soon_threadsafe(self._wake_all)

    def _wake_all(self) -> None:
        for wakeup in self._wakeups.values():
            wakeup.set()

    def _start_pump(self, subscriber: BaseSubscriber) -> None:
        wakeup = asyncio.Event()
        wakeup.set()
        self._wakeups[subscriber.name] = wakeup
        self._tasks[subscriber.name] = asyncio.create_task(
            self._pump(subscriber, wakeup),
            name=f"bus-pump-{subscriber.name}"
        )

    async def _pump(self, subscriber: BaseSubscriber, wakeup: asyncio.Event) -> None:
        """Deliver events after the subscriber's cursor until stopped."""
        poll_interval = self.params.poll_interval_ms / 1000.0
        cursor: Optional[int] = None

        while self._running:
            try:
                if cursor is None:
                    cursor = await asyncio.to_thread(
                        self.store.get_subscriber_offset, subscriber.name
                    )
                    self._cursors[subscriber.name] = cursor

                wakeup.clear()
                events = await asyncio.to_thread(
                    self.store.events_after, cursor, self.params.batch_size
                )

                for event in events:
                    await self._deliver(subscriber, event)
                    await asyncio.to_thread(
                        self.store.set_subscriber_offset, subscriber.name, event.id
                    )
                    cursor = event.id
                    self._cursors[subscriber.name] = cursor

                if len(events) >= self.params.batch_size:
                    continue

            except PersistenceError as e:
                logger.error(
                    "Bus pump could not reach the session store",
                    subscriber=subscriber.name,
                    error=str(e)
                )

            try:
                await asyncio.wait_for(wakeup.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _deliver(self, subscriber: BaseSubscriber, event: TransitionEvent) -> None:
        """Deliver one event with retries; exhausted events are dead-lettered."""
        attempts = self.params.subscriber_retry_attempts
        delay = self.params.subscriber_retry_delay_ms / 1000.0
        last_error: Optional[Exception] = None

        for attempt in range(attempts + 1):
            try:
                await subscriber.deliver(event)
                self._delivered += 1
                return

            except UnrecoverableError as e:
                last_error = e
                break

            except Exception as e:
                last_error = e

            if attempt < attempts:
                self._retries += 1
                logger.warning(
                    "Subscriber delivery failed, retrying",
                    subscriber=subscriber.name,
                    event_id=event.id,
                    attempt=attempt + 1,
                    error=str(last_error)
                )
                await asyncio.sleep(delay * (attempt + 1))

        self._dead_lettered += 1
        logger.error(
            "Subscriber delivery dead-lettered",
            subscriber=subscriber.name,
            event_id=event.id,
            session_id=event.session_id,
            error=str(last_error),
            error_type=type(last_error).__name__
        )
        await asyncio.to_thread(
            self.store.record_dead_letter, subscriber.name, event.id, str(last_error)
        )

    async def drain(self, timeout: float = 5.0) -> bool:
        """
        Wait until every subscriber caught up with the events committed so far.

        Returns:
            True if all cursors reached the newest event within the timeout
        """
        target = await asyncio.to_thread(self.store.last_event_id)
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + timeout

        while True:
            if all(self._cursors.get(name, -1) >= target for name in self._subscribers):
                return True
            if loop.time() >= give_up_at or not self._running:
                return False
            self._wake_all()
            await asyncio.sleep(0.01)

    def get_stats(self) -> dict[str, Any]:
        """Get propagation statistics."""
        return {
            "running": self._running,
            "subscribers": {
                name: {**subscriber.get_stats(), "cursor": self._cursors.get(name)}
                for name, subscriber in self._subscribers.items()
            },
            "delivered": self._delivered,
            "retries": self._retries,
            "dead_lettered": self._dead_lettered,
        }
