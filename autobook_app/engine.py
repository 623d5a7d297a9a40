"""
Booking engine coordinator.

Wires the session store, job executor, retry policy and change propagation
bus together and exposes the operations callers use: start and stop a
booking run, read its status and transition log, and react to entitlement
changes.

    start_booking → entitlement check → Session created → JobExecutor task
    → transitions committed → bus → live status feed / notifications
"""

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import structlog

from .config.defaults import EngineConfig
from .config.loader import ConfigLoader
from .delivery.base import NotificationSender
from .delivery.stdout_delivery import StdoutNotificationSender
from .errors import NotEntitledError, SessionCancelledError
from .execution.executor import JobExecutor, force_terminal_failure
from .execution.steps import AutomationStep
from .persistence.session_store import SessionStore
from .propagation.bus import ChangePropagationBus
from .propagation.subscribers import (
    InMemoryStatusFeed,
    LiveStatusSubscriber,
    NotificationDispatcher,
    NotificationPreferences,
    StatusFeed,
)
from .retry.backoff import BackoffController
from .state.models import (
    BookingConfiguration,
    Notification,
    NotificationCategory,
    Session,
)
from .utils.masking import mask_personal_number
from .utils.time import utc_now

logger = structlog.get_logger(__name__)


class EntitlementChecker(ABC):
    """Subscription service answering whether an owner may run bookings."""

    @abstractmethod
    async def is_entitled(self, owner: str) -> bool:
        """Check whether an owner currently holds an active subscription."""


class StaticEntitlements(EntitlementChecker):
    """In-memory entitlement set."""

    def __init__(self, entitled: Iterable[str] = ()):
        self._entitled = set(entitled)

    def grant(self, owner: str) -> None:
        self._entitled.add(owner)

    def revoke(self, owner: str) -> None:
        self._entitled.discard(owner)

    async def is_entitled(self, owner: str) -> bool:
        return owner in self._entitled


class BookingEngine:
    """
    Main coordinator for booking runs.

    One asyncio task per active session executes the run; the session store
    stays the single source of truth for state, and every committed
    transition reaches subscribers through the propagation bus.
    """

    def __init__(
        self,
        step: AutomationStep,
        entitlements: EntitlementChecker,
        sender: Optional[NotificationSender] = None,
        config: Optional[EngineConfig] = None,
        config_dir: Optional[str] = None,
        store: Optional[SessionStore] = None,
        status_feed: Optional[StatusFeed] = None,
        preferences: Optional[NotificationPreferences] = None,
        rng: Optional[random.Random] = None
    ) -> None:
        """Initialize the booking engine."""
        self.logger = logger
        self.config = config or ConfigLoader.create(config_dir).load_config()
        self.entitlements = entitlements

        self.store = store or SessionStore(params=self.config.store)
        self.backoff = BackoffController(self.config.retry, rng)
        self.executor = JobExecutor(
            self.store, step, self.backoff, self.config.execution,
            progress_listener=self._push_progress
        )

        dedupe_window = self.config.propagation.dedupe_window
        self.status_feed = status_feed or InMemoryStatusFeed()
        self.sender = sender or StdoutNotificationSender()
        self.dispatcher = NotificationDispatcher(
            self.store, self.sender, preferences, dedupe_window=dedupe_window
        )
        self.bus = ChangePropagationBus(self.store, self.config.propagation)
        self.bus.subscribe(LiveStatusSubscriber(self.status_feed, dedupe_window=dedupe_window))
        self.bus.subscribe(self.dispatcher)

        self._tasks: dict[str, asyncio.Task] = {}

        self.logger.info("Booking engine initialized", db_path=str(self.store.db_path))

    async def start(self, recover: bool = True) -> None:
        """Start change propagation, failing sessions a previous process left behind."""
        if recover:
            await self.recover_stale_sessions()
        await self.bus.start()

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop every running session, then flush and stop the bus."""
        for session_id in list(self._tasks):
            self.executor.cancel(session_id, reason="shutdown")

        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.bus.drain(timeout=timeout)
        await self.bus.stop()
        self.logger.info("Booking engine stopped")

    async def start_booking(self, owner: str, configuration: BookingConfiguration) -> Session:
        """
        Start a booking run for a configuration.

        Args:
            owner: Identity of the requesting user
            configuration: Configuration to book for, owned by `owner`

        Returns:
            The new session, in its initial state

        Raises:
            NotEntitledError: If the owner has no active subscription
            ConflictError: If the configuration already has an active session
        """
        if configuration.owner != owner:
            raise ValueError(f"Configuration {configuration.id} does not belong to the caller")

        if not await self.entitlements.is_entitled(owner):
            self.logger.info("Booking refused without entitlement", owner=owner)
            raise NotEntitledError("An active subscription is required", owner=owner)

        session = await asyncio.to_thread(self.store.create_session, owner, configuration.id)

        task = asyncio.create_task(
            self.executor.run(session, configuration),
            name=f"booking-{session.id}"
        )
        self._tasks[session.id] = task
        task.add_done_callback(lambda t, session_id=session.id: self._on_run_done(session_id, t))

        self.logger.info(
            "Booking started",
            owner=owner,
            session_id=session.id,
            config_id=configuration.id,
            locations=list(configuration.locations),
            personal_number=mask_personal_number(configuration.personal_number)
        )
        return session

    async def _push_progress(self, session: Session, stage: dict[str, Any]) -> None:
        await self.status_feed.push_progress(session.owner, session.id, session.state, stage)

    def _on_run_done(self, session_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(session_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                "Booking run crashed",
                session_id=session_id,
                error=str(error),
                error_type=type(error).__name__
            )

    async def stop_booking(self, owner: str, session_id: str) -> bool:
        """
        Stop an owner's booking run.

        Returns:
            True if a stop was issued, False if the session is unknown, owned
            by someone else, or already finished
        """
        session = await asyncio.to_thread(self.store.get_session, session_id)
        if session is None or session.owner != owner or session.is_terminal:
            return False

        if self.executor.cancel(session_id, reason="user_requested"):
            return True

        # Active in storage but not running here: close it directly
        detail = SessionCancelledError(
            "Booking stopped",
            detail={"cancel_reason": "user_requested"}
        ).to_detail()
        await force_terminal_failure(self.store, session_id, detail)
        return True

    async def revoke_entitlement(self, owner: str) -> int:
        """
        Stop every run of an owner whose subscription ended.

        Returns:
            Number of sessions stopped
        """
        sessions = await asyncio.to_thread(self.store.list_active_sessions, owner)
        stopped = 0
        for session in sessions:
            if self.executor.cancel(session.id, reason="entitlement_revoked"):
                stopped += 1

        self.logger.info("Entitlement revoked", owner=owner, sessions_stopped=stopped)
        return stopped

    async def warn_entitlement_expiring(self, owner: str, days_left: int) -> None:
        """Send the subscription expiry reminder."""
        await self.dispatcher.dispatch(Notification(
            event_id=None,
            owner=owner,
            category=NotificationCategory.SUBSCRIPTION_EXPIRY,
            detail={"days_left": days_left},
            created_at=utc_now(),
        ))

    async def get_status(self, owner: str) -> Optional[dict[str, Any]]:
        """Get the owner's latest session with progress and status message."""
        session = await asyncio.to_thread(self.store.latest_session_for_owner, owner)
        if session is None:
            return None

        status = session.to_dict()
        status["running"] = self.executor.is_running(session.id)
        return status

    async def get_session_log(self, session_id: str) -> list[dict[str, Any]]:
        """Get the committed transitions of a session, oldest first."""
        events = await asyncio.to_thread(self.store.list_events, session_id)
        return [event.to_dict() for event in events]

    async def wait_for(self, session_id: str, timeout: Optional[float] = None) -> Optional[Session]:
        """Wait for a run to finish and return the persisted session."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await asyncio.to_thread(self.store.get_session, session_id)

    async def recover_stale_sessions(self) -> int:
        """
        Fail sessions left active in storage without a run in this process.

        Returns:
            Number of sessions failed
        """
        sessions = await asyncio.to_thread(self.store.list_active_sessions)
        recovered = 0
        for session in sessions:
            if self.executor.is_running(session.id) or session.id in self._tasks:
                continue
            await force_terminal_failure(self.store, session.id, {
                "reason": "orphaned",
                "message": "Session was left running by a previous process",
            })
            recovered += 1

        if recovered:
            self.logger.warning("Recovered stale sessions", count=recovered)
        return recovered

    def get_runtime_stats(self) -> dict[str, Any]:
        """Get runtime statistics."""
        return {
            "running_sessions": len(self._tasks),
            "store": self.store.get_stats(),
            "bus": self.bus.get_stats(),
            "sender": self.sender.get_stats(),
        }
