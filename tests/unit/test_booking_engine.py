"""Unit tests for the booking engine coordinator."""

import asyncio
from dataclasses import replace

import pytest

from autobook_app.delivery.base import DeliveryResult, DeliveryStatus, NotificationSender
from autobook_app.engine import BookingEngine, StaticEntitlements
from autobook_app.errors import ConflictError, NotEntitledError
from autobook_app.execution.steps import ScriptedAutomationStep
from autobook_app.propagation.subscribers import NotificationPreferences
from autobook_app.state.models import NotificationCategory, SessionState


class RecordingSender(NotificationSender):
    """Sender keeping notifications in memory."""

    def __init__(self):
        super().__init__("recording")
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)
        self._record_success()
        return DeliveryResult(status=DeliveryStatus.SUCCESS)

    def health_check(self):
        return True

    def categories(self, owner="user-001"):
        return [n.category for n in self.sent if n.owner == owner]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    give_up_at = loop.time() + timeout
    while not predicate():
        if loop.time() >= give_up_at:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestBookingEngine:
    """Test BookingEngine operations."""

    @pytest.fixture(autouse=True)
    def setup_engine(self, fast_config, booking_configuration):
        self.config = fast_config
        self.configuration = booking_configuration
        self.sender = RecordingSender()
        self.entitlements = StaticEntitlements({"user-001"})

    def make_engine(self, step=None, **kwargs) -> BookingEngine:
        return BookingEngine(
            step or ScriptedAutomationStep(),
            self.entitlements,
            sender=self.sender,
            config=self.config,
            **kwargs
        )

    def test_start_requires_entitlement(self):
        """Test owners without subscription cannot start."""
        engine = self.make_engine()
        self.entitlements.revoke("user-001")

        async def scenario():
            await engine.start()
            try:
                with pytest.raises(NotEntitledError):
                    await engine.start_booking("user-001", self.configuration)
            finally:
                await engine.shutdown()

        asyncio.run(scenario())

        assert engine.store.get_stats()["total_sessions"] == 0

    def test_configuration_of_other_owner(self):
        """Test callers can only run their own configurations."""
        engine = self.make_engine()

        async def scenario():
            with pytest.raises(ValueError):
                await engine.start_booking("user-002", self.configuration)

        asyncio.run(scenario())

    def test_successful_booking(self):
        """Test a booking run end to end through the engine."""
        engine = self.make_engine()

        async def scenario():
            await engine.start()
            session = await engine.start_booking("user-001", self.configuration)
            final = await engine.wait_for(session.id, timeout=5.0)
            await engine.bus.drain(timeout=2.0)
            status = await engine.get_status("user-001")
            log = await engine.get_session_log(session.id)
            await engine.shutdown()
            return final, status, log

        final, status, log = asyncio.run(scenario())

        assert final.state == SessionState.SUCCEEDED
        assert status["state"] == "succeeded"
        assert status["progress"] == 100
        assert status["running"] is False
        assert [entry["to_state"] for entry in log] == [
            "initializing", "waiting_authentication", "searching", "booking", "succeeded"
        ]
        assert self.sender.categories() == [
            NotificationCategory.BOOKING_STARTED,
            NotificationCategory.BOOKING_SUCCESS,
        ]

    def test_second_start_conflicts(self):
        """Test one active run per configuration."""
        step = ScriptedAutomationStep(state_delays={SessionState.SEARCHING: 30.0})
        engine = self.make_engine(step)

        async def scenario():
            await engine.start()
            session = await engine.start_booking("user-001", self.configuration)
            with pytest.raises(ConflictError):
                await engine.start_booking("user-001", self.configuration)
            await engine.stop_booking("user-001", session.id)
            final = await engine.wait_for(session.id, timeout=5.0)
            await engine.shutdown()
            return final

        final = asyncio.run(scenario())

        assert final.state == SessionState.FAILED

    def test_stop_booking(self):
        """Test an owner stops their running booking."""
        step = ScriptedAutomationStep(state_delays={SessionState.SEARCHING: 30.0})
        engine = self.make_engine(step)

        async def scenario():
            await engine.start()
            session = await engine.start_booking("user-001", self.configuration)
            await wait_until(lambda: (SessionState.SEARCHING, 1) in step.calls)
            assert await engine.stop_booking("user-002", session.id) is False
            assert await engine.stop_booking("user-001", session.id) is True
            final = await engine.wait_for(session.id, timeout=5.0)
            assert await engine.stop_booking("user-001", session.id) is False
            await engine.bus.drain(timeout=2.0)
            await engine.shutdown()
            return final

        final = asyncio.run(scenario())

        assert final.state == SessionState.FAILED
        assert final.error["reason"] == "cancelled"
        assert final.error["cancel_reason"] == "user_requested"
        assert step.call_count == 3
        assert self.sender.categories()[-1] == NotificationCategory.BOOKING_FAILED

    def test_stop_session_without_local_run(self):
        """Test stopping a session whose run is not in this process."""
        engine = self.make_engine()
        session = engine.store.create_session("user-001", self.configuration.id)

        async def scenario():
            return await engine.stop_booking("user-001", session.id)

        assert asyncio.run(scenario()) is True
        stored = engine.store.get_session(session.id)
        assert stored.is_terminal
        assert stored.error["reason"] == "cancelled"

    def test_revoke_entitlement(self):
        """Test revocation stops every run of the owner."""
        step = ScriptedAutomationStep(state_delays={SessionState.SEARCHING: 30.0})
        engine = self.make_engine(step)
        other = replace(self.configuration, id="config-002")

        async def scenario():
            await engine.start()
            first = await engine.start_booking("user-001", self.configuration)
            second = await engine.start_booking("user-001", other)
            await wait_until(lambda: len(engine.executor.running_sessions) == 2)
            stopped = await engine.revoke_entitlement("user-001")
            results = [
                await engine.wait_for(first.id, timeout=5.0),
                await engine.wait_for(second.id, timeout=5.0),
            ]
            await engine.shutdown()
            return stopped, results

        stopped, results = asyncio.run(scenario())

        assert stopped == 2
        assert all(s.error["reason"] == "entitlement_revoked" for s in results)

    def test_warn_entitlement_expiring(self):
        """Test the expiry reminder goes through the sender."""
        engine = self.make_engine()

        asyncio.run(engine.warn_entitlement_expiring("user-001", 3))

        assert self.sender.sent[0].category == NotificationCategory.SUBSCRIPTION_EXPIRY
        assert self.sender.sent[0].detail == {"days_left": 3}
        assert self.sender.sent[0].event_id is None

    def test_expiry_warning_respects_preferences(self):
        """Test owners who opted out get no reminder."""
        preferences = NotificationPreferences()
        preferences.set_email_notifications("user-001", False)
        engine = self.make_engine(preferences=preferences)

        asyncio.run(engine.warn_entitlement_expiring("user-001", 3))

        assert self.sender.sent == []

    def test_recover_stale_sessions(self):
        """Test sessions left active by a previous process are failed on start."""
        engine = self.make_engine()
        stale = engine.store.create_session("user-001", "config-old")
        stale = engine.store.commit(stale, SessionState.WAITING_AUTHENTICATION)
        parked = engine.store.create_session("user-001", "config-parked")
        engine.store.commit(parked, SessionState.FAILED, {"reason": "network_error"})

        async def scenario():
            await engine.start()
            await engine.shutdown()

        asyncio.run(scenario())

        for session_id in (stale.id, parked.id):
            stored = engine.store.get_session(session_id)
            assert stored.is_terminal
            assert stored.error["reason"] == "orphaned"

    def test_live_status_feed(self):
        """Test the owner's status queue sees the run progress."""
        engine = self.make_engine()

        async def scenario():
            queue = engine.status_feed.subscribe("user-001")
            await engine.start()
            session = await engine.start_booking("user-001", self.configuration)
            await engine.wait_for(session.id, timeout=5.0)
            await engine.bus.drain(timeout=2.0)
            await engine.shutdown()
            updates = []
            while not queue.empty():
                updates.append(queue.get_nowait())
            return updates

        updates = asyncio.run(scenario())

        assert [u.state for u in updates] == [
            SessionState.INITIALIZING,
            SessionState.WAITING_AUTHENTICATION,
            SessionState.SEARCHING,
            SessionState.BOOKING,
            SessionState.SUCCEEDED,
        ]

    def test_search_progress_reaches_status_feed(self):
        """Test search cycles show up on the feed without new log entries."""
        self.config = replace(
            self.config, execution=replace(self.config.execution, cycle_delay_seconds=0.0)
        )
        engine = self.make_engine(ScriptedAutomationStep(search_cycles=3))

        async def scenario():
            queue = engine.status_feed.subscribe("user-001")
            await engine.start()
            session = await engine.start_booking("user-001", self.configuration)
            await engine.wait_for(session.id, timeout=5.0)
            await engine.bus.drain(timeout=2.0)
            log = await engine.get_session_log(session.id)
            await engine.shutdown()
            updates = []
            while not queue.empty():
                updates.append(queue.get_nowait())
            return updates, log

        updates, log = asyncio.run(scenario())

        stages = [u.stage for u in updates if u.stage is not None]
        assert [stage["cycle_count"] for stage in stages] == [1, 2, 3]
        assert all(u.state == SessionState.SEARCHING for u in updates if u.stage is not None)
        assert len(log) == 5

    def test_status_for_unknown_owner(self):
        """Test owners without sessions have no status."""
        engine = self.make_engine()

        assert asyncio.run(engine.get_status("nobody")) is None

    def test_runtime_stats(self):
        """Test runtime statistics aggregate the components."""
        engine = self.make_engine()

        stats = engine.get_runtime_stats()

        assert stats["running_sessions"] == 0
        assert stats["store"]["total_sessions"] == 0
        assert set(stats["bus"]["subscribers"]) == {"live_status", "notifications"}
        assert stats["sender"]["name"] == "recording"
