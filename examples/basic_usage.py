#!/usr/bin/env python3
"""
Basic Usage Example - Driving Test Booking Engine

This script runs the booking engine against a scripted automation step. It
shows how to:
- Initialize the engine with an entitlement source and notification sender
- Start a booking run and follow its live status, search cycles included
- Read the session's transition log
- Stop a run on user request

Run: python examples/basic_usage.py
"""

import asyncio
import tempfile
from datetime import date
from pathlib import Path

from autobook_app.config.loader import ConfigLoader
from autobook_app.config.notification_delivery import StdoutSenderConfig
from autobook_app.delivery.stdout_delivery import StdoutNotificationSender
from autobook_app.engine import BookingEngine, StaticEntitlements
from autobook_app.errors import SlotUnavailableError
from autobook_app.execution.steps import ScriptedAutomationStep
from autobook_app.logging import configure_logging
from autobook_app.state.models import BookingConfiguration, DateRange, SessionState, StepOutcome


def create_configuration(config_id: str, owner: str) -> BookingConfiguration:
    """Create a sample booking configuration."""
    return BookingConfiguration(
        id=config_id,
        owner=owner,
        license_type="B",
        exam="Körprov",
        locations=("Stockholm", "Uppsala"),
        date_ranges=(DateRange(date(2026, 11, 1), date(2026, 12, 15)),),
        vehicle_language=("Svenska",),
        personal_number="19900101-1234",
    )


async def follow_status(engine: BookingEngine, owner: str, done: asyncio.Event) -> None:
    """Print every live status update of an owner."""
    queue = engine.status_feed.subscribe(owner)
    try:
        while not done.is_set():
            try:
                update = await asyncio.wait_for(queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            line = f"   📡 {update.state.value:<24} {update.progress:>3}%"
            if update.stage:
                line += f"  cycle {update.stage['cycle_count']} ({update.stage['current_operation']})"
            print(line)
    finally:
        engine.status_feed.unsubscribe(owner, queue)


async def run_successful_booking(engine: BookingEngine) -> None:
    print("\n🚗 Booking run with one empty search")
    owner = "user-001"
    configuration = create_configuration("config-001", owner)

    done = asyncio.Event()
    watcher = asyncio.create_task(follow_status(engine, owner, done))

    session = await engine.start_booking(owner, configuration)
    final = await engine.wait_for(session.id, timeout=10)
    await engine.bus.drain()
    done.set()
    await watcher

    print(f"   Result: {final.state.value} after {final.attempt} attempt(s)")
    print("   Transition log:")
    for event in await engine.get_session_log(session.id):
        print(f"     #{event['event_id']:<3} {event['from_state'] or '-':<24} → {event['to_state']}")


async def run_stopped_booking(engine: BookingEngine) -> None:
    print("\n✋ Booking run stopped by the user")
    owner = "user-002"
    configuration = create_configuration("config-002", owner)

    session = await engine.start_booking(owner, configuration)
    await asyncio.sleep(0.2)
    stopped = await engine.stop_booking(owner, session.id)
    final = await engine.wait_for(session.id, timeout=10)

    print(f"   Stop issued: {stopped}")
    print(f"   Result: {final.state.value}, error: {final.error}")


async def main() -> None:
    step = ScriptedAutomationStep(
        script=[
            StepOutcome.success(),
            StepOutcome.success(),
            SlotUnavailableError("No slots in the requested window"),
            StepOutcome.success(),
            StepOutcome.success(),
            StepOutcome.success(),
            StepOutcome.success({"slot": "2026-11-14T09:40", "location": "Uppsala"}),
        ],
        # The user takes a moment to sign in
        state_delays={SessionState.WAITING_AUTHENTICATION: 0.5},
        search_cycles=3,
    )

    with tempfile.TemporaryDirectory() as temp_dir:
        config = ConfigLoader.create().load_config({
            "retry": {"min_delay_ms": 100, "max_delay_ms": 500},
            "execution": {"cycle_delay_seconds": 0.1, "refresh_interval": 2},
            "store": {"db_path": str(Path(temp_dir) / "example.db")},
        })
        # Keep engine logs out of the way of the printed walkthrough
        configure_logging(
            level="WARNING",
            format_json=config.logging.format_json,
            include_timestamp=config.logging.include_timestamp,
        )
        engine = BookingEngine(
            step,
            StaticEntitlements(["user-001", "user-002"]),
            sender=StdoutNotificationSender(config=StdoutSenderConfig(format="pretty")),
            config=config,
        )
        await engine.start()

        try:
            await run_successful_booking(engine)
            await run_stopped_booking(engine)
            print("\n📊 Runtime stats:")
            stats = engine.get_runtime_stats()
            print(f"   Sessions: {stats['store']['sessions_by_state']}")
            print(f"   Notifications sent: {stats['sender']['delivery_count']}")
        finally:
            await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
