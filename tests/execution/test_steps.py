"""Tests for the automation step contract."""

import asyncio
from datetime import date

import pytest

from autobook_app.config.defaults import ExecutionParams
from autobook_app.errors import (
    CredentialRejectedError,
    NetworkFailure,
    RecoverableError,
    SlotUnavailableError,
    UnrecoverableError,
)
from autobook_app.execution.steps import ScriptedAutomationStep, StepContext, classify_exception
from autobook_app.state.models import BookingConfiguration, DateRange, OutcomeKind, SessionState, StepOutcome


def make_context(attempt: int = 1) -> StepContext:
    return StepContext(
        session_id="session-1", attempt=attempt,
        remaining_seconds=300.0, settings=ExecutionParams()
    )


CONFIGURATION = BookingConfiguration(
    id="config-1", owner="user-1", license_type="B", exam="Körprov",
    locations=("Stockholm",),
    date_ranges=(DateRange(date(2026, 11, 1), date(2026, 11, 30)),),
)


class TestClassifyException:
    """Test exception classification."""

    def test_classified_recoverable_failure(self):
        """Test driver failures keep their reason."""
        outcome = classify_exception(SlotUnavailableError("No slots", detail={"location": "Uppsala"}))

        assert outcome.kind == OutcomeKind.RECOVERABLE
        assert outcome.detail["reason"] == "slot_unavailable"
        assert outcome.detail["location"] == "Uppsala"

    def test_classified_fatal_failure(self):
        """Test a rejected credential is fatal."""
        outcome = classify_exception(CredentialRejectedError("BankID declined"))

        assert outcome.kind == OutcomeKind.FATAL
        assert outcome.detail == {"reason": "credential_rejected", "message": "BankID declined"}

    def test_recovery_mixins(self):
        """Test errors carrying only a recovery category."""
        assert classify_exception(RecoverableError("flaky")).kind == OutcomeKind.RECOVERABLE
        assert classify_exception(UnrecoverableError("broken")).kind == OutcomeKind.FATAL

    def test_connection_errors_are_network_failures(self):
        """Test connection problems map to network_error."""
        outcome = classify_exception(ConnectionResetError("reset by peer"))

        assert outcome.kind == OutcomeKind.RECOVERABLE
        assert outcome.detail["reason"] == "network_error"

    def test_unclassified_timeouts_are_fatal(self):
        """Test a timeout the step did not classify ends the session."""
        outcome = classify_exception(TimeoutError("site did not answer"))

        assert outcome.kind == OutcomeKind.FATAL
        assert outcome.detail["reason"] == "timeout"

    def test_asyncio_timeouts_are_fatal(self):
        """Test a wait_for timeout inside the step is not retried."""
        assert classify_exception(asyncio.TimeoutError()).kind == OutcomeKind.FATAL

    def test_unknown_errors_are_recoverable(self):
        """Test unknown errors are left to the retry bound."""
        outcome = classify_exception(KeyError("selector"))

        assert outcome.kind == OutcomeKind.RECOVERABLE
        assert outcome.detail["reason"] == "unexpected_error"
        assert outcome.detail["error_type"] == "KeyError"


class TestScriptedAutomationStep:
    """Test the scripted automation step."""

    def test_replays_script_then_succeeds(self):
        """Test script items are consumed in order."""
        step = ScriptedAutomationStep([
            StepOutcome.recoverable({"reason": "network_error"}),
            NetworkFailure("timeout"),
        ])

        async def scenario():
            first = await step(SessionState.INITIALIZING, CONFIGURATION, make_context())
            with pytest.raises(NetworkFailure):
                await step(SessionState.INITIALIZING, CONFIGURATION, make_context(2))
            third = await step(SessionState.INITIALIZING, CONFIGURATION, make_context(3))
            return first, third

        first, third = asyncio.run(scenario())

        assert first.kind == OutcomeKind.RECOVERABLE
        assert third.is_success
        assert step.calls == [
            (SessionState.INITIALIZING, 1),
            (SessionState.INITIALIZING, 2),
            (SessionState.INITIALIZING, 3),
        ]

    def test_state_delays(self):
        """Test configured states sleep before answering."""
        step = ScriptedAutomationStep(state_delays={SessionState.SEARCHING: 5.0})

        async def scenario():
            await asyncio.wait_for(
                step(SessionState.SEARCHING, CONFIGURATION, make_context()), timeout=0.05
            )

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(scenario())

    def test_search_cycles_report_progress(self):
        """Test searching walks the configured cycles and reports each one."""
        reports = []

        async def record(stage):
            reports.append(stage)

        context = StepContext(
            session_id="session-1", attempt=1, remaining_seconds=300.0,
            settings=ExecutionParams(cycle_delay_seconds=0.0, refresh_interval=2),
            progress=record,
        )
        step = ScriptedAutomationStep(search_cycles=3)

        outcome = asyncio.run(step(SessionState.SEARCHING, CONFIGURATION, context))

        assert outcome.is_success
        assert [r["cycle_count"] for r in reports] == [1, 2, 3]
        assert [r["current_operation"] for r in reports] == ["scanning", "refreshing", "scanning"]
        assert all(r["stage"] == "searching" for r in reports)

    def test_other_states_report_nothing(self):
        """Test search cycles only run while searching."""
        reports = []

        async def record(stage):
            reports.append(stage)

        context = StepContext(
            session_id="session-1", attempt=1, remaining_seconds=300.0,
            settings=ExecutionParams(cycle_delay_seconds=0.0), progress=record,
        )
        step = ScriptedAutomationStep(search_cycles=3)

        asyncio.run(step(SessionState.BOOKING, CONFIGURATION, context))

        assert reports == []


class TestStepContext:
    """Test the step context helpers."""

    def test_report_without_callback(self):
        """Test progress is dropped when nobody listens."""
        asyncio.run(make_context().report_progress("searching", cycle_count=1))

    def test_report_progress_payload(self):
        """Test progress carries the stage and its detail."""
        reports = []

        async def record(stage):
            reports.append(stage)

        context = StepContext(
            session_id="session-1", attempt=1, remaining_seconds=300.0,
            settings=ExecutionParams(), progress=record,
        )
        asyncio.run(context.report_progress("waiting_authentication", qr_code="bankid.qr.1"))

        assert reports == [{"stage": "waiting_authentication", "qr_code": "bankid.qr.1"}]

    def test_search_cycles_bounded_by_max_cycles(self):
        """Test the cycle iterator stops at max_cycles."""
        context = StepContext(
            session_id="session-1", attempt=1, remaining_seconds=300.0,
            settings=ExecutionParams(max_cycles=4, cycle_delay_seconds=0.0),
        )

        async def collect():
            return [cycle async for cycle in context.search_cycles()]

        assert asyncio.run(collect()) == [1, 2, 3, 4]
