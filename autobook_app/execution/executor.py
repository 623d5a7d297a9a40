"""
Job executor driving a booking session to a terminal state.

The executor repeatedly invokes the automation step for the session's current
state, classifies the result and commits the resulting transition through the
session store. Deadlines, the authentication wait and user cancellation are
all enforced here, at the two suspension points of a run: the step in flight
and the backoff wait between attempts.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional

import structlog

from ..config.defaults import ExecutionParams
from ..config.validation import ConfigValidator
from ..errors import (
    ConflictError,
    EntitlementRevokedError,
    ExecutionTimeoutError,
    InvalidConfigurationError,
    InvalidTransitionError,
    PersistenceError,
    SessionCancelledError,
)
from ..persistence.session_store import SessionStore
from ..retry.backoff import BackoffController
from ..state.machine import next_state_on_success
from ..state.models import (
    BookingConfiguration,
    OutcomeKind,
    Session,
    SessionState,
    StepOutcome,
)
from .steps import AutomationStep, StepContext, classify_exception

logger = structlog.get_logger(__name__)

ProgressListener = Callable[[Session, dict[str, Any]], Awaitable[None]]


async def force_terminal_failure(
    store: SessionStore,
    session_id: str,
    detail: dict[str, Any]
) -> Optional[Session]:
    """
    Move a session to terminal failed from whatever state it is persisted in.

    Runs as one store operation under the session lock, so a commit still
    running in a worker thread for an abandoned run is waited for.

    Returns:
        The terminal session, or None if the session does not exist
    """
    return await asyncio.to_thread(store.fail_session, session_id, detail)


class JobExecutor:
    """Runs booking sessions with retry, timeout and cancellation policy."""

    def __init__(
        self,
        store: SessionStore,
        step: AutomationStep,
        backoff: Optional[BackoffController] = None,
        params: Optional[ExecutionParams] = None,
        progress_listener: Optional[ProgressListener] = None
    ):
        self.store = store
        self.step = step
        self.backoff = backoff or BackoffController()
        self.params = params or ExecutionParams()
        self.progress_listener = progress_listener

        self._cancel_events: dict[str, asyncio.Event] = {}
        self._cancel_reasons: dict[str, str] = {}

    @property
    def running_sessions(self) -> list[str]:
        return list(self._cancel_events)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._cancel_events

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        """
        Request cancellation of a running session.

        The request is observed at the next suspension point; the session then
        ends in failed with the cancellation detail and the step is not
        invoked again.

        Returns:
            True if the session was running here, False otherwise
        """
        event = self._cancel_events.get(session_id)
        if event is None:
            return False

        self._cancel_reasons.setdefault(session_id, reason)
        event.set()
        logger.info("Cancellation requested", session_id=session_id, reason=reason)
        return True

    async def run(self, session: Session, configuration: BookingConfiguration) -> Session:
        """
        Drive a session to a terminal state.

        Args:
            session: Active session as returned by the store
            configuration: Configuration the session books for

        Returns:
            The terminal session

        Raises:
            ConflictError: If the session is already running in this executor
            InvalidTransitionError: If a transition is rejected by the state machine
        """
        if session.is_terminal:
            return session

        if session.id in self._cancel_events:
            raise ConflictError(
                f"Session {session.id} is already running",
                owner=session.owner,
                config_id=session.config_id
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.params.deadline_seconds
        cancel_event = asyncio.Event()
        self._cancel_events[session.id] = cancel_event

        log = logger.bind(session_id=session.id, owner=session.owner)
        log.info("Booking run started", attempt=session.attempt, state=session.state.value)

        try:
            errors = ConfigValidator.validate_booking_configuration(configuration)
            if errors:
                failure = InvalidConfigurationError(
                    "Booking configuration is invalid",
                    detail={"errors": [{"field": e.field, "message": e.message} for e in errors]}
                )
                log.warning("Rejecting invalid configuration", errors=len(errors))
                return await self._commit(session, SessionState.FAILED, failure.to_detail(), True)

            while not session.is_terminal:
                if cancel_event.is_set():
                    return await self._commit(
                        session, SessionState.FAILED, self._cancel_detail(session.id), True
                    )

                if loop.time() >= deadline:
                    return await self._commit(
                        session, SessionState.FAILED, self._timeout_detail(), True
                    )

                outcome = await self._invoke_step(session, configuration, cancel_event, deadline)

                if outcome.is_success:
                    session = await self._commit(
                        session, next_state_on_success(session.state), outcome.detail
                    )
                    continue

                decision = self.backoff.should_retry(session, outcome)
                if not decision.retry:
                    detail = dict(outcome.detail)
                    detail["attempts"] = session.attempt
                    if decision.reason == "attempts_exhausted":
                        detail["retries_exhausted"] = True
                    session = await self._commit(session, SessionState.FAILED, detail, True)
                    break

                retry_detail = dict(outcome.detail)
                retry_detail["retry_in_ms"] = int(decision.delay_seconds * 1000)
                session = await self._commit(session, SessionState.FAILED, retry_detail)
                session = await self._commit(
                    session, SessionState.INITIALIZING,
                    {"reason": "retry", "previous_reason": outcome.detail.get("reason")}
                )
                await self._wait_backoff(decision.delay_seconds, cancel_event, deadline)

            log.info(
                "Booking run finished",
                state=session.state.value,
                attempt=session.attempt
            )
            return session

        except asyncio.CancelledError:
            log.warning("Booking run task cancelled", state=session.state.value)
            await self._fail_quietly(session.id, self._cancel_detail(session.id, "task_cancelled"))
            raise

        except InvalidTransitionError as e:
            log.error(
                "Booking run aborted by rejected transition",
                current_state=e.current_state,
                attempted_state=e.attempted_state,
                error=str(e)
            )
            await self._fail_quietly(
                session.id, {"reason": "invalid_transition", "message": str(e)}
            )
            raise

        finally:
            self._cancel_events.pop(session.id, None)
            self._cancel_reasons.pop(session.id, None)

    async def _invoke_step(
        self,
        session: Session,
        configuration: BookingConfiguration,
        cancel_event: asyncio.Event,
        deadline: float
    ) -> StepOutcome:
        """Run one step bounded by the deadline, the auth timeout and cancellation."""
        loop = asyncio.get_running_loop()
        remaining = max(deadline - loop.time(), 0.0)

        limit = remaining
        timeout_detail = self._timeout_detail()
        if (session.state == SessionState.WAITING_AUTHENTICATION
                and self.params.auth_timeout_seconds < remaining):
            limit = self.params.auth_timeout_seconds
            timeout_detail = ExecutionTimeoutError(
                f"Authentication not completed within {limit:g}s",
                detail={"timeout_seconds": limit}
            ).to_detail()
            timeout_detail["reason"] = "authentication_timeout"

        context = StepContext(
            session_id=session.id,
            attempt=session.attempt,
            remaining_seconds=remaining,
            settings=self.params,
            progress=functools.partial(self._report_progress, session),
        )

        step_task = asyncio.ensure_future(self._call_step(session, configuration, context))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {step_task, cancel_task},
                timeout=limit,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()
            if not step_task.done():
                step_task.cancel()
                await asyncio.wait({step_task}, timeout=self.params.cancel_grace_seconds)

        if cancel_event.is_set():
            return StepOutcome.fatal(self._cancel_detail(session.id))

        if step_task in done:
            return step_task.result()

        logger.warning(
            "Automation step timed out",
            session_id=session.id,
            state=session.state.value,
            reason=timeout_detail["reason"],
            limit_seconds=round(limit, 3)
        )
        return StepOutcome.fatal(timeout_detail)

    async def _call_step(
        self,
        session: Session,
        configuration: BookingConfiguration,
        context: StepContext
    ) -> StepOutcome:
        try:
            outcome = await self.step(session.state, configuration, context)
        except Exception as e:
            outcome = classify_exception(e)
            logger.warning(
                "Automation step raised",
                session_id=session.id,
                state=session.state.value,
                attempt=session.attempt,
                error=str(e),
                error_type=type(e).__name__,
                outcome=outcome.kind.value
            )
            return outcome

        if not isinstance(outcome, StepOutcome):
            return StepOutcome.fatal({
                "reason": "invalid_outcome",
                "message": f"Automation step returned {type(outcome).__name__}",
            })

        if outcome.kind != OutcomeKind.SUCCESS and "reason" not in outcome.detail:
            fallback = "fatal_failure" if outcome.kind == OutcomeKind.FATAL else "recoverable_failure"
            outcome = StepOutcome(outcome.kind, {"reason": fallback, **outcome.detail})

        return outcome

    async def _wait_backoff(
        self,
        delay: float,
        cancel_event: asyncio.Event,
        deadline: float
    ) -> None:
        """Sleep before the next attempt; cancellation or the deadline cut it short."""
        loop = asyncio.get_running_loop()
        wait = min(delay, max(deadline - loop.time(), 0.0))
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=wait)
        except asyncio.TimeoutError:
            pass

    async def _commit(
        self,
        session: Session,
        new_state: SessionState,
        detail: Optional[dict[str, Any]] = None,
        terminal: bool = False
    ) -> Session:
        return await asyncio.to_thread(self.store.commit, session, new_state, detail, terminal)

    async def _report_progress(self, session: Session, stage: dict[str, Any]) -> None:
        """Persist a step's in-state progress and hand it to the listener."""
        try:
            updated = await asyncio.to_thread(self.store.record_progress, session.id, stage)
        except PersistenceError as e:
            logger.warning(
                "Could not record step progress",
                session_id=session.id,
                stage=stage.get("stage"),
                error=str(e)
            )
            return

        if updated is None or self.progress_listener is None:
            return

        try:
            await self.progress_listener(updated, stage)
        except Exception as e:
            logger.warning(
                "Progress listener failed",
                session_id=session.id,
                error=str(e),
                error_type=type(e).__name__
            )

    async def _fail_quietly(self, session_id: str, detail: dict[str, Any]) -> None:
        """Best-effort terminal failure while another error is propagating."""
        try:
            await force_terminal_failure(self.store, session_id, detail)
        except (InvalidTransitionError, PersistenceError) as e:
            logger.error(
                "Could not record terminal failure",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__
            )

    def _cancel_detail(self, session_id: str, default_reason: str = "cancelled") -> dict[str, Any]:
        cancel_reason = self._cancel_reasons.get(session_id, default_reason)
        if cancel_reason == "entitlement_revoked":
            return EntitlementRevokedError(
                "Booking stopped because the subscription is no longer active",
                detail={"cancel_reason": cancel_reason}
            ).to_detail()
        return SessionCancelledError(
            "Booking stopped",
            detail={"cancel_reason": cancel_reason}
        ).to_detail()

    def _timeout_detail(self) -> dict[str, Any]:
        return ExecutionTimeoutError(
            f"Booking run exceeded its deadline of {self.params.deadline_seconds:g}s",
            detail={"timeout_seconds": self.params.deadline_seconds}
        ).to_detail()
