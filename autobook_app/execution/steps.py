"""
Automation step contract.

The browser-automation driver is a black box: for each session state it runs
one step against the external booking site and reports success, a recoverable
failure or a fatal failure. The executor owns timeouts and cancellation, so a
step only needs to be cancellable at its await points.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, Union

import structlog

from ..config.defaults import ExecutionParams
from ..errors import ExecutionFailure, RecoverableError, UnrecoverableError
from ..state.models import BookingConfiguration, OutcomeKind, SessionState, StepOutcome

logger = structlog.get_logger(__name__)

ScriptItem = Union[StepOutcome, BaseException]
ProgressCallback = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class StepContext:
    """Per-invocation information handed to the automation step."""
    session_id: str
    attempt: int
    remaining_seconds: float
    settings: ExecutionParams
    progress: Optional[ProgressCallback] = None

    async def report_progress(self, stage: str, **detail: Any) -> None:
        """
        Publish progress within the current state, e.g. search cycles or a QR code.

        Progress is shown on the live status feed and in the session status;
        it is not a state transition.
        """
        if self.progress is None:
            return
        await self.progress({"stage": stage, **detail})

    async def search_cycles(self) -> AsyncIterator[int]:
        """Yield search cycle numbers up to `max_cycles`, pausing between cycles."""
        for cycle in range(1, self.settings.max_cycles + 1):
            if cycle > 1:
                await asyncio.sleep(self.settings.cycle_delay_seconds)
            yield cycle

    def should_refresh(self, cycle: int) -> bool:
        """Whether the search page is due for a reload on this cycle."""
        return cycle % self.settings.refresh_interval == 0


class AutomationStep(ABC):
    """Runs the automation work belonging to one session state."""

    @abstractmethod
    async def __call__(
        self,
        state: SessionState,
        configuration: BookingConfiguration,
        context: StepContext
    ) -> StepOutcome:
        """
        Perform the work of `state` for a configuration.

        Args:
            state: Current session state
            configuration: Booking configuration being run
            context: Session id, attempt number and remaining run time

        Returns:
            Classified outcome; failures may also be raised as ExecutionFailure
        """


def classify_exception(error: BaseException) -> StepOutcome:
    """
    Convert an exception raised by an automation step into an outcome.

    Classified execution failures keep their own reason and detail. Errors
    carrying a recovery category follow it. An unclassified timeout is fatal.
    Connection problems and unknown errors are recoverable so the retry bound
    decides their fate.
    """
    if isinstance(error, ExecutionFailure):
        kind = OutcomeKind.FATAL if isinstance(error, UnrecoverableError) else OutcomeKind.RECOVERABLE
        return StepOutcome(kind, error.to_detail())

    detail: dict[str, Any] = {
        "message": str(error),
        "error_type": type(error).__name__,
    }

    if isinstance(error, UnrecoverableError):
        detail["reason"] = "fatal_failure"
        return StepOutcome.fatal(detail)

    if isinstance(error, RecoverableError):
        detail["reason"] = "recoverable_failure"
        return StepOutcome.recoverable(detail)

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        detail["reason"] = "timeout"
        return StepOutcome.fatal(detail)

    if isinstance(error, ConnectionError):
        detail["reason"] = "network_error"
        return StepOutcome.recoverable(detail)

    detail["reason"] = "unexpected_error"
    return StepOutcome.recoverable(detail)


class ScriptedAutomationStep(AutomationStep):
    """
    Automation step replaying a scripted sequence of results.

    Each invocation consumes the next script item: a StepOutcome is returned,
    an exception is raised. Once the script is exhausted every invocation
    succeeds. `state_delays` makes invocations in given states sleep first,
    which stands in for a slow site or a user who never signs in.
    `search_cycles` makes each searching invocation walk that many search
    cycles first, reporting each one as progress.
    """

    def __init__(
        self,
        script: Optional[Iterable[ScriptItem]] = None,
        state_delays: Optional[dict[SessionState, float]] = None,
        default: Optional[StepOutcome] = None,
        search_cycles: int = 0
    ):
        self._script: deque[ScriptItem] = deque(script or ())
        self.state_delays = dict(state_delays or {})
        self.default = default or StepOutcome.success()
        self.search_cycles = search_cycles
        self.calls: list[tuple[SessionState, int]] = []

    async def __call__(
        self,
        state: SessionState,
        configuration: BookingConfiguration,
        context: StepContext
    ) -> StepOutcome:
        self.calls.append((state, context.attempt))
        logger.debug(
            "Scripted step invoked",
            session_id=context.session_id,
            state=state.value,
            attempt=context.attempt
        )

        delay = self.state_delays.get(state)
        if delay:
            await asyncio.sleep(delay)

        if state == SessionState.SEARCHING and self.search_cycles:
            await self._walk_search_cycles(context)

        if not self._script:
            return self.default

        item = self._script.popleft()
        if isinstance(item, BaseException):
            raise item
        return item

    async def _walk_search_cycles(self, context: StepContext) -> None:
        async for cycle in context.search_cycles():
            await context.report_progress(
                "searching",
                cycle_count=cycle,
                slots_found=0,
                current_operation="refreshing" if context.should_refresh(cycle) else "scanning"
            )
            if cycle >= self.search_cycles:
                break

    @property
    def call_count(self) -> int:
        return len(self.calls)
