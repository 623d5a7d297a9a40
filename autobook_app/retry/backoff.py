"""
Retry/backoff controller.

Decides whether a failed attempt gets another try and how long to wait
before it. Delays grow exponentially from `min_delay_ms` by `factor` per
attempt, optionally multiplied by a random factor in [1, 2), and are always
clamped to [min_delay_ms, max_delay_ms].
"""

import random
from dataclasses import dataclass
from typing import Optional

from ..config.defaults import RetryParams
from ..logging.config import get_retry_logger, log_retry_decision
from ..state.models import OutcomeKind, Session, StepOutcome

logger = get_retry_logger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry evaluation."""
    retry: bool
    delay_seconds: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def retry_after(cls, delay_seconds: float) -> "RetryDecision":
        return cls(retry=True, delay_seconds=delay_seconds, reason="recoverable_failure")

    @classmethod
    def give_up(cls, reason: str) -> "RetryDecision":
        return cls(retry=False, reason=reason)


class BackoffController:
    """Retry policy applied to recoverable step failures."""

    def __init__(self, params: Optional[RetryParams] = None, rng: Optional[random.Random] = None):
        self.params = params or RetryParams()
        self._rng = rng or random.Random()

    @property
    def min_delay(self) -> float:
        return self.params.min_delay_ms / 1000.0

    @property
    def max_delay(self) -> float:
        return self.params.max_delay_ms / 1000.0

    def compute_delay(self, attempt: int) -> float:
        """
        Compute the wait before the attempt following `attempt`.

        Args:
            attempt: Number of the attempt that just failed, starting at 1

        Returns:
            Delay in seconds within [min_delay, max_delay]
        """
        exponent = max(attempt, 1) - 1
        delay = self.min_delay * (self.params.factor ** exponent)

        if self.params.randomize:
            delay *= self._rng.uniform(1.0, 2.0)

        return min(max(delay, self.min_delay), self.max_delay)

    def should_retry(self, session: Session, outcome: StepOutcome) -> RetryDecision:
        """
        Decide whether a failed attempt of a session is retried.

        Args:
            session: Session whose attempt failed
            outcome: Classified outcome of the failing step

        Returns:
            RetryDecision with the backoff delay, or the reason for giving up
        """
        if outcome.kind == OutcomeKind.SUCCESS:
            raise ValueError("Successful outcomes are never retried")

        if outcome.kind == OutcomeKind.FATAL:
            decision = RetryDecision.give_up("fatal_failure")
        elif session.attempt >= self.params.max_attempts:
            decision = RetryDecision.give_up("attempts_exhausted")
        else:
            decision = RetryDecision.retry_after(self.compute_delay(session.attempt))

        log_retry_decision(
            logger,
            session_id=session.id,
            attempt=session.attempt,
            retry=decision.retry,
            reason=decision.reason or "",
            delay_seconds=decision.delay_seconds if decision.retry else None,
            context={
                "max_attempts": self.params.max_attempts,
                "failure_reason": outcome.detail.get("reason"),
            }
        )
        return decision
