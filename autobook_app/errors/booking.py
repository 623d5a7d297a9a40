"""
Booking lifecycle error classifications.

Caller-facing errors raised when starting or mutating a session, and the
execution failures an automation step may raise. Execution failures carry a
structured ``detail`` that ends up in the session's error record.
"""

from typing import Any, Optional

from .recovery import RecoverableError, UnrecoverableError


class ConflictError(Exception):
    """An active session already exists for the owner and configuration."""

    def __init__(self, message: str, owner: Optional[str] = None,
                 config_id: Optional[str] = None):
        super().__init__(message)
        self.owner = owner
        self.config_id = config_id


class NotEntitledError(Exception):
    """The owner is not entitled to start booking runs."""

    def __init__(self, message: str, owner: Optional[str] = None):
        super().__init__(message)
        self.owner = owner


class InvalidTransitionError(Exception):
    """A requested state transition is not part of the transition table."""

    def __init__(self, message: str, session_id: Optional[str] = None,
                 current_state: Optional[str] = None,
                 attempted_state: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id
        self.current_state = current_state
        self.attempted_state = attempted_state


class ExecutionFailure(Exception):
    """Base class for failures of a single booking attempt."""

    reason = "execution_failure"

    def __init__(self, message: str, detail: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.detail = dict(detail or {})

    def to_detail(self) -> dict[str, Any]:
        """Structured error detail for the session record."""
        detail = {"reason": self.reason, "message": str(self)}
        detail.update(self.detail)
        return detail


class RecoverableExecutionFailure(ExecutionFailure, RecoverableError):
    """Attempt failed in a way another attempt may fix."""

    reason = "recoverable_failure"


class FatalExecutionFailure(ExecutionFailure, UnrecoverableError):
    """Attempt failed in a way no retry can fix."""

    reason = "fatal_failure"


class ExecutionTimeoutError(FatalExecutionFailure):
    """The run deadline or the authentication wait expired."""

    reason = "timeout"


class SessionCancelledError(FatalExecutionFailure):
    """The run was cancelled by the user or by entitlement revocation."""

    reason = "cancelled"


class SlotUnavailableError(RecoverableExecutionFailure):
    """No bookable slot matched the configuration on this attempt."""

    reason = "slot_unavailable"


class NetworkFailure(RecoverableExecutionFailure):
    """The external site could not be reached or stopped responding."""

    reason = "network_error"


class CredentialRejectedError(FatalExecutionFailure):
    """The interactive credential step was declined or expired."""

    reason = "credential_rejected"


class EntitlementRevokedError(FatalExecutionFailure):
    """The owner lost their entitlement while the run was in progress."""

    reason = "entitlement_revoked"


class InvalidConfigurationError(FatalExecutionFailure):
    """The booking configuration can never produce a booking."""

    reason = "invalid_configuration"
