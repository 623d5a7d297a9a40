"""
Error classification system for the booking engine.

This module provides the structured exception hierarchy for caller-facing
errors, booking attempt failures, and infrastructure failures.
"""

from .booking import (
    ConflictError,
    NotEntitledError,
    InvalidTransitionError,
    ExecutionFailure,
    RecoverableExecutionFailure,
    FatalExecutionFailure,
    ExecutionTimeoutError,
    SessionCancelledError,
    SlotUnavailableError,
    NetworkFailure,
    CredentialRejectedError,
    EntitlementRevokedError,
    InvalidConfigurationError,
)
from .system_failures import (
    SystemFailureError,
    PersistenceError,
    DeliveryError,
)
from .recovery import (
    RecoverableError,
    UnrecoverableError,
)

__all__ = [
    # Caller-facing errors
    "ConflictError",
    "NotEntitledError",
    "InvalidTransitionError",
    # Execution failures
    "ExecutionFailure",
    "RecoverableExecutionFailure",
    "FatalExecutionFailure",
    "ExecutionTimeoutError",
    "SessionCancelledError",
    "SlotUnavailableError",
    "NetworkFailure",
    "CredentialRejectedError",
    "EntitlementRevokedError",
    "InvalidConfigurationError",
    # System failures
    "SystemFailureError",
    "PersistenceError",
    "DeliveryError",
    # Recovery categories
    "RecoverableError",
    "UnrecoverableError",
]
