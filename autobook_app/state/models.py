"""
State machine data models for booking session lifecycle management.

This module defines immutable data structures for booking configurations,
sessions, transition events, automation step outcomes, and notifications.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


class SessionState(str, Enum):
    """Lifecycle states of a booking session."""
    INITIALIZING = "initializing"
    WAITING_AUTHENTICATION = "waiting_authentication"
    SEARCHING = "searching"
    BOOKING = "booking"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """Classification of a single automation step result."""
    SUCCESS = "success"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


# Progress shown to the user per state, in percent
STATE_PROGRESS: dict[SessionState, int] = {
    SessionState.INITIALIZING: 20,
    SessionState.WAITING_AUTHENTICATION: 40,
    SessionState.SEARCHING: 60,
    SessionState.BOOKING: 80,
    SessionState.SUCCEEDED: 100,
    SessionState.FAILED: 0,
}

STATE_MESSAGES: dict[SessionState, str] = {
    SessionState.INITIALIZING: "Starting browser...",
    SessionState.WAITING_AUTHENTICATION: "Waiting for BankID sign-in...",
    SessionState.SEARCHING: "Searching for available test slots...",
    SessionState.BOOKING: "Slot found - booking now...",
    SessionState.SUCCEEDED: "Booking complete!",
    SessionState.FAILED: "An error occurred",
}


@dataclass(frozen=True)
class DateRange:
    """Inclusive window of acceptable test dates."""
    start: date
    end: date

    def contains(self, day: date) -> bool:
        """Check whether a day falls inside the window."""
        return self.start <= day <= self.end


@dataclass(frozen=True)
class BookingConfiguration:
    """User-owned parameters describing which test slot to book."""

    id: str
    owner: str
    license_type: str
    exam: str
    locations: tuple[str, ...] = ()
    date_ranges: tuple[DateRange, ...] = ()
    vehicle_language: tuple[str, ...] = ()
    personal_number: Optional[str] = None   # Never logged unmasked

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the personal number."""
        return {
            "id": self.id,
            "owner": self.owner,
            "license_type": self.license_type,
            "exam": self.exam,
            "locations": list(self.locations),
            "date_ranges": [
                {"from": r.start.isoformat(), "to": r.end.isoformat()}
                for r in self.date_ranges
            ],
            "vehicle_language": list(self.vehicle_language),
        }


@dataclass(frozen=True)
class Session:
    """One tracked attempt to book a slot for a configuration."""

    id: str
    owner: str
    config_id: str
    state: SessionState
    attempt: int = 1
    active: bool = True

    # Key timestamps (UTC)
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Outcome detail
    result: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None

    # Latest in-state progress report, cleared by the next transition
    stage: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        """Terminal sessions accept no further transitions."""
        return not self.active

    @property
    def progress(self) -> int:
        """Completion percentage for status displays."""
        return STATE_PROGRESS[self.state]

    @property
    def status_message(self) -> str:
        """Human-readable status line, preferring the error message on failure."""
        if self.state == SessionState.FAILED and self.error and self.error.get("message"):
            return str(self.error["message"])
        return STATE_MESSAGES[self.state]

    def to_dict(self) -> dict[str, Any]:
        """Serialize for status endpoints and notification payloads."""
        return {
            "session_id": self.id,
            "owner": self.owner,
            "config_id": self.config_id,
            "state": self.state.value,
            "attempt": self.attempt,
            "active": self.active,
            "progress": self.progress,
            "message": self.status_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
            "stage": self.stage,
        }


@dataclass(frozen=True)
class TransitionEvent:
    """Immutable record of one committed session state change."""

    id: int                                  # Global, increasing in commit order
    session_id: str
    sequence: int                            # Per-session, starting at 1
    owner: str
    from_state: Optional[SessionState]       # None for the creation event
    to_state: SessionState
    attempt: int
    terminal: bool
    timestamp: datetime
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for delivery to external collaborators."""
        return {
            "event_id": self.id,
            "session_id": self.session_id,
            "sequence": self.sequence,
            "owner": self.owner,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "attempt": self.attempt,
            "terminal": self.terminal,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class StepOutcome:
    """Result of invoking the automation step for one state."""

    kind: OutcomeKind
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, detail: Optional[dict[str, Any]] = None) -> "StepOutcome":
        return cls(OutcomeKind.SUCCESS, dict(detail or {}))

    @classmethod
    def recoverable(cls, detail: Optional[dict[str, Any]] = None) -> "StepOutcome":
        return cls(OutcomeKind.RECOVERABLE, dict(detail or {}))

    @classmethod
    def fatal(cls, detail: Optional[dict[str, Any]] = None) -> "StepOutcome":
        return cls(OutcomeKind.FATAL, dict(detail or {}))

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


class NotificationCategory(str, Enum):
    """Kinds of transactional messages sent to a user."""
    BOOKING_STARTED = "booking_started"
    BOOKING_SUCCESS = "booking_success"
    BOOKING_FAILED = "booking_failed"
    SUBSCRIPTION_EXPIRY = "subscription_expiry"


@dataclass(frozen=True)
class Notification:
    """A message handed to the notification sender."""

    event_id: Optional[int]                  # None when not caused by a transition
    owner: str
    category: NotificationCategory
    detail: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "owner": self.owner,
            "category": self.category.value,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
