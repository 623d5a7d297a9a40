"""
Core booking session state machine logic.

Pure functions defining the legal lifecycle transitions and applying them to
immutable Session values:

    initializing -> waiting_authentication -> searching -> booking -> succeeded
    any non-terminal state -> failed
    failed (still active, retry authorized) -> initializing

Nothing here touches persistence; the session store validates every commit
through these functions.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

from ..errors import InvalidTransitionError
from ..utils.time import utc_now
from .models import Session, SessionState

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INITIALIZING: frozenset({
        SessionState.WAITING_AUTHENTICATION, SessionState.FAILED
    }),
    SessionState.WAITING_AUTHENTICATION: frozenset({
        SessionState.SEARCHING, SessionState.FAILED
    }),
    SessionState.SEARCHING: frozenset({
        SessionState.BOOKING, SessionState.FAILED
    }),
    SessionState.BOOKING: frozenset({
        SessionState.SUCCEEDED, SessionState.FAILED
    }),
    SessionState.FAILED: frozenset({SessionState.INITIALIZING}),
    SessionState.SUCCEEDED: frozenset(),
}

INITIAL_STATE = SessionState.INITIALIZING

# Forward path taken when the automation step reports success
SUCCESS_PATH: dict[SessionState, SessionState] = {
    SessionState.INITIALIZING: SessionState.WAITING_AUTHENTICATION,
    SessionState.WAITING_AUTHENTICATION: SessionState.SEARCHING,
    SessionState.SEARCHING: SessionState.BOOKING,
    SessionState.BOOKING: SessionState.SUCCEEDED,
}


def allowed_transitions(state: SessionState) -> frozenset[SessionState]:
    """Get the states reachable from a state in one transition."""
    return TRANSITIONS[state]


def is_transition_allowed(
    from_state: Optional[SessionState],
    to_state: SessionState
) -> bool:
    """
    Check a (from, to) pair against the transition table.

    A from_state of None stands for session creation, which may only enter
    the initial state.
    """
    if from_state is None:
        return to_state == INITIAL_STATE
    return to_state in TRANSITIONS[from_state]


def next_state_on_success(state: SessionState) -> SessionState:
    """Get the state entered when the step for `state` succeeds."""
    try:
        return SUCCESS_PATH[state]
    except KeyError:
        raise InvalidTransitionError(
            f"State {state.value} has no success transition",
            current_state=state.value
        ) from None


def validate_transition(
    session: Session,
    new_state: SessionState,
    terminal: bool = False
) -> None:
    """
    Validate that a session may move to a new state.

    Args:
        session: Current session value
        new_state: Requested state
        terminal: Whether the new state ends the session

    Raises:
        InvalidTransitionError: If the move is not in the transition table,
            the session is already terminal, or the terminal flag is
            inconsistent with the requested state
    """
    if session.is_terminal:
        raise InvalidTransitionError(
            f"Session {session.id} is terminal in state {session.state.value}",
            session_id=session.id,
            current_state=session.state.value,
            attempted_state=new_state.value
        )

    if not is_transition_allowed(session.state, new_state):
        raise InvalidTransitionError(
            f"Invalid state transition from {session.state.value} to {new_state.value}",
            session_id=session.id,
            current_state=session.state.value,
            attempted_state=new_state.value
        )

    if terminal and new_state not in (SessionState.SUCCEEDED, SessionState.FAILED):
        raise InvalidTransitionError(
            f"State {new_state.value} cannot be terminal",
            session_id=session.id,
            current_state=session.state.value,
            attempted_state=new_state.value
        )


def apply_transition(
    session: Session,
    new_state: SessionState,
    detail: Optional[dict[str, Any]] = None,
    terminal: bool = False,
    now: Optional[datetime] = None
) -> Session:
    """
    Validate and apply a transition, returning the new session value.

    Entering succeeded always ends the session. Entering failed ends it only
    when `terminal` is set; otherwise the session stays active so a retry can
    move it back to initializing with the next attempt number.
    """
    if new_state == SessionState.SUCCEEDED:
        terminal = True

    validate_transition(session, new_state, terminal)

    now = now or utc_now()
    changes: dict[str, Any] = {
        "state": new_state,
        "updated_at": now,
        "active": not terminal,
    }

    if terminal:
        changes["completed_at"] = now

    if new_state == SessionState.SUCCEEDED:
        changes["result"] = dict(detail or {})
        changes["error"] = None
    elif new_state == SessionState.FAILED:
        changes["error"] = dict(detail or {})
    elif session.state == SessionState.FAILED and new_state == SessionState.INITIALIZING:
        changes["attempt"] = session.attempt + 1
        changes["error"] = None

    return replace(session, **changes)


def is_valid_walk(states: list[Optional[SessionState]]) -> bool:
    """Check that a sequence of visited states follows the transition table."""
    for from_state, to_state in zip(states, states[1:]):
        if to_state is None or not is_transition_allowed(from_state, to_state):
            return False
    return True
