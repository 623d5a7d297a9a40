"""Session persistence layer: sessions, transition event log, delivery bookkeeping."""

import json
import sqlite3
import threading
import time
import uuid
import weakref
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import structlog

from ..config.defaults import StoreParams
from ..errors import ConflictError, InvalidTransitionError, PersistenceError
from ..logging.config import get_state_logger, log_state_transition
from ..state.machine import INITIAL_STATE, apply_transition
from ..state.models import Session, SessionState, TransitionEvent
from ..utils.time import format_timestamp, parse_timestamp, utc_now

logger = structlog.get_logger(__name__)
state_logger = get_state_logger(__name__)

T = TypeVar("T")

CommitListener = Callable[[TransitionEvent], None]

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        config_id TEXT NOT NULL,
        state TEXT NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 1,
        active INTEGER NOT NULL DEFAULT 1,
        started_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        result TEXT,
        error TEXT,
        stage TEXT,
        last_sequence INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_active_config
        ON sessions(owner, config_id) WHERE active = 1
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(owner, started_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS transition_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id),
        sequence INTEGER NOT NULL,
        owner TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        attempt INTEGER NOT NULL,
        terminal INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        detail TEXT NOT NULL,
        UNIQUE(session_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriber_offsets (
        subscriber TEXT PRIMARY KEY,
        last_event_id INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dead_letters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        subscriber TEXT NOT NULL,
        event_id INTEGER NOT NULL,
        error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id INTEGER NOT NULL,
        category TEXT NOT NULL,
        owner TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE(event_id, category)
    )
    """,
)


def _is_transient(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class SessionStore:
    """
    SQLite-backed session store.

    Single source of truth for session state. Every mutation goes through
    `commit`, which validates the move with the state machine and appends
    exactly one transition event in the same transaction. At most one active
    session per (owner, config_id) is enforced by a partial unique index.
    """

    def __init__(self, db_path: Optional[str] = None, params: Optional[StoreParams] = None):
        self.params = params or StoreParams()
        self.db_path = Path(db_path or self.params.db_path)
        self.logger = logger

        self._lock = threading.Lock()
        self._session_locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._listeners: list[CommitListener] = []

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        def _create() -> None:
            with self._get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                for statement in _SCHEMA:
                    conn.execute(statement)

        self._run_with_retry("init_database", _create)

    @contextmanager
    def _get_connection(self):
        """Get an autocommit database connection; transactions are explicit."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.params.connect_timeout_seconds,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        """Run a block inside a write transaction that either commits or rolls back."""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _run_with_retry(self, operation: str, func: Callable[[], T]) -> T:
        """Retry transient SQLite errors; anything else propagates unchanged."""
        attempts = self.params.busy_retry_attempts
        for attempt in range(attempts + 1):
            try:
                return func()
            except sqlite3.OperationalError as e:
                if not _is_transient(e):
                    raise PersistenceError(
                        f"Database error during {operation}: {e}",
                        operation=operation,
                        target=str(self.db_path)
                    ) from e
                if attempt == attempts:
                    raise PersistenceError(
                        f"Database still busy after {attempts} retries during {operation}",
                        operation=operation,
                        target=str(self.db_path)
                    ) from e
                self.logger.warning(
                    "Transient database error, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    error=str(e)
                )
                time.sleep(self.params.busy_retry_delay_ms / 1000.0 * (attempt + 1))
        raise AssertionError("unreachable")

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._lock:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._session_locks[session_id] = lock
            return lock

    def add_commit_listener(self, listener: CommitListener) -> None:
        """Register a callback invoked with each event after its transaction commits."""
        with self._lock:
            self._listeners.append(listener)

    def remove_commit_listener(self, listener: CommitListener) -> None:
        """Unregister a commit listener."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _fire_listeners(self, event: TransitionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                # The transition is already durable; a listener cannot undo it
                self.logger.error(
                    "Commit listener failed",
                    session_id=event.session_id,
                    event_id=event.id,
                    error=str(e),
                    error_type=type(e).__name__
                )

    def create_session(
        self,
        owner: str,
        config_id: str,
        detail: Optional[dict[str, Any]] = None
    ) -> Session:
        """
        Create a session in the initial state and record its creation event.

        Args:
            owner: Opaque owner identity
            config_id: Booking configuration the session runs
            detail: Optional detail stored on the creation event

        Returns:
            The new session

        Raises:
            ConflictError: If an active session exists for (owner, config_id)
        """
        now = utc_now()
        session = Session(
            id=str(uuid.uuid4()),
            owner=owner,
            config_id=config_id,
            state=INITIAL_STATE,
            attempt=1,
            active=True,
            started_at=now,
            updated_at=now,
        )

        def _insert() -> TransitionEvent:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO sessions (
                        id, owner, config_id, state, attempt, active,
                        started_at, updated_at, last_sequence
                    ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, 1)
                """, (
                    session.id,
                    owner,
                    config_id,
                    session.state.value,
                    session.attempt,
                    format_timestamp(now),
                    format_timestamp(now),
                ))
                return self._append_event(conn, session, None, detail, sequence=1)

        try:
            event = self._run_with_retry("create_session", _insert)
        except sqlite3.IntegrityError as e:
            self.logger.info(
                "Active session already exists",
                owner=owner,
                config_id=config_id
            )
            raise ConflictError(
                f"An active session already exists for configuration {config_id}",
                owner=owner,
                config_id=config_id
            ) from e

        log_state_transition(
            state_logger,
            session_id=session.id,
            from_state=None,
            to_state=session.state.value,
            trigger="session_created",
            context={"owner": owner, "config_id": config_id, "event_id": event.id}
        )
        self._fire_listeners(event)
        return session

    def commit(
        self,
        session: Session,
        new_state: SessionState,
        detail: Optional[dict[str, Any]] = None,
        terminal: bool = False
    ) -> Session:
        """
        Atomically apply a transition and append its event.

        Commits for the same session id are serialized. The transition is
        validated against the persisted row, so a caller holding a stale
        session value is rejected rather than overwriting newer state.

        Args:
            session: Session value the caller believes is current
            new_state: State to enter
            detail: Result or error detail for the transition
            terminal: Whether a failed transition ends the session

        Returns:
            The updated session

        Raises:
            InvalidTransitionError: If the move is illegal or the caller is stale
            PersistenceError: If the session does not exist or storage keeps failing
        """
        def _commit() -> tuple[Session, TransitionEvent]:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM sessions WHERE id = ?", (session.id,)
                ).fetchone()
                if row is None:
                    raise PersistenceError(
                        f"Session {session.id} not found",
                        operation="commit",
                        target=session.id
                    )

                current = self._row_to_session(row)
                if (current.state != session.state
                        or current.attempt != session.attempt
                        or current.active != session.active):
                    raise InvalidTransitionError(
                        f"Session {session.id} changed since it was read "
                        f"(persisted {current.state.value}, given {session.state.value})",
                        session_id=session.id,
                        current_state=current.state.value,
                        attempted_state=new_state.value
                    )

                return self._write_transition(
                    conn, current, row["last_sequence"] + 1, new_state, detail, terminal
                )

        with self._session_lock(session.id):
            updated, event = self._run_with_retry("commit", _commit)

        self._announce(event, "commit")
        return updated

    def fail_session(self, session_id: str, detail: dict[str, Any]) -> Optional[Session]:
        """
        Move a session to terminal failed from whatever state it is persisted in.

        The read and the writes happen under the session lock in a single
        transaction, so a commit still in flight for the session is waited
        for rather than raced. A session parked in failed between two
        attempts cannot enter failed again; it is moved back to initializing
        first, in the same transaction.

        Returns:
            The terminal session, or None if the session does not exist
        """
        def _fail() -> tuple[Optional[Session], list[TransitionEvent]]:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM sessions WHERE id = ?", (session_id,)
                ).fetchone()
                if row is None:
                    return None, []

                current = self._row_to_session(row)
                if current.is_terminal:
                    return current, []

                events = []
                sequence = row["last_sequence"]
                if current.state == SessionState.FAILED:
                    sequence += 1
                    current, event = self._write_transition(
                        conn, current, sequence, SessionState.INITIALIZING,
                        {"reason": "retry_aborted"}
                    )
                    events.append(event)

                current, event = self._write_transition(
                    conn, current, sequence + 1, SessionState.FAILED, detail, True
                )
                events.append(event)
                return current, events

        with self._session_lock(session_id):
            session, events = self._run_with_retry("fail_session", _fail)

        for event in events:
            self._announce(event, "forced_failure")
        return session

    def record_progress(self, session_id: str, stage: dict[str, Any]) -> Optional[Session]:
        """
        Store the latest in-state progress report of an active session.

        Progress is not a transition: no event is appended and the state is
        unchanged. The next transition clears it.

        Returns:
            The updated session, or None if the session is missing or finished
        """
        def _record() -> Optional[Session]:
            with self._transaction() as conn:
                cursor = conn.execute("""
                    UPDATE sessions SET stage = ?, updated_at = ?
                    WHERE id = ? AND active = 1
                """, (json.dumps(stage, default=str), format_timestamp(utc_now()), session_id))
                if cursor.rowcount != 1:
                    return None
                row = conn.execute(
                    "SELECT * FROM sessions WHERE id = ?", (session_id,)
                ).fetchone()
                return self._row_to_session(row)

        with self._session_lock(session_id):
            return self._run_with_retry("record_progress", _record)

    def _write_transition(
        self,
        conn: sqlite3.Connection,
        current: Session,
        sequence: int,
        new_state: SessionState,
        detail: Optional[dict[str, Any]] = None,
        terminal: bool = False
    ) -> tuple[Session, TransitionEvent]:
        """Apply a transition to the persisted session value inside the open transaction."""
        updated = replace(apply_transition(current, new_state, detail, terminal), stage=None)
        conn.execute("""
            UPDATE sessions SET
                state = ?,
                attempt = ?,
                active = ?,
                updated_at = ?,
                completed_at = ?,
                result = ?,
                error = ?,
                stage = NULL,
                last_sequence = ?
            WHERE id = ?
        """, (
            updated.state.value,
            updated.attempt,
            1 if updated.active else 0,
            format_timestamp(updated.updated_at),
            format_timestamp(updated.completed_at),
            json.dumps(updated.result, default=str) if updated.result is not None else None,
            json.dumps(updated.error, default=str) if updated.error is not None else None,
            sequence,
            updated.id,
        ))
        event = self._append_event(conn, updated, current.state, detail, sequence)
        return updated, event

    def _announce(self, event: TransitionEvent, trigger: str) -> None:
        log_state_transition(
            state_logger,
            session_id=event.session_id,
            from_state=event.from_state.value if event.from_state else None,
            to_state=event.to_state.value,
            trigger=trigger,
            context={
                "attempt": event.attempt,
                "terminal": event.terminal,
                "event_id": event.id,
                "sequence": event.sequence,
            }
        )
        self._fire_listeners(event)

    def _append_event(
        self,
        conn: sqlite3.Connection,
        session: Session,
        from_state: Optional[SessionState],
        detail: Optional[dict[str, Any]],
        sequence: int
    ) -> TransitionEvent:
        """Insert the transition event for a session value inside the open transaction."""
        timestamp = session.updated_at or utc_now()
        payload = dict(detail or {})
        cursor = conn.execute("""
            INSERT INTO transition_events (
                session_id, sequence, owner, from_state, to_state,
                attempt, terminal, timestamp, detail
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            session.id,
            sequence,
            session.owner,
            from_state.value if from_state else None,
            session.state.value,
            session.attempt,
            1 if session.is_terminal else 0,
            format_timestamp(timestamp),
            json.dumps(payload, default=str),
        ))
        return TransitionEvent(
            id=cursor.lastrowid,
            session_id=session.id,
            sequence=sequence,
            owner=session.owner,
            from_state=from_state,
            to_state=session.state,
            attempt=session.attempt,
            terminal=session.is_terminal,
            timestamp=timestamp,
            detail=payload,
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session by ID."""
        def _get() -> Optional[Session]:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM sessions WHERE id = ?", (session_id,)
                ).fetchone()
                return self._row_to_session(row) if row else None

        return self._run_with_retry("get_session", _get)

    def load_active(self, owner: str, config_id: str) -> Optional[Session]:
        """Get the active session for an owner and configuration, if any."""
        def _get() -> Optional[Session]:
            with self._get_connection() as conn:
                row = conn.execute("""
                    SELECT * FROM sessions
                    WHERE owner = ? AND config_id = ? AND active = 1
                """, (owner, config_id)).fetchone()
                return self._row_to_session(row) if row else None

        return self._run_with_retry("load_active", _get)

    def latest_session_for_owner(self, owner: str) -> Optional[Session]:
        """Get the most recently started session of an owner."""
        def _get() -> Optional[Session]:
            with self._get_connection() as conn:
                row = conn.execute("""
                    SELECT * FROM sessions WHERE owner = ?
                    ORDER BY started_at DESC, rowid DESC LIMIT 1
                """, (owner,)).fetchone()
                return self._row_to_session(row) if row else None

        return self._run_with_retry("latest_session_for_owner", _get)

    def list_active_sessions(self, owner: Optional[str] = None) -> list[Session]:
        """Get all active sessions, optionally for one owner."""
        def _list() -> list[Session]:
            with self._get_connection() as conn:
                if owner is None:
                    rows = conn.execute(
                        "SELECT * FROM sessions WHERE active = 1 ORDER BY started_at"
                    ).fetchall()
                else:
                    rows = conn.execute("""
                        SELECT * FROM sessions WHERE active = 1 AND owner = ?
                        ORDER BY started_at
                    """, (owner,)).fetchall()
                return [self._row_to_session(row) for row in rows]

        return self._run_with_retry("list_active_sessions", _list)

    def list_events(self, session_id: str) -> list[TransitionEvent]:
        """Get the transition log of a session in commit order."""
        def _list() -> list[TransitionEvent]:
            with self._get_connection() as conn:
                rows = conn.execute("""
                    SELECT * FROM transition_events WHERE session_id = ?
                    ORDER BY sequence
                """, (session_id,)).fetchall()
                return [self._row_to_event(row) for row in rows]

        return self._run_with_retry("list_events", _list)

    def events_after(self, event_id: int, limit: int = 100) -> list[TransitionEvent]:
        """Get events committed after a global event id, oldest first."""
        def _list() -> list[TransitionEvent]:
            with self._get_connection() as conn:
                rows = conn.execute("""
                    SELECT * FROM transition_events WHERE id > ?
                    ORDER BY id LIMIT ?
                """, (event_id, limit)).fetchall()
                return [self._row_to_event(row) for row in rows]

        return self._run_with_retry("events_after", _list)

    def last_event_id(self) -> int:
        """Get the id of the newest committed event, 0 when the log is empty."""
        def _get() -> int:
            with self._get_connection() as conn:
                row = conn.execute("SELECT MAX(id) FROM transition_events").fetchone()
                return row[0] or 0

        return self._run_with_retry("last_event_id", _get)

    def get_subscriber_offset(self, subscriber: str) -> int:
        """Get the id of the last event a subscriber fully handled."""
        def _get() -> int:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT last_event_id FROM subscriber_offsets WHERE subscriber = ?",
                    (subscriber,)
                ).fetchone()
                return row[0] if row else 0

        return self._run_with_retry("get_subscriber_offset", _get)

    def set_subscriber_offset(self, subscriber: str, event_id: int) -> None:
        """Advance a subscriber cursor; it never moves backwards."""
        def _set() -> None:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO subscriber_offsets (subscriber, last_event_id, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(subscriber) DO UPDATE SET
                        last_event_id = MAX(last_event_id, excluded.last_event_id),
                        updated_at = excluded.updated_at
                """, (subscriber, event_id, format_timestamp(utc_now())))

        self._run_with_retry("set_subscriber_offset", _set)

    def record_dead_letter(self, subscriber: str, event_id: int, error: str) -> None:
        """Record an event a subscriber could not handle."""
        def _insert() -> None:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO dead_letters (subscriber, event_id, error, created_at)
                    VALUES (?, ?, ?, ?)
                """, (subscriber, event_id, error, format_timestamp(utc_now())))

        self._run_with_retry("record_dead_letter", _insert)

    def list_dead_letters(self, subscriber: Optional[str] = None) -> list[dict[str, Any]]:
        """Get dead-lettered deliveries, optionally for one subscriber."""
        def _list() -> list[dict[str, Any]]:
            with self._get_connection() as conn:
                if subscriber is None:
                    rows = conn.execute("SELECT * FROM dead_letters ORDER BY id").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM dead_letters WHERE subscriber = ? ORDER BY id",
                        (subscriber,)
                    ).fetchall()
                return [dict(row) for row in rows]

        return self._run_with_retry("list_dead_letters", _list)

    def record_notification(self, event_id: int, category: str, owner: str) -> bool:
        """
        Record that a notification was produced for an event.

        Returns:
            True on first recording, False if it was already recorded
        """
        def _insert() -> bool:
            with self._transaction() as conn:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO notification_log (event_id, category, owner, created_at)
                    VALUES (?, ?, ?, ?)
                """, (event_id, category, owner, format_timestamp(utc_now())))
                return cursor.rowcount == 1

        return self._run_with_retry("record_notification", _insert)

    def get_stats(self) -> dict[str, Any]:
        """Get database statistics."""
        def _stats() -> dict[str, Any]:
            with self._get_connection() as conn:
                total_count = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
                active_count = conn.execute(
                    "SELECT COUNT(*) FROM sessions WHERE active = 1"
                ).fetchone()[0]

                state_counts = {}
                for row in conn.execute("""
                    SELECT state, COUNT(*) as count FROM sessions GROUP BY state
                """):
                    state_counts[row[0]] = row[1]

                event_count = conn.execute(
                    "SELECT COUNT(*) FROM transition_events"
                ).fetchone()[0]

                return {
                    "total_sessions": total_count,
                    "active_sessions": active_count,
                    "sessions_by_state": state_counts,
                    "transition_events": event_count,
                }

        return self._run_with_retry("get_stats", _stats)

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        """Convert database row to Session object."""
        return Session(
            id=row["id"],
            owner=row["owner"],
            config_id=row["config_id"],
            state=SessionState(row["state"]),
            attempt=row["attempt"],
            active=bool(row["active"]),
            started_at=parse_timestamp(row["started_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            result=json.loads(row["result"]) if row["result"] else None,
            error=json.loads(row["error"]) if row["error"] else None,
            stage=json.loads(row["stage"]) if row["stage"] else None,
        )

    def _row_to_event(self, row: sqlite3.Row) -> TransitionEvent:
        """Convert database row to TransitionEvent object."""
        return TransitionEvent(
            id=row["id"],
            session_id=row["session_id"],
            sequence=row["sequence"],
            owner=row["owner"],
            from_state=SessionState(row["from_state"]) if row["from_state"] else None,
            to_state=SessionState(row["to_state"]),
            attempt=row["attempt"],
            terminal=bool(row["terminal"]),
            timestamp=parse_timestamp(row["timestamp"]),
            detail=json.loads(row["detail"]),
        )
