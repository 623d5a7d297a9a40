"""
Centralized logging configuration for the booking engine.

This module provides standardized logging configuration using structlog
for all components. All logging throughout the system should use this
configuration to ensure consistent formatting and structured logging.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import FilteringBoundLogger


def configure_logging(
    level: str = "INFO",
    format_json: bool = False,
    include_timestamp: bool = True,
    include_caller: bool = False,
    extra_processors: Optional[list] = None
) -> None:
    """
    Configure structlog for the entire application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_json: If True, output JSON format; otherwise human-readable
        include_timestamp: Include timestamp in log output
        include_caller: Include caller information (filename, line number)
        extra_processors: Additional structlog processors to include
    """
    log_level = getattr(logging, level.upper())

    logging.basicConfig(
        level=log_level,
        stream=sys.stdout,
        format="%(message)s"  # structlog will handle formatting
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))

    if include_caller:
        processors.append(structlog.processors.CallsiteParameterAdder(
            parameters=[structlog.processors.CallsiteParameter.FILENAME,
                       structlog.processors.CallsiteParameter.LINENO]
        ))

    if extra_processors:
        processors.extend(extra_processors)

    if format_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> FilteringBoundLogger:
    """
    Get a configured structlog logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)


def get_state_logger(name: str) -> FilteringBoundLogger:
    """
    Get a logger specifically configured for session state transitions.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger for state transitions
    """
    logger = get_logger(name)

    return logger.bind(
        subsystem="state_machine",
        audit_trail=True
    )


def get_retry_logger(name: str) -> FilteringBoundLogger:
    """
    Get a logger specifically configured for retry and backoff decisions.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger for retry decisions
    """
    logger = get_logger(name)

    return logger.bind(
        subsystem="retry",
        audit_trail=True
    )


def log_retry_decision(
    logger: FilteringBoundLogger,
    session_id: str,
    attempt: int,
    retry: bool,
    reason: str,
    delay_seconds: Optional[float] = None,
    context: Optional[dict[str, Any]] = None
) -> None:
    """
    Log a retry decision with standardized format.

    Args:
        logger: Structlog logger instance
        session_id: ID of the session that failed
        attempt: Attempt number that failed
        retry: Whether another attempt was authorized
        reason: Detailed reason for the decision
        delay_seconds: Backoff delay before the next attempt
        context: Additional context data
    """
    bound_logger = logger.bind(
        session_id=session_id,
        attempt=attempt,
        decision="RETRY" if retry else "GIVE_UP",
        reason=reason,
        delay_seconds=delay_seconds,
        event_type="retry_decision"
    )

    if context:
        bound_logger = bound_logger.bind(context=context)

    if retry:
        bound_logger.info("Retry scheduled")
    else:
        bound_logger.warning("Giving up on session")


def log_state_transition(
    logger: FilteringBoundLogger,
    session_id: str,
    from_state: Optional[str],
    to_state: str,
    trigger: str,
    context: Optional[dict[str, Any]] = None
) -> None:
    """
    Log a committed session state transition with standardized format.

    Args:
        logger: Structlog logger instance
        session_id: ID of the session
        from_state: Previous state, None for the creation transition
        to_state: New state
        trigger: What caused the transition
        context: Additional context data
    """
    bound_logger = logger.bind(
        session_id=session_id,
        from_state=from_state,
        to_state=to_state,
        trigger=trigger,
        event_type="state_transition"
    )

    if context:
        bound_logger = bound_logger.bind(context=context)

    bound_logger.info("State transition")
