"""
System failure error classifications.

These exceptions represent infrastructure-level failures of the engine
itself rather than outcomes of a booking attempt.
"""

from typing import Any, Optional


class SystemFailureError(Exception):
    """Base class for unrecoverable system failures."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.recoverable = False


class PersistenceError(SystemFailureError):
    """Session store failures that survived the storage-level retries."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 target: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.target = target


class DeliveryError(SystemFailureError):
    """Notification or status feed delivery failures."""

    def __init__(self, message: str, delivery_method: Optional[str] = None,
                 event_id: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.delivery_method = delivery_method
        self.event_id = event_id
