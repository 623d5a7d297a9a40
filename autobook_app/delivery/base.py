"""Base classes for notification senders."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from ..state.models import Notification


class DeliveryStatus(Enum):
    """Notification delivery status."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    status: DeliveryStatus
    message: Optional[str] = None
    delivery_time_ms: Optional[int] = None
    error: Optional[Exception] = None


class NotificationSender(ABC):
    """
    Fire-and-forget transactional message sender.

    Senders make a single delivery attempt. Failures are raised as
    DeliveryError and are never retried by the engine.
    """

    def __init__(self, name: str, config: Any = None):
        self.name = name
        self.config = config
        self.logger = structlog.get_logger(__name__).bind(sender=name)
        self._delivery_count = 0
        self._error_count = 0

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        """
        Deliver one notification.

        Args:
            notification: Notification to deliver

        Returns:
            Delivery result on success

        Raises:
            DeliveryError: If the notification could not be delivered
        """

    @abstractmethod
    def health_check(self) -> bool:
        """Check if the sender can currently deliver."""

    def _record_success(self) -> None:
        self._delivery_count += 1

    def _record_failure(self) -> None:
        self._error_count += 1

    def get_stats(self) -> dict[str, Any]:
        """Get delivery statistics."""
        return {
            "name": self.name,
            "delivery_count": self._delivery_count,
            "error_count": self._error_count,
            "success_rate": (
                self._delivery_count / (self._delivery_count + self._error_count)
                if (self._delivery_count + self._error_count) > 0 else 0.0
            )
        }

    def reset_stats(self) -> None:
        """Reset delivery statistics."""
        self._delivery_count = 0
        self._error_count = 0
