"""Standard output notification sender."""

import json
import sys

from ..config.notification_delivery import StdoutSenderConfig
from ..errors import DeliveryError
from ..state.models import Notification
from ..utils.time import utc_now
from .base import DeliveryResult, DeliveryStatus, NotificationSender


class StdoutNotificationSender(NotificationSender):
    """Prints notifications to stdout, one per line."""

    def __init__(self, name: str = "stdout", config: StdoutSenderConfig = StdoutSenderConfig()):
        super().__init__(name, config)
        self.config: StdoutSenderConfig = config

    async def send(self, notification: Notification) -> DeliveryResult:
        """Print a notification to stdout."""
        try:
            print(self._format_notification(notification), file=sys.stdout, flush=True)
        except (OSError, ValueError) as e:
            self._record_failure()
            raise DeliveryError(
                f"Stdout error: {e}",
                delivery_method="stdout",
                event_id=notification.event_id
            ) from e

        self._record_success()
        self.logger.debug(
            "Notification printed to stdout",
            owner=notification.owner,
            category=notification.category.value
        )
        return DeliveryResult(status=DeliveryStatus.SUCCESS, message="Printed to stdout")

    def _format_notification(self, notification: Notification) -> str:
        """Format notification for stdout output."""
        if self.config.format == "pretty":
            output = (
                f"[{utc_now().isoformat()}] NOTIFY {notification.owner}: "
                f"{notification.category.value}"
            )
            session_id = notification.detail.get("session_id")
            if session_id:
                output += f" (session {session_id})"
            return output

        payload = notification.to_dict()
        if self.config.include_timestamp:
            payload["stdout_timestamp"] = utc_now().isoformat()
        return json.dumps(payload, default=str)

    def health_check(self) -> bool:
        """Check if stdout is available."""
        try:
            return sys.stdout.writable()
        except (OSError, ValueError):
            return False
