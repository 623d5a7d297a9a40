"""Webhook notification sender over HTTP POST."""

import asyncio
import json
import socket
import time
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from ..config.notification_delivery import HttpSenderConfig
from ..errors import DeliveryError
from ..state.models import Notification
from .base import DeliveryResult, DeliveryStatus, NotificationSender


class HttpNotificationSender(NotificationSender):
    """Posts notifications as JSON to a webhook."""

    def __init__(self, name: str, config: HttpSenderConfig):
        super().__init__(name, config)
        self.config: HttpSenderConfig = config

        parsed = urlparse(config.url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid URL: {config.url}")

    async def send(self, notification: Notification) -> DeliveryResult:
        """Deliver a notification via HTTP POST."""
        start_time = time.time()
        try:
            response_code = await asyncio.to_thread(self._post, notification)
        except DeliveryError:
            self._record_failure()
            raise

        self._record_success()
        return DeliveryResult(
            status=DeliveryStatus.SUCCESS,
            message=f"HTTP {response_code}",
            delivery_time_ms=int((time.time() - start_time) * 1000)
        )

    def _post(self, notification: Notification) -> int:
        """Make the blocking request; returns the response code."""
        data = json.dumps(notification.to_dict(), default=str).encode('utf-8')
        headers = {
            'Content-Type': 'application/json',
            'Content-Length': str(len(data)),
            'User-Agent': 'autobook/0.1'
        }

        if self.config.headers:
            headers.update(self.config.headers)

        req = Request(
            self.config.url,
            data=data,
            headers=headers,
            method=self.config.method
        )

        try:
            with urlopen(req, timeout=self.config.timeout_seconds) as response:
                response_code = response.getcode()
                response_data = response.read().decode('utf-8')

        except HTTPError as e:
            self.logger.warning(
                "Notification webhook HTTP error",
                owner=notification.owner,
                category=notification.category.value,
                error_code=e.code,
                error_reason=str(e.reason)
            )
            raise DeliveryError(
                f"HTTP {e.code}: {e.reason}",
                delivery_method="http_post",
                event_id=notification.event_id,
                context={"status_code": e.code}
            ) from e

        except (OSError, URLError, socket.timeout) as e:
            self.logger.warning(
                "Notification webhook network error",
                owner=notification.owner,
                category=notification.category.value,
                error=str(e)
            )
            raise DeliveryError(
                f"Network error: {e}",
                delivery_method="http_post",
                event_id=notification.event_id
            ) from e

        if not 200 <= response_code < 300:
            raise DeliveryError(
                f"HTTP {response_code}: {response_data[:200]}",
                delivery_method="http_post",
                event_id=notification.event_id,
                context={"status_code": response_code}
            )

        self.logger.info(
            "Notification delivered to webhook",
            owner=notification.owner,
            category=notification.category.value,
            response_code=response_code
        )
        return response_code

    def health_check(self) -> bool:
        """Check if the webhook host is reachable."""
        try:
            parsed = urlparse(self.config.url)
            req = Request(f"{parsed.scheme}://{parsed.netloc}", method='HEAD')
            with urlopen(req, timeout=5) as response:
                return 200 <= response.getcode() < 400

        except (OSError, URLError) as e:
            self.logger.warning("Health check failed", error=str(e))
            return False
