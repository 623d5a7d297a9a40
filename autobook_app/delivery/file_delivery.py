"""File-based notification sender writing JSON lines."""

import asyncio
import fcntl
import json
import time
from pathlib import Path

from ..config.notification_delivery import FileSenderConfig
from ..errors import DeliveryError
from ..state.models import Notification
from .base import DeliveryResult, DeliveryStatus, NotificationSender


class FileNotificationSender(NotificationSender):
    """Appends each notification to a JSONL file."""

    def __init__(self, name: str, config: FileSenderConfig):
        super().__init__(name, config)
        self.config: FileSenderConfig = config
        self.output_path = Path(config.output_path)

        if config.create_dirs:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)

    async def send(self, notification: Notification) -> DeliveryResult:
        """Write a notification to the output file."""
        start_time = time.time()
        try:
            await asyncio.to_thread(self._write_line, notification)
        except (OSError, TypeError, ValueError) as e:
            self._record_failure()
            self.logger.warning(
                "Notification file error",
                output_path=str(self.output_path),
                error=str(e)
            )
            raise DeliveryError(
                f"File system error: {e}",
                delivery_method="file_output",
                event_id=notification.event_id
            ) from e

        self._record_success()
        self.logger.info(
            "Notification written to file",
            owner=notification.owner,
            category=notification.category.value,
            output_path=str(self.output_path)
        )
        return DeliveryResult(
            status=DeliveryStatus.SUCCESS,
            message=f"Written to {self.output_path}",
            delivery_time_ms=int((time.time() - start_time) * 1000)
        )

    def _write_line(self, notification: Notification) -> None:
        """Append one JSON object per line under an exclusive lock."""
        mode = 'a' if self.config.append_mode else 'w'

        with open(self.output_path, mode) as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            json.dump(notification.to_dict(), f, default=str)
            f.write('\n')

    def health_check(self) -> bool:
        """Check if file system is writable."""
        try:
            test_file = self.output_path.parent / ".health_check_test"
            test_file.write_text("test")
            test_file.unlink()
            return True

        except OSError as e:
            self.logger.warning("Health check failed", error=str(e))
            return False
