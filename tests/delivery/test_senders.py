"""Tests for notification senders."""

import asyncio
import io
import json
import os
import shutil
import tempfile
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

import pytest

from autobook_app.config.notification_delivery import (
    FileSenderConfig,
    HttpSenderConfig,
    StdoutSenderConfig,
)
from autobook_app.delivery.base import DeliveryStatus
from autobook_app.delivery.file_delivery import FileNotificationSender
from autobook_app.delivery.http_delivery import HttpNotificationSender
from autobook_app.delivery.stdout_delivery import StdoutNotificationSender
from autobook_app.errors import DeliveryError
from autobook_app.state.models import Notification, NotificationCategory

NOTIFICATION = Notification(
    event_id=42,
    owner="user-1",
    category=NotificationCategory.BOOKING_SUCCESS,
    detail={"session_id": "session-1", "booking": {"slot": "09:40"}},
    created_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
)


class TestStdoutNotificationSender:
    """Test stdout delivery."""

    def test_json_output(self, capsys):
        """Test notifications are printed as JSON lines."""
        sender = StdoutNotificationSender(config=StdoutSenderConfig(include_timestamp=False))

        result = asyncio.run(sender.send(NOTIFICATION))

        assert result.status == DeliveryStatus.SUCCESS
        payload = json.loads(capsys.readouterr().out)
        assert payload["category"] == "booking_success"
        assert payload["event_id"] == 42
        assert "stdout_timestamp" not in payload

    def test_pretty_output(self, capsys):
        """Test the human-readable format."""
        sender = StdoutNotificationSender(config=StdoutSenderConfig(format="pretty"))

        asyncio.run(sender.send(NOTIFICATION))

        output = capsys.readouterr().out
        assert "NOTIFY user-1: booking_success" in output
        assert "(session session-1)" in output

    def test_stats(self, capsys):
        """Test delivery statistics."""
        sender = StdoutNotificationSender()

        asyncio.run(sender.send(NOTIFICATION))

        stats = sender.get_stats()
        assert stats["delivery_count"] == 1
        assert stats["success_rate"] == 1.0

        sender.reset_stats()
        assert sender.get_stats()["delivery_count"] == 0


class TestFileNotificationSender:
    """Test JSON lines file delivery."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.output_path = os.path.join(self.temp_dir, "out", "notifications.jsonl")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def test_appends_lines(self):
        """Test each notification becomes one line."""
        sender = FileNotificationSender("file", FileSenderConfig(output_path=self.output_path))

        async def scenario():
            await sender.send(NOTIFICATION)
            await sender.send(NOTIFICATION)

        asyncio.run(scenario())

        with open(self.output_path) as f:
            lines = [json.loads(line) for line in f]
        assert len(lines) == 2
        assert lines[0]["detail"]["booking"] == {"slot": "09:40"}
        assert sender.health_check() is True

    def test_file_error_raises_delivery_error(self):
        """Test file system errors surface as DeliveryError."""
        sender = FileNotificationSender("file", FileSenderConfig(output_path=self.output_path))

        with patch("builtins.open", side_effect=PermissionError("read-only")):
            with pytest.raises(DeliveryError) as exc_info:
                asyncio.run(sender.send(NOTIFICATION))

        assert exc_info.value.delivery_method == "file_output"
        assert exc_info.value.event_id == 42
        assert sender.get_stats()["error_count"] == 1


class TestHttpNotificationSender:
    """Test webhook delivery."""

    def make_sender(self):
        return HttpNotificationSender(
            "webhook",
            HttpSenderConfig(url="https://hooks.example.com/notify", headers={"X-Token": "t"})
        )

    def test_invalid_url(self):
        """Test a URL without host is refused."""
        with pytest.raises(ValueError):
            HttpNotificationSender("webhook", HttpSenderConfig(url="not-a-url"))

    def test_successful_post(self):
        """Test a 2xx response counts as delivered."""
        sender = self.make_sender()
        response = MagicMock()
        response.getcode.return_value = 202
        response.read.return_value = b"accepted"
        response.__enter__.return_value = response

        with patch("autobook_app.delivery.http_delivery.urlopen", return_value=response) as mock_urlopen:
            result = asyncio.run(sender.send(NOTIFICATION))

        assert result.status == DeliveryStatus.SUCCESS
        request = mock_urlopen.call_args[0][0]
        assert request.get_method() == "POST"
        assert request.get_header("X-token") == "t"
        assert json.loads(request.data)["owner"] == "user-1"

    def test_http_error(self):
        """Test an error status raises DeliveryError."""
        sender = self.make_sender()
        error = HTTPError("https://hooks.example.com/notify", 503, "Unavailable", {}, io.BytesIO())

        with patch("autobook_app.delivery.http_delivery.urlopen", side_effect=error):
            with pytest.raises(DeliveryError) as exc_info:
                asyncio.run(sender.send(NOTIFICATION))

        assert exc_info.value.context["status_code"] == 503
        assert sender.get_stats()["error_count"] == 1

    def test_network_error(self):
        """Test connection failures raise DeliveryError."""
        sender = self.make_sender()

        with patch("autobook_app.delivery.http_delivery.urlopen", side_effect=URLError("refused")):
            with pytest.raises(DeliveryError):
                asyncio.run(sender.send(NOTIFICATION))
