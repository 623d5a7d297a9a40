"""Notification senders: transactional messages leave the engine here."""

from .base import DeliveryResult, DeliveryStatus, NotificationSender
from .file_delivery import FileNotificationSender
from .http_delivery import HttpNotificationSender
from .stdout_delivery import StdoutNotificationSender

__all__ = [
    "DeliveryResult",
    "DeliveryStatus",
    "NotificationSender",
    "FileNotificationSender",
    "HttpNotificationSender",
    "StdoutNotificationSender",
]
