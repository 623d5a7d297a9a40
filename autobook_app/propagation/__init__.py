"""Change propagation: committed transitions fanned out to subscribers."""

from ..state.models import Notification, NotificationCategory
from .bus import ChangePropagationBus
from .subscribers import (
    BaseSubscriber,
    InMemoryStatusFeed,
    LiveStatusSubscriber,
    NotificationDispatcher,
    NotificationPreferences,
    StatusFeed,
    StatusUpdate,
    categorize,
)

__all__ = [
    "ChangePropagationBus",
    "BaseSubscriber",
    "InMemoryStatusFeed",
    "LiveStatusSubscriber",
    "NotificationDispatcher",
    "NotificationPreferences",
    "StatusFeed",
    "StatusUpdate",
    "categorize",
    "Notification",
    "NotificationCategory",
]
