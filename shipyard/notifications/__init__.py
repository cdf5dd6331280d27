"""Best-effort pipeline notifications."""

from shipyard.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationKind,
    make_notification,
)
from shipyard.notifications.providers import (
    ConsoleNotifier,
    FileNotifier,
    NotificationProvider,
    WebhookNotifier,
)

__all__ = [
    "ConsoleNotifier",
    "FileNotifier",
    "NotificationDispatcher",
    "NotificationKind",
    "NotificationProvider",
    "WebhookNotifier",
    "make_notification",
]
