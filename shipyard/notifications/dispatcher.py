"""NotificationDispatcher — fans pipeline notifications out to every channel."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from shipyard.notifications.providers import ConsoleNotifier, NotificationProvider

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Notification types; the payload schema is the same for all of them."""

    SUCCESS = "success"
    FAILURE = "failure"
    ROLLBACK = "rollback"
    CRITICAL_FAILURE = "critical_failure"
    REJECTED = "rejected"


class NotificationDispatcher:
    """Dispatch notifications to all configured providers.

    Always includes a ConsoleNotifier. Delivery is best-effort: a failing
    provider is logged and skipped.
    """

    def __init__(self, providers: list[NotificationProvider] | None = None) -> None:
        self._console = ConsoleNotifier()
        self._providers: list[NotificationProvider] = [self._console]
        if providers:
            self._providers.extend(providers)

    def add_provider(self, provider: NotificationProvider) -> None:
        """Register an additional notification provider."""
        self._providers.append(provider)

    @property
    def console(self) -> ConsoleNotifier:
        """Access the built-in console notifier (useful for testing)."""
        return self._console

    def notify(self, kind: NotificationKind | str, data: dict[str, Any]) -> dict[str, Any]:
        """Build the payload for *kind* and send it everywhere. Never raises."""
        notification = make_notification(kind, data)
        for provider in self._providers:
            try:
                if provider.is_available():
                    provider.notify(notification)
            except Exception as exc:
                logger.warning(
                    "Notification provider %s failed: %s",
                    type(provider).__name__,
                    exc,
                )
        return notification


def make_notification(kind: NotificationKind | str, data: dict[str, Any]) -> dict[str, Any]:
    """Build a standard notification payload."""
    return {
        "type": NotificationKind(kind).value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
