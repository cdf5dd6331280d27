"""Notification providers — console/log, JSON file, outbound webhook."""

from __future__ import annotations

import abc
import logging
import threading
from pathlib import Path
from typing import Any

import requests

from shipyard.jsonfile import read_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_FILE_LIMIT = 100


class NotificationProvider(abc.ABC):
    """Abstract notification channel."""

    @abc.abstractmethod
    def notify(self, notification: dict[str, Any]) -> bool:
        """Deliver a notification.

        Parameters
        ----------
        notification:
            Payload with keys: type, timestamp, data.

        Returns True if the notification was delivered.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Return True if provider is ready to send."""


class ConsoleNotifier(NotificationProvider):
    """Always-available log notification provider."""

    def __init__(self) -> None:
        self._log: list[dict[str, Any]] = []

    def notify(self, notification: dict[str, Any]) -> bool:
        self._log.append(notification)
        kind = notification.get("type", "unknown")
        msg = f"[shipyard] {kind.upper()}: {_format_data(notification.get('data', {}))}"
        if kind == "critical_failure":
            logger.critical(msg)
        elif kind in ("failure", "rejected"):
            logger.error(msg)
        elif kind == "rollback":
            logger.warning(msg)
        else:
            logger.info(msg)
        return True

    def is_available(self) -> bool:
        return True

    @property
    def log(self) -> list[dict[str, Any]]:
        """Access the in-memory log for testing."""
        return list(self._log)


class FileNotifier(NotificationProvider):
    """Append notifications to a JSON file, keeping the most recent *limit*."""

    def __init__(self, path: str | Path, limit: int = DEFAULT_FILE_LIMIT) -> None:
        self.path = Path(path)
        self.limit = limit
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return True

    def notify(self, notification: dict[str, Any]) -> bool:
        with self._lock:
            entries = read_json(self.path, default=[])
            if not isinstance(entries, list):
                entries = []
            entries.append(notification)
            write_json(self.path, entries[-self.limit:])
        return True

    def read(self) -> list[dict[str, Any]]:
        """Return stored notifications, oldest first."""
        entries = read_json(self.path, default=[])
        return entries if isinstance(entries, list) else []


class WebhookNotifier(NotificationProvider):
    """POST notifications as JSON to an outbound webhook. Optional."""

    def __init__(self, webhook_url: str | None = None, timeout: float = 10) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout

    def is_available(self) -> bool:
        return bool(self._webhook_url)

    def notify(self, notification: dict[str, Any]) -> bool:
        if not self.is_available():
            logger.warning("Webhook notifier unavailable, skipping.")
            return False

        text = _format_data(notification.get("data", {}), notification.get("type", ""))
        try:
            resp = requests.post(
                self._webhook_url,
                json={**notification, "text": text},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Webhook notification failed: %s", exc)
            return False
        if resp.status_code not in (200, 201, 202, 204):
            logger.warning("Webhook returned HTTP %s", resp.status_code)
            return False
        return True


def _format_data(data: dict[str, Any], kind: str = "") -> str:
    """Format notification data into a readable one-line message."""
    parts = [f"Shipyard {kind}"] if kind else []
    for key in ("pipeline_id", "environment", "status", "stage", "backup_id", "error"):
        value = data.get(key)
        if value:
            parts.append(f"{key}={value}")
    return " ".join(parts)
