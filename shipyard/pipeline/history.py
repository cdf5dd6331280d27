"""HistorySink — durable run history plus best-effort notification fan-out."""

from __future__ import annotations

import logging
from typing import Any

from shipyard.models import PipelineRun
from shipyard.notifications.dispatcher import NotificationDispatcher, NotificationKind
from shipyard.pipeline.state import StateStore

logger = logging.getLogger(__name__)


class HistorySink:
    """Record pipeline runs and emit notifications about them.

    Parameters
    ----------
    state:
        Store that persists the bounded history.
    dispatcher:
        Notification fan-out; a console-only dispatcher when omitted.
    """

    def __init__(
        self,
        state: StateStore,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.state = state
        self.dispatcher = dispatcher or NotificationDispatcher()

    def record(self, run: PipelineRun) -> None:
        """Persist the current view of *run* (upsert by id, oldest evicted)."""
        self.state.update(run)
        logger.debug("Recorded run %s (%s)", run.id, run.status.value)

    def notify(self, kind: NotificationKind | str, data: dict[str, Any]) -> dict[str, Any]:
        """Send a notification; failures never propagate."""
        return self.dispatcher.notify(kind, data)

    def history(self, limit: int | None = None) -> list[PipelineRun]:
        return self.state.history(limit)
