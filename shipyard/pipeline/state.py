"""StateStore — durable busy markers and bounded run history."""

from __future__ import annotations

import logging
import os
import socket
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from pydantic import BaseModel, Field

from shipyard.deployment.config_manager import PipelineSettings
from shipyard.errors import ConcurrentRunError
from shipyard.jsonfile import read_json, write_json
from shipyard.models import PipelineRun
from shipyard.locking import StateLock, pid_alive

logger = logging.getLogger(__name__)


class RunOwner(BaseModel):
    """Process that holds an environment's busy marker."""

    pid: int = Field(default_factory=os.getpid)
    host: str = Field(default_factory=socket.gethostname)

    @property
    def is_dead(self) -> bool:
        return self.host == socket.gethostname() and not pid_alive(self.pid)


class _StateFile(BaseModel):
    active_runs: dict[str, PipelineRun] = Field(default_factory=dict)
    owners: dict[str, RunOwner] = Field(default_factory=dict)
    history: list[PipelineRun] = Field(default_factory=list)


class StateStore:
    """Own ``state.json``: which run holds each environment, plus history.

    Every mutation is a locked read-modify-write so that separate CLI
    processes agree on whether an environment is busy.

    Parameters
    ----------
    settings:
        Resolved pipeline settings (state directory, history limit).
    """

    def __init__(self, settings: PipelineSettings) -> None:
        self.settings = settings
        self.path = settings.state_path / "state.json"
        self._file_lock = StateLock(settings.state_path / "state.lock")
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Busy markers
    # ------------------------------------------------------------------

    def claim(self, run: PipelineRun) -> None:
        """Mark *run* as the running run of its environment.

        Raises ConcurrentRunError if another run holds the environment;
        the holder is left untouched.
        """
        with self._locked() as state:
            active = state.active_runs.get(run.environment)
            if active is not None and active.id != run.id:
                raise ConcurrentRunError(run.environment, active.id)
            state.active_runs[run.environment] = run.model_copy(deep=True)
            state.owners[run.environment] = RunOwner()
            self._upsert_history(state, run)
            self._save(state)
        logger.info("Run %s claimed environment %s", run.id, run.environment)

    def update(self, run: PipelineRun) -> None:
        """Persist *run*; a terminal run releases its environment."""
        with self._locked() as state:
            active = state.active_runs.get(run.environment)
            if active is not None and active.id == run.id:
                if run.status.is_terminal:
                    del state.active_runs[run.environment]
                    state.owners.pop(run.environment, None)
                else:
                    state.active_runs[run.environment] = run.model_copy(deep=True)
            self._upsert_history(state, run)
            self._save(state)

    def active_run(self, environment: str) -> Optional[PipelineRun]:
        return self._load().active_runs.get(environment)

    def active_runs(self) -> dict[str, PipelineRun]:
        return self._load().active_runs

    def adopt_orphans(self) -> list[PipelineRun]:
        """Take over running runs whose owning process no longer exists.

        Returns the adopted runs; their markers now belong to this process.
        """
        adopted: list[PipelineRun] = []
        with self._locked() as state:
            for env, run in state.active_runs.items():
                owner = state.owners.get(env)
                if owner is not None and not owner.is_dead:
                    continue
                state.owners[env] = RunOwner()
                adopted.append(run.model_copy(deep=True))
            if adopted:
                self._save(state)
        for run in adopted:
            logger.warning(
                "Found interrupted run %s on %s", run.id, run.environment,
            )
        return adopted

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, limit: int | None = None) -> list[PipelineRun]:
        """Recorded runs, oldest first."""
        runs = self._load().history
        return runs[-limit:] if limit else runs

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _upsert_history(self, state: _StateFile, run: PipelineRun) -> None:
        copy = run.model_copy(deep=True)
        for i, existing in enumerate(state.history):
            if existing.id == run.id:
                state.history[i] = copy
                break
        else:
            state.history.append(copy)
        overflow = len(state.history) - self.settings.history_limit
        if overflow > 0:
            del state.history[:overflow]

    def _load(self) -> _StateFile:
        data = read_json(self.path, default={})
        try:
            return _StateFile.model_validate(data or {})
        except ValueError:
            logger.error("State file %s is invalid, starting empty", self.path, exc_info=True)
            return _StateFile()

    def _save(self, state: _StateFile) -> None:
        write_json(self.path, state.model_dump(mode="json"))

    @contextmanager
    def _locked(self) -> Iterator[_StateFile]:
        """Hold the thread and file locks and yield the freshly loaded state."""
        with self._lock, self._file_lock:
            yield self._load()
