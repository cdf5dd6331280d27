"""ProcessController — start, stop and track the deployed application process."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from shipyard.deployment.config_manager import PipelineSettings
from shipyard.errors import ProcessError
from shipyard.jsonfile import read_json, write_json

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2


class ProcessHandle(BaseModel):
    """What is known about a started application process."""

    environment: str
    pid: int
    command: list[str]
    started_at: datetime
    log_path: Optional[str] = None


class ProcessController:
    """Manage one application process per environment through pid files.

    Pid files live in ``<state>/run/<environment>.pid`` so a later CLI
    invocation can stop a process started by an earlier one.

    Parameters
    ----------
    settings:
        Resolved pipeline settings.
    """

    def __init__(self, settings: PipelineSettings) -> None:
        self.settings = settings
        self._run_dir = settings.state_path / "run"
        self._log_dir = settings.state_path / "logs"
        self._children: dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def start(self, environment: str, extra_env: dict[str, str] | None = None) -> ProcessHandle:
        """Launch the application in the background and record its pid.

        Returns as soon as the process is spawned; readiness is checked
        by the health prober.
        """
        env_config = self.settings.environment(environment)
        if not env_config.start_command:
            raise ProcessError(f"No start command configured for {environment}")
        if self.is_running(environment):
            raise ProcessError(f"Application for {environment} is already running")

        live = self.settings.live_path(environment)
        log_path = self._log_dir / f"{environment}.log"

        child_env = dict(os.environ)
        child_env.update({
            "PORT": str(env_config.port),
            "HOST": env_config.host,
            "APP_ENV": env_config.app_env or environment,
            "LOG_LEVEL": env_config.log_level,
        })
        if extra_env:
            child_env.update(extra_env)

        try:
            live.mkdir(parents=True, exist_ok=True)
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with log_path.open("ab") as log_fh:
                proc = subprocess.Popen(
                    env_config.start_command,
                    cwd=live,
                    env=child_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_fh,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise ProcessError(f"Could not start {environment}: {exc}") from exc

        handle = ProcessHandle(
            environment=environment,
            pid=proc.pid,
            command=list(env_config.start_command),
            started_at=datetime.now(timezone.utc),
            log_path=str(log_path),
        )
        with self._lock:
            self._children[proc.pid] = proc
        try:
            write_json(self._pid_path(environment), handle.model_dump(mode="json"))
        except OSError as exc:
            # Without a pid file nothing could stop it later.
            self._signal(proc.pid, signal.SIGKILL)
            proc.wait()
            with self._lock:
                self._children.pop(proc.pid, None)
            raise ProcessError(f"Could not record pid of {environment}: {exc}") from exc

        logger.info("Started %s (pid %d): %s", environment, proc.pid, " ".join(handle.command))
        return handle

    def stop(self, environment: str, timeout: float | None = None) -> bool:
        """Stop the tracked process group: SIGTERM, wait, then SIGKILL.

        The application runs in its own session, so signals go to the whole
        process group and reach children of wrapper commands too.

        Returns True if a live process was stopped. A missing or stale pid
        file is not an error.
        """
        timeout = self.settings.stop_timeout if timeout is None else timeout
        handle = self.handle(environment)
        if handle is None:
            return False

        pid = handle.pid
        if self._stopped(pid):
            logger.info("Process %d for %s already stopped", pid, environment)
            self._forget(environment, pid)
            return False

        self._signal(pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._stopped(pid):
                break
            time.sleep(_POLL_INTERVAL)
        else:
            logger.warning(
                "Process %d for %s ignored SIGTERM for %.1fs, killing",
                pid, environment, timeout,
            )
            self._signal(pid, signal.SIGKILL)
            kill_deadline = time.monotonic() + timeout
            while not self._stopped(pid):
                if time.monotonic() >= kill_deadline:
                    raise ProcessError(f"Process {pid} for {environment} did not exit")
                time.sleep(_POLL_INTERVAL)

        self._forget(environment, pid)
        logger.info("Stopped %s (pid %d)", environment, pid)
        return True

    def is_running(self, environment: str) -> bool:
        """Return True if the tracked process for *environment* is alive."""
        handle = self.handle(environment)
        return handle is not None and self._alive(handle.pid)

    def handle(self, environment: str) -> ProcessHandle | None:
        """Return the recorded handle for *environment*, if any."""
        data = read_json(self._pid_path(environment))
        if not data:
            return None
        try:
            return ProcessHandle.model_validate(data)
        except ValueError:
            logger.warning("Discarding corrupt pid file for %s", environment)
            self._pid_path(environment).unlink(missing_ok=True)
            return None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _pid_path(self, environment: str) -> Path:
        return self._run_dir / f"{environment}.pid"

    def _alive(self, pid: int) -> bool:
        with self._lock:
            child = self._children.get(pid)
        if child is not None:
            # Our own child: poll() reaps it so it does not linger as a zombie.
            return child.poll() is None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _group_alive(self, pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _stopped(self, pid: int) -> bool:
        # _alive first: it reaps our own child before the group is probed.
        return not self._alive(pid) and not self._group_alive(pid)

    def _signal(self, pid: int, sig: int) -> None:
        """Signal the process group led by *pid*, or *pid* alone if it leads none."""
        try:
            os.killpg(pid, sig)
            return
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            raise ProcessError(f"Not allowed to signal process group {pid}: {exc}") from exc
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            raise ProcessError(f"Not allowed to signal process {pid}: {exc}") from exc

    def _forget(self, environment: str, pid: int) -> None:
        with self._lock:
            self._children.pop(pid, None)
        self._pid_path(environment).unlink(missing_ok=True)
