"""Advisory file lock guarding read-modify-write cycles on JSON state files."""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from shipyard.errors import ShipyardError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 60.0  # seconds before a held lock is considered stale
DEFAULT_WAIT = 10.0


class LockTimeoutError(ShipyardError):
    """Raised when a state lock could not be acquired in time."""


@dataclass
class LockInfo:
    """Who holds the lock and since when."""

    pid: int
    host: str
    timestamp: float
    timeout: float = DEFAULT_LOCK_TIMEOUT

    @property
    def is_expired(self) -> bool:
        return (time.time() - self.timestamp) > self.timeout

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "host": self.host,
            "timestamp": self.timestamp,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LockInfo:
        return cls(
            pid=int(data["pid"]),
            host=data.get("host", ""),
            timestamp=data.get("timestamp", 0),
            timeout=data.get("timeout", DEFAULT_LOCK_TIMEOUT),
        )


def pid_alive(pid: int) -> bool:
    """Return True if a process with *pid* exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class StateLock:
    """Exclusive lock file created with ``O_EXCL``.

    Locks held by a dead process on this host, or older than *timeout*,
    are treated as stale and broken.

    Parameters
    ----------
    path:
        Lock file path.
    timeout:
        Age after which a held lock is considered stale.
    wait:
        How long :meth:`acquire` waits before giving up.
    """

    def __init__(
        self,
        path: str | Path,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        wait: float = DEFAULT_WAIT,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.wait = wait

    def acquire(self) -> LockInfo:
        """Create the lock file, waiting for a live holder to release it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.wait
        while True:
            lock = LockInfo(
                pid=os.getpid(),
                host=socket.gethostname(),
                timestamp=time.time(),
                timeout=self.timeout,
            )
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(f"Timed out waiting for {self.path}") from None
                time.sleep(0.05)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(lock.to_dict(), fh)
            return lock

    def release(self) -> None:
        self.path.unlink(missing_ok=True)

    def __enter__(self) -> LockInfo:
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def _break_if_stale(self) -> bool:
        try:
            holder = LockInfo.from_dict(json.loads(self.path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, OSError, KeyError, ValueError):
            # Being written right now, or corrupted; age decides.
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            if age <= self.timeout:
                return False
            logger.warning("Removing unreadable stale lock %s", self.path)
            self.path.unlink(missing_ok=True)
            return True

        dead = holder.host == socket.gethostname() and not pid_alive(holder.pid)
        if dead or holder.is_expired:
            logger.warning(
                "Breaking stale state lock held by pid %d on %s", holder.pid, holder.host,
            )
            self.path.unlink(missing_ok=True)
            return True
        return False
