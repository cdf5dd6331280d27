"""Exception taxonomy for the release pipeline."""

from __future__ import annotations

from typing import Any


class ShipyardError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(ShipyardError):
    """Raised for unknown environments or invalid configuration."""


class ConcurrentRunError(ShipyardError):
    """Raised when a run is requested for an environment that is already busy."""

    def __init__(self, environment: str, active_run_id: str) -> None:
        super().__init__(
            f"Environment '{environment}' is busy with run '{active_run_id}'."
        )
        self.environment = environment
        self.active_run_id = active_run_id


class StageFailure(ShipyardError):
    """Expected failure inside a stage runner; recorded, never propagated."""


class BackupError(ShipyardError):
    """Raised when a snapshot could not be created."""


class NoBackupAvailable(ShipyardError):
    """Raised when a rollback is requested but no backup exists."""

    def __init__(self, environment: str) -> None:
        super().__init__(f"No backup available for environment '{environment}'.")
        self.environment = environment


class RestoreError(ShipyardError):
    """Raised when restoring a backup failed part-way.

    Live files are in an undefined state afterwards.
    """


class HealthCheckFailure(ShipyardError):
    """Raised when one or more health checks stayed unhealthy."""

    def __init__(self, failures: list[Any]) -> None:
        names = ", ".join(getattr(f, "check_name", str(f)) for f in failures)
        super().__init__(f"Health checks failed: {names}")
        self.failures = failures


class ProcessError(ShipyardError):
    """Raised when the application process could not be started or stopped."""
