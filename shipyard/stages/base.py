"""StageRunner interface and the context passed between stages."""

from __future__ import annotations

import abc
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from shipyard.deployment.config_manager import EnvironmentConfig, PipelineSettings
from shipyard.deployment.health import HealthProber
from shipyard.deployment.process import ProcessController
from shipyard.deployment.snapshot import SnapshotStore
from shipyard.errors import StageFailure
from shipyard.models import Backup, PipelineRun, StageName, StageResult, StageStatus

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 20


@dataclass
class StageContext:
    """Everything a stage may read, plus what earlier stages produced."""

    run: PipelineRun
    settings: PipelineSettings
    snapshots: SnapshotStore
    processes: ProcessController
    prober: HealthProber
    artifact_path: Optional[Path] = None
    backup: Optional[Backup] = None

    @property
    def environment(self) -> str:
        return self.run.environment

    @property
    def env_config(self) -> EnvironmentConfig:
        return self.settings.environment(self.run.environment)


class StageRunner(abc.ABC):
    """One pipeline stage.

    :meth:`run` never raises: anything raised by :meth:`execute` becomes a
    failed :class:`StageResult` with a readable ``error``.
    """

    name: StageName

    def run(self, context: StageContext) -> StageResult:
        result = StageResult(name=self.name, status=StageStatus.RUNNING)
        logger.info("Stage %s started for run %s", self.name.value, context.run.id)
        try:
            self.execute(context, result)
        except StageFailure as exc:
            result.log(f"FAILED: {exc}")
            result.finish(StageStatus.FAILED, str(exc))
        except Exception as exc:
            logger.exception("Stage %s crashed", self.name.value)
            message = f"{type(exc).__name__}: {exc}"
            result.log(f"FAILED: {message}")
            result.finish(StageStatus.FAILED, message)
        else:
            result.finish(StageStatus.SUCCESS)

        if result.status == StageStatus.FAILED:
            logger.error("Stage %s failed: %s", self.name.value, result.error)
        else:
            logger.info("Stage %s completed", self.name.value)
        return result

    @abc.abstractmethod
    def execute(self, context: StageContext, result: StageResult) -> None:
        """Do the stage's work, logging into *result*; raise StageFailure to fail."""


def run_command(
    command: list[str],
    cwd: Path,
    timeout: float,
    result: StageResult,
    label: str,
) -> None:
    """Run an external collaborator, keeping the tail of its output in the stage log."""
    result.log(f"{label}: {' '.join(command)}")
    try:
        proc = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise StageFailure(f"{label} timed out after {timeout:.0f}s") from None
    except OSError as exc:
        raise StageFailure(f"{label} could not run: {exc}") from exc

    output = (proc.stdout + proc.stderr).strip().splitlines()
    for line in output[-_OUTPUT_TAIL:]:
        result.log(f"  {line}")
    if proc.returncode != 0:
        raise StageFailure(f"{label} failed with exit code {proc.returncode}")
    result.log(f"{label} passed")
