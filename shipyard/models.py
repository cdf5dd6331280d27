"""Pydantic models for pipeline runs, stages, backups and deployment state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{prefix}_{stamp}_{uuid.uuid4().hex[:8]}"


class TriggerKind(str, Enum):
    """What started a pipeline run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


class StageStatus(str, Enum):
    """Lifecycle of a single stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StageName(str, Enum):
    """The fixed pipeline stages, in execution order."""

    TEST = "test"
    BUILD = "build"
    SECURITY = "security"
    DEPLOY = "deploy"
    VERIFY = "verify"


FULL_PIPELINE: tuple[StageName, ...] = (
    StageName.TEST,
    StageName.BUILD,
    StageName.SECURITY,
    StageName.DEPLOY,
    StageName.VERIFY,
)

VALIDATION_PIPELINE: tuple[StageName, ...] = FULL_PIPELINE[:3]


class Trigger(BaseModel):
    """The event that requested a run."""

    kind: TriggerKind = TriggerKind.PUSH
    branch: str = ""
    commit: str = ""
    pr_number: Optional[int] = None
    source_branch: str = ""
    target_branch: str = ""
    schedule: str = ""
    """Schedule name for scheduled runs: 'nightly', 'weekly', 'monthly'."""

    @classmethod
    def push(cls, branch: str, commit: str = "") -> Trigger:
        return cls(kind=TriggerKind.PUSH, branch=branch, commit=commit)

    @classmethod
    def pull_request(
        cls, pr_number: int, source_branch: str, target_branch: str,
    ) -> Trigger:
        return cls(
            kind=TriggerKind.PULL_REQUEST,
            branch=source_branch,
            pr_number=pr_number,
            source_branch=source_branch,
            target_branch=target_branch,
        )

    @classmethod
    def scheduled(cls, schedule: str, branch: str = "") -> Trigger:
        return cls(kind=TriggerKind.SCHEDULE, branch=branch, schedule=schedule)

    @classmethod
    def manual(cls) -> Trigger:
        return cls(kind=TriggerKind.MANUAL)

    @property
    def stages(self) -> tuple[StageName, ...]:
        """Stages this trigger executes; only pushes deploy."""
        if self.kind == TriggerKind.PUSH:
            return FULL_PIPELINE
        if self.kind == TriggerKind.MANUAL:
            return ()
        return VALIDATION_PIPELINE


class StageResult(BaseModel):
    """Outcome of one stage of a run."""

    name: StageName
    status: StageStatus = StageStatus.PENDING
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None
    log_lines: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    mutated: Optional[bool] = None
    """Whether live files may have changed. Only the deploy stage sets this."""

    def log(self, line: str) -> None:
        self.log_lines.append(line)

    def finish(self, status: StageStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.ended_at = _utc_now()


class PipelineRun(BaseModel):
    """A single execution of the pipeline against one environment."""

    id: str = Field(default_factory=lambda: _new_id("pipeline"))
    trigger: Trigger = Field(default_factory=Trigger)
    environment: str
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None
    status: RunStatus = RunStatus.PENDING
    stages: list[StageResult] = Field(default_factory=list)
    error: Optional[str] = None
    backup_id: Optional[str] = None
    restored_backup_id: Optional[str] = None
    rollback_error: Optional[str] = None

    def stage(self, name: StageName) -> StageResult | None:
        for result in self.stages:
            if result.name == name:
                return result
        return None

    @property
    def failed_stage(self) -> StageResult | None:
        for result in self.stages:
            if result.status == StageStatus.FAILED:
                return result
        return None

    @property
    def requires_attention(self) -> bool:
        return self.status == RunStatus.ROLLBACK_FAILED

    def summary(self) -> dict[str, Any]:
        """Compact machine-readable summary used by the CLI."""
        failed = self.failed_stage
        return {
            "id": self.id,
            "environment": self.environment,
            "trigger": self.trigger.kind.value,
            "status": self.status.value,
            "stages": {s.name.value: s.status.value for s in self.stages},
            "failed_stage": failed.name.value if failed else None,
            "error": self.error,
            "backup_id": self.backup_id,
            "restored_backup_id": self.restored_backup_id,
            "rollback_error": self.rollback_error,
            "requires_attention": self.requires_attention,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


class Backup(BaseModel):
    """Immutable record of a snapshot taken before deployment."""

    id: str = Field(default_factory=lambda: _new_id("backup"))
    pipeline_run_id: str
    environment: str
    created_at: datetime = Field(default_factory=_utc_now)
    manifest: list[str] = Field(default_factory=list)
    """Relative paths captured in the snapshot."""

    absent: list[str] = Field(default_factory=list)
    """Tracked paths that did not exist when the snapshot was taken."""

    applied_version: str = ""
    digest: str = ""


class HealthCheckResult(BaseModel):
    """Result of a single health check; never persisted on its own."""

    check_name: str
    healthy: bool = True
    detail: Optional[str] = None
    attempts: int = 1


class DeploymentState(BaseModel):
    """Process-wide view of active runs, the backup catalog and run history."""

    active_runs: dict[str, PipelineRun] = Field(default_factory=dict)
    backups: list[Backup] = Field(default_factory=list)
    history: list[PipelineRun] = Field(default_factory=list)

    def summary(self, history_limit: int = 10) -> dict[str, Any]:
        return {
            "active_runs": {
                env: run.summary() for env, run in self.active_runs.items()
            },
            "backups": [
                {
                    "id": b.id,
                    "environment": b.environment,
                    "created_at": b.created_at.isoformat(),
                    "pipeline_run_id": b.pipeline_run_id,
                    "applied_version": b.applied_version,
                }
                for b in self.backups
            ],
            "history": [run.summary() for run in self.history[-history_limit:]],
        }
