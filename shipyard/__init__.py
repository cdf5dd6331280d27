"""Shipyard — release pipeline with snapshot-based rollback."""

__version__ = "1.0.0"

from shipyard.deployment.config_manager import ConfigManager, EnvironmentConfig, PipelineSettings
from shipyard.deployment.health import HealthProber
from shipyard.deployment.process import ProcessController
from shipyard.deployment.snapshot import SnapshotStore
from shipyard.errors import (
    BackupError,
    ConcurrentRunError,
    ConfigError,
    HealthCheckFailure,
    NoBackupAvailable,
    ProcessError,
    RestoreError,
    ShipyardError,
    StageFailure,
)
from shipyard.models import (
    Backup,
    DeploymentState,
    HealthCheckResult,
    PipelineRun,
    RunStatus,
    StageName,
    StageResult,
    StageStatus,
    Trigger,
    TriggerKind,
)
from shipyard.notifications import NotificationDispatcher, NotificationKind
from shipyard.pipeline import HistorySink, Orchestrator, StateStore
from shipyard.stages import StageContext, StageRunner

__all__ = [
    "__version__",
    # Orchestration
    "HistorySink",
    "Orchestrator",
    "StageContext",
    "StageRunner",
    "StateStore",
    # Deployment
    "ConfigManager",
    "EnvironmentConfig",
    "HealthProber",
    "PipelineSettings",
    "ProcessController",
    "SnapshotStore",
    # Notifications
    "NotificationDispatcher",
    "NotificationKind",
    # Models
    "Backup",
    "DeploymentState",
    "HealthCheckResult",
    "PipelineRun",
    "RunStatus",
    "StageName",
    "StageResult",
    "StageStatus",
    "Trigger",
    "TriggerKind",
    # Errors
    "BackupError",
    "ConcurrentRunError",
    "ConfigError",
    "HealthCheckFailure",
    "NoBackupAvailable",
    "ProcessError",
    "RestoreError",
    "ShipyardError",
    "StageFailure",
]
