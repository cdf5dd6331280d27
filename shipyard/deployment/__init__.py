"""Deployment primitives.

Provides configuration management, release packaging and installation,
snapshot backups, process control and health probing.
"""

from shipyard.deployment.config_manager import (
    ConfigManager,
    EnvironmentConfig,
    PipelineSettings,
    target_environment,
)
from shipyard.deployment.health import HealthProber
from shipyard.deployment.installer import InstallResult, ReleaseInstaller
from shipyard.deployment.packager import ReleasePackager
from shipyard.deployment.process import ProcessController, ProcessHandle
from shipyard.deployment.snapshot import CopySnapshotBackend, SnapshotBackend, SnapshotStore

__all__ = [
    "ConfigManager",
    "CopySnapshotBackend",
    "EnvironmentConfig",
    "HealthProber",
    "InstallResult",
    "PipelineSettings",
    "ProcessController",
    "ProcessHandle",
    "ReleaseInstaller",
    "ReleasePackager",
    "SnapshotBackend",
    "SnapshotStore",
    "target_environment",
]
