"""Deploy stage — snapshot, then replace the live release and restart the app."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

from shipyard.deployment.installer import ReleaseInstaller
from shipyard.errors import BackupError, ProcessError, StageFailure
from shipyard.models import StageName, StageResult
from shipyard.stages.base import StageContext, StageRunner, run_command

logger = logging.getLogger(__name__)


class DeployStage(StageRunner):
    """The only stage that mutates live files or the running process.

    A snapshot is always taken before anything live changes; until it
    exists ``result.mutated`` stays False so no rollback is attempted.
    """

    name = StageName.DEPLOY

    def __init__(self, installer: ReleaseInstaller | None = None) -> None:
        self.installer = installer or ReleaseInstaller()

    def execute(self, context: StageContext, result: StageResult) -> None:
        result.mutated = False
        settings = context.settings
        environment = context.environment
        live = settings.live_path(environment)
        result.log(f"Deploying to {environment} ({live})")

        if context.artifact_path is None or not context.artifact_path.is_file():
            raise StageFailure("No build artifact to deploy")
        self._check_data_integrity(context, result)

        try:
            backup = context.snapshots.create(context.run.id, environment)
        except BackupError as exc:
            raise StageFailure(str(exc)) from exc
        context.backup = backup
        result.mutated = True
        result.log(f"Backup created: {backup.id}")

        staging = settings.state_path / "staging" / context.run.id
        try:
            paths = self._stage_release(context, staging, result)
            self._write_env_file(context, staging)
            result.log("Environment configuration written")

            try:
                if context.processes.stop(environment):
                    result.log("Previous instance stopped")
            except ProcessError as exc:
                raise StageFailure(f"Service stop failed: {exc}") from exc

            self._copy_into_place(staging, live, paths, settings.deploy_paths)
            result.log(f"Release copied into place ({len(paths)} paths)")

            data_file = live / settings.data_file
            data_file.parent.mkdir(parents=True, exist_ok=True)

            try:
                handle = context.processes.start(
                    environment, extra_env={"DEPLOYMENT_ID": context.run.id},
                )
            except ProcessError as exc:
                raise StageFailure(f"Service start failed: {exc}") from exc
            result.log(f"Application started (pid {handle.pid})")
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        result.log(f"Deployment to {environment} completed")

    def _check_data_integrity(self, context: StageContext, result: StageResult) -> None:
        data_file = context.settings.live_path(context.environment) / context.settings.data_file
        if not data_file.is_file():
            return
        try:
            json.loads(data_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StageFailure(f"Live data file corrupted: {exc}") from exc
        result.log("Live data file valid")

    def _stage_release(
        self, context: StageContext, staging: Path, result: StageResult,
    ) -> list[str]:
        """Unpack the artifact and install dependencies outside the live tree."""
        if staging.exists():
            shutil.rmtree(staging)
        install = self.installer.install(context.artifact_path, staging)
        if not install.success:
            raise StageFailure("; ".join(install.warnings) or "Artifact install failed")
        for warning in install.warnings:
            result.log(f"WARNING: {warning}")

        settings = context.settings
        if settings.install_command:
            run_command(
                settings.install_command, staging, settings.command_timeout,
                result, "install dependencies",
            )
        return install.paths

    def _write_env_file(self, context: StageContext, staging: Path) -> None:
        env_config = context.env_config
        lines = [
            f"APP_ENV={env_config.app_env or context.environment}",
            f"PORT={env_config.port}",
            f"LOG_LEVEL={env_config.log_level}",
            f"DEPLOYMENT_TIME={datetime.now(timezone.utc).isoformat()}",
            f"DEPLOYMENT_ID={context.run.id}",
        ]
        (staging / ".env").write_text("\n".join(lines) + "\n", encoding="utf-8")

    def _copy_into_place(
        self, staging: Path, live: Path, paths: list[str], deploy_paths: list[str],
    ) -> None:
        live.mkdir(parents=True, exist_ok=True)
        for rel in [*deploy_paths, ".env"]:
            target = live / rel
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()

            src = staging / rel
            if rel != ".env" and rel not in paths:
                continue
            if not src.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, target)
            else:
                shutil.copy2(src, target)
