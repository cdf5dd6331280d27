"""Orchestrator — sequences stages and decides when a deployment is rolled back."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from shipyard.deployment.config_manager import PipelineSettings, target_environment
from shipyard.deployment.health import HealthProber
from shipyard.deployment.process import ProcessController
from shipyard.deployment.snapshot import SnapshotStore
from shipyard.errors import (
    ConcurrentRunError,
    HealthCheckFailure,
    NoBackupAvailable,
    ProcessError,
    RestoreError,
)
from shipyard.models import (
    Backup,
    DeploymentState,
    PipelineRun,
    RunStatus,
    StageName,
    StageResult,
    StageStatus,
    Trigger,
    TriggerKind,
)
from shipyard.notifications.dispatcher import NotificationDispatcher, NotificationKind
from shipyard.notifications.providers import FileNotifier, WebhookNotifier
from shipyard.pipeline.history import HistorySink
from shipyard.pipeline.state import StateStore
from shipyard.stages import StageContext, StageRunner, default_runners

logger = logging.getLogger(__name__)

# Errors that mean a rollback did not leave the environment in a known state
_ROLLBACK_ERRORS = (NoBackupAvailable, RestoreError, HealthCheckFailure, ProcessError)

# Deploy stage statuses at which live files may already have changed
_MUTATION_STATUSES = (StageStatus.RUNNING, StageStatus.FAILED, StageStatus.SUCCESS)

_TERMINAL_NOTIFICATIONS = {
    RunStatus.SUCCESS: NotificationKind.SUCCESS,
    RunStatus.FAILED: NotificationKind.FAILURE,
    RunStatus.ROLLED_BACK: NotificationKind.ROLLBACK,
    RunStatus.ROLLBACK_FAILED: NotificationKind.CRITICAL_FAILURE,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """Run the release pipeline for one environment at a time.

    Collaborators are injected so tests can replace any of them; by default
    everything is built from *settings*.

    Parameters
    ----------
    settings:
        Resolved pipeline settings.
    runners:
        Stage runners by stage name; missing entries use the defaults.
    snapshots, processes, prober:
        Snapshot store, process controller and health prober.
    state:
        Durable state store for busy markers and history.
    history:
        History/notification sink.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        runners: dict[StageName, StageRunner] | None = None,
        snapshots: SnapshotStore | None = None,
        processes: ProcessController | None = None,
        prober: HealthProber | None = None,
        state: StateStore | None = None,
        history: HistorySink | None = None,
    ) -> None:
        self.settings = settings
        self.runners = default_runners()
        if runners:
            self.runners.update(runners)
        self.snapshots = snapshots or SnapshotStore(settings)
        self.processes = processes or ProcessController(settings)
        self.prober = prober or HealthProber(settings)
        self.state = state or StateStore(settings)
        self.history = history or HistorySink(self.state, build_dispatcher(settings))

    # ------------------------------------------------------------------
    # Pipeline runs
    # ------------------------------------------------------------------

    def run(self, trigger: Trigger, environment: str | None = None) -> PipelineRun:
        """Execute the stages *trigger* calls for against *environment*.

        Returns the terminal run. Raises ConcurrentRunError, without
        touching the in-flight run, if the environment is busy. Any other
        error escaping the pipeline is re-raised once the run has been
        concluded, rolled back if needed, recorded and notified.
        """
        environment = environment or self._environment_for(trigger)
        self.settings.environment(environment)

        run = PipelineRun(trigger=trigger, environment=environment, status=RunStatus.RUNNING)
        self._claim(run)

        logger.info(
            "Pipeline %s started for %s (%s)", run.id, environment, trigger.kind.value,
        )
        try:
            self._execute_stages(run)
            self._conclude(run)
        except Exception as exc:
            logger.exception("Pipeline %s aborted", run.id)
            run.error = run.error or f"{type(exc).__name__}: {exc}"
            if not run.status.is_terminal:
                self._abandon(run, "Aborted")
            run.ended_at = _utc_now()
            self.history.record(run)
            self._notify_terminal(run)
            raise

        self.history.record(run)
        self._notify_terminal(run)
        logger.info("Pipeline %s finished: %s", run.id, run.status.value)
        return run

    def _execute_stages(self, run: PipelineRun) -> None:
        context = StageContext(
            run=run,
            settings=self.settings,
            snapshots=self.snapshots,
            processes=self.processes,
            prober=self.prober,
        )
        for name in run.trigger.stages:
            placeholder = StageResult(name=name, status=StageStatus.RUNNING)
            run.stages.append(placeholder)
            self.history.record(run)

            result = self._run_stage(name, context)
            run.stages[-1] = result
            if context.backup is not None and run.backup_id is None:
                run.backup_id = context.backup.id
            self.history.record(run)

            if result.status != StageStatus.SUCCESS:
                break

    def _run_stage(self, name: StageName, context: StageContext) -> StageResult:
        runner = self.runners[name]
        try:
            result = runner.run(context)
        except Exception as exc:
            logger.exception("Runner for %s raised", name.value)
            result = StageResult(name=name)
            result.finish(StageStatus.FAILED, f"{type(exc).__name__}: {exc}")

        if result.status not in (StageStatus.SUCCESS, StageStatus.FAILED):
            result.finish(StageStatus.FAILED, result.error or "Stage did not complete")
        return result

    def _conclude(self, run: PipelineRun) -> None:
        failed = run.failed_stage
        if failed is None:
            run.status = RunStatus.SUCCESS
            if run.stage(StageName.DEPLOY) is not None:
                self._prune(run.environment)
        else:
            run.error = f"{failed.name.value}: {failed.error}"
            if self.should_rollback(run):
                self._rollback_run(run)
            else:
                run.status = RunStatus.FAILED
        run.ended_at = _utc_now()

    def should_rollback(self, run: PipelineRun) -> bool:
        """True if live state may have changed and rollback is enabled."""
        if not self.settings.rollback_enabled:
            return False
        deploy = run.stage(StageName.DEPLOY)
        if deploy is None or deploy.mutated is False:
            return False
        return deploy.status in _MUTATION_STATUSES

    def _abandon(self, run: PipelineRun, reason: str) -> None:
        """Fail unfinished stages of *run*, then roll back or mark it failed."""
        for stage in run.stages:
            if stage.status in (StageStatus.RUNNING, StageStatus.PENDING):
                stage.finish(StageStatus.FAILED, reason)
        if self.should_rollback(run):
            self._rollback_run(run)
        else:
            run.status = RunStatus.FAILED

    def _rollback_run(self, run: PipelineRun) -> None:
        logger.warning("Rolling back %s after failed run %s", run.environment, run.id)
        try:
            backup = self._restore(run.environment)
        except Exception as exc:
            # Once restoring has begun live files may be half-restored.
            logger.critical(
                "Rollback of %s failed, manual intervention required: %s",
                run.environment, exc,
                exc_info=not isinstance(exc, _ROLLBACK_ERRORS),
            )
            run.status = RunStatus.ROLLBACK_FAILED
            run.rollback_error = f"{type(exc).__name__}: {exc}"
            return
        run.status = RunStatus.ROLLED_BACK
        run.restored_backup_id = backup.id

    # ------------------------------------------------------------------
    # Rollback, recovery and housekeeping
    # ------------------------------------------------------------------

    def rollback(self, environment: str | None = None) -> Backup:
        """Manually restore the latest backup of *environment* and restart it.

        Any failure after the restore has begun, typically
        NoBackupAvailable, RestoreError, HealthCheckFailure or ProcessError,
        is recorded as ``rollback_failed`` and re-raised after a critical
        notification.
        """
        environment = environment or self.settings.default_environment
        self.settings.environment(environment)

        run = PipelineRun(
            trigger=Trigger.manual(), environment=environment, status=RunStatus.RUNNING,
        )
        self._claim(run)
        try:
            backup = self._restore(environment)
        except Exception as exc:
            if not isinstance(exc, _ROLLBACK_ERRORS):
                logger.exception("Manual rollback of %s aborted", environment)
            run.status = RunStatus.ROLLBACK_FAILED
            run.rollback_error = f"{type(exc).__name__}: {exc}"
            run.error = "Manual rollback failed"
            run.ended_at = _utc_now()
            self.history.record(run)
            self._notify_terminal(run)
            raise

        run.status = RunStatus.ROLLED_BACK
        run.restored_backup_id = backup.id
        run.ended_at = _utc_now()
        self.history.record(run)
        self._notify_terminal(run)
        return backup

    def _restore(self, environment: str) -> Backup:
        """Stop, restore the newest backup, verify it, restart and health-check."""
        backup = self.snapshots.latest(environment)
        if backup is None:
            raise NoBackupAvailable(environment)

        self.processes.stop(environment)
        backup = self.snapshots.restore_latest(environment)
        if not self.snapshots.verify(backup):
            raise RestoreError(f"Live files do not match backup {backup.id} after restore")

        if not self._had_release(backup):
            logger.info(
                "Backup %s predates any release of %s; leaving it stopped",
                backup.id, environment,
            )
            return backup

        self.processes.start(environment)
        self.prober.verify(environment)
        logger.info("Rollback of %s to %s verified", environment, backup.id)
        return backup

    def _had_release(self, backup: Backup) -> bool:
        return any(path in backup.manifest for path in self.settings.deploy_paths)

    def recover(self) -> list[PipelineRun]:
        """Finish runs left ``running`` by a process that no longer exists.

        Each is marked failed; if its deploy stage may have mutated live
        files, rollback is evaluated exactly as for an in-process failure.
        An interrupted manual rollback left the environment in an unknown
        state and is marked ``rollback_failed``.
        """
        recovered: list[PipelineRun] = []
        for run in self.state.adopt_orphans():
            if run.trigger.kind == TriggerKind.MANUAL:
                run.status = RunStatus.ROLLBACK_FAILED
                run.error = run.error or "Manual rollback failed"
                run.rollback_error = "Interrupted: process exited mid-restore"
                logger.critical(
                    "Manual rollback %s of %s was interrupted, manual intervention required",
                    run.id, run.environment,
                )
            else:
                run.error = run.error or "Interrupted: pipeline process exited mid-run"
                self._abandon(run, "Interrupted")
            run.ended_at = _utc_now()
            self.history.record(run)
            self._notify_terminal(run)
            recovered.append(run)
        return recovered

    def prune(self, environment: str, keep: int | None = None) -> list[Backup]:
        """Apply the backup retention policy to *environment*."""
        self.settings.environment(environment)
        return self.snapshots.prune(environment, keep)

    def status(self) -> DeploymentState:
        """Current active runs, backup catalog and recent history."""
        return DeploymentState(
            active_runs=self.state.active_runs(),
            backups=self.snapshots.list_backups(),
            history=self.state.history(),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _claim(self, run: PipelineRun) -> None:
        try:
            self.state.claim(run)
        except ConcurrentRunError as exc:
            logger.error("Rejected run for %s: %s", run.environment, exc)
            self.history.notify(NotificationKind.REJECTED, {
                "pipeline_id": run.id,
                "environment": run.environment,
                "trigger": run.trigger.kind.value,
                "active_run_id": exc.active_run_id,
                "error": str(exc),
            })
            raise

    def _environment_for(self, trigger: Trigger) -> str:
        if trigger.branch:
            return target_environment(trigger.branch)
        return self.settings.default_environment

    def _prune(self, environment: str) -> None:
        try:
            self.snapshots.prune(environment)
        except OSError as exc:
            logger.warning("Backup pruning for %s failed: %s", environment, exc)

    def _notify_terminal(self, run: PipelineRun) -> None:
        kind = _TERMINAL_NOTIFICATIONS.get(run.status)
        if kind is None:
            return
        data: dict[str, Any] = {
            "pipeline_id": run.id,
            "environment": run.environment,
            "trigger": run.trigger.kind.value,
            "status": run.status.value,
        }
        failed = run.failed_stage
        if failed is not None:
            data["stage"] = failed.name.value
        if run.error:
            data["error"] = run.error
        if run.restored_backup_id:
            data["backup_id"] = run.restored_backup_id
        if run.rollback_error:
            data["rollback_error"] = run.rollback_error
            data["requires_attention"] = True
        self.history.notify(kind, data)


def build_dispatcher(settings: PipelineSettings) -> NotificationDispatcher:
    """Console always; file and webhook channels when configured."""
    dispatcher = NotificationDispatcher()
    if settings.notify_file:
        dispatcher.add_provider(FileNotifier(settings.state_path / "notifications.json"))
    if settings.webhook_url:
        dispatcher.add_provider(WebhookNotifier(settings.webhook_url))
    return dispatcher
