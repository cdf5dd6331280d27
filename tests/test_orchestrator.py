"""Tests for the orchestrator: stage sequencing, rollback and recovery."""

from __future__ import annotations

import json
import subprocess
import sys
from typing import Callable, Optional

import pytest

from conftest import FakeProber, FakeProcesses, make_settings, write_live, write_release
from shipyard.deployment.snapshot import SnapshotStore
from shipyard.errors import ConcurrentRunError, ConfigError, NoBackupAvailable, StageFailure
from shipyard.models import (
    PipelineRun,
    RunStatus,
    StageName,
    StageResult,
    StageStatus,
    Trigger,
    TriggerKind,
)
from shipyard.notifications import NotificationDispatcher
from shipyard.pipeline import HistorySink, Orchestrator, StateStore
from shipyard.stages import StageContext, StageRunner


# ── Helpers ──────────────────────────────────────────────────────────────────

class FakeRunner(StageRunner):
    """Deterministic stage: optional side effect, then pass or fail."""

    def __init__(
        self,
        name: StageName,
        fail: bool = False,
        action: Optional[Callable[[StageContext, StageResult], None]] = None,
    ) -> None:
        self.name = name
        self.fail = fail
        self.action = action
        self.calls = 0

    def execute(self, context, result):
        self.calls += 1
        if self.action is not None:
            self.action(context, result)
        if self.fail:
            raise StageFailure(f"{self.name.value} failed")


class SpySnapshots(SnapshotStore):
    """SnapshotStore that counts create/restore calls."""

    def __init__(self, settings):
        super().__init__(settings)
        self.created = 0
        self.restored = 0

    def create(self, pipeline_run_id, environment):
        self.created += 1
        return super().create(pipeline_run_id, environment)

    def restore_latest(self, environment):
        self.restored += 1
        return super().restore_latest(environment)


class DiskFullProcesses(FakeProcesses):
    """FakeProcesses whose start fails with a plain OSError."""

    def start(self, environment, extra_env=None):
        self.calls.append(("start", environment))
        raise OSError(28, "No space left on device")


def _fake_runners(**overrides: StageRunner) -> dict[StageName, StageRunner]:
    runners: dict[StageName, StageRunner] = {name: FakeRunner(name) for name in StageName}
    for key, runner in overrides.items():
        runners[StageName(key)] = runner
    return runners


def _build(settings, *, runners=None, processes=None, prober=None, snapshots=None):
    dispatcher = NotificationDispatcher()
    state = StateStore(settings)
    orchestrator = Orchestrator(
        settings,
        runners=runners,
        snapshots=snapshots or SpySnapshots(settings),
        processes=processes or FakeProcesses(),
        prober=prober or FakeProber(),
        state=state,
        history=HistorySink(state, dispatcher),
    )
    return orchestrator, dispatcher


def _kinds(dispatcher: NotificationDispatcher) -> list[str]:
    return [n["type"] for n in dispatcher.console.log]


def _snapshot_then_overwrite(context: StageContext, result: StageResult) -> None:
    """Deploy side effect: back up, then overwrite the live release."""
    context.backup = context.snapshots.create(context.run.id, context.environment)
    result.mutated = True
    live = context.settings.live_path(context.environment)
    (live / "src" / "server.py").write_text("VERSION = 'broken'\n")
    (live / "src" / "new_module.py").write_text("x = 1\n")


def _overwrite_without_backup(context: StageContext, result: StageResult) -> None:
    live = context.settings.live_path(context.environment)
    live.mkdir(parents=True, exist_ok=True)
    (live / "index.html").write_text("half-written")


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


# ── Scenario A: healthy push ─────────────────────────────────────────────────

class TestSuccessfulRun:

    def test_push_to_main_deploys_production(self, settings):
        write_release(settings.root, version="2")
        live = write_live(settings, "production", version="1")
        processes = FakeProcesses()
        orchestrator, dispatcher = _build(settings, processes=processes, prober=FakeProber(True))

        run = orchestrator.run(Trigger.push("main", "abc123"))

        assert run.environment == "production"
        assert run.status == RunStatus.SUCCESS, run.error
        assert [s.name for s in run.stages] == list(StageName)
        assert all(s.status == StageStatus.SUCCESS for s in run.stages)
        assert orchestrator.snapshots.created == 1
        assert orchestrator.snapshots.restored == 0
        assert len(orchestrator.snapshots.list_backups("production")) == 1
        assert run.backup_id == orchestrator.snapshots.latest("production").id
        assert (live / "src" / "server.py").read_text() == "VERSION = '2'\n"
        assert _kinds(dispatcher) == ["success"]
        assert run.ended_at is not None

    def test_terminal_run_is_recorded_and_released(self, settings):
        orchestrator, _ = _build(settings, runners=_fake_runners())

        run = orchestrator.run(Trigger.push("develop"))

        assert run.environment == "staging"
        assert orchestrator.state.active_run("staging") is None
        history = orchestrator.state.history()
        assert history[-1].id == run.id
        assert history[-1].status == RunStatus.SUCCESS
        assert len(history[-1].stages) == 5

    def test_explicit_environment_overrides_branch(self, settings):
        orchestrator, _ = _build(settings, runners=_fake_runners())
        run = orchestrator.run(Trigger.push("main"), "staging")
        assert run.environment == "staging"

    def test_unknown_environment_rejected(self, settings):
        orchestrator, dispatcher = _build(settings, runners=_fake_runners())
        with pytest.raises(ConfigError):
            orchestrator.run(Trigger.push("main"), "qa")
        assert orchestrator.state.history() == []
        assert _kinds(dispatcher) == []

    def test_successful_deploys_prune_old_backups(self, settings):
        write_live(settings, "staging")
        runners = _fake_runners(
            deploy=FakeRunner(
                StageName.DEPLOY,
                action=lambda ctx, res: setattr(
                    ctx, "backup", ctx.snapshots.create(ctx.run.id, ctx.environment),
                ),
            ),
        )
        orchestrator, _ = _build(settings, runners=runners)

        for _ in range(settings.max_backups + 2):
            assert orchestrator.run(Trigger.push("develop")).status == RunStatus.SUCCESS

        assert len(orchestrator.snapshots.list_backups("staging")) == settings.max_backups


# ── Scenario B: failure after mutation ───────────────────────────────────────

class TestRollback:

    def test_verify_failure_rolls_back_real_deploy(self, settings):
        write_release(settings.root, version="2")
        live = write_live(settings, "staging", version="1")
        prober = FakeProber(False, True)
        processes = FakeProcesses()
        orchestrator, dispatcher = _build(settings, processes=processes, prober=prober)

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.ROLLED_BACK
        assert run.failed_stage.name == StageName.VERIFY
        assert run.stage(StageName.DEPLOY).status == StageStatus.SUCCESS
        assert (live / "src" / "server.py").read_text() == "VERSION = '1'\n"
        assert not (live / ".env").exists()
        assert run.restored_backup_id == run.backup_id
        assert orchestrator.snapshots.verify(orchestrator.snapshots.latest("staging"))
        assert _kinds(dispatcher) == ["rollback"]
        assert processes.calls[-2:] == [("stop", "staging"), ("start", "staging")]

    def test_deploy_failure_after_overwrite_restores_live_files(self, settings):
        live = write_live(settings, "staging", version="1")
        before = {p.relative_to(live).as_posix(): p.read_bytes()
                  for p in live.rglob("*") if p.is_file()}
        runners = _fake_runners(
            deploy=FakeRunner(StageName.DEPLOY, fail=True, action=_snapshot_then_overwrite),
        )
        orchestrator, dispatcher = _build(settings, runners=runners)

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.ROLLED_BACK
        after = {p.relative_to(live).as_posix(): p.read_bytes()
                 for p in live.rglob("*") if p.is_file()}
        assert after == before
        assert run.stage(StageName.VERIFY) is None
        assert _kinds(dispatcher) == ["rollback"]
        assert orchestrator.snapshots.restored == 1

    def test_rollback_health_failure_is_critical(self, settings):
        write_live(settings, "staging")
        runners = _fake_runners(
            deploy=FakeRunner(StageName.DEPLOY, action=_snapshot_then_overwrite),
            verify=FakeRunner(StageName.VERIFY, fail=True),
        )
        orchestrator, dispatcher = _build(settings, runners=runners, prober=FakeProber(False))

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.ROLLBACK_FAILED
        assert run.requires_attention
        assert "HealthCheckFailure" in run.rollback_error
        assert _kinds(dispatcher) == ["critical_failure"]

    def test_rollback_disabled(self, tmp_path):
        settings = make_settings(tmp_path, rollback_enabled=False)
        write_live(settings, "staging")
        runners = _fake_runners(
            deploy=FakeRunner(StageName.DEPLOY, fail=True, action=_snapshot_then_overwrite),
        )
        orchestrator, dispatcher = _build(settings, runners=runners)

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.FAILED
        assert orchestrator.snapshots.restored == 0
        assert _kinds(dispatcher) == ["failure"]


# ── Scenario C: nothing to roll back to ──────────────────────────────────────

class TestRollbackFailure:

    def test_no_backup_after_mutation_is_critical(self, settings):
        runners = _fake_runners(
            deploy=FakeRunner(StageName.DEPLOY, fail=True, action=_overwrite_without_backup),
        )
        orchestrator, dispatcher = _build(settings, runners=runners)

        run = orchestrator.run(Trigger.push("main"))

        assert run.status == RunStatus.ROLLBACK_FAILED
        assert "NoBackupAvailable" in run.rollback_error
        assert _kinds(dispatcher) == ["critical_failure"]
        payload = dispatcher.console.log[0]["data"]
        assert payload["requires_attention"] is True
        assert payload["stage"] == "deploy"
        assert orchestrator.state.active_run("production") is None

    def test_unexpected_error_during_rollback_is_critical(self, settings):
        live = write_live(settings, "staging", version="1")
        runners = _fake_runners(
            deploy=FakeRunner(StageName.DEPLOY, fail=True, action=_snapshot_then_overwrite),
        )
        orchestrator, dispatcher = _build(
            settings, runners=runners, processes=DiskFullProcesses(),
        )

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.ROLLBACK_FAILED
        assert run.rollback_error.startswith("OSError")
        assert (live / "src" / "server.py").read_text() == "VERSION = '1'\n"
        assert _kinds(dispatcher) == ["critical_failure"]
        assert orchestrator.state.history()[-1].status == RunStatus.ROLLBACK_FAILED
        assert orchestrator.state.active_run("staging") is None

    def test_aborted_pipeline_is_concluded_before_raising(self, settings, monkeypatch):
        live = write_live(settings, "staging", version="1")
        runners = _fake_runners(
            deploy=FakeRunner(StageName.DEPLOY, fail=True, action=_snapshot_then_overwrite),
        )
        orchestrator, dispatcher = _build(settings, runners=runners)

        def explode(run):
            raise RuntimeError("state store vanished")

        monkeypatch.setattr(orchestrator, "_conclude", explode)

        with pytest.raises(RuntimeError):
            orchestrator.run(Trigger.push("develop"))

        record = orchestrator.state.history()[-1]
        assert record.status == RunStatus.ROLLED_BACK
        assert record.error == "RuntimeError: state store vanished"
        assert (live / "src" / "server.py").read_text() == "VERSION = '1'\n"
        assert _kinds(dispatcher) == ["rollback"]
        assert orchestrator.state.active_run("staging") is None

    def test_aborted_pipeline_before_deploy_is_failed(self, settings, monkeypatch):
        orchestrator, dispatcher = _build(settings, runners=_fake_runners())

        def explode(name, context):
            raise RuntimeError("disk gone")

        monkeypatch.setattr(orchestrator, "_run_stage", explode)

        with pytest.raises(RuntimeError):
            orchestrator.run(Trigger.push("develop"))

        record = orchestrator.state.history()[-1]
        assert record.status == RunStatus.FAILED
        assert record.stage(StageName.TEST).status == StageStatus.FAILED
        assert orchestrator.snapshots.restored == 0
        assert _kinds(dispatcher) == ["failure"]


# ── Scenario D and other non-deploying runs ──────────────────────────────────

class TestNoMutation:

    def test_pull_request_runs_validation_stages_only(self, settings):
        write_live(settings, "development")
        runners = _fake_runners()
        processes = FakeProcesses()
        orchestrator, dispatcher = _build(settings, runners=runners, processes=processes)

        run = orchestrator.run(Trigger.pull_request(7, "feature/login", "main"))

        assert [s.name for s in run.stages] == [
            StageName.TEST, StageName.BUILD, StageName.SECURITY,
        ]
        assert run.stage(StageName.DEPLOY) is None
        assert run.status == RunStatus.SUCCESS
        assert runners[StageName.DEPLOY].calls == 0
        assert orchestrator.snapshots.created == 0
        assert processes.calls == []

    def test_failed_pull_request_creates_no_backup(self, settings):
        runners = _fake_runners(security=FakeRunner(StageName.SECURITY, fail=True))
        orchestrator, dispatcher = _build(settings, runners=runners)

        run = orchestrator.run(Trigger.pull_request(8, "feature/x", "develop"))

        assert run.status == RunStatus.FAILED
        assert run.error == "security: security failed"
        assert orchestrator.snapshots.created == 0
        assert orchestrator.snapshots.restored == 0
        assert _kinds(dispatcher) == ["failure"]

    def test_scheduled_run_does_not_deploy(self, settings):
        orchestrator, _ = _build(settings, runners=_fake_runners())
        run = orchestrator.run(Trigger.scheduled("nightly"), "staging")
        assert run.trigger.kind == TriggerKind.SCHEDULE
        assert len(run.stages) == 3

    @pytest.mark.parametrize("failing", ["test", "build", "security"])
    def test_failure_before_deploy_never_backs_up(self, settings, failing):
        runners = _fake_runners(**{failing: FakeRunner(StageName(failing), fail=True)})
        orchestrator, dispatcher = _build(settings, runners=runners)

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.FAILED
        assert run.failed_stage.name == StageName(failing)
        assert run.stages[-1].name == StageName(failing)
        assert runners[StageName.DEPLOY].calls == 0
        assert orchestrator.snapshots.created == 0
        assert orchestrator.snapshots.restored == 0
        assert _kinds(dispatcher) == ["failure"]

    def test_deploy_failing_before_mutation_is_plain_failure(self, settings):
        def refuse(context, result):
            result.mutated = False

        runners = _fake_runners(deploy=FakeRunner(StageName.DEPLOY, fail=True, action=refuse))
        orchestrator, dispatcher = _build(settings, runners=runners)

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.FAILED
        assert orchestrator.snapshots.restored == 0
        assert _kinds(dispatcher) == ["failure"]

    def test_runner_that_raises_is_recorded_as_failed(self, settings):
        class Crashing:
            def run(self, context):
                raise RuntimeError("runner bug")

        orchestrator, _ = _build(settings, runners=_fake_runners(test=Crashing()))

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.FAILED
        assert run.stages[0].status == StageStatus.FAILED
        assert "runner bug" in run.stages[0].error

    def test_runner_returning_unfinished_result_is_failed(self, settings):
        class Unfinished:
            def run(self, context):
                return StageResult(name=StageName.BUILD, status=StageStatus.RUNNING)

        orchestrator, _ = _build(settings, runners=_fake_runners(build=Unfinished()))

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.FAILED
        assert run.stage(StageName.BUILD).status == StageStatus.FAILED


# ── Concurrency ──────────────────────────────────────────────────────────────

class TestConcurrency:

    def test_second_run_rejected_while_running(self, settings):
        orchestrator, dispatcher = _build(settings, runners=_fake_runners())
        in_flight = PipelineRun(
            environment="staging", trigger=Trigger.push("develop"), status=RunStatus.RUNNING,
        )
        orchestrator.state.claim(in_flight)

        with pytest.raises(ConcurrentRunError) as excinfo:
            orchestrator.run(Trigger.push("develop"))

        assert excinfo.value.active_run_id == in_flight.id
        active = orchestrator.state.active_run("staging")
        assert active.id == in_flight.id
        assert active.status == RunStatus.RUNNING
        assert _kinds(dispatcher) == ["rejected"]

    def test_nested_run_from_a_stage_is_rejected(self, settings):
        rejected: list[Exception] = []
        orchestrator, _ = _build(settings)

        def reenter(context, result):
            try:
                orchestrator.run(Trigger.push("develop"))
            except ConcurrentRunError as exc:
                rejected.append(exc)

        orchestrator.runners = _fake_runners(test=FakeRunner(StageName.TEST, action=reenter))

        run = orchestrator.run(Trigger.push("develop"))

        assert run.status == RunStatus.SUCCESS
        assert len(rejected) == 1
        assert rejected[0].active_run_id == run.id

    def test_other_environment_not_blocked(self, settings):
        orchestrator, _ = _build(settings, runners=_fake_runners())
        orchestrator.state.claim(PipelineRun(
            environment="production", trigger=Trigger.push("main"), status=RunStatus.RUNNING,
        ))
        assert orchestrator.run(Trigger.push("develop")).status == RunStatus.SUCCESS


# ── Manual rollback ──────────────────────────────────────────────────────────

class TestManualRollback:

    def test_restores_latest_backup_and_restarts(self, settings):
        live = write_live(settings, "staging", version="1")
        backup = SnapshotStore(settings).create("pipeline_1", "staging")
        (live / "src" / "server.py").write_text("VERSION = '2'\n")
        processes = FakeProcesses()
        processes.running.add("staging")
        orchestrator, dispatcher = _build(settings, processes=processes)

        restored = orchestrator.rollback("staging")

        assert restored.id == backup.id
        assert (live / "src" / "server.py").read_text() == "VERSION = '1'\n"
        assert processes.calls == [("stop", "staging"), ("start", "staging")]
        assert orchestrator.prober.checked == ["staging"]
        assert _kinds(dispatcher) == ["rollback"]
        record = orchestrator.state.history()[-1]
        assert record.trigger.kind == TriggerKind.MANUAL
        assert record.status == RunStatus.ROLLED_BACK
        assert orchestrator.state.active_run("staging") is None

    def test_defaults_to_configured_environment(self, settings):
        write_live(settings, "staging")
        SnapshotStore(settings).create("pipeline_1", "staging")
        orchestrator, _ = _build(settings)
        assert orchestrator.rollback().environment == settings.default_environment

    def test_without_backup_raises_and_notifies(self, settings):
        orchestrator, dispatcher = _build(settings)

        with pytest.raises(NoBackupAvailable):
            orchestrator.rollback("production")

        assert _kinds(dispatcher) == ["critical_failure"]
        record = orchestrator.state.history()[-1]
        assert record.status == RunStatus.ROLLBACK_FAILED
        assert orchestrator.state.active_run("production") is None

    def test_backup_of_empty_environment_is_not_started(self, settings):
        SnapshotStore(settings).create("pipeline_1", "staging")
        live = settings.live_path("staging")
        (live / "src").mkdir(parents=True)
        (live / "src" / "server.py").write_text("VERSION = '1'\n")
        processes = FakeProcesses()
        orchestrator, _ = _build(settings, processes=processes)

        orchestrator.rollback("staging")

        assert not (live / "src").exists()
        assert processes.calls == [("stop", "staging")]

    def test_unexpected_error_is_critical_and_raised(self, settings):
        write_live(settings, "staging", version="1")
        SnapshotStore(settings).create("pipeline_1", "staging")
        orchestrator, dispatcher = _build(settings, processes=DiskFullProcesses())

        with pytest.raises(OSError):
            orchestrator.rollback("staging")

        assert _kinds(dispatcher) == ["critical_failure"]
        record = orchestrator.state.history()[-1]
        assert record.status == RunStatus.ROLLBACK_FAILED
        assert record.rollback_error.startswith("OSError")
        assert orchestrator.state.active_run("staging") is None


# ── Crash recovery ───────────────────────────────────────────────────────────

class TestRecovery:

    def _orphan(self, orchestrator, run: PipelineRun) -> None:
        orchestrator.state.claim(run)
        path = orchestrator.state.path
        data = json.loads(path.read_text())
        data["owners"][run.environment]["pid"] = _dead_pid()
        path.write_text(json.dumps(data))

    def test_interrupted_deploy_is_rolled_back(self, settings):
        live = write_live(settings, "staging", version="1")
        orchestrator, dispatcher = _build(settings)
        backup = orchestrator.snapshots.create("pipeline_crashed", "staging")
        (live / "src" / "server.py").write_text("VERSION = 'half'\n")

        run = PipelineRun(
            environment="staging", trigger=Trigger.push("develop"), status=RunStatus.RUNNING,
            backup_id=backup.id,
        )
        run.stages.append(StageResult(name=StageName.TEST, status=StageStatus.SUCCESS))
        run.stages.append(StageResult(name=StageName.DEPLOY, status=StageStatus.RUNNING))
        self._orphan(orchestrator, run)

        recovered = orchestrator.recover()

        assert [r.id for r in recovered] == [run.id]
        assert recovered[0].status == RunStatus.ROLLED_BACK
        assert recovered[0].stage(StageName.DEPLOY).status == StageStatus.FAILED
        assert (live / "src" / "server.py").read_text() == "VERSION = '1'\n"
        assert orchestrator.state.active_run("staging") is None
        assert _kinds(dispatcher) == ["rollback"]

    def test_interrupted_validation_is_failed(self, settings):
        orchestrator, dispatcher = _build(settings)
        run = PipelineRun(
            environment="staging", trigger=Trigger.push("develop"), status=RunStatus.RUNNING,
        )
        run.stages.append(StageResult(name=StageName.BUILD, status=StageStatus.RUNNING))
        self._orphan(orchestrator, run)

        recovered = orchestrator.recover()

        assert recovered[0].status == RunStatus.FAILED
        assert "Interrupted" in recovered[0].error
        assert orchestrator.snapshots.restored == 0
        assert _kinds(dispatcher) == ["failure"]

    def test_interrupted_manual_rollback_needs_attention(self, settings):
        write_live(settings, "staging")
        orchestrator, dispatcher = _build(settings)
        orchestrator.snapshots.create("pipeline_1", "staging")
        run = PipelineRun(
            environment="staging", trigger=Trigger.manual(), status=RunStatus.RUNNING,
        )
        self._orphan(orchestrator, run)

        recovered = orchestrator.recover()

        assert recovered[0].status == RunStatus.ROLLBACK_FAILED
        assert recovered[0].requires_attention
        assert "Interrupted" in recovered[0].rollback_error
        assert orchestrator.snapshots.restored == 0
        assert _kinds(dispatcher) == ["critical_failure"]
        assert orchestrator.state.active_run("staging") is None

    def test_live_owner_is_left_alone(self, settings):
        orchestrator, _ = _build(settings)
        orchestrator.state.claim(PipelineRun(
            environment="staging", trigger=Trigger.push("develop"), status=RunStatus.RUNNING,
        ))
        assert orchestrator.recover() == []
        assert orchestrator.state.active_run("staging") is not None


# ── Status ───────────────────────────────────────────────────────────────────

class TestStatus:

    def test_status_reports_history_and_backups(self, settings):
        write_live(settings, "staging")
        runners = _fake_runners(
            deploy=FakeRunner(StageName.DEPLOY, fail=True, action=_snapshot_then_overwrite),
        )
        orchestrator, _ = _build(settings, runners=runners)
        run = orchestrator.run(Trigger.push("develop"))

        state = orchestrator.status()
        summary = state.summary()

        assert state.active_runs == {}
        assert [b.environment for b in state.backups] == ["staging"]
        assert summary["history"][-1]["id"] == run.id
        assert summary["history"][-1]["status"] == "rolled_back"
        assert summary["history"][-1]["failed_stage"] == "deploy"
        assert summary["history"][-1]["error"] == "deploy: deploy failed"

    def test_history_is_bounded(self, tmp_path):
        settings = make_settings(tmp_path, history_limit=3)
        orchestrator, _ = _build(settings, runners=_fake_runners())
        runs = [orchestrator.run(Trigger.push("develop")) for _ in range(5)]
        assert [r.id for r in orchestrator.state.history()] == [r.id for r in runs[-3:]]

