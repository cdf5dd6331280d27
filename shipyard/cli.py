"""Shipyard CLI - deploy, roll back and inspect environments."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import typer

from shipyard.deployment.config_manager import ConfigManager, target_environment
from shipyard.errors import ConcurrentRunError, ShipyardError
from shipyard.models import RunStatus, Trigger
from shipyard.pipeline.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ATTENTION = 2

app = typer.Typer(
    name="shipyard",
    help="Shipyard - release pipeline with snapshot-based rollback.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)


def _emit(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _fail(exc: Exception, code: int = EXIT_FAILED) -> None:
    _emit({"error": type(exc).__name__, "message": str(exc)})
    raise typer.Exit(code)


def _orchestrator(ctx: typer.Context) -> Orchestrator:
    orchestrator: Orchestrator = ctx.obj["orchestrator"]
    recovered = orchestrator.recover()
    for run in recovered:
        logger.warning("Recovered interrupted run %s: %s", run.id, run.status.value)
    return orchestrator


def _exit_code(status: RunStatus) -> int:
    if status == RunStatus.SUCCESS:
        return EXIT_OK
    if status == RunStatus.ROLLBACK_FAILED:
        return EXIT_ATTENTION
    return EXIT_FAILED


@app.callback()
def callback(
    ctx: typer.Context,
    project: Path = typer.Option(Path("."), "--project", "-p", help="Path to project root"),
    verbose: bool = typer.Option(False, "-V", "--verbose", help="Enable debug logging"),
) -> None:
    """Load settings and configure logging for every command."""
    try:
        settings = ConfigManager().load_settings(project)
    except ShipyardError as exc:
        _fail(exc)

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.obj = {"settings": settings, "orchestrator": Orchestrator(settings)}


@app.command("deploy")
def deploy(
    ctx: typer.Context,
    environment: str = typer.Argument(..., help="Target environment"),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch that was pushed"),
    commit: str = typer.Option("", "--commit", help="Commit identifier"),
) -> None:
    """Run the full pipeline and deploy to ENVIRONMENT."""
    orchestrator = _orchestrator(ctx)
    trigger = Trigger.push(branch or environment, commit)
    try:
        run = orchestrator.run(trigger, environment)
    except ShipyardError as exc:
        _fail(exc)
    except Exception as exc:
        # Unexpected error: the run is recorded but live state is unknown.
        _fail(exc, EXIT_ATTENTION)
    _emit(run.summary())
    raise typer.Exit(_exit_code(run.status))


@app.command("validate")
def validate(
    ctx: typer.Context,
    pr: int = typer.Option(0, "--pr", help="Pull request number"),
    source: str = typer.Option("", "--source", help="Source branch"),
    target: str = typer.Option("main", "--target", help="Target branch"),
    environment: Optional[str] = typer.Option(None, "--env", help="Environment to validate for"),
) -> None:
    """Run the test, build and security stages without deploying."""
    orchestrator = _orchestrator(ctx)
    trigger = Trigger.pull_request(pr, source, target)
    try:
        run = orchestrator.run(trigger, environment or target_environment(target))
    except ShipyardError as exc:
        _fail(exc)
    except Exception as exc:
        # Unexpected error: the run is recorded but live state is unknown.
        _fail(exc, EXIT_ATTENTION)
    _emit(run.summary())
    raise typer.Exit(_exit_code(run.status))


@app.command("rollback")
def rollback(
    ctx: typer.Context,
    environment: Optional[str] = typer.Argument(None, help="Environment to roll back"),
) -> None:
    """Restore the most recent backup and restart the application."""
    orchestrator = _orchestrator(ctx)
    try:
        backup = orchestrator.rollback(environment)
    except ConcurrentRunError as exc:
        _fail(exc)
    except Exception as exc:
        _fail(exc, EXIT_ATTENTION)
    _emit({
        "status": RunStatus.ROLLED_BACK.value,
        "environment": backup.environment,
        "backup_id": backup.id,
        "created_at": backup.created_at.isoformat(),
    })


@app.command("status")
def status(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", help="History entries to show"),
) -> None:
    """Show active runs, backups and recent history."""
    _emit(_orchestrator(ctx).status().summary(history_limit=limit))


@app.command("backups")
def backups(
    ctx: typer.Context,
    environment: Optional[str] = typer.Argument(None, help="Only this environment"),
) -> None:
    """List catalogued backups, oldest first."""
    orchestrator: Orchestrator = ctx.obj["orchestrator"]
    _emit([b.model_dump(mode="json") for b in orchestrator.snapshots.list_backups(environment)])


@app.command("prune")
def prune(
    ctx: typer.Context,
    environment: str = typer.Argument(..., help="Environment to prune"),
    keep: Optional[int] = typer.Option(None, "--keep", help="Backups to keep"),
) -> None:
    """Delete old backups beyond the retention limit."""
    orchestrator: Orchestrator = ctx.obj["orchestrator"]
    try:
        removed = orchestrator.prune(environment, keep)
    except (ShipyardError, ValueError) as exc:
        _fail(exc)
    _emit({"environment": environment, "removed": [b.id for b in removed]})


@app.command("init")
def init(ctx: typer.Context) -> None:
    """Write .env.example listing every configuration key."""
    settings = ctx.obj["settings"]
    path = ConfigManager().generate_env_template(settings.root)
    _emit({"created": str(path)})


def main() -> None:
    app()


if __name__ == "__main__":
    main()
