"""Shared fixtures: isolated settings rooted in a temporary project."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from shipyard.deployment.config_manager import EnvironmentConfig, PipelineSettings
from shipyard.deployment.process import ProcessHandle
from shipyard.errors import HealthCheckFailure, ProcessError
from shipyard.models import HealthCheckResult


def make_settings(root: Path, **overrides: Any) -> PipelineSettings:
    """Settings for a small release workspace under *root*."""
    environments = {
        name: EnvironmentConfig(
            name=name,
            port=port,
            app_env=name,
            live_dir=f"live/{name}",
            start_command=["python", "src/server.py"],
        )
        for name, port in (("development", 5000), ("staging", 8080), ("production", 3000))
    }
    values: dict[str, Any] = {
        "project_root": str(root),
        "source_dir": "workspace",
        "deploy_paths": ["src", "public"],
        "data_paths": ["data"],
        "required_files": ["src", "public/index.html"],
        "test_dirs": ["tests"],
        "api_paths": ["/api/templates"],
        "static_assets": ["/index.html"],
        "health_retries": 2,
        "health_retry_delay": 0.0,
        "health_timeout": 1.0,
        "stop_timeout": 2.0,
        "max_backups": 3,
        "history_limit": 50,
        "notify_file": False,
        "environments": environments,
    }
    values.update(overrides)
    return PipelineSettings(**values)


def write_release(root: Path, version: str = "1") -> Path:
    """Populate ``workspace/`` with a deployable release tagged *version*."""
    source = root / "workspace"
    (source / "src").mkdir(parents=True, exist_ok=True)
    (source / "public").mkdir(parents=True, exist_ok=True)
    (source / "src" / "server.py").write_text(f"VERSION = {version!r}\n", encoding="utf-8")
    (source / "public" / "index.html").write_text(f"<h1>v{version}</h1>\n", encoding="utf-8")
    return source


def write_live(settings: PipelineSettings, environment: str, version: str = "0") -> Path:
    """Populate the live directory of *environment* as if *version* were deployed."""
    live = settings.live_path(environment)
    (live / "src").mkdir(parents=True, exist_ok=True)
    (live / "public").mkdir(parents=True, exist_ok=True)
    (live / "data").mkdir(parents=True, exist_ok=True)
    (live / "src" / "server.py").write_text(f"VERSION = {version!r}\n", encoding="utf-8")
    (live / "public" / "index.html").write_text(f"<h1>v{version}</h1>\n", encoding="utf-8")
    (live / "data" / "app.json").write_text('{"items": []}', encoding="utf-8")
    return live


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("SHIPYARD_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> PipelineSettings:
    return make_settings(tmp_path)


# ── Test doubles ─────────────────────────────────────────────────────────────

class FakeProcesses:
    """Stands in for ProcessController; records calls instead of spawning."""

    def __init__(self, fail_start: bool = False) -> None:
        self.fail_start = fail_start
        self.calls: list[tuple[str, str]] = []
        self.running: set[str] = set()

    def start(self, environment, extra_env=None):
        self.calls.append(("start", environment))
        if self.fail_start:
            raise ProcessError(f"Could not start {environment}")
        self.running.add(environment)
        return ProcessHandle(
            environment=environment,
            pid=4242,
            command=["fake"],
            started_at=datetime.now(timezone.utc),
        )

    def stop(self, environment, timeout=None):
        self.calls.append(("stop", environment))
        was_running = environment in self.running
        self.running.discard(environment)
        return was_running

    def is_running(self, environment):
        return environment in self.running


class FakeProber:
    """Stands in for HealthProber; *outcomes* are consumed one per check() call."""

    def __init__(self, *outcomes: bool) -> None:
        self.outcomes = list(outcomes)
        self.checked: list[str] = []

    def check(self, environment):
        self.checked.append(environment)
        healthy = self.outcomes.pop(0) if self.outcomes else True
        return [
            HealthCheckResult(check_name="reachability", healthy=healthy,
                              detail="HTTP 200" if healthy else "HTTP 503"),
            HealthCheckResult(check_name="data_file", healthy=True, detail="ok"),
        ]

    def verify(self, environment):
        results = self.check(environment)
        failures = [r for r in results if not r.healthy]
        if failures:
            raise HealthCheckFailure(failures)
        return results
