"""ConfigManager — layered settings and per-environment profiles."""

from __future__ import annotations

import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from shipyard.errors import ConfigError

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".shipyard"

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "SHIPYARD_ENV": {"default": "staging", "description": "Default target environment"},
    "SHIPYARD_LOG_LEVEL": {"default": "INFO", "description": "Logging level"},
    "SHIPYARD_SOURCE_DIR": {"default": ".", "description": "Release workspace to build from"},
    "SHIPYARD_DEPLOY_PATHS": {
        "default": "src,public,requirements.txt",
        "description": "Comma-separated paths copied into the live directory",
    },
    "SHIPYARD_DATA_PATHS": {
        "default": "data",
        "description": "Comma-separated live data paths included in snapshots",
    },
    "SHIPYARD_REQUIRED_FILES": {
        "default": "src,public/index.html",
        "description": "Files that must exist before a build",
    },
    "SHIPYARD_TEST_COMMAND": {"default": "", "description": "Automated test command"},
    "SHIPYARD_LINT_COMMAND": {"default": "", "description": "Lint command"},
    "SHIPYARD_TEST_DIRS": {"default": "tests", "description": "Test sources to syntax-check"},
    "SHIPYARD_INSTALL_COMMAND": {"default": "", "description": "Dependency install command"},
    "SHIPYARD_START_COMMAND": {
        "default": "python src/server.py",
        "description": "Command that starts the application",
    },
    "SHIPYARD_COMMAND_TIMEOUT": {"default": "300", "description": "Seconds per external command"},
    "SHIPYARD_API_PATHS": {
        "default": "/api/templates,/api/history",
        "description": "API paths the health prober requires",
    },
    "SHIPYARD_STATIC_ASSETS": {
        "default": "/index.html,/styles.css,/frontend.js",
        "description": "Static asset paths the health prober requires",
    },
    "SHIPYARD_DATA_FILE": {"default": "data/app.json", "description": "Persisted JSON data file"},
    "SHIPYARD_HEALTH_RETRIES": {"default": "5", "description": "Attempts per health check"},
    "SHIPYARD_HEALTH_RETRY_DELAY": {"default": "2.0", "description": "Initial retry delay (s)"},
    "SHIPYARD_HEALTH_TIMEOUT": {"default": "10.0", "description": "HTTP request timeout (s)"},
    "SHIPYARD_STOP_TIMEOUT": {"default": "10.0", "description": "Graceful stop timeout (s)"},
    "SHIPYARD_ROLLBACK_ENABLED": {"default": "true", "description": "Roll back failed deploys"},
    "SHIPYARD_MAX_BACKUPS": {"default": "10", "description": "Backups kept per environment"},
    "SHIPYARD_HISTORY_LIMIT": {"default": "50", "description": "Runs kept in history"},
    "SHIPYARD_NOTIFY_FILE": {"default": "true", "description": "Write notifications.json"},
    "SHIPYARD_WEBHOOK_URL": {"default": "", "description": "Outbound webhook URL (secret)"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "SHIPYARD_LOG_LEVEL": "DEBUG",
        "SHIPYARD_HEALTH_RETRIES": "3",
    },
    "staging": {
        "SHIPYARD_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "SHIPYARD_LOG_LEVEL": "WARNING",
    },
}

# Per-environment application settings
_ENVIRONMENTS: dict[str, dict[str, Any]] = {
    "development": {"port": 5000, "app_env": "development", "log_level": "debug"},
    "staging": {"port": 8080, "app_env": "staging", "log_level": "debug"},
    "production": {"port": 3000, "app_env": "production", "log_level": "error"},
}


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class EnvironmentConfig(BaseModel):
    """Where and how one environment's application runs."""

    name: str
    port: int = 8080
    host: str = "127.0.0.1"
    app_env: str = ""
    log_level: str = "info"
    live_dir: str = ""
    start_command: list[str] = Field(default_factory=list)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class PipelineSettings(BaseModel):
    """Fully resolved pipeline configuration."""

    project_root: str = "."
    source_dir: str = "."
    state_dir: str = STATE_DIR_NAME
    default_environment: str = "staging"
    log_level: str = "INFO"

    deploy_paths: list[str] = Field(default_factory=list)
    data_paths: list[str] = Field(default_factory=list)
    required_files: list[str] = Field(default_factory=list)

    test_command: list[str] = Field(default_factory=list)
    lint_command: list[str] = Field(default_factory=list)
    test_dirs: list[str] = Field(default_factory=list)
    install_command: list[str] = Field(default_factory=list)
    command_timeout: float = 300.0

    api_paths: list[str] = Field(default_factory=list)
    static_assets: list[str] = Field(default_factory=list)
    data_file: str = "data/app.json"
    health_retries: int = 5
    health_retry_delay: float = 2.0
    health_timeout: float = 10.0
    stop_timeout: float = 10.0

    rollback_enabled: bool = True
    max_backups: int = 10
    history_limit: int = 50
    notify_file: bool = True
    webhook_url: str = ""

    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)

    @property
    def root(self) -> Path:
        return Path(self.project_root)

    @property
    def state_path(self) -> Path:
        path = Path(self.state_dir)
        return path if path.is_absolute() else self.root / path

    @property
    def source_path(self) -> Path:
        path = Path(self.source_dir)
        return path if path.is_absolute() else self.root / path

    @property
    def tracked_paths(self) -> list[str]:
        """Everything a snapshot captures: code, data and the written .env."""
        paths: list[str] = []
        for item in [*self.deploy_paths, *self.data_paths, ".env"]:
            if item not in paths:
                paths.append(item)
        return paths

    def environment(self, name: str) -> EnvironmentConfig:
        """Return the configuration for *name*, raising ConfigError if unknown."""
        try:
            return self.environments[name]
        except KeyError:
            raise ConfigError(
                f"Unknown environment: {name!r} "
                f"(known: {', '.join(sorted(self.environments))})"
            ) from None

    def live_path(self, name: str) -> Path:
        live = Path(self.environment(name).live_dir)
        return live if live.is_absolute() else self.root / live


class ConfigManager:
    """Manage pipeline configuration across environments."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# Shipyard Configuration Template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> config.json -> .env -> env vars.

        Returns a flat dict of configuration values.
        """
        root = Path(project_path)
        config: dict[str, str] = {}

        for key, info in _CONFIG_KEYS.items():
            config[key] = str(info["default"])

        env_name = os.environ.get("SHIPYARD_ENV", config["SHIPYARD_ENV"])
        config.update(_PROFILES.get(env_name, {}))

        for k, v in self._read_config_json(root).items():
            if k == "environments":
                continue
            config[k] = str(v)

        env_file = root / ".env"
        if env_file.is_file():
            try:
                for line in env_file.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" in line:
                        k, v = line.split("=", 1)
                        config[k.strip()] = v.strip()
            except OSError:
                logger.debug("Could not read .env", exc_info=True)

        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        return config

    def load_settings(self, project_path: str | Path) -> PipelineSettings:
        """Resolve the flat config and environment overrides into settings."""
        root = Path(project_path)
        config = self.load_config(root)
        overrides = self._read_config_json(root).get("environments", {})
        if not isinstance(overrides, dict):
            raise ConfigError("'environments' in config.json must be an object")

        try:
            start_command = shlex.split(config["SHIPYARD_START_COMMAND"])
            environments: dict[str, EnvironmentConfig] = {}
            for name in sorted(set(_ENVIRONMENTS) | set(overrides)):
                values: dict[str, Any] = {
                    "name": name,
                    "live_dir": f"{STATE_DIR_NAME}/live/{name}",
                    "start_command": start_command,
                }
                values.update(_ENVIRONMENTS.get(name, {}))
                values.update(overrides.get(name, {}))
                if isinstance(values["start_command"], str):
                    values["start_command"] = shlex.split(values["start_command"])
                environments[name] = EnvironmentConfig(**values)

            return PipelineSettings(
                project_root=str(root),
                source_dir=config["SHIPYARD_SOURCE_DIR"],
                default_environment=config["SHIPYARD_ENV"],
                log_level=config["SHIPYARD_LOG_LEVEL"].upper(),
                deploy_paths=_split(config["SHIPYARD_DEPLOY_PATHS"]),
                data_paths=_split(config["SHIPYARD_DATA_PATHS"]),
                required_files=_split(config["SHIPYARD_REQUIRED_FILES"]),
                test_command=shlex.split(config["SHIPYARD_TEST_COMMAND"]),
                lint_command=shlex.split(config["SHIPYARD_LINT_COMMAND"]),
                test_dirs=_split(config["SHIPYARD_TEST_DIRS"]),
                install_command=shlex.split(config["SHIPYARD_INSTALL_COMMAND"]),
                command_timeout=float(config["SHIPYARD_COMMAND_TIMEOUT"]),
                api_paths=_split(config["SHIPYARD_API_PATHS"]),
                static_assets=_split(config["SHIPYARD_STATIC_ASSETS"]),
                data_file=config["SHIPYARD_DATA_FILE"],
                health_retries=int(config["SHIPYARD_HEALTH_RETRIES"]),
                health_retry_delay=float(config["SHIPYARD_HEALTH_RETRY_DELAY"]),
                health_timeout=float(config["SHIPYARD_HEALTH_TIMEOUT"]),
                stop_timeout=float(config["SHIPYARD_STOP_TIMEOUT"]),
                rollback_enabled=_as_bool(config["SHIPYARD_ROLLBACK_ENABLED"]),
                max_backups=int(config["SHIPYARD_MAX_BACKUPS"]),
                history_limit=int(config["SHIPYARD_HISTORY_LIMIT"]),
                notify_file=_as_bool(config["SHIPYARD_NOTIFY_FILE"]),
                webhook_url=config["SHIPYARD_WEBHOOK_URL"],
                environments=environments,
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def _read_config_json(self, root: Path) -> dict[str, Any]:
        config_json = root / STATE_DIR_NAME / "config.json"
        if not config_json.is_file():
            return {}
        try:
            data = json.loads(config_json.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.debug("Could not read config.json", exc_info=True)
            return {}
        return data if isinstance(data, dict) else {}


def target_environment(branch: str) -> str:
    """Map a pushed branch to the environment it deploys to."""
    if branch in ("main", "master"):
        return "production"
    if branch in ("develop", "staging"):
        return "staging"
    return "development"
