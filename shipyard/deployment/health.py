"""HealthProber — validates a running application instance over HTTP."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable

import requests

from shipyard.deployment.config_manager import PipelineSettings
from shipyard.errors import HealthCheckFailure
from shipyard.models import HealthCheckResult

logger = logging.getLogger(__name__)

CHECK_NAMES = ("reachability", "api_surface", "static_assets", "data_file")

_Probe = Callable[[str], tuple[bool, str]]


class HealthProber:
    """Run the fixed health battery against one environment.

    Every check runs even when an earlier one fails. Each check is retried
    with exponential backoff before it is declared unhealthy, which covers
    an application that is still starting up.

    Parameters
    ----------
    settings:
        Resolved pipeline settings (paths to probe, retries, timeouts).
    session:
        Optional ``requests.Session``; one is created when omitted.
    sleep:
        Delay function, replaceable in tests.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self._sleep = sleep

    def check(self, environment: str) -> list[HealthCheckResult]:
        """Run all checks in order and return one result per check."""
        probes: list[tuple[str, _Probe]] = [
            ("reachability", self._check_reachability),
            ("api_surface", self._check_api_surface),
            ("static_assets", self._check_static_assets),
            ("data_file", self._check_data_file),
        ]
        results = [self._run_with_retries(name, probe, environment) for name, probe in probes]

        unhealthy = [r.check_name for r in results if not r.healthy]
        if unhealthy:
            logger.warning("Health checks failed for %s: %s", environment, ", ".join(unhealthy))
        else:
            logger.info("All health checks passed for %s", environment)
        return results

    def verify(self, environment: str) -> list[HealthCheckResult]:
        """Like :meth:`check` but raise HealthCheckFailure on any failure."""
        results = self.check(environment)
        failures = [r for r in results if not r.healthy]
        if failures:
            raise HealthCheckFailure(failures)
        return results

    # ------------------------------------------------------------------
    # Individual checks: (healthy, detail) for a single attempt
    # ------------------------------------------------------------------

    def _check_reachability(self, environment: str) -> tuple[bool, str]:
        base = self.settings.environment(environment).base_url
        return self._get(f"{base}/")

    def _check_api_surface(self, environment: str) -> tuple[bool, str]:
        return self._check_paths(environment, self.settings.api_paths)

    def _check_static_assets(self, environment: str) -> tuple[bool, str]:
        return self._check_paths(environment, self.settings.static_assets)

    def _check_data_file(self, environment: str) -> tuple[bool, str]:
        path = self.settings.live_path(environment) / self.settings.data_file
        if not path.is_file():
            return False, f"Data file missing: {self.settings.data_file}"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
            return False, f"Data file unreadable: {exc}"
        entries = len(data) if isinstance(data, (list, dict)) else 1
        return True, f"Data file readable ({entries} entries)"

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_paths(self, environment: str, paths: list[str]) -> tuple[bool, str]:
        base = self.settings.environment(environment).base_url
        missing: list[str] = []
        for path in paths:
            ok, detail = self._get(f"{base}{path}")
            if not ok:
                missing.append(f"{path} ({detail})")
        if missing:
            return False, "Unavailable: " + "; ".join(missing)
        return True, f"{len(paths)} paths available"

    def _get(self, url: str) -> tuple[bool, str]:
        try:
            resp = self.session.get(url, timeout=self.settings.health_timeout)
        except requests.RequestException as exc:
            return False, f"{type(exc).__name__}: {exc}"
        if resp.status_code >= 400:
            return False, f"HTTP {resp.status_code}"
        return True, f"HTTP {resp.status_code}"

    def _run_with_retries(
        self, name: str, probe: _Probe, environment: str,
    ) -> HealthCheckResult:
        attempts = max(1, self.settings.health_retries)
        delay = self.settings.health_retry_delay
        detail = ""
        for attempt in range(1, attempts + 1):
            try:
                healthy, detail = probe(environment)
            except Exception as exc:
                healthy, detail = False, f"{type(exc).__name__}: {exc}"
            if healthy:
                return HealthCheckResult(
                    check_name=name, healthy=True, detail=detail, attempts=attempt,
                )
            if attempt < attempts:
                logger.debug(
                    "Health check %s attempt %d/%d failed (%s), retrying in %.1fs",
                    name, attempt, attempts, detail, delay,
                )
                self._sleep(delay)
                delay *= 2
        return HealthCheckResult(
            check_name=name, healthy=False, detail=detail, attempts=attempts,
        )
