"""Verify stage — health-checks the freshly started instance."""

from __future__ import annotations

from shipyard.errors import StageFailure
from shipyard.models import StageName, StageResult
from shipyard.stages.base import StageContext, StageRunner


class VerifyStage(StageRunner):
    name = StageName.VERIFY

    def execute(self, context: StageContext, result: StageResult) -> None:
        checks = context.prober.check(context.environment)
        for check in checks:
            mark = "OK" if check.healthy else "FAILED"
            result.log(f"{check.check_name} - {mark}: {check.detail or ''} (attempts: {check.attempts})")

        failed = [c.check_name for c in checks if not c.healthy]
        if failed:
            raise StageFailure(f"Health check failed: {', '.join(failed)}")
