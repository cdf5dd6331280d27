"""Security stage — static scan of the release sources."""

from __future__ import annotations

from shipyard.errors import StageFailure
from shipyard.models import StageName, StageResult
from shipyard.security.scanner import SourceScanner
from shipyard.stages.base import StageContext, StageRunner


class SecurityStage(StageRunner):
    """Fail the run on hard-coded secrets or unsafe dynamic evaluation."""

    name = StageName.SECURITY

    def __init__(self, scanner: SourceScanner | None = None) -> None:
        self.scanner = scanner or SourceScanner()

    def execute(self, context: StageContext, result: StageResult) -> None:
        settings = context.settings
        report = self.scanner.scan_all(settings.source_path, settings.deploy_paths)
        result.log(f"Scanned {report.files_scanned} files: {report.overall_status}")
        for line in report.summary_lines():
            result.log(line)

        blocking = report.blocking(self.scanner.policy.fail_on)
        if blocking:
            raise StageFailure(f"{len(blocking)} blocking security findings")
