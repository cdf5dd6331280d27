"""Build stage — validates the workspace and packages a release artifact."""

from __future__ import annotations

import logging

from shipyard.deployment.installer import ReleaseInstaller
from shipyard.deployment.packager import ReleasePackager
from shipyard.errors import StageFailure
from shipyard.models import StageName, StageResult
from shipyard.stages.base import StageContext, StageRunner

logger = logging.getLogger(__name__)


class BuildStage(StageRunner):
    """Produce ``<state>/builds/<run_id>.tar.gz``; live files are not touched."""

    name = StageName.BUILD

    def __init__(self, packager: ReleasePackager | None = None) -> None:
        self.packager = packager or ReleasePackager()

    def execute(self, context: StageContext, result: StageResult) -> None:
        settings = context.settings
        source = settings.source_path

        missing = [f for f in settings.required_files if not (source / f).exists()]
        if missing:
            raise StageFailure(f"Required files missing: {', '.join(missing)}")
        result.log(f"Project structure validated ({len(settings.required_files)} required files)")

        output = settings.state_path / "builds" / f"{context.run.id}.tar.gz"
        version = context.run.trigger.commit or context.run.id
        artifact = self.packager.package(source, settings.deploy_paths, output, version=version)

        manifest = ReleaseInstaller().read_manifest(artifact) or {}
        files = manifest.get("files", {})
        if not files:
            raise StageFailure("Build produced an empty artifact")

        context.artifact_path = artifact
        result.log(f"Build artifact created: {artifact.name} ({len(files)} files)")
