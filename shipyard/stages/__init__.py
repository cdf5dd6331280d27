"""Stage runners, one per pipeline stage."""

from __future__ import annotations

from shipyard.models import StageName
from shipyard.stages.base import StageContext, StageRunner, run_command
from shipyard.stages.build import BuildStage
from shipyard.stages.deploy import DeployStage
from shipyard.stages.security import SecurityStage
from shipyard.stages.testing import TestStage
from shipyard.stages.verify import VerifyStage


def default_runners() -> dict[StageName, StageRunner]:
    """The production runner for every stage."""
    return {
        StageName.TEST: TestStage(),
        StageName.BUILD: BuildStage(),
        StageName.SECURITY: SecurityStage(),
        StageName.DEPLOY: DeployStage(),
        StageName.VERIFY: VerifyStage(),
    }


__all__ = [
    "BuildStage",
    "DeployStage",
    "SecurityStage",
    "StageContext",
    "StageRunner",
    "TestStage",
    "VerifyStage",
    "default_runners",
    "run_command",
]
