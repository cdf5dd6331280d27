"""Test stage — runs the configured test and lint collaborators."""

from __future__ import annotations

import logging

from shipyard.errors import StageFailure
from shipyard.models import StageName, StageResult
from shipyard.stages.base import StageContext, StageRunner, run_command

logger = logging.getLogger(__name__)


class TestStage(StageRunner):
    """Syntax-check test sources, then run the test and lint commands.

    Every collaborator runs even when an earlier one fails; the stage fails
    if any of them did.
    """

    __test__ = False  # not a pytest test class

    name = StageName.TEST

    def execute(self, context: StageContext, result: StageResult) -> None:
        settings = context.settings
        source = settings.source_path
        failures: list[str] = []

        checked = 0
        for test_dir in settings.test_dirs:
            base = source / test_dir
            if not base.is_dir():
                continue
            for fpath in sorted(base.rglob("*.py")):
                checked += 1
                try:
                    compile(fpath.read_text(encoding="utf-8"), str(fpath), "exec")
                except (SyntaxError, ValueError, UnicodeDecodeError) as exc:
                    rel = fpath.relative_to(source).as_posix()
                    result.log(f"Syntax error in {rel}: {exc}")
                    failures.append(f"syntax error in {rel}")
        if checked:
            result.log(f"Syntax-checked {checked} test files")

        commands = [
            ("tests", settings.test_command),
            ("lint", settings.lint_command),
        ]
        ran = 0
        for label, command in commands:
            if not command:
                continue
            ran += 1
            try:
                run_command(command, source, settings.command_timeout, result, label)
            except StageFailure as exc:
                failures.append(str(exc))

        if not checked and not ran:
            result.log("No tests or lint commands configured")

        if failures:
            raise StageFailure("; ".join(failures))
        result.log("Tests completed successfully")
