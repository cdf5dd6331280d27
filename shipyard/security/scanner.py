"""SourceScanner — static scan for hard-coded secrets and unsafe dynamic evaluation."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from shipyard.security.policies import ScanPolicy
from shipyard.security.report import Finding, ScanReport

logger = logging.getLogger(__name__)


class SourceScanner:
    """Pattern-match source files; never modifies anything.

    Parameters
    ----------
    policy:
        Scan policy with extensions, skipped directories and patterns.
    """

    def __init__(self, policy: ScanPolicy | None = None) -> None:
        self.policy = policy or ScanPolicy()
        self._secret_patterns = [re.compile(p) for p in self.policy.secret_regex_patterns]
        self._eval_patterns = [
            (re.compile(p), label) for p, label in self.policy.unsafe_eval_patterns.items()
        ]

    def iter_files(self, root: Path, paths: list[str] | None = None) -> list[Path]:
        """Return the files under *root* (optionally restricted to *paths*) to scan."""
        tops = [root / p for p in paths] if paths else [root]
        skip = set(self.policy.skip_dirs)
        exts = set(self.policy.scan_extensions)
        files: list[Path] = []
        for top in tops:
            if top.is_file():
                candidates = [top]
            elif top.is_dir():
                candidates = sorted(top.rglob("*"))
            else:
                continue
            for fpath in candidates:
                if not fpath.is_file():
                    continue
                rel_parts = fpath.relative_to(root).parts
                if any(part in skip for part in rel_parts[:-1]):
                    continue
                if fpath.suffix not in exts and fpath.name not in exts:
                    continue
                files.append(fpath)
        return files

    def scan_secrets(self, root: Path, fpath: Path, content: str) -> list[Finding]:
        """Report the first secret pattern that matches in *content*."""
        rel = fpath.relative_to(root).as_posix()
        for pat in self._secret_patterns:
            match = pat.search(content)
            if match:
                return [Finding(
                    severity="high",
                    category="secret",
                    message="Potential hard-coded secret",
                    file_path=rel,
                    line=content.count("\n", 0, match.start()) + 1,
                )]
        return []

    def scan_unsafe_eval(self, root: Path, fpath: Path, content: str) -> list[Finding]:
        """Report every line using dynamic evaluation or shell execution."""
        rel = fpath.relative_to(root).as_posix()
        findings: list[Finding] = []
        for lineno, line in enumerate(content.splitlines(), start=1):
            stripped = line.lstrip()
            if stripped.startswith(("#", "//")):
                continue
            for pat, label in self._eval_patterns:
                if pat.search(line):
                    findings.append(Finding(
                        severity="high",
                        category="unsafe_eval",
                        message=f"Unsafe dynamic evaluation: {label}",
                        file_path=rel,
                        line=lineno,
                    ))
        return findings

    def scan_all(self, project_path: str | Path, paths: list[str] | None = None) -> ScanReport:
        """Full scan returning a report."""
        root = Path(project_path)
        findings: list[Finding] = []
        files = self.iter_files(root, paths)

        for fpath in files:
            try:
                if fpath.stat().st_size > self.policy.max_file_bytes:
                    logger.debug("Skipping large file %s", fpath)
                    continue
                content = fpath.read_text(encoding="utf-8", errors="ignore")
            except OSError:
                logger.debug("Could not read %s", fpath, exc_info=True)
                continue
            findings.extend(self.scan_secrets(root, fpath, content))
            findings.extend(self.scan_unsafe_eval(root, fpath, content))

        critical = sum(1 for f in findings if f.severity == "critical")
        high = sum(1 for f in findings if f.severity == "high")

        if critical > 0:
            status = "critical"
        elif high > 0:
            status = "warning"
        else:
            status = "clean"

        return ScanReport(files_scanned=len(files), findings=findings, overall_status=status)
