"""ScanReport model for the security stage."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class Finding(BaseModel):
    """A single security finding."""

    severity: str = "info"  # critical, high, medium, low, info
    category: str = ""  # secret, unsafe_eval
    message: str = ""
    file_path: str = ""
    line: int = 0


class ScanReport(BaseModel):
    """Complete source scan report."""

    scan_timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )
    files_scanned: int = 0
    findings: list[Finding] = Field(default_factory=list)
    overall_status: str = "clean"  # clean, warning, critical

    def blocking(self, severities: list[str]) -> list[Finding]:
        """Findings whose severity is in *severities*."""
        return [f for f in self.findings if f.severity in severities]

    def summary_lines(self) -> list[str]:
        """One line per finding, most severe first."""
        lines: list[str] = []
        for sev in ("critical", "high", "medium", "low", "info"):
            for f in self.findings:
                if f.severity != sev:
                    continue
                where = f"{f.file_path}:{f.line}" if f.line else f.file_path
                lines.append(f"[{sev}] {f.category}: {f.message} ({where})")
        return lines
