"""Source scanning for the security stage."""

from shipyard.security.policies import ScanPolicy
from shipyard.security.report import Finding, ScanReport
from shipyard.security.scanner import SourceScanner

__all__ = [
    "Finding",
    "ScanPolicy",
    "ScanReport",
    "SourceScanner",
]
