"""ScanPolicy — configurable patterns for the security stage."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ScanPolicy(BaseModel):
    """What the source scanner looks at and what it looks for."""

    scan_extensions: list[str] = Field(
        default_factory=lambda: [
            ".py", ".js", ".mjs", ".ts", ".json", ".toml", ".yml", ".yaml", ".env", ".html",
        ],
    )
    skip_dirs: list[str] = Field(
        default_factory=lambda: [
            ".git", "__pycache__", "node_modules", ".shipyard", ".venv", "venv", "tests",
        ],
    )
    max_file_bytes: int = 1_000_000
    fail_on: list[str] = Field(default_factory=lambda: ["critical", "high"])
    secret_regex_patterns: list[str] = Field(
        default_factory=lambda: [
            r"(?i)(aws[_\-]?access[_\-]?key[_\-]?id)\s*[:=]\s*['\"]?[A-Z0-9]{20}",
            r"(?i)(aws[_\-]?secret[_\-]?access[_\-]?key)\s*[:=]\s*['\"]?[A-Za-z0-9/+=]{40}",
            r"(?i)(slack[_\-]?token|slack[_\-]?webhook)\s*[:=]\s*['\"]?xox[bpors]-[A-Za-z0-9\-]+",
            r"(?i)(api[_\-]?key|apikey)\s*[:=]\s*['\"][A-Za-z0-9_\-]{20,}",
            r"(?i)(password|passwd|pwd)\s*[:=]\s*['\"][^\s'\"]{8,}['\"]",
            r"(?i)(secret|token)\s*[:=]\s*['\"][A-Za-z0-9_\-]{16,}['\"]",
            r"ghp_[A-Za-z0-9]{36}",
            r"sk-[A-Za-z0-9]{32,}",
            r"-----BEGIN (RSA |EC |OPENSSH )?PRIVATE KEY-----",
        ],
    )
    unsafe_eval_patterns: dict[str, str] = Field(
        default_factory=lambda: {
            r"(?<![\w.])eval\s*\(": "eval call",
            r"(?<![\w.])exec\s*\(": "exec call",
            r"\bnew\s+Function\s*\(": "Function constructor",
            r"\bsetTimeout\s*\(\s*['\"]": "setTimeout with string body",
            r"\bpickle\.loads?\s*\(": "pickle deserialisation",
            r"\bos\.system\s*\(": "os.system shell call",
            r"shell\s*=\s*True": "subprocess in shell mode",
        },
    )
