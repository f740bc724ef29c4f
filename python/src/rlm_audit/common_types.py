"""
Common types for RLM security analysis.

Contains:
- Enums: Severity
- Dataclasses: SourceFile, Module, Finding, AnalysisResult
- Severity ranking helpers
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @classmethod
    def parse(cls, value: Any, default: "Severity | None" = None) -> "Severity":
        """Lenient conversion of model output ("HIGH", " high ") to a Severity."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return default if default is not None else cls.MEDIUM


# Higher is more severe. Used for clustering and cross-module excerpt selection.
SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


def severity_rank(severity: Severity | str) -> int:
    return SEVERITY_RANK.get(Severity.parse(severity, Severity.INFO), 0)


@dataclass(frozen=True)
class SourceFile:
    """An indexed source file. Immutable once indexed."""

    path: str  # relative to the analysis root, forward slashes
    content: str
    lines: tuple[str, ...]
    size: int

    @classmethod
    def from_content(cls, path: str, content: str) -> "SourceFile":
        return cls(
            path=path,
            content=content,
            lines=tuple(content.split("\n")),
            size=len(content),
        )


@dataclass
class Module:
    """A security-critical subtree ranked by the recon phase (1 = most critical)."""

    name: str
    reason: str
    priority: int


@dataclass
class Finding:
    """A single reported issue."""

    file: str
    line: int
    column: int
    severity: Severity
    category: str
    message: str
    rule: str
    snippet: str = ""
    cwe: str | None = None
    owasp: str | None = None
    fix: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "severity": self.severity.value,
            "category": self.category,
            "message": self.message,
            "rule": self.rule,
            "snippet": self.snippet,
        }
        for key in ("cwe", "owasp", "fix"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.file}:{self.line} — {self.message} ({self.rule})"


@dataclass
class AnalysisResult:
    """Findings plus run metadata for one analyze() call."""

    findings: list[Finding] = field(default_factory=list)
    llm_calls: int = 0
    chunks_analyzed: int = 0
    modules_identified: list[str] = field(default_factory=list)
    iterations: int = 0
    files_indexed: int = 0
    tokens_indexed: int = 0
    strategies: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def by_severity(self) -> dict[str, list[Finding]]:
        result: dict[str, list[Finding]] = {}
        for f in self.findings:
            result.setdefault(f.severity.value, []).append(f)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "llm_calls": self.llm_calls,
            "chunks_analyzed": self.chunks_analyzed,
            "modules_identified": list(self.modules_identified),
            "iterations": self.iterations,
            "files_indexed": self.files_indexed,
            "tokens_indexed": self.tokens_indexed,
            "strategies": list(self.strategies),
            "errors": list(self.errors),
        }
