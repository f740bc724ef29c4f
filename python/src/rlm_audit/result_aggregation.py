"""
Result Aggregation for RLM security analysis.

Provides local (model-free) post-processing of findings:
- Exact-key and proximity-cluster deduplication
- Snippet recovery after model-assisted aggregation
- Severity filtering and ordering
- Baseline suppression of accepted findings
- Text summaries for prompts and reports
"""

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from .common_types import Finding, Severity, severity_rank
from .file_collector import normalize_path

logger = logging.getLogger(__name__)


def deduplicate_exact(findings: list[Finding]) -> list[Finding]:
    """
    Remove duplicate findings based on a (file, line, rule) key.

    First occurrence wins; order is preserved.
    """
    seen: set[tuple[str, int, str]] = set()
    unique = []

    for finding in findings:
        key = (finding.file, finding.line, finding.rule)
        if key not in seen:
            seen.add(key)
            unique.append(finding)

    return unique


def _better(candidate: Finding, current: Finding) -> bool:
    candidate_rank = severity_rank(candidate.severity)
    current_rank = severity_rank(current.severity)
    if candidate_rank != current_rank:
        return candidate_rank > current_rank
    return len(candidate.message) > len(current.message)


def deduplicate_proximity(findings: list[Finding], window: int = 3) -> list[Finding]:
    """
    Cluster findings on the same file within `window` lines of each other.

    A cluster is anchored on the line of its first member. Each cluster is
    reduced to its most severe member, the longest message breaking ties.
    Output follows cluster creation order.
    """
    clusters: list[dict[str, Any]] = []

    for finding in findings:
        file_key = normalize_path(finding.file)
        for cluster in clusters:
            if cluster["file"] == file_key and abs(cluster["line"] - finding.line) <= window:
                if _better(finding, cluster["best"]):
                    cluster["best"] = finding
                break
        else:
            clusters.append({"file": file_key, "line": finding.line, "best": finding})

    return [cluster["best"] for cluster in clusters]


def restore_snippets(aggregated: list[Finding], originals: list[Finding]) -> list[Finding]:
    """Copy the snippet of the first original with the same (file, line) onto each result."""
    snippets: dict[tuple[str, int], str] = {}
    for original in originals:
        key = (original.file, original.line)
        if original.snippet and key not in snippets:
            snippets[key] = original.snippet

    restored = []
    for finding in aggregated:
        snippet = snippets.get((finding.file, finding.line))
        restored.append(replace(finding, snippet=snippet) if snippet else finding)
    return restored


def summarize_findings(findings: list[Finding]) -> str:
    """One line per finding, "[severity] file:line — message (rule)"."""
    return "\n".join(str(f) for f in findings)


def filter_min_severity(findings: list[Finding], min_severity: str | Severity) -> list[Finding]:
    threshold = severity_rank(Severity.parse(min_severity, Severity.INFO))
    return [f for f in findings if severity_rank(f.severity) >= threshold]


def sort_by_severity(findings: list[Finding]) -> list[Finding]:
    """Most severe first; stable within a severity."""
    return sorted(findings, key=lambda f: -severity_rank(f.severity))


# =============================================================================
# Baseline suppression
# =============================================================================

@dataclass(frozen=True)
class BaselineEntry:
    """A previously accepted finding."""
    file: str
    line: int
    rule: str


def load_baseline(path: str | Path) -> list[BaselineEntry]:
    """
    Load a baseline JSON array of {file, line, rule} objects.

    A missing or unreadable baseline means "suppress nothing".
    """
    baseline_file = Path(path)
    if not baseline_file.exists():
        return []

    try:
        raw = json.loads(baseline_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"[RLM] Ignoring unreadable baseline {baseline_file}: {e}")
        return []

    if not isinstance(raw, list):
        logger.warning(f"[RLM] Ignoring baseline {baseline_file}: expected a JSON array")
        return []

    entries = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            entries.append(BaselineEntry(
                file=normalize_path(str(item["file"])),
                line=int(item["line"]),
                rule=str(item["rule"]),
            ))
        except (KeyError, TypeError, ValueError):
            continue
    return entries


def is_in_baseline(
    baseline: list[BaselineEntry],
    finding: Finding,
    window: int = 3,
) -> bool:
    file_key = normalize_path(finding.file)
    return any(
        entry.file == file_key and entry.rule == finding.rule and abs(entry.line - finding.line) <= window
        for entry in baseline
    )


def apply_baseline(
    findings: list[Finding],
    baseline: list[BaselineEntry],
    window: int = 3,
) -> list[Finding]:
    if not baseline:
        return findings
    kept = [f for f in findings if not is_in_baseline(baseline, f, window)]
    suppressed = len(findings) - len(kept)
    if suppressed:
        logger.info(f"[RLM] Baseline suppressed {suppressed} findings")
    return kept


def format_findings_markdown(findings: list[Finding], title: str = "Findings") -> str:
    """
    Format findings list as markdown, grouped by severity.

    Args:
        findings: List of Finding objects
        title: Section title

    Returns:
        Markdown formatted string
    """
    if not findings:
        return f"## {title}\n\nNo findings."

    lines = [f"## {title}", f"**Count:** {len(findings)}", ""]

    for severity in Severity:
        group = [f for f in findings if f.severity == severity]
        if not group:
            continue
        lines.append(f"### {severity.value.upper()} ({len(group)})")
        lines.append("")
        for finding in group:
            lines.append(f"- **{finding.file}:{finding.line}** `{finding.rule}` {finding.message}")
            if finding.fix:
                lines.append(f"  - Fix: {finding.fix}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
