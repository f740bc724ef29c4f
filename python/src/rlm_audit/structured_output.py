"""
Structured Output parsing for RLM security analysis.

Models are asked for JSON arrays but routinely wrap them in prose or code
fences. Everything here is a pure function of the response text:
- parse_json_array: first balanced [...] span that decodes to a list
- parse_findings / parse_modules: validate entries, fill defaults, drop the rest
- extract_repl_blocks / extract_final_answer: sandbox loop markers

Unparseable output is never an error; it yields an empty result, which callers
treat exactly like "the model reported nothing".
"""

import json
import logging
import math
import re
from typing import Any

from .common_types import Finding, Module, Severity

logger = logging.getLogger(__name__)


DEFAULT_FILE = "unknown"
DEFAULT_CATEGORY = "Cross-File Vulnerability"
DEFAULT_RULE = "RLM_GENERIC"

FINAL_ANSWER_MARKER = "FINAL_ANSWER"

REPL_BLOCK_PATTERN = re.compile(r"```repl[^\n]*\n(.*?)```", re.DOTALL)


def balanced_span(text: str, start: int, open_char: str = "[", close_char: str = "]") -> str | None:
    """Bracket span opening at text[start], skipping brackets inside JSON strings."""
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_json_array(text: str) -> list[Any] | None:
    """
    Extract the first JSON array embedded in free text.

    Each '[' is tried in order; the first balanced span that decodes to a
    list wins. Returns None when nothing decodes.
    """
    if not text:
        return None

    start = text.find("[")
    while start != -1:
        span = balanced_span(text, start)
        if span is not None:
            try:
                value = json.loads(span)
            except json.JSONDecodeError:
                value = None
            if isinstance(value, list):
                return value
        start = text.find("[", start + 1)
    return None


def as_positive_int(value: Any, default: int = 1) -> int:
    """Line-number style coercion; anything unusable (including NaN and infinities) gives `default`."""
    if isinstance(value, bool):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    if isinstance(value, (int, float)):
        return int(value) if value >= 1 else default
    if isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError:
            return default
        return number if number >= 1 else default
    return default


def _as_optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def finding_from_dict(item: dict[str, Any], default_snippet: str = "") -> Finding | None:
    """Build a Finding from one decoded object, or None when it has no message."""
    message = item.get("message")
    if not isinstance(message, str) or not message.strip():
        return None

    file_path = item.get("file")
    return Finding(
        file=file_path if isinstance(file_path, str) and file_path else DEFAULT_FILE,
        line=as_positive_int(item.get("line")),
        column=as_positive_int(item.get("column")),
        severity=Severity.parse(item.get("severity"), Severity.MEDIUM),
        category=str(item.get("category") or DEFAULT_CATEGORY),
        message=message,
        rule=str(item.get("rule") or DEFAULT_RULE),
        snippet=str(item.get("snippet") or default_snippet),
        cwe=_as_optional_str(item.get("cwe")),
        owasp=_as_optional_str(item.get("owasp")),
        fix=_as_optional_str(item.get("fix")),
    )


def parse_findings(text: str, default_snippet: str = "") -> list[Finding]:
    """Model output -> Findings. Entries that are not objects or lack a message are dropped."""
    raw = parse_json_array(text)
    if not raw:
        return []

    findings = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        finding = finding_from_dict(item, default_snippet)
        if finding is not None:
            findings.append(finding)

    dropped = len(raw) - len(findings)
    if dropped:
        logger.debug(f"[RLM] Dropped {dropped} malformed finding entries")
    return findings


def parse_modules(text: str) -> list[Module]:
    """
    Recon output -> Modules sorted by priority (1 = most critical).

    Entries without a module name or a usable priority are discarded.
    """
    raw = parse_json_array(text)
    if not raw:
        return []

    modules = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = item.get("module")
        priority = item.get("priority")
        if not isinstance(name, str) or not name.strip():
            continue
        if isinstance(priority, bool) or not isinstance(priority, (int, float, str)):
            continue
        if isinstance(priority, float) and not math.isfinite(priority):
            continue
        try:
            priority_value = int(priority)
        except (ValueError, OverflowError):
            continue
        if priority_value < 1:
            continue
        modules.append(Module(
            name=name.strip(),
            reason=str(item.get("reason") or ""),
            priority=priority_value,
        ))

    modules.sort(key=lambda m: m.priority)
    return modules


def findings_to_json(findings: list[Finding], include_snippets: bool = False) -> str:
    """Serialize findings in the shape the prompts ask models to answer with."""
    rows = []
    for f in findings:
        row = f.to_dict()
        row.pop("column", None)
        if not include_snippets:
            row.pop("snippet", None)
        rows.append(row)
    return json.dumps(rows, indent=2)


def extract_repl_blocks(text: str) -> list[str]:
    """Non-empty ```repl fenced code blocks, in order."""
    blocks = []
    for match in REPL_BLOCK_PATTERN.finditer(text or ""):
        code = match.group(1).strip()
        if code:
            blocks.append(code)
    return blocks


def extract_final_answer(text: str) -> str | None:
    """Text following the FINAL_ANSWER marker, or None if the marker is absent."""
    if not text:
        return None
    index = text.find(FINAL_ANSWER_MARKER)
    if index == -1:
        return None
    return text[index + len(FINAL_ANSWER_MARKER):]
