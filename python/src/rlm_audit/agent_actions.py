"""
Agent actions shared by both agent loop variants.

One action vocabulary {Read, Search, List, Report, RunCommand, WriteFile, Done}
with two adapters:
- parse_text_action: free-text responses (READ <path>, SEARCH <pattern>,
  FINDING {json}, DONE)
- action_from_tool_call: structured tool calls dispatched by name

Anything malformed becomes an InvalidAction carrying the error message that
is fed back to the model.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from .common_types import Finding, Severity
from .llm_client import ToolCall
from .structured_output import as_positive_int, balanced_span


class AgentAction:
    """Base class for one agent step."""
    name = "action"

    def describe(self) -> str:
        return self.name


@dataclass
class ReadAction(AgentAction):
    path: str
    name = "read"

    def describe(self) -> str:
        return f"read {self.path}"


@dataclass
class SearchAction(AgentAction):
    pattern: str
    name = "search"

    def describe(self) -> str:
        return f'search "{self.pattern}"'


@dataclass
class ListAction(AgentAction):
    directory: str | None = None
    name = "list"

    def describe(self) -> str:
        return f"list {self.directory or '.'}"


@dataclass
class ReportAction(AgentAction):
    finding: Finding
    name = "report"

    def describe(self) -> str:
        return f"report {self.finding.file}:{self.finding.line}"


@dataclass
class RunCommandAction(AgentAction):
    command: str
    name = "run_command"

    def describe(self) -> str:
        return f"run {self.command[:80]}"


@dataclass
class WriteFileAction(AgentAction):
    path: str
    content: str
    name = "write_file"

    def describe(self) -> str:
        return f"write {self.path} ({len(self.content)} chars)"


@dataclass
class DoneAction(AgentAction):
    name = "done"


@dataclass
class InvalidAction(AgentAction):
    error: str
    name = "invalid"

    def describe(self) -> str:
        return f"invalid ({self.error[:60]})"


# =============================================================================
# Textual adapter
# =============================================================================

TEXT_ACTIONS_HELP = "READ <path>, SEARCH <pattern>, FINDING {...}, or DONE"

_FINDING_MARKER = re.compile(r"\bFINDING\b")
_READ_PATTERN = re.compile(r"\bREAD\s+(\S+)")
_SEARCH_PATTERN = re.compile(r"\bSEARCH\s+(.+)")
_DONE_PATTERN = re.compile(r"\bDONE\b")


def _clean_path(raw: str) -> str:
    return raw.strip().strip("`'\"")


def _text_finding(data: dict[str, Any]) -> Finding:
    return Finding(
        file=data["file"],
        line=as_positive_int(data.get("line")),
        column=1,
        severity=Severity.parse(data.get("severity"), Severity.HIGH),
        category=str(data.get("category") or "Agent Analysis"),
        message=data["message"],
        rule=str(data.get("rule") or "AGENT_GENERIC"),
        cwe=data.get("cwe") if isinstance(data.get("cwe"), str) else None,
        owasp=data.get("owasp") if isinstance(data.get("owasp"), str) else None,
        fix=data.get("fix") if isinstance(data.get("fix"), str) else None,
    )


def _parse_finding_block(response: str, marker_end: int) -> AgentAction:
    brace = response.find("{", marker_end)
    if brace == -1:
        return InvalidAction("Error: FINDING must be followed by a JSON object.")

    span = balanced_span(response, brace, "{", "}")
    try:
        data = json.loads(span) if span else None
    except json.JSONDecodeError as e:
        return InvalidAction(f"Error: Could not parse finding JSON ({e.msg}). Use the exact JSON format specified.")

    if not isinstance(data, dict):
        return InvalidAction("Error: Could not parse finding. Use the exact JSON format specified.")
    if not isinstance(data.get("file"), str) or not data["file"]:
        return InvalidAction('Error: Finding is missing a string "file" field.')
    if not isinstance(data.get("message"), str) or not data["message"].strip():
        return InvalidAction('Error: Finding is missing a string "message" field.')
    return ReportAction(_text_finding(data))


def parse_text_action(response: str) -> AgentAction:
    """
    Parse one action out of a free-text model response.

    Checked in order FINDING, READ, SEARCH, DONE; the first present wins.
    """
    finding_match = _FINDING_MARKER.search(response)
    if finding_match and response.find("{", finding_match.end()) != -1:
        return _parse_finding_block(response, finding_match.end())

    read_match = _READ_PATTERN.search(response)
    if read_match:
        path = _clean_path(read_match.group(1))
        if not path:
            return InvalidAction("Error: No file path specified. Use: READ path/to/file")
        return ReadAction(path)

    search_match = _SEARCH_PATTERN.search(response)
    if search_match:
        pattern = search_match.group(1).strip()
        if not pattern:
            return InvalidAction("Error: No search pattern specified. Use: SEARCH pattern")
        return SearchAction(pattern)

    if _DONE_PATTERN.search(response):
        return DoneAction()

    if finding_match:
        return InvalidAction("Error: FINDING must be followed by a JSON object.")

    return InvalidAction(f"I couldn't parse your action. Please use one of: {TEXT_ACTIONS_HELP}.")


# =============================================================================
# Tool-call adapter
# =============================================================================

def _function_tool(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


AGENT_TOOLS: list[dict[str, Any]] = [
    _function_tool(
        "read_file",
        "Read a source file with line numbers.",
        {"path": {"type": "string", "description": "Relative file path from project root"}},
        ["path"],
    ),
    _function_tool(
        "search",
        "Search for a text pattern across all source files. Returns matching lines with "
        "file:line prefix. Use to find function calls, variable usage, access patterns.",
        {"pattern": {"type": "string", "description": "Literal text to search for"}},
        ["pattern"],
    ),
    _function_tool(
        "list_files",
        "List all source files in a directory (recursive). Shows file sizes.",
        {"directory": {"type": "string", "description": "Subdirectory to list (default: project root)"}},
        [],
    ),
    _function_tool(
        "report_finding",
        "Report a confirmed vulnerability you are confident about.",
        {
            "file": {"type": "string", "description": "Relative file path"},
            "line": {"type": "integer", "description": "Line number"},
            "severity": {"type": "string", "enum": ["critical", "high", "medium", "low"]},
            "title": {"type": "string", "description": 'Short title (e.g. "Missing access control on withdraw")'},
            "description": {"type": "string", "description": "Root cause, exploit scenario, and impact"},
        },
        ["file", "line", "severity", "title", "description"],
    ),
    _function_tool(
        "run_command",
        "Execute a shell command in the project directory (grep/rg, find, wc, build or "
        "test tools). Timeout: 30s.",
        {"command": {"type": "string", "description": 'Shell command, e.g. "rg -n transferFrom"'}},
        ["command"],
    ),
    _function_tool(
        "write_file",
        "Write content to a file in the project, e.g. a PoC test or analysis script.",
        {
            "path": {"type": "string", "description": "Relative file path to write"},
            "content": {"type": "string", "description": "File content"},
        },
        ["path", "content"],
    ),
    _function_tool(
        "done",
        "Finish the audit. Call this when you have thoroughly examined the codebase.",
        {},
        [],
    ),
]


def _string_arg(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    return value if isinstance(value, str) else ""


def action_from_tool_call(call: ToolCall) -> AgentAction:
    """Map a structured tool call onto the shared action vocabulary."""
    args = call.arguments or {}

    if call.name == "read_file":
        path = _string_arg(args, "path")
        return ReadAction(path) if path else InvalidAction("Error: read_file requires a path.")

    if call.name == "search":
        pattern = _string_arg(args, "pattern")
        return SearchAction(pattern) if pattern else InvalidAction("Error: search requires a pattern.")

    if call.name == "list_files":
        return ListAction(_string_arg(args, "directory") or None)

    if call.name == "report_finding":
        file_path = _string_arg(args, "file")
        description = _string_arg(args, "description")
        if not file_path or not description:
            return InvalidAction("Error: report_finding requires file and description.")
        return ReportAction(Finding(
            file=file_path,
            line=as_positive_int(args.get("line")),
            column=1,
            severity=Severity.parse(args.get("severity"), Severity.HIGH),
            category=_string_arg(args, "title") or "Agent Finding",
            message=description,
            rule="AGENT_V2",
        ))

    if call.name == "run_command":
        command = _string_arg(args, "command")
        return RunCommandAction(command) if command else InvalidAction("Error: run_command requires a command.")

    if call.name == "write_file":
        path = _string_arg(args, "path")
        if not path:
            return InvalidAction("Error: write_file requires a path.")
        return WriteFileAction(path, _string_arg(args, "content"))

    if call.name == "done":
        return DoneAction()

    return InvalidAction(f"Error: Unknown tool: {call.name}")
