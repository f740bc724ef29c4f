"""
Tests for the shared agent action vocabulary and its two adapters.
"""

import pytest

from rlm_audit.agent_actions import (
    AGENT_TOOLS,
    DoneAction,
    InvalidAction,
    ListAction,
    ReadAction,
    ReportAction,
    RunCommandAction,
    SearchAction,
    WriteFileAction,
    action_from_tool_call,
    parse_text_action,
)
from rlm_audit.common_types import Severity
from rlm_audit.llm_client import ToolCall


class TestParseTextAction:
    @pytest.mark.parametrize("response, expected", [
        ("READ src/app.py", ReadAction("src/app.py")),
        ("I'll start with the router.\nREAD `src/routes.js`", ReadAction("src/routes.js")),
        ('READ "src/a b.py"', ReadAction("src/a")),
        ("SEARCH password ==", SearchAction("password ==")),
        ("Nothing left to check. DONE", DoneAction()),
    ])
    def test_actions(self, response, expected):
        assert parse_text_action(response) == expected

    def test_finding(self):
        response = (
            "Confirmed.\nFINDING\n"
            '{"file": "src/db.py", "line": 12, "severity": "critical", "category": "SQLi", '
            '"message": "concatenated query [user input]", "rule": "AGENT_SQLI"}\n'
        )

        action = parse_text_action(response)

        assert isinstance(action, ReportAction)
        assert action.finding.file == "src/db.py"
        assert action.finding.line == 12
        assert action.finding.severity == Severity.CRITICAL
        assert action.finding.message == "concatenated query [user input]"

    def test_finding_defaults(self):
        action = parse_text_action('FINDING {"file": "a.py", "message": "m"}')

        assert action.finding.severity == Severity.HIGH
        assert action.finding.category == "Agent Analysis"
        assert action.finding.rule == "AGENT_GENERIC"
        assert action.finding.line == 1

    def test_finding_keeps_reference_fields(self):
        action = parse_text_action(
            'FINDING {"file": "a.py", "line": true, "message": "m", '
            '"cwe": "CWE-89", "owasp": "A03:2021", "fix": "use bound parameters"}'
        )

        assert action.finding.cwe == "CWE-89"
        assert action.finding.owasp == "A03:2021"
        assert action.finding.fix == "use bound parameters"
        assert action.finding.line == 1

    def test_finding_takes_precedence_over_read(self):
        action = parse_text_action('READ a.py first? No: FINDING {"file": "a.py", "message": "m"}')
        assert isinstance(action, ReportAction)

    @pytest.mark.parametrize("response", [
        "FINDING {not json}",
        'FINDING {"file": "a.py"}',
        'FINDING {"file": 3, "message": "m"}',
        'FINDING {"message": "m"}',
        "FINDING but no object",
    ])
    def test_bad_finding_is_error(self, response):
        action = parse_text_action(response)
        assert isinstance(action, InvalidAction)
        assert action.error.startswith("Error:")

    def test_unparseable(self):
        action = parse_text_action("Let me think about this codebase.")
        assert isinstance(action, InvalidAction)
        assert action.error.startswith("I couldn't parse your action.")


class TestToolCallAdapter:
    def test_tool_schema_names(self):
        names = [tool["function"]["name"] for tool in AGENT_TOOLS]
        assert names == ["read_file", "search", "list_files", "report_finding", "run_command", "write_file", "done"]

    @pytest.mark.parametrize("call, expected", [
        (ToolCall("1", "read_file", {"path": "a.py"}), ReadAction("a.py")),
        (ToolCall("2", "search", {"pattern": "eval("}), SearchAction("eval(")),
        (ToolCall("3", "list_files", {}), ListAction(None)),
        (ToolCall("4", "list_files", {"directory": "src"}), ListAction("src")),
        (ToolCall("5", "run_command", {"command": "rg -n token"}), RunCommandAction("rg -n token")),
        (ToolCall("6", "write_file", {"path": "poc.py", "content": "x"}), WriteFileAction("poc.py", "x")),
        (ToolCall("7", "done", {}), DoneAction()),
    ])
    def test_dispatch(self, call, expected):
        assert action_from_tool_call(call) == expected

    def test_report_finding(self):
        action = action_from_tool_call(ToolCall("1", "report_finding", {
            "file": "contracts/Vault.sol",
            "line": 88.0,
            "severity": "critical",
            "title": "Reentrancy in withdraw",
            "description": "external call before balance update",
        }))

        assert isinstance(action, ReportAction)
        assert action.finding.line == 88
        assert action.finding.category == "Reentrancy in withdraw"
        assert action.finding.rule == "AGENT_V2"
        assert action.finding.severity == Severity.CRITICAL

    @pytest.mark.parametrize("line", [float("inf"), float("-inf"), float("nan"), 0, "88"])
    def test_report_finding_line_coercion(self, line):
        action = action_from_tool_call(ToolCall("1", "report_finding", {
            "file": "contracts/Vault.sol",
            "line": line,
            "description": "external call before balance update",
        }))

        assert isinstance(action, ReportAction)
        assert action.finding.line == (88 if line == "88" else 1)

    @pytest.mark.parametrize("call, message", [
        (ToolCall("1", "read_file", {}), "Error: read_file requires a path."),
        (ToolCall("2", "report_finding", {"file": "a.py"}), "Error: report_finding requires file and description."),
        (ToolCall("3", "summon_demon", {}), "Error: Unknown tool: summon_demon"),
    ])
    def test_invalid(self, call, message):
        assert action_from_tool_call(call) == InvalidAction(message)
