"""
Tests for model output parsing.

Table-driven over the malformed shapes models actually produce: prose around
the array, code fences, brackets inside strings, missing fields.
"""

import json

import pytest

from rlm_audit.common_types import Severity
from rlm_audit.structured_output import (
    DEFAULT_CATEGORY,
    DEFAULT_FILE,
    DEFAULT_RULE,
    balanced_span,
    extract_final_answer,
    extract_repl_blocks,
    findings_to_json,
    parse_findings,
    parse_json_array,
    parse_modules,
)


class TestParseJsonArray:
    @pytest.mark.parametrize("text, expected", [
        ("[1, 2]", [1, 2]),
        ("Here you go:\n```json\n[{\"a\": 1}]\n```", [{"a": 1}]),
        ('[{"message": "uses a[0] and ]"}]', [{"message": "uses a[0] and ]"}]),
        ("see [note] then [1]", [1]),
        ("[]", []),
    ])
    def test_extracts(self, text, expected):
        assert parse_json_array(text) == expected

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2", "{\"a\": 1}", "[not json]"])
    def test_returns_none(self, text):
        assert parse_json_array(text) is None

    def test_balanced_span_handles_escaped_quotes(self):
        text = '["a \\" ]", 1] trailing'
        assert balanced_span(text, 0) == '["a \\" ]", 1]'


class TestParseFindings:
    def test_full_entry(self):
        text = json.dumps([{
            "file": "src/db.py", "line": 12, "column": 4, "severity": "HIGH",
            "category": "Injection", "message": "SQL injection", "rule": "RLM_SQLI",
            "cwe": "CWE-89", "fix": "use parameters",
        }])

        [finding] = parse_findings(text)

        assert finding.file == "src/db.py"
        assert finding.line == 12
        assert finding.column == 4
        assert finding.severity == Severity.HIGH
        assert finding.cwe == "CWE-89"
        assert finding.fix == "use parameters"
        assert finding.owasp is None

    def test_defaults(self):
        [finding] = parse_findings('[{"message": "something"}]', default_snippet="Module: auth")

        assert finding.file == DEFAULT_FILE
        assert (finding.line, finding.column) == (1, 1)
        assert finding.severity == Severity.MEDIUM
        assert finding.category == DEFAULT_CATEGORY
        assert finding.rule == DEFAULT_RULE
        assert finding.snippet == "Module: auth"

    @pytest.mark.parametrize("entry", [
        {"file": "a.py"},
        {"file": "a.py", "message": ""},
        {"file": "a.py", "message": 42},
        "just a string",
        7,
    ])
    def test_invalid_entries_dropped(self, entry):
        text = json.dumps([entry, {"message": "kept"}])
        assert [f.message for f in parse_findings(text)] == ["kept"]

    @pytest.mark.parametrize("line", [0, -3, "abc", None, True])
    def test_bad_line_defaults_to_one(self, line):
        [finding] = parse_findings(json.dumps([{"message": "m", "line": line}]))
        assert finding.line == 1

    @pytest.mark.parametrize("literal", ["1e999", "Infinity", "-Infinity", "NaN"])
    def test_non_finite_line_defaults_to_one(self, literal):
        text = f'[{{"message": "m", "line": {literal}, "column": {literal}}}, {{"message": "next", "line": 4}}]'

        first, second = parse_findings(text)

        assert (first.line, first.column) == (1, 1)
        assert second.line == 4

    def test_unknown_severity_defaults_to_medium(self):
        [finding] = parse_findings('[{"message": "m", "severity": "catastrophic"}]')
        assert finding.severity == Severity.MEDIUM

    def test_unparseable_is_empty(self):
        assert parse_findings("I found nothing worth reporting.") == []

    def test_reparse_of_own_serialization(self):
        text = json.dumps([
            {"file": "a.py", "line": 3, "severity": "critical", "category": "Auth",
             "message": "missing check", "rule": "RLM_AUTH"},
            {"file": "b.py", "line": 9, "severity": "low", "category": "Info",
             "message": "verbose error", "rule": "RLM_ERR"},
        ])
        first = parse_findings(text)

        again = parse_findings(findings_to_json(first))

        assert [(f.file, f.line, f.severity, f.category, f.message, f.rule) for f in again] == \
            [(f.file, f.line, f.severity, f.category, f.message, f.rule) for f in first]


class TestParseModules:
    def test_sorted_by_priority(self):
        text = json.dumps([
            {"module": "src/db", "reason": "queries", "priority": 3},
            {"module": "src/auth", "reason": "login", "priority": 1},
            {"module": "src/api", "reason": "routes", "priority": "2"},
        ])

        modules = parse_modules(text)

        assert [m.name for m in modules] == ["src/auth", "src/api", "src/db"]
        assert modules[0].reason == "login"

    @pytest.mark.parametrize("entry", [
        {"reason": "no name", "priority": 1},
        {"module": "src/x", "reason": "no priority"},
        {"module": "src/x", "priority": "high"},
        {"module": "src/x", "priority": 0},
        {"module": "  ", "priority": 1},
    ])
    def test_invalid_entries_discarded(self, entry):
        assert parse_modules(json.dumps([entry])) == []

    @pytest.mark.parametrize("literal", ["1e999", "Infinity", "-Infinity", "NaN"])
    def test_non_finite_priority_discarded(self, literal):
        text = f'[{{"module": "src/x", "reason": "r", "priority": {literal}}}, {{"module": "src/y", "priority": 2}}]'
        assert [m.name for m in parse_modules(text)] == ["src/y"]

    def test_empty_array(self):
        assert parse_modules("[]") == []


class TestReplMarkers:
    def test_extract_repl_blocks(self):
        text = (
            "Let me look.\n```repl\nprint(1)\n```\nand\n```repl\n\n```\n"
            "```python\nignored()\n```\n```repl\nprint(2)\n```"
        )
        assert extract_repl_blocks(text) == ["print(1)", "print(2)"]

    def test_final_answer(self):
        assert extract_final_answer('done\nFINAL_ANSWER\n[{"message": "x"}]') == '\n[{"message": "x"}]'
        assert extract_final_answer("still working") is None
