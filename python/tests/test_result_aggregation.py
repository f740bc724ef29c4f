"""
Tests for local deduplication, snippet recovery, filtering and baselines.
"""

import json
from pathlib import Path

from rlm_audit.common_types import Severity
from rlm_audit.result_aggregation import (
    BaselineEntry,
    apply_baseline,
    deduplicate_exact,
    deduplicate_proximity,
    filter_min_severity,
    format_findings_markdown,
    load_baseline,
    restore_snippets,
    sort_by_severity,
    summarize_findings,
)


class TestExactDedup:
    def test_key_is_file_line_rule(self, finding_factory):
        findings = [
            finding_factory("f", 1, "R"),
            finding_factory("f", 1, "R", message="second copy"),
            finding_factory("f", 2, "R"),
        ]

        unique = deduplicate_exact(findings)

        assert len(unique) == 2
        assert unique[0].message == "issue"

    def test_different_rule_kept(self, finding_factory):
        assert len(deduplicate_exact([finding_factory("f", 1, "A"), finding_factory("f", 1, "B")])) == 2


class TestProximityDedup:
    def test_nearby_lines_merge(self, finding_factory):
        merged = deduplicate_proximity([finding_factory("f", 10), finding_factory("./f", 12)])
        assert len(merged) == 1

    def test_distant_lines_do_not_merge(self, finding_factory):
        assert len(deduplicate_proximity([finding_factory("f", 10), finding_factory("f", 20)])) == 2

    def test_different_files_do_not_merge(self, finding_factory):
        assert len(deduplicate_proximity([finding_factory("a", 10), finding_factory("b", 10)])) == 2

    def test_representative_highest_severity_then_longest(self, finding_factory):
        findings = [
            finding_factory("f", 10, severity=Severity.MEDIUM, message="a much longer medium message"),
            finding_factory("f", 11, severity=Severity.CRITICAL, message="short"),
            finding_factory("f", 12, severity=Severity.CRITICAL, message="longer critical"),
        ]

        [best] = deduplicate_proximity(findings)

        assert best.severity == Severity.CRITICAL
        assert best.message == "longer critical"

    def test_cluster_anchored_on_first_member(self, finding_factory):
        findings = [finding_factory("f", 10), finding_factory("f", 13), finding_factory("f", 16)]

        merged = deduplicate_proximity(findings)

        # 16 is 6 lines from the anchor at 10
        assert len(merged) == 2

    def test_custom_window(self, finding_factory):
        assert len(deduplicate_proximity([finding_factory("f", 10), finding_factory("f", 12)], window=1)) == 2


class TestSnippetsAndOrdering:
    def test_restore_snippets(self, finding_factory):
        originals = [finding_factory("f", 3, snippet="Module: auth"), finding_factory("g", 4)]
        aggregated = [finding_factory("f", 3, message="merged"), finding_factory("g", 4)]

        restored = restore_snippets(aggregated, originals)

        assert restored[0].snippet == "Module: auth"
        assert restored[0].message == "merged"
        assert restored[1].snippet == ""
        assert aggregated[0].snippet == ""

    def test_sort_is_stable(self, finding_factory):
        findings = [
            finding_factory("a", severity=Severity.LOW),
            finding_factory("b", severity=Severity.HIGH),
            finding_factory("c", severity=Severity.LOW),
            finding_factory("d", severity=Severity.CRITICAL),
        ]

        assert [f.file for f in sort_by_severity(findings)] == ["d", "b", "a", "c"]

    def test_filter_min_severity(self, finding_factory):
        findings = [finding_factory(severity=s) for s in Severity]

        kept = filter_min_severity(findings, "high")

        assert {f.severity for f in kept} == {Severity.CRITICAL, Severity.HIGH}

    def test_summarize_findings(self, finding_factory):
        text = summarize_findings([finding_factory("src/a.py", 7, "RLM_X", message="bad")])
        assert text == "[high] src/a.py:7 — bad (RLM_X)"

    def test_markdown(self, finding_factory):
        text = format_findings_markdown([finding_factory("a.py", 2, severity=Severity.CRITICAL)], "Report")
        assert text.startswith("## Report")
        assert "### CRITICAL (1)" in text
        assert format_findings_markdown([], "Empty") == "## Empty\n\nNo findings."


class TestBaseline:
    def test_load_and_apply(self, temp_dir: Path, finding_factory):
        baseline_file = temp_dir / "baseline.json"
        baseline_file.write_text(json.dumps([
            {"file": "./src/a.py", "line": 10, "rule": "R"},
            {"file": "src/b.py"},
        ]))

        baseline = load_baseline(baseline_file)

        assert baseline == [BaselineEntry("src/a.py", 10, "R")]
        kept = apply_baseline(
            [
                finding_factory("src/a.py", 12, "R"),
                finding_factory("src/a.py", 12, "OTHER"),
                finding_factory("src/a.py", 30, "R"),
            ],
            baseline,
        )
        assert [(f.line, f.rule) for f in kept] == [(12, "OTHER"), (30, "R")]

    def test_missing_baseline_suppresses_nothing(self, temp_dir: Path):
        assert load_baseline(temp_dir / "nope.json") == []

    def test_corrupt_baseline_suppresses_nothing(self, temp_dir: Path):
        path = temp_dir / "bad.json"
        path.write_text("{not json")
        assert load_baseline(path) == []
