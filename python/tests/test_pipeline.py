"""
Tests for the recursive multi-phase pipeline (RLMPipeline).
"""

import json

import pytest

from rlm_audit.common_types import Module, Severity, SourceFile
from rlm_audit.progress_callbacks import CollectingProgressCallback, ProgressEventType, ProgressTracker
from rlm_audit.rlm_processor import RLMPipeline


RECON = RLMPipeline.RECON_PROMPT
FOCUSED = RLMPipeline.FOCUSED_ANALYSIS_PROMPT
CROSS = RLMPipeline.CROSS_MODULE_PROMPT
AGGREGATE = RLMPipeline.AGGREGATION_PROMPT


def _findings(*entries) -> str:
    return json.dumps([
        {"file": f, "line": line, "severity": sev, "category": "Test", "message": msg, "rule": rule}
        for f, line, sev, msg, rule in entries
    ])


def by_phase(responses: dict[str, object]):
    """Script that answers each call according to its system prompt."""
    def script(system_prompt, messages, tools):
        value = responses.get(system_prompt, "")
        return value(messages[-1]["content"]) if callable(value) else value
    return script


class TestPipelineScenarios:
    @pytest.mark.asyncio
    async def test_empty_recon_stops_after_one_call(self, scripted_client, make_executor, corpus, audit_config):
        client = scripted_client(by_phase({RECON: "[]"}))
        executor = make_executor(client)

        result = await RLMPipeline(executor, audit_config).analyze(corpus)

        assert result.findings == []
        assert result.modules_identified == []
        assert executor.call_count == 1
        assert len(client.calls) == 1
        assert client.calls[0]["system_prompt"] == RECON

    @pytest.mark.asyncio
    async def test_unparseable_recon_is_empty(self, scripted_client, make_executor, corpus, audit_config):
        client = scripted_client(by_phase({RECON: "I could not determine any modules."}))

        result = await RLMPipeline(make_executor(client), audit_config).analyze(corpus)

        assert result.findings == []
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_corpus_makes_no_calls(self, scripted_client, make_executor, audit_config):
        client = scripted_client()

        result = await RLMPipeline(make_executor(client), audit_config).analyze([])

        assert result.findings == []
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_full_run(self, scripted_client, make_executor, corpus, audit_config):
        recon = json.dumps([
            {"module": "src/db", "reason": "raw SQL", "priority": 2},
            {"module": "src/auth", "reason": "login flow", "priority": 1},
        ])

        def focused(prompt):
            if 'module "src/auth"' in prompt:
                return _findings(("src/auth/login.py", 1, "high", "weak hash", "RLM_HASH"))
            return _findings(("src/db/queries.py", 2, "critical", "sql injection", "RLM_SQLI"))

        cross = _findings(("src/auth/login.py", 1, "high", "auth uses injectable query", "RLM_CROSS_1"))
        client = scripted_client(by_phase({RECON: recon, FOCUSED: focused, CROSS: cross}))
        executor = make_executor(client)

        result = await RLMPipeline(executor, audit_config).analyze(corpus)

        assert result.modules_identified == ["src/auth", "src/db"]
        assert result.chunks_analyzed == 2
        assert result.iterations == 4
        # 3 findings <= local threshold: no aggregation call
        assert [c["system_prompt"] for c in client.calls].count(AGGREGATE) == 0
        assert executor.call_count == 4
        assert result.llm_calls == 4
        assert {f.rule for f in result.findings} == {"RLM_HASH", "RLM_SQLI", "RLM_CROSS_1"}
        snippets = {f.rule: f.snippet for f in result.findings}
        assert snippets["RLM_HASH"] == "Module: src/auth"
        assert snippets["RLM_SQLI"] == "Module: src/db"
        assert snippets["RLM_CROSS_1"] == "Module: src/auth"

    @pytest.mark.asyncio
    async def test_focused_prompt_has_reason_and_numbered_content(
        self, scripted_client, make_executor, corpus, audit_config
    ):
        recon = json.dumps([{"module": "src/auth", "reason": "login flow", "priority": 1}])
        client = scripted_client(by_phase({RECON: recon, FOCUSED: "[]"}))

        await RLMPipeline(make_executor(client), audit_config).analyze(corpus)

        focused_prompt = client.prompts[1]
        assert "(login flow)" in focused_prompt
        assert "=== FILE: src/auth/login.py ===" in focused_prompt
        assert "1: def login():" in focused_prompt

    @pytest.mark.asyncio
    async def test_single_module_skips_cross_module(self, scripted_client, make_executor, corpus, audit_config):
        recon = json.dumps([{"module": "src/db", "reason": "sql", "priority": 1}])
        focused = _findings(("src/db/queries.py", 2, "critical", "sql injection", "RLM_SQLI"))
        client = scripted_client(by_phase({RECON: recon, FOCUSED: focused}))

        result = await RLMPipeline(make_executor(client), audit_config).analyze(corpus)

        assert CROSS not in [c["system_prompt"] for c in client.calls]
        assert len(result.findings) == 1
        assert result.iterations == 3

    @pytest.mark.asyncio
    async def test_budget_exhausted_after_recon(self, scripted_client, make_executor, corpus, audit_config):
        recon = json.dumps([{"module": "src/db", "reason": "sql", "priority": 1}])
        client = scripted_client(by_phase({RECON: recon}))
        executor = make_executor(client, max_iterations=1)

        result = await RLMPipeline(executor, audit_config).analyze(corpus)

        assert result.findings == []
        assert result.modules_identified == ["src/db"]
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_calls_degrade_to_empty(self, scripted_client, make_executor, corpus, audit_config):
        recon = json.dumps([{"module": "src/db", "reason": "sql", "priority": 1}])

        def script(system_prompt, messages, tools):
            if system_prompt == RECON:
                return recon
            return ConnectionError("network down")

        result = await RLMPipeline(make_executor(scripted_client(script)), audit_config).analyze(corpus)

        assert result.findings == []
        assert result.modules_identified == ["src/db"]

    @pytest.mark.asyncio
    async def test_progress_events(self, scripted_client, make_executor, corpus, audit_config):
        callback = CollectingProgressCallback()
        client = scripted_client(by_phase({RECON: "[]"}))

        await RLMPipeline(make_executor(client), audit_config, ProgressTracker(callback)).analyze(corpus)

        types = [e.type for e in callback.events]
        assert types[0] == ProgressEventType.STRATEGY_STARTED
        assert ProgressEventType.PHASE_STARTED in types
        assert types[-1] == ProgressEventType.STRATEGY_COMPLETED


class TestAggregationPhase:
    @pytest.mark.asyncio
    async def test_model_aggregation_restores_snippets(
        self, scripted_client, make_executor, finding_factory, audit_config
    ):
        findings = [
            finding_factory("src/a.py", i, f"R{i}", snippet=f"Module: m{i}") for i in range(1, 8)
        ]
        merged = _findings(("src/a.py", 1, "critical", "merged root cause", "R1"))
        client = scripted_client([merged])

        result = await RLMPipeline(make_executor(client), audit_config).phase_aggregation(findings)

        assert len(client.calls) == 1
        assert [f.message for f in result] == ["merged root cause"]
        assert result[0].snippet == "Module: m1"
        assert result[0].severity == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_unparseable_aggregation_falls_back(
        self, scripted_client, make_executor, finding_factory, audit_config
    ):
        findings = [finding_factory("src/a.py", line, "R") for line in (1, 2, 3, 1, 2, 3)]
        client = scripted_client(["sorry, cannot help"])

        result = await RLMPipeline(make_executor(client), audit_config).phase_aggregation(findings)

        assert len(client.calls) == 1
        assert [f.line for f in result] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_exhausted_budget_aggregates_locally(
        self, scripted_client, make_executor, finding_factory, audit_config
    ):
        findings = [finding_factory("src/a.py", 1, "R") for _ in range(8)]
        client = scripted_client()
        executor = make_executor(client, max_iterations=0)

        result = await RLMPipeline(executor, audit_config).phase_aggregation(findings)

        assert len(result) == 1
        assert client.calls == []


class TestModuleMatching:
    def test_prefix_then_substring(self):
        files = [
            SourceFile.from_content("src/auth/login.py", ""),
            SourceFile.from_content("lib/Payments/charge.py", ""),
        ]

        assert [f.path for f in RLMPipeline.files_for_module(files, Module("./src/auth", "", 1))] == \
            ["src/auth/login.py"]
        assert [f.path for f in RLMPipeline.files_for_module(files, Module("payments", "", 1))] == \
            ["lib/Payments/charge.py"]
        assert RLMPipeline.files_for_module(files, Module("billing", "", 1)) == []

    @pytest.mark.asyncio
    async def test_unmatched_module_skipped(self, scripted_client, make_executor, corpus, audit_config):
        recon = json.dumps([{"module": "billing", "reason": "money", "priority": 1}])
        client = scripted_client(by_phase({RECON: recon}))

        result = await RLMPipeline(make_executor(client), audit_config).analyze(corpus)

        assert len(client.calls) == 1
        assert result.chunks_analyzed == 0
