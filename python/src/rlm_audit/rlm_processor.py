"""
RLM Processor: recursive multi-phase security analysis.

Implements the Recursive Language Model decomposition over an indexed corpus:

1. Recon - one call over the file tree ranks security-critical modules
2. Focused analysis - each module's files are chunked and analysed in batches
3. Cross-module - one call over the module findings looks for issues that
   only appear when modules interact
4. Aggregation - local dedup, or model-assisted dedup with local fallback

All calls go through a QueryExecutor sharing one Budget. When the budget
runs out, later phases skip their model call and degrade to local behaviour.
"""

import logging

from .chunking import chunk_files
from .common_types import AnalysisResult, Finding, Module, Severity, SourceFile, severity_rank
from .config import AuditConfig
from .file_collector import build_file_tree, format_files_for_llm, normalize_path
from .llm_client import QueryExecutor
from .profiling import LatencyTracker
from .progress_callbacks import ProgressTracker
from .result_aggregation import deduplicate_exact, restore_snippets, summarize_findings
from .structured_output import findings_to_json, parse_findings, parse_modules

logger = logging.getLogger(__name__)


class RLMPipeline:
    """
    Four-phase recursive analysis pipeline.

    Each phase consumes the previous phase's output; a phase whose
    precondition fails is skipped and the run ends with what it has.
    """

    RECON_PROMPT = """You are an elite security researcher performing reconnaissance on a codebase.
Given the project file listing below, identify the security-critical modules/directories that need deep analysis.

Focus on:
- Entry points (HTTP routes, CLI handlers, API controllers)
- Authentication & authorization modules
- Database access layers (queries, ORMs, migrations)
- File handling & upload logic
- User input processing & validation
- Cryptographic operations
- Configuration & secrets management
- Inter-service communication

Respond with a JSON array of objects:
[{ "module": "<directory/path>", "reason": "<why this is security-critical>", "priority": 1-5 }]

Rank by priority (1 = highest risk). Return ONLY the JSON array."""

    FOCUSED_ANALYSIS_PROMPT = """You are an elite security researcher performing a DEEP code audit.
You have access to MULTIPLE related files from the same module.
Find vulnerabilities that ONLY become visible when understanding cross-file interactions:

1. Data flow: track user input across files (controller -> service -> database)
2. Auth gaps: routes or APIs missing authentication/authorization checks
3. Business logic: flawed assumptions in multi-step processes (payments, access control)
4. Race conditions: shared state accessed from concurrent paths
5. Incomplete validation: input validated in one place but used raw in another
6. Privilege escalation: lower-privilege code paths reaching higher-privilege operations
7. Cryptographic issues: keys/IVs reused, weak algorithms, timing attacks

For each vulnerability, respond with a JSON array:
[{
  "file": "<relative path>",
  "line": <line number>,
  "severity": "critical" | "high" | "medium" | "low",
  "category": "<category>",
  "message": "<detailed description of the cross-file vulnerability>",
  "rule": "RLM_<short_id>",
  "cwe": "<optional CWE id>",
  "fix": "<optional remediation>"
}]

Return [] if nothing found. Respond ONLY with the JSON array."""

    CROSS_MODULE_PROMPT = """You are an elite security researcher performing cross-module vulnerability analysis.
You are given findings from individual module analyses. Identify CROSS-MODULE vulnerabilities
that only become visible when considering how different parts of the application interact.

Look for:
1. Auth bypass chains: auth checked in module A but skipped when called from module B
2. Data flow across boundaries: input sanitized in one module but used raw in another
3. Privilege escalation paths: combining lower-privilege operations across modules
4. TOCTOU / race conditions: state checked in one module, used in another without re-check
5. Trust boundary violations: internal APIs called with external data without validation
6. Inconsistent security policies: different validation rules for the same data in different modules

For each cross-module vulnerability, respond with a JSON array:
[{
  "file": "<primary file where fix should go>",
  "line": <line number>,
  "severity": "critical" | "high" | "medium" | "low",
  "category": "Cross-Module Vulnerability",
  "message": "<describe the cross-module interaction and vulnerability>",
  "rule": "RLM_CROSS_<short_id>"
}]

Return [] if nothing found. Respond ONLY with the JSON array."""

    AGGREGATION_PROMPT = """You are a security findings deduplication and ranking engine.
Given the following list of security findings (as JSON), deduplicate and rank them.

Rules:
- Remove exact duplicates (same file + line + same vulnerability type)
- Merge findings that describe the same root cause (keep the most detailed description)
- Ensure severity ratings are consistent (if the same vuln is rated differently, use the higher severity)
- Keep cross-module findings that add context beyond what individual findings say

Respond with the deduplicated JSON array in the same format. Respond ONLY with the JSON array."""

    def __init__(
        self,
        executor: QueryExecutor,
        config: AuditConfig | None = None,
        progress: ProgressTracker | None = None,
    ):
        self.executor = executor
        self.config = config or AuditConfig()
        self.progress = progress or ProgressTracker()

    async def analyze(self, files: list[SourceFile]) -> AnalysisResult:
        """Run all phases over an indexed corpus."""
        result = AnalysisResult(strategies=["pipeline"], files_indexed=len(files))
        if not files:
            return result

        self.progress.on_strategy_started("pipeline")

        # Phase 1: Reconnaissance
        self.progress.on_phase_started("recon")
        with LatencyTracker("recon"):
            modules = await self.phase_recon(files)
        result.iterations += 1
        result.modules_identified = [m.name for m in modules]
        self.progress.on_phase_completed(calls=self.executor.call_count)
        logger.info(f"[RLM] Recon found {len(modules)} security-critical modules")

        if not modules or self.executor.is_exhausted:
            result.llm_calls = self.executor.call_count
            self.progress.on_strategy_completed(0, self.executor.call_count)
            return result

        # Phase 2: Focused analysis per module
        self.progress.on_phase_started("focused")
        with LatencyTracker("focused"):
            module_findings, chunk_count = await self.phase_focused_analysis(files, modules)
        result.iterations += 1
        result.chunks_analyzed = chunk_count
        for finding in module_findings:
            self.progress.on_finding(finding)
        self.progress.on_phase_completed(len(module_findings), self.executor.call_count)

        # Phase 3: Cross-module analysis
        cross_findings: list[Finding] = []
        if module_findings and len(modules) > 1 and not self.executor.is_exhausted:
            self.progress.on_phase_started("cross_module")
            with LatencyTracker("cross_module"):
                cross_findings = await self.phase_cross_module(files, modules, module_findings)
            result.iterations += 1
            for finding in cross_findings:
                self.progress.on_finding(finding)
            self.progress.on_phase_completed(len(cross_findings), self.executor.call_count)
        else:
            logger.info("[RLM] Cross-module phase skipped (insufficient data or budget)")

        # Phase 4: Aggregation
        self.progress.on_phase_started("aggregation")
        with LatencyTracker("aggregation"):
            result.findings = await self.phase_aggregation(module_findings + cross_findings)
        result.iterations += 1
        self.progress.on_phase_completed(len(result.findings), self.executor.call_count)

        result.llm_calls = self.executor.call_count
        self.progress.on_strategy_completed(len(result.findings), result.llm_calls)
        logger.info(
            f"[RLM] Pipeline finished: {len(result.findings)} unique findings "
            f"({result.llm_calls} model calls)"
        )
        return result

    async def phase_recon(self, files: list[SourceFile]) -> list[Module]:
        """One call over the file tree; modules sorted by ascending priority."""
        tree = build_file_tree(files)
        text = await self.executor.query(
            self.RECON_PROMPT,
            f"Here is the project structure:\n\n{tree}",
        )
        return parse_modules(text)

    @staticmethod
    def files_for_module(files: list[SourceFile], module: Module) -> list[SourceFile]:
        """Path-prefix match, falling back to a case-insensitive substring match."""
        prefix = normalize_path(module.name)
        matched = [f for f in files if f.path.startswith(prefix)]
        if matched:
            return matched

        needle = module.name.lower()
        return [f for f in files if needle in f.path.lower()]

    async def phase_focused_analysis(
        self,
        files: list[SourceFile],
        modules: list[Module],
    ) -> tuple[list[Finding], int]:
        """
        Queue one call per chunk of each module's files and run them batched.

        Returns the parsed findings and the number of chunks queued.
        """
        calls: list[tuple[str, str]] = []
        call_modules: list[str] = []

        for module in modules:
            module_files = self.files_for_module(files, module)
            if not module_files:
                logger.debug(f"[RLM] No files matched module {module.name!r}, skipping")
                continue

            for chunk in chunk_files(module_files, self.config.max_chars_per_chunk):
                context = format_files_for_llm(chunk)
                calls.append((
                    self.FOCUSED_ANALYSIS_PROMPT,
                    f'Analyze these {len(chunk)} files in module "{module.name}" '
                    f"({module.reason}) for security vulnerabilities:\n{context}",
                ))
                call_modules.append(module.name)

        results = await self.executor.query_batched(calls)

        findings: list[Finding] = []
        for text, module_name in zip(results, call_modules):
            findings.extend(parse_findings(text, f"Module: {module_name}"))
        return findings, len(calls)

    def _excerpt_files(self, files: list[SourceFile], findings: list[Finding]) -> list[SourceFile]:
        """Distinct files behind the most severe findings, capped at cross_module_max_excerpts."""
        by_path = {f.path: f for f in files}
        ranked = sorted(
            (f for f in findings if severity_rank(f.severity) >= severity_rank(Severity.HIGH)),
            key=lambda f: -severity_rank(f.severity),
        )

        selected: list[SourceFile] = []
        seen: set[str] = set()
        for finding in ranked:
            path = normalize_path(finding.file)
            if path in seen or path not in by_path:
                continue
            seen.add(path)
            selected.append(by_path[path])
            if len(selected) >= self.config.cross_module_max_excerpts:
                break
        return selected

    async def phase_cross_module(
        self,
        files: list[SourceFile],
        modules: list[Module],
        findings: list[Finding],
    ) -> list[Finding]:
        excerpts = self._excerpt_files(files, findings)
        code_context = ""
        if excerpts:
            code_context = "\n\nKey files for context:\n" + format_files_for_llm(
                excerpts, max_chars_per_file=self.config.cross_module_excerpt_chars
            )

        text = await self.executor.query(
            self.CROSS_MODULE_PROMPT,
            f"Modules analyzed: {', '.join(m.name for m in modules)}\n\n"
            f"Findings from individual module analysis:\n{summarize_findings(findings)}"
            f"{code_context}",
        )
        return parse_findings(text, "Cross-module analysis")

    async def phase_aggregation(self, findings: list[Finding]) -> list[Finding]:
        """
        Deduplicate and rank.

        Small sets, or an exhausted budget, are deduplicated locally. Otherwise
        the model merges them, with local dedup as the fallback when its answer
        does not parse. Snippets are recovered by (file, line) either way.
        """
        if not findings:
            return []

        if len(findings) <= self.config.aggregation_local_threshold or self.executor.is_exhausted:
            aggregated = deduplicate_exact(findings)
        else:
            text = await self.executor.query(
                self.AGGREGATION_PROMPT,
                f"Deduplicate and rank these {len(findings)} security findings:\n"
                f"{findings_to_json(findings)}",
            )
            aggregated = parse_findings(text)
            if not aggregated:
                logger.info("[RLM] Model aggregation returned nothing usable, deduplicating locally")
                aggregated = deduplicate_exact(findings)

        return restore_snippets(aggregated, findings)
