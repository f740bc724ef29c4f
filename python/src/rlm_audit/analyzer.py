"""
Entry point for one analysis run.

analyze() indexes the target once, then runs each configured strategy with
its own Budget and QueryExecutor:

- pipeline: recon -> focused -> cross-module -> aggregation (RLMPipeline)
- agent: free-text single-action exploration loop (TextAgentLoop)
- tool_agent: structured tool-call exploration loop (ToolAgentLoop)
- repl: model-written code in an isolated sandbox (RLMReplAnalyzer)

A failing strategy is recorded in AnalysisResult.errors and the others still
run. Findings from several strategies are merged by proximity clustering,
then baseline suppression, severity filtering and ordering are applied.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from .agent import AgentCore, TextAgentLoop, ToolAgentLoop, visible_to_tool_agent
from .budget import Budget
from .common_types import AnalysisResult, SourceFile
from .config import KNOWN_STRATEGIES, AuditConfig
from .file_collector import FileCollector
from .llm_client import CompletionClient, ModelClient, QueryExecutor
from .profiling import LatencyTracker, profile_latency
from .progress_callbacks import ProgressTracker
from .repl_environment import RLMReplAnalyzer
from .repl_sandbox import SandboxError
from .result_aggregation import (
    apply_baseline,
    deduplicate_proximity,
    filter_min_severity,
    load_baseline,
    sort_by_severity,
)
from .rlm_processor import RLMPipeline

logger = logging.getLogger(__name__)


STRATEGIES = KNOWN_STRATEGIES


def budget_for(strategy: str, config: AuditConfig) -> Budget:
    """Fresh Budget for one strategy; agent loops are charged one unit per turn."""
    if strategy in ("agent", "tool_agent"):
        max_iterations = config.agent_max_iterations
    else:
        max_iterations = config.max_iterations
    return Budget(
        max_iterations=max_iterations,
        concurrency=config.concurrency,
        max_depth=config.max_depth,
    )


async def run_strategy(
    strategy: str,
    root: Path,
    files: list[SourceFile],
    client: CompletionClient,
    config: AuditConfig,
    progress: ProgressTracker | None = None,
    query: str = "",
) -> AnalysisResult:
    """Run a single strategy over an already indexed corpus."""
    executor = QueryExecutor(client, budget_for(strategy, config), config)

    if strategy == "pipeline":
        return await RLMPipeline(executor, config, progress).analyze(files)

    if strategy == "agent":
        core = AgentCore(root, files, config, search_limit=config.text_search_limit)
        return await TextAgentLoop(core, executor, config).run()

    if strategy == "tool_agent":
        skipped = set(config.skipped_directories) | set(config.agent_extra_skipped_directories)
        core = AgentCore(
            root,
            visible_to_tool_agent(files, config),
            config,
            skipped_directories=skipped,
            search_limit=config.tool_search_limit,
        )
        return await ToolAgentLoop(core, executor, config).run()

    if strategy == "repl":
        return await RLMReplAnalyzer(executor, config).analyze(root, files, query)

    raise ValueError(f"Unknown strategy: {strategy}")


def merge_results(results: list[AnalysisResult], config: AuditConfig) -> AnalysisResult:
    """Combine per-strategy results; findings are clustered when more than one ran."""
    merged = AnalysisResult()
    for result in results:
        merged.findings.extend(result.findings)
        merged.llm_calls += result.llm_calls
        merged.chunks_analyzed += result.chunks_analyzed
        merged.iterations += result.iterations
        merged.strategies.extend(result.strategies)
        merged.errors.extend(result.errors)
        for name in result.modules_identified:
            if name not in merged.modules_identified:
                merged.modules_identified.append(name)

    if len(results) > 1:
        merged.findings = deduplicate_proximity(merged.findings, config.proximity_window)
    return merged


@profile_latency("analyze")
async def analyze(
    target_path: str,
    config: AuditConfig | None = None,
    client: CompletionClient | None = None,
    progress: ProgressTracker | None = None,
    collector: FileCollector | None = None,
    query: str = "",
) -> AnalysisResult:
    """
    Analyze a source tree for security vulnerabilities.

    Args:
        target_path: Directory (or single file) to analyze
        config: Run configuration; defaults to the environment
        client: Model invocation service; a ModelClient is created (and closed) if omitted
        progress: Optional progress tracker for pipeline phase events
        collector: Optional FileCollector (tests disable token counting with it)
        query: Optional extra focus for the REPL strategy

    Returns:
        AnalysisResult with merged, filtered, most-severe-first findings
    """
    config = config or AuditConfig()
    collector = collector or FileCollector(config)

    with LatencyTracker("indexing"):
        collection = await collector.collect_async(target_path)

    root = Path(collection.root)
    if root.is_file():
        root = root.parent

    combined = AnalysisResult(
        files_indexed=collection.file_count,
        tokens_indexed=collection.total_tokens,
        errors=list(collection.errors),
    )
    if collection.errors and not collection.files:
        return combined

    owns_client = client is None
    if client is None:
        client = ModelClient(config)

    results: list[AnalysisResult] = []
    try:
        for strategy in config.strategies:
            logger.info(f"[RLM] Running strategy '{strategy}' over {collection.file_count} files")
            try:
                results.append(
                    await run_strategy(strategy, root, collection.files, client, config, progress, query)
                )
            except (SandboxError, ValueError, OSError) as e:
                logger.error(f"[RLM] Strategy '{strategy}' failed: {e}")
                if progress is not None:
                    progress.on_strategy_failed(strategy, str(e))
                combined.errors.append(f"{strategy}: {e}")
    finally:
        if owns_client:
            await client.close()

    merged = merge_results(results, config)
    findings = merged.findings

    if config.baseline_path:
        findings = apply_baseline(findings, load_baseline(config.baseline_path), config.proximity_window)

    findings = sort_by_severity(filter_min_severity(findings, config.min_severity))

    combined.findings = findings
    combined.llm_calls = merged.llm_calls
    combined.chunks_analyzed = merged.chunks_analyzed
    combined.modules_identified = merged.modules_identified
    combined.iterations = merged.iterations
    combined.strategies = merged.strategies
    combined.errors.extend(merged.errors)

    logger.info(
        f"[RLM] Analysis complete: {len(findings)} findings, {combined.llm_calls} model calls, "
        f"strategies={','.join(combined.strategies) or 'none'}"
    )
    return combined


def run_analysis(target_path: str, config: AuditConfig | None = None, **kwargs: Any) -> AnalysisResult:
    """Synchronous wrapper around analyze()."""
    return asyncio.run(analyze(target_path, config, **kwargs))
