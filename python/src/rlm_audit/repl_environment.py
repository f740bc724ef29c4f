"""
REPL strategy: the model analyzes the codebase by writing code.

Each round the model sees the whole transcript (task, its own previous
responses, execution output) and answers with ```repl``` code blocks. The
blocks run in an isolated sandbox with the target mounted read-only at /code;
inside, llm_query()/llm_query_batched() reach the host model through the
SandboxBridge while the code is still running. The session ends on
FINAL_ANSWER, an empty response, budget exhaustion or the round limit, and the
sandbox is always torn down.
"""

import logging
from pathlib import Path
from typing import Any, Callable

from .common_types import AnalysisResult, Finding, SourceFile
from .config import AuditConfig
from .file_collector import build_file_tree
from .llm_client import QueryExecutor
from .repl_sandbox import SANDBOX_WORKSPACE, SandboxBridge, SandboxSession
from .result_aggregation import deduplicate_proximity
from .structured_output import extract_final_answer, extract_repl_blocks, parse_findings
from .transcript import Transcript

logger = logging.getLogger(__name__)


REPL_SYSTEM_PROMPT = """You are an elite security researcher with access to a REPL environment for analyzing code.
The target codebase is mounted at /code (read-only).

Available tools:
1. Write Python code in ```repl``` blocks to analyze the code
2. Use print() to see results; this is how you get information back
3. Available in REPL: ripgrep (rg via subprocess), python3, tree-sitter for AST parsing
4. The /workspace directory is writable for scratch files
5. Use llm_query(prompt) to ask a sub-LLM question from within Python
6. Use llm_query_batched(prompts) for multiple sub-LLM queries

Strategy: Use the REPL to programmatically analyze the codebase:
- Use subprocess.run(["rg", ...]) to search for patterns
- Use tree-sitter to parse ASTs and trace data flow
- Use Python to build call graphs, trace taint paths, find auth gaps
- Combine programmatic analysis with your security expertise
- Start broad (find entry points, input handling) then go deep on suspicious areas

When you have completed your analysis, output FINAL_ANSWER followed by a JSON array of findings:
FINAL_ANSWER
[{
  "file": "<relative path>",
  "line": <line number>,
  "severity": "critical" | "high" | "medium" | "low",
  "category": "<category>",
  "message": "<detailed description>",
  "rule": "RLM_REPL_<short_id>"
}]"""

USE_REPL_REMINDER = (
    "[System]: Please use ```repl``` code blocks to programmatically analyze the code. "
    "Use print() to see results."
)

FINAL_ANSWER_REMINDER = (
    " If your analysis is complete, output FINAL_ANSWER followed by a JSON array of findings."
)

CONTINUE_INSTRUCTION = (
    "Continue your analysis. When done, output FINAL_ANSWER followed by a JSON array of findings."
)


class RLMReplAnalyzer:
    """
    Drives one sandboxed analysis session.

    `session_factory` builds the sandbox session; it defaults to a Docker-backed
    SandboxSession and is replaced in tests.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        config: AuditConfig | None = None,
        session_factory: Callable[[AuditConfig], Any] | None = None,
    ):
        self.executor = executor
        self.config = config or AuditConfig()
        self.session_factory = session_factory or (lambda config: SandboxSession(config=config))
        self.blocks_executed = 0

    def system_prompt(self, query: str = "") -> str:
        if query:
            return f"{REPL_SYSTEM_PROMPT}\n\nAdditional focus: {query}"
        return REPL_SYSTEM_PROMPT

    async def analyze(
        self,
        target_path: str | Path,
        files: list[SourceFile],
        query: str = "",
    ) -> AnalysisResult:
        """
        Run the REPL session against target_path.

        Raises SandboxError if the sandbox cannot be started; the caller
        treats that as fatal for this strategy only.
        """
        config = self.config
        max_rounds = config.repl_max_iterations
        system_prompt = self.system_prompt(query)

        transcript = Transcript()
        transcript.append(
            "task",
            "The target codebase is mounted at /code. Here is the file listing:\n\n"
            f"{build_file_tree(files)}\n\n"
            "Analyze this codebase for security vulnerabilities using the REPL.",
        )

        findings: list[Finding] = []
        iterations = 0
        rounds_without_code = 0

        session = self.session_factory(config)
        try:
            await session.start(str(target_path))
            bridge = SandboxBridge(
                session,
                self.executor,
                workspace=SANDBOX_WORKSPACE,
                poll_interval=config.sandbox_poll_interval_seconds,
            )

            for i in range(max_rounds):
                if self.executor.is_exhausted:
                    logger.info("[REPL] Budget exhausted")
                    break
                iterations = i + 1

                response = await self.executor.query(system_prompt, transcript.render("\n\n"))
                if not response:
                    logger.info(f"[REPL] No response at round {iterations}, stopping")
                    break

                transcript.append("assistant", f"[Assistant response {iterations}]:\n{response}")

                answer = extract_final_answer(response)
                if answer is not None:
                    findings = parse_findings(answer)
                    logger.info(f"[REPL] FINAL_ANSWER at round {iterations}: {len(findings)} findings")
                    break

                blocks = extract_repl_blocks(response)
                if not blocks:
                    rounds_without_code += 1
                    reminder = USE_REPL_REMINDER
                    if rounds_without_code >= config.sandbox_reminder_after:
                        reminder += FINAL_ANSWER_REMINDER
                    transcript.append("system", reminder)
                    continue
                rounds_without_code = 0

                logger.info(f"[REPL] Round {iterations}/{max_rounds} - executing {len(blocks)} block(s)")
                outputs = []
                for code in blocks:
                    result = await bridge.run_alongside(session.execute(code))
                    self.blocks_executed += 1
                    outputs.append(result.format())

                progress_hint = ""
                if iterations >= max_rounds - 2:
                    progress_hint = f" (Round {iterations}/{max_rounds} - please wrap up soon)"

                transcript.append(
                    "result",
                    "[REPL output]:\n" + "\n---\n".join(outputs) + f"\n\n{CONTINUE_INSTRUCTION}{progress_hint}",
                )

                summary = (
                    f"[Previous rounds summarized: executed {self.blocks_executed} code blocks, "
                    f"served {bridge.requests_served} sub-queries.]"
                )
                if transcript.compact_if_needed(
                    config.transcript_compact_chars, summary, config.transcript_keep_last
                ):
                    logger.info("[REPL] Transcript compacted")
        finally:
            await session.stop()

        return AnalysisResult(
            findings=deduplicate_proximity(findings, config.proximity_window),
            llm_calls=self.executor.call_count,
            iterations=iterations,
            files_indexed=len(files),
            strategies=["repl"],
        )
