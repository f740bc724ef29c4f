"""
Agent loops: exploration-driven analysis.

The model picks one action per turn (read, search, list, report, run, write,
done) and the host executes it. Two adapters share one core:

- TextAgentLoop: the whole transcript is sent as one prompt every turn and
  the action is parsed out of free text. The transcript is compacted past a
  size threshold.
- ToolAgentLoop: a real multi-turn tool-call conversation. `done` (or a
  natural stop) is refused until a minimum number of distinct files has been
  read; the run stops hard once the conversation outgrows its context limit.
"""

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .agent_actions import (
    AGENT_TOOLS,
    AgentAction,
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
from .common_types import AnalysisResult, Finding, SourceFile
from .config import AuditConfig
from .file_collector import normalize_path
from .llm_client import QueryExecutor, tool_result_message
from .transcript import Transcript, summarize_progress
from .workspace_tools import (
    ToolError,
    format_search_results,
    list_source_files,
    read_source_file,
    run_command,
    search_source_files,
    write_workspace_file,
)

logger = logging.getLogger(__name__)


_NUMBERED_LINE = re.compile(r"^(\d+): (.*)")


def minimum_files_before_done(
    source_file_count: int,
    floor: int = 5,
    ratio: float = 0.5,
    cap: int = 20,
) -> int:
    """Distinct files that must be read before `done` is accepted."""
    return min(cap, max(floor, math.ceil(ratio * source_file_count)))


def is_solidity_project(file_tree: str) -> bool:
    return ".sol" in file_tree


def _path_has_skipped_part(path: str, skipped: Iterable[str]) -> bool:
    skipped = set(skipped)
    return any(part in skipped for part in path.split("/")[:-1])


@dataclass
class ActionOutcome:
    """What a host-executed action sends back to the model."""
    content: str
    is_error: bool = False
    finding: Finding | None = None


class AgentCore:
    """
    State shared by both loop variants.

    Owns the read cache (numbered content keyed by normalized path), the
    accumulated findings, and the dispatch from actions to host tools.
    """

    def __init__(
        self,
        root: Path,
        files: list[SourceFile],
        config: AuditConfig,
        skipped_directories: Iterable[str] | None = None,
        search_limit: int = 50,
    ):
        self.root = Path(root).resolve()
        self.files = files
        self.config = config
        self.skipped_directories = set(
            skipped_directories if skipped_directories is not None else config.skipped_directories
        )
        self.search_limit = search_limit
        self.files_read: dict[str, str] = {}
        self.findings: list[Finding] = []

    @property
    def source_file_count(self) -> int:
        return len(self.files)

    def file_tree(self) -> str:
        return list_source_files(
            self.root, None, self.config.included_extensions, self.skipped_directories
        )

    def backfill_snippet(self, finding: Finding) -> None:
        """Fill the snippet from the cached numbered content of the finding's file."""
        numbered = self.files_read.get(normalize_path(finding.file))
        if not numbered or finding.snippet:
            return
        for line in numbered.split("\n"):
            match = _NUMBERED_LINE.match(line)
            if match and int(match.group(1)) == finding.line:
                finding.snippet = match.group(2).strip()[:200]
                return

    async def handle(self, action: AgentAction) -> ActionOutcome:
        """Execute every action except Done, which each loop gates itself."""
        try:
            return await self._dispatch(action)
        except ToolError as e:
            return ActionOutcome(f"Error: {e}", is_error=True)

    async def _dispatch(self, action: AgentAction) -> ActionOutcome:
        if isinstance(action, ReadAction):
            key = normalize_path(action.path)
            if key in self.files_read:
                return ActionOutcome(
                    f"You already read this file. Here it is again:\n```\n{self.files_read[key]}\n```"
                )
            content = read_source_file(self.root, key, self.config.max_read_chars)
            self.files_read[key] = content
            return ActionOutcome(f"File: {key}\n```\n{content}\n```")

        if isinstance(action, SearchAction):
            matches = search_source_files(self.files, action.pattern, self.search_limit)
            return ActionOutcome(
                f'Search results for "{action.pattern}":\n{format_search_results(action.pattern, matches)}'
            )

        if isinstance(action, ListAction):
            return ActionOutcome(list_source_files(
                self.root,
                action.directory,
                self.config.included_extensions,
                self.skipped_directories,
            ))

        if isinstance(action, ReportAction):
            finding = action.finding
            self.backfill_snippet(finding)
            self.findings.append(finding)
            logger.info(
                f"[AGENT] Finding: {finding.severity.value.upper()} {finding.file}:{finding.line} "
                f"- {finding.message[:80]}"
            )
            return ActionOutcome("Finding recorded.", finding=finding)

        if isinstance(action, RunCommandAction):
            output = await run_command(
                action.command,
                self.root,
                timeout=self.config.command_timeout_seconds,
                output_chars=self.config.command_output_chars,
                error_chars=self.config.command_error_chars,
            )
            return ActionOutcome(output, is_error=output.startswith("Error:"))

        if isinstance(action, WriteFileAction):
            return ActionOutcome(write_workspace_file(self.root, action.path, action.content))

        if isinstance(action, InvalidAction):
            return ActionOutcome(action.error, is_error=True)

        raise ToolError(f"unsupported action {action.name}")


# =============================================================================
# Textual single-action loop
# =============================================================================

_SOLIDITY_FOCUS = """Focus on HIGH-SEVERITY loss-of-funds vulnerabilities:
- Follow the money: trace deposit -> internal accounting -> withdrawal flows
- Check every external call for reentrancy, return value handling, and state consistency
- Verify access control on ALL state-changing functions
- Look for math errors: rounding direction, overflow in unchecked blocks, division before multiplication
- Check signature schemes for replay (missing chainId, nonce, domain separator)
- Verify oracle integrations can't be manipulated within one transaction"""

_WEB_FOCUS = """Focus on HIGH-SEVERITY vulnerabilities:
- Trace user input from entry points (routes, handlers, controllers) to sinks
- Verify authentication and authorization on every state-changing endpoint
- Look for injection (SQL, command, template), SSRF, path traversal, deserialization
- Check business logic in multi-step flows (payments, password reset, access control)
- Check session, token and cryptographic handling"""

TEXT_AGENT_SYSTEM_PROMPT = """You are an elite security auditor performing an iterative code audit.
You have a budget of actions. Each turn, you can take ONE action:

1. READ <filepath> - Read a source file to examine its code
2. SEARCH <pattern> - Search for a literal pattern across all files (returns matching lines)
3. FINDING - Report a confirmed vulnerability (JSON format below)
4. DONE - Finish the audit

Do NOT say DONE until you have read the main source files, searched for the critical
patterns, and traced at least one complete data flow end to end.

{focus}

Don't report issues in test/mock files.

When reporting a FINDING, use this exact format:
FINDING
{{
  "file": "<relative path>",
  "line": <line number>,
  "severity": "critical" | "high",
  "category": "<category>",
  "message": "<root cause, exploit scenario, and impact>",
  "rule": "AGENT_<short_id>"
}}

To read a file:    READ path/to/file
To search:         SEARCH pattern
When finished:     DONE

Be thorough but efficient. Quality over quantity."""


def _remaining(turns_left: int) -> str:
    return f"You have {turns_left} actions remaining."


class TextAgentLoop:
    """Single-prompt loop with free-text actions."""

    def __init__(self, core: AgentCore, executor: QueryExecutor, config: AuditConfig):
        self.core = core
        self.executor = executor
        self.config = config

    async def run(self) -> AnalysisResult:
        max_turns = self.config.agent_max_iterations
        tree = self.core.file_tree()
        solidity = is_solidity_project(tree)
        system_prompt = TEXT_AGENT_SYSTEM_PROMPT.format(
            focus=_SOLIDITY_FOCUS if solidity else _WEB_FOCUS
        )

        transcript = Transcript()
        transcript.append(
            "task",
            f"You are auditing a {'Solidity/DeFi' if solidity else 'web application'} project.\n\n"
            f"File tree:\n```\n{tree}\n```\n\n"
            f"{_remaining(max_turns)} Start your audit. What would you like to read first?",
        )

        iterations = 0
        finished = False
        for i in range(max_turns):
            iterations = i + 1
            turns_left = max_turns - i - 1

            response = await self.executor.query(system_prompt, transcript.render())
            if not response:
                logger.info(f"[AGENT] No response at turn {iterations}, stopping")
                break

            transcript.append("assistant", f"[Your response]:\n{response}")
            action = parse_text_action(response)
            logger.debug(f"[AGENT] [{iterations}/{max_turns}] {action.describe()}")

            if isinstance(action, DoneAction):
                finished = True
                break

            reply = await self._reply(action, turns_left)
            transcript.append("result", f"[Result]:\n{reply}")

            summary = summarize_progress(list(self.core.files_read), len(self.core.findings))
            if transcript.compact_if_needed(
                self.config.transcript_compact_chars, summary, self.config.transcript_keep_last
            ):
                logger.info("[AGENT] Transcript compacted")

        if finished:
            logger.info(f"[AGENT] Finished after {iterations} turns with {len(self.core.findings)} findings")
        else:
            logger.info(f"[AGENT] Stopped after {iterations} turns with {len(self.core.findings)} findings")

        return AnalysisResult(
            findings=list(self.core.findings),
            llm_calls=self.executor.call_count,
            iterations=iterations,
            files_indexed=self.core.source_file_count,
            strategies=["agent"],
        )

    async def _reply(self, action: AgentAction, turns_left: int) -> str:
        outcome = await self.core.handle(action)

        if isinstance(action, ReportAction) and not outcome.is_error:
            return f"Finding recorded. {_remaining(turns_left)} Continue auditing or say DONE."
        if isinstance(action, ReadAction) and outcome.is_error:
            return f"{outcome.content} Check the path against the file tree."
        if outcome.is_error:
            return f"{outcome.content}\n{_remaining(turns_left)}"
        return f"{outcome.content}\n\n{_remaining(turns_left)}"


# =============================================================================
# Structured tool-call loop
# =============================================================================

TOOL_AGENT_PROMPT_SOLIDITY = """You are an elite smart contract security auditor. You have access to tools to read files, search code, run analysis commands, and report vulnerabilities.

Your goal: find ALL HIGH-SEVERITY vulnerabilities that could lead to LOSS OF FUNDS.

Strategy:
1. Start by listing files to understand the project structure
2. Read the main contracts (largest files, entry points)
3. For each contract, check:
   - Access control on ALL state-changing functions
   - Reentrancy (CEI violations, callbacks before state updates)
   - Math errors (rounding, overflow in unchecked, division before multiplication)
   - Oracle/price manipulation
   - Signature replay (missing chainId, nonce, domain separator)
   - Accounting bugs (shares vs assets, fee-on-transfer)
   - Cross-contract trust assumptions
4. Use search to trace data flows across contracts
5. Report only HIGH/CRITICAL findings you are confident about

Be thorough. Read every contract. Don't stop early."""

TOOL_AGENT_PROMPT_DEFAULT = """You are an elite security auditor. You have access to tools to read files, search code, run analysis commands, and report vulnerabilities.

Your goal: find ALL HIGH-SEVERITY vulnerabilities.

Strategy:
1. List files to understand the project
2. Read entry points and critical modules
3. Check authentication, authorization, injection, business logic
4. Use search to trace data flows
5. Report only findings you are confident about

Be thorough."""


def message_chars(messages: list[dict[str, Any]]) -> int:
    """Characters across a chat conversation, tool-call arguments included."""
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total += len(content)
        for call in message.get("tool_calls") or []:
            total += len(call["function"]["arguments"])
    return total


class ToolAgentLoop:
    """Multi-turn tool-call loop with the minimum-files gate."""

    def __init__(self, core: AgentCore, executor: QueryExecutor, config: AuditConfig):
        self.core = core
        self.executor = executor
        self.config = config
        self.min_files = minimum_files_before_done(
            core.source_file_count,
            floor=config.min_files_floor,
            ratio=config.min_files_ratio,
            cap=config.min_files_cap,
        )

    @property
    def files_read_count(self) -> int:
        return len(self.core.files_read)

    def gate_message(self) -> str:
        return (
            f"Error: You have read {self.files_read_count} of the {self.min_files} files required "
            f"before finishing. Read more source files (use list_files and read_file), "
            f"then call done."
        )

    def nudge_message(self) -> str:
        return (
            f"You stopped early: only {self.files_read_count} of the required {self.min_files} "
            f"files have been read. Continue the audit with the tools: read the remaining "
            f"source files, report any vulnerabilities, then call done."
        )

    async def run(self) -> AnalysisResult:
        max_turns = self.config.agent_max_iterations
        solidity = is_solidity_project(self.core.file_tree())
        system_prompt = TOOL_AGENT_PROMPT_SOLIDITY if solidity else TOOL_AGENT_PROMPT_DEFAULT

        messages: list[dict[str, Any]] = [{
            "role": "user",
            "content": (
                f"Audit this {'Solidity/DeFi ' if solidity else ''}project for HIGH-SEVERITY "
                f"vulnerabilities. Start by listing files, then read and analyze each important "
                f"source file. Read at least {self.min_files} files before calling done. Be thorough."
            ),
        }]

        iterations = 0
        for i in range(max_turns):
            iterations = i + 1

            reply = await self.executor.complete(system_prompt, messages, tools=AGENT_TOOLS)
            if reply is None:
                logger.info(f"[AGENT] No response at turn {iterations}, stopping")
                break

            messages.append(reply.to_message())

            if not reply.tool_calls:
                logger.debug(f"[AGENT] [{iterations}/{max_turns}] text response ({reply.stop_reason})")
                if reply.stop_reason == "stop":
                    if self.files_read_count >= self.min_files:
                        logger.info("[AGENT] Model stopped naturally")
                        break
                    messages.append({"role": "user", "content": self.nudge_message()})
                continue

            done = False
            for call in reply.tool_calls:
                action = action_from_tool_call(call)
                logger.debug(f"[AGENT] [{iterations}/{max_turns}] {action.describe()}")

                if isinstance(action, DoneAction):
                    if self.files_read_count < self.min_files:
                        content = self.gate_message()
                    else:
                        done = True
                        content = "Audit complete."
                else:
                    content = (await self.core.handle(action)).content

                messages.append(tool_result_message(call.id, content))

            if done:
                logger.info(
                    f"[AGENT] Finished after {iterations} turns with {len(self.core.findings)} findings"
                )
                break

            total = message_chars(messages)
            if total > self.config.tool_context_limit_chars:
                logger.warning(f"[AGENT] Context too large ({total // 1000}K chars), stopping")
                break

        return AnalysisResult(
            findings=list(self.core.findings),
            llm_calls=self.executor.call_count,
            iterations=iterations,
            files_indexed=self.core.source_file_count,
            strategies=["tool_agent"],
        )


def visible_to_tool_agent(files: list[SourceFile], config: AuditConfig) -> list[SourceFile]:
    """Corpus minus test, mock and script directories."""
    return [
        f for f in files
        if not _path_has_skipped_part(f.path, config.agent_extra_skipped_directories)
    ]
