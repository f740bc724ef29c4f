"""
Analysis Handlers for the RLM Security Audit MCP Server.

Provides:
- handle_security_analyze: Run the configured strategies over a path
- handle_security_status: Report configuration and validation errors
"""

import asyncio
import dataclasses
import json
import logging
import time
from typing import Any, Callable

from mcp.types import TextContent

from ..analyzer import analyze
from ..common_types import Severity
from ..config import KNOWN_STRATEGIES, AuditConfig, ServerConfig
from ..result_aggregation import format_findings_markdown

logger = logging.getLogger(__name__)


# Input validation constants
MAX_PATH_LENGTH = 4096
MAX_QUERY_LENGTH = 50_000
MAX_ITERATIONS_LIMIT = 500
MAX_CONCURRENCY_LIMIT = 16


def validate_path(path: str) -> tuple[bool, str]:
    """Validate a file path for safety."""
    if not path:
        return False, "Empty path"

    if len(path) > MAX_PATH_LENGTH:
        return False, f"Path too long ({len(path)} > {MAX_PATH_LENGTH})"

    if '\x00' in path:
        return False, "Path contains null bytes"

    suspicious_patterns = ['/etc/', '/proc/', '/sys/', '/dev/']
    path_lower = path.lower()
    for pattern in suspicious_patterns:
        if path_lower.startswith(pattern):
            return False, f"Suspicious path pattern: {pattern}"

    return True, ""


def _error(message: str) -> list[TextContent]:
    return [TextContent(type="text", text=f"Error: {message}")]


def _bounded_int(arguments: dict[str, Any], key: str, upper: int) -> tuple[int | None, str]:
    value = arguments.get(key)
    if value is None:
        return None, ""
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= upper:
        return None, f"{key} must be an integer between 1 and {upper}"
    return value, ""


def build_run_config(base: AuditConfig, arguments: dict[str, Any]) -> tuple[AuditConfig | None, str]:
    """Per-request copy of the server config with the tool arguments applied."""
    overrides: dict[str, Any] = {}

    strategies = arguments.get("strategies")
    if strategies is not None:
        if not isinstance(strategies, list) or not strategies or not all(isinstance(s, str) for s in strategies):
            return None, "strategies must be a non-empty list of strings"
        unknown = [s for s in strategies if s not in KNOWN_STRATEGIES]
        if unknown:
            return None, f"unknown strategies: {', '.join(unknown)} (known: {', '.join(KNOWN_STRATEGIES)})"
        overrides["strategies"] = list(strategies)

    max_iterations, error = _bounded_int(arguments, "max_iterations", MAX_ITERATIONS_LIMIT)
    if error:
        return None, error
    if max_iterations is not None:
        overrides["max_iterations"] = max_iterations

    concurrency, error = _bounded_int(arguments, "concurrency", MAX_CONCURRENCY_LIMIT)
    if error:
        return None, error
    if concurrency is not None:
        overrides["concurrency"] = concurrency

    min_severity = arguments.get("min_severity")
    if min_severity is not None:
        if not isinstance(min_severity, str) or min_severity.lower() not in {s.value for s in Severity}:
            return None, "min_severity must be one of critical, high, medium, low, info"
        overrides["min_severity"] = min_severity.lower()

    return dataclasses.replace(base, **overrides), ""


async def handle_security_analyze(
    arguments: dict[str, Any],
    get_instances: Callable[[], tuple[AuditConfig, ServerConfig]],
    semaphore: asyncio.Semaphore | None = None,
    run: Callable[..., Any] = analyze,
) -> list[TextContent]:
    """Handle security_analyze tool call."""
    start_time = time.time()

    path = arguments.get("path", "")
    query = arguments.get("query", "")
    output_format = arguments.get("format", "json")

    if not isinstance(path, str):
        return _error(f"path must be string, got {type(path).__name__}")
    is_valid, error = validate_path(path)
    if not is_valid:
        return _error(f"invalid path '{path}': {error}")

    if not isinstance(query, str) or len(query) > MAX_QUERY_LENGTH:
        return _error(f"query must be a string of at most {MAX_QUERY_LENGTH} chars")

    if output_format not in ("json", "markdown"):
        return _error("format must be 'json' or 'markdown'")

    audit_config, server_config = get_instances()
    config, error = build_run_config(audit_config, arguments)
    if config is None:
        return _error(error)

    errors = config.validate()
    if errors:
        return [TextContent(type="text", text=f"Configuration error: {'; '.join(errors)}")]

    semaphore = semaphore or asyncio.Semaphore(server_config.max_concurrent_operations)
    async with semaphore:
        try:
            result = await asyncio.wait_for(
                run(path, config, query=query),
                timeout=server_config.operation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return _error(f"analysis timed out after {server_config.operation_timeout_seconds}s")

    elapsed_ms = int((time.time() - start_time) * 1000)
    logger.info(f"[RLM] security_analyze {path}: {len(result.findings)} findings in {elapsed_ms}ms")

    if output_format == "markdown":
        text = format_findings_markdown(result.findings, title=f"Security findings for {path}")
        text += (
            f"\n\n---\n*{result.files_indexed} files, {result.llm_calls} model calls, "
            f"strategies: {', '.join(result.strategies) or 'none'}, {elapsed_ms}ms*"
        )
        if result.errors:
            text += "\n\n**Errors:** " + "; ".join(result.errors)
        return [TextContent(type="text", text=text)]

    payload = result.to_dict()
    payload["elapsed_ms"] = elapsed_ms
    return [TextContent(type="text", text=json.dumps(payload, indent=2))]


async def handle_security_status(
    arguments: dict[str, Any],
    get_instances: Callable[[], tuple[AuditConfig, ServerConfig]],
) -> list[TextContent]:
    """Handle security_status tool call."""
    audit_config, server_config = get_instances()

    status: dict[str, Any] = {
        "server": {
            "name": server_config.name,
            "version": server_config.version,
        },
        "configuration": {
            "model": audit_config.model,
            "api_base_url": audit_config.api_base_url,
            "api_key_set": bool(audit_config.api_key),
            "strategies": list(audit_config.strategies),
            "max_iterations": audit_config.max_iterations,
            "concurrency": audit_config.concurrency,
            "max_depth": audit_config.max_depth,
            "max_chars_per_chunk": audit_config.max_chars_per_chunk,
            "agent_max_iterations": audit_config.agent_max_iterations,
            "repl_max_iterations": audit_config.repl_max_iterations,
            "sandbox_image": audit_config.sandbox_image,
            "min_severity": audit_config.min_severity,
            "baseline_path": audit_config.baseline_path,
        },
        "available_strategies": list(KNOWN_STRATEGIES),
    }

    errors = audit_config.validate()
    if errors:
        status["errors"] = errors

    return [TextContent(type="text", text=json.dumps(status, indent=2))]
