#!/usr/bin/env python3
"""
RLM Security Audit MCP Server

An MCP server that runs language-model security analysis over a source tree.

Strategies:
- pipeline: recursive recon -> focused -> cross-module -> aggregation
- agent / tool_agent: exploration loops that read, search and report
- repl: model-written analysis code in an isolated container

Tools provided:
- security_analyze: Analyze a file or directory, returns findings as JSON (or markdown)
- security_status: Check server configuration
"""

import asyncio
import logging
import signal
import sys
import time
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
)

from .config import KNOWN_STRATEGIES, AuditConfig, ServerConfig, get_config
from .handlers import handle_security_analyze, handle_security_status
from .profiling import enable_profiling

logger = logging.getLogger(__name__)


# Global instances (initialized lazily)
_audit_config: AuditConfig | None = None
_server_config: ServerConfig | None = None
_operation_semaphore: asyncio.Semaphore | None = None

# Shutdown flag for graceful termination
_shutdown_event: asyncio.Event | None = None


def get_instances() -> tuple[AuditConfig, ServerConfig]:
    """Get or create singleton instances."""
    global _audit_config, _server_config

    if _audit_config is None:
        _audit_config, _server_config = get_config()

    return _audit_config, _server_config


def get_operation_semaphore() -> asyncio.Semaphore:
    global _operation_semaphore

    if _operation_semaphore is None:
        _, server_config = get_instances()
        _operation_semaphore = asyncio.Semaphore(server_config.max_concurrent_operations)
    return _operation_semaphore


def _log_timing(operation: str, start_time: float, **extra: Any) -> None:
    elapsed_ms = int((time.time() - start_time) * 1000)
    details = " ".join(f"{k}={v}" for k, v in extra.items())
    logger.debug(f"[LATENCY] {operation}: {elapsed_ms}ms {details}".rstrip())


TOOLS = [
    Tool(
        name="security_analyze",
        description=(
            "Analyze a file or directory for security vulnerabilities using language-model "
            "analysis. Strategies: 'pipeline' (recursive recon/focused/cross-module/aggregation), "
            "'agent' and 'tool_agent' (iterative read/search/report exploration), 'repl' "
            "(model-written analysis code in an isolated Docker sandbox). Returns findings "
            "ordered most severe first, with run metadata."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "File or directory to analyze",
                },
                "strategies": {
                    "type": "array",
                    "items": {"type": "string", "enum": list(KNOWN_STRATEGIES)},
                    "description": "Strategies to run (default: server configuration)",
                },
                "max_iterations": {
                    "type": "integer",
                    "description": "Model-call budget per strategy run",
                },
                "concurrency": {
                    "type": "integer",
                    "description": "Parallel model calls per batch",
                },
                "min_severity": {
                    "type": "string",
                    "enum": ["critical", "high", "medium", "low", "info"],
                    "description": "Drop findings below this severity",
                },
                "query": {
                    "type": "string",
                    "description": "Optional extra focus for the REPL strategy",
                },
                "format": {
                    "type": "string",
                    "enum": ["json", "markdown"],
                    "description": "Output format (default: json)",
                },
            },
            "required": ["path"],
        },
    ),
    Tool(
        name="security_status",
        description="Show server configuration (API key presence only) and configuration errors.",
        inputSchema={
            "type": "object",
            "properties": {},
        },
    ),
]


async def dispatch_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Route one tool call to its handler. Errors come back as text content."""
    start_time = time.time()
    try:
        if name == "security_analyze":
            result = await handle_security_analyze(
                arguments, get_instances, get_operation_semaphore()
            )
        elif name == "security_status":
            result = await handle_security_status(arguments, get_instances)
        else:
            result = [TextContent(type="text", text=f"Unknown tool: {name}")]

        _log_timing(f"tool:{name}", start_time, success=True)
        return result

    except Exception as e:
        logger.exception(f"[RLM] Tool {name} failed")
        _log_timing(f"tool:{name}", start_time, success=False, error=str(e))
        return [TextContent(type="text", text=f"Error: {str(e)}")]


def create_server() -> Server:
    """Create and configure the MCP server."""
    _, server_config = get_instances()
    server = Server(server_config.name)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool calls."""
        return await dispatch_tool(name, arguments or {})

    return server


async def run_server():
    """Run the MCP server with graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    server = create_server()

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info(f"Received {sig.name}, shutting down gracefully...")
        _shutdown_event.set()

    # Register signal handlers (Unix only)
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    async with stdio_server() as (read_stream, write_stream):
        server_task = asyncio.create_task(
            server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
        )

        # Wait for either server completion or shutdown signal
        done, pending = await asyncio.wait(
            [server_task, asyncio.create_task(_shutdown_event.wait())],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


def main():
    """Main entry point."""
    # stdout carries the MCP protocol; logs go to stderr
    enable_profiling(logging.INFO, stream=sys.stderr)
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Server error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
