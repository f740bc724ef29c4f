"""
Request Handlers for the RLM Security Audit MCP Server.

- analysis: security_analyze and security_status
"""

from .analysis import (
    build_run_config,
    handle_security_analyze,
    handle_security_status,
    validate_path,
)

__all__ = [
    "build_run_config",
    "handle_security_analyze",
    "handle_security_status",
    "validate_path",
]
