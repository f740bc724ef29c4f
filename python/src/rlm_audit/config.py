"""
Configuration for the RLM security auditor.

Environment Variables:
- OPENROUTER_API_KEY: Required for model calls via OpenRouter
- RLM_API_BASE_URL: OpenAI-compatible endpoint (default: https://openrouter.ai/api/v1)
- RLM_MODEL: Model used for every analysis call
- RLM_MAX_ITERATIONS: Model-call budget for one pipeline run (default: 30)
- RLM_CONCURRENCY: Parallel model calls per batch (default: 3)
- RLM_MAX_DEPTH: Recursion depth of the pipeline (default: 2)
- RLM_MAX_CHUNK_CHARS: Character budget per chunk (default: 100000)
- RLM_MAX_FILE_CHARS: Larger files are not indexed (default: 50000)
- RLM_AGENT_MAX_ITERATIONS: Turn limit for the agent loops (default: 40)
- RLM_REPL_MAX_ITERATIONS: Round limit for the sandbox loop (default: 15)
- RLM_SANDBOX_IMAGE: Container image for the sandbox (default: rlm-audit-sandbox)
- RLM_STRATEGIES: Comma-separated strategies (default: pipeline)
- RLM_MIN_SEVERITY: Findings below this severity are dropped (default: info)
- RLM_BASELINE: Optional baseline JSON of accepted findings
"""

import os
from dataclasses import dataclass, field
from typing import Set
from dotenv import load_dotenv

load_dotenv()


DEFAULT_MODEL = "openai/gpt-5.1-codex"

# Strategy names accepted by analyzer.analyze()
KNOWN_STRATEGIES = ("pipeline", "agent", "tool_agent", "repl")

_SEVERITY_NAMES = ("critical", "high", "medium", "low", "info")


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class AuditConfig:
    """Configuration for one analysis run."""

    # API Configuration (OpenRouter)
    api_key: str = field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY", ""))
    api_base_url: str = field(
        default_factory=lambda: os.getenv("RLM_API_BASE_URL", "https://openrouter.ai/api/v1")
    )
    model: str = field(default_factory=lambda: os.getenv("RLM_MODEL", DEFAULT_MODEL))
    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("RLM_REQUEST_TIMEOUT", "120"))
    )
    max_tokens: int = field(
        default_factory=lambda: int(os.getenv("RLM_MAX_TOKENS", "4000"))
    )

    # Budget
    max_iterations: int = field(
        default_factory=lambda: int(os.getenv("RLM_MAX_ITERATIONS", "30"))
    )
    concurrency: int = field(
        default_factory=lambda: int(os.getenv("RLM_CONCURRENCY", "3"))
    )
    max_depth: int = field(
        default_factory=lambda: int(os.getenv("RLM_MAX_DEPTH", "2"))
    )

    # Chunking / indexing
    max_chars_per_chunk: int = field(
        default_factory=lambda: int(os.getenv("RLM_MAX_CHUNK_CHARS", "100000"))
    )
    max_file_chars: int = field(
        default_factory=lambda: int(os.getenv("RLM_MAX_FILE_CHARS", "50000"))
    )

    # Pipeline tunables
    aggregation_local_threshold: int = 5
    cross_module_max_excerpts: int = 5
    cross_module_excerpt_chars: int = 8000
    proximity_window: int = 3

    # Agent loops
    agent_max_iterations: int = field(
        default_factory=lambda: int(os.getenv("RLM_AGENT_MAX_ITERATIONS", "40"))
    )
    min_files_floor: int = 5
    min_files_ratio: float = 0.5
    min_files_cap: int = 20
    transcript_compact_chars: int = 120_000
    transcript_keep_last: int = 6
    tool_context_limit_chars: int = 300_000
    text_search_limit: int = 50
    tool_search_limit: int = 100
    max_read_chars: int = 100_000

    # Host command execution (tool agent)
    command_timeout_seconds: float = 30.0
    command_output_chars: int = 50_000
    command_error_chars: int = 10_000

    # Sandbox (REPL strategy)
    repl_max_iterations: int = field(
        default_factory=lambda: int(os.getenv("RLM_REPL_MAX_ITERATIONS", "15"))
    )
    sandbox_image: str = field(
        default_factory=lambda: os.getenv("RLM_SANDBOX_IMAGE", "rlm-audit-sandbox")
    )
    sandbox_memory: str = "512m"
    sandbox_cpus: str = "1"
    sandbox_scratch_size: str = "128m"
    sandbox_exec_timeout_seconds: float = 30.0
    sandbox_output_chars: int = 50_000
    sandbox_poll_interval_seconds: float = 0.1
    sandbox_reminder_after: int = 2

    # Run composition
    strategies: list[str] = field(
        default_factory=lambda: _env_list("RLM_STRATEGIES", "pipeline")
    )
    min_severity: str = field(
        default_factory=lambda: os.getenv("RLM_MIN_SEVERITY", "info").lower()
    )
    baseline_path: str | None = field(
        default_factory=lambda: os.getenv("RLM_BASELINE") or None
    )

    # File Collection Configuration
    included_extensions: Set[str] = field(default_factory=lambda: {
        ".ts", ".js", ".jsx", ".tsx", ".py", ".go", ".java", ".c", ".cpp",
        ".h", ".hpp", ".rs", ".rb", ".php", ".cs", ".swift", ".kt",
        ".scala", ".vue", ".svelte", ".sol", ".vy",
    })

    skipped_directories: Set[str] = field(default_factory=lambda: {
        ".git", "node_modules", "__pycache__", "venv", ".venv",
        "dist", "build", ".next", "target", "vendor", ".cache",
        ".idea", ".vscode", "coverage", ".nyc_output", "eggs",
        "*.egg-info", ".tox", ".pytest_cache", ".mypy_cache",
        ".ruff_cache", "htmlcov", ".hypothesis", "forge-std",
        "openzeppelin-contracts", ".openzeppelin",
    })

    # The tool agent also hides tests, mocks and scripts from exploration
    agent_extra_skipped_directories: Set[str] = field(default_factory=lambda: {
        "lib", "test", "tests", "mock", "mocks", "script", "scripts",
    })

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.api_key:
            errors.append("OPENROUTER_API_KEY environment variable not set")

        if self.max_iterations < 1:
            errors.append("max_iterations must be at least 1")

        if self.concurrency < 1:
            errors.append("concurrency must be at least 1")

        if self.max_chars_per_chunk < 1000:
            errors.append("max_chars_per_chunk must be at least 1000")

        unknown = [s for s in self.strategies if s not in KNOWN_STRATEGIES]
        if unknown:
            errors.append(f"Unknown strategies: {', '.join(unknown)}")

        if self.min_severity not in _SEVERITY_NAMES:
            errors.append(f"min_severity must be one of {', '.join(_SEVERITY_NAMES)}")

        return errors


@dataclass
class ServerConfig:
    """Configuration for the MCP server."""

    name: str = "rlm-security-audit"
    version: str = "0.3.0"
    description: str = (
        "MCP server running recursive, agentic and sandboxed language-model "
        "security analysis over a source tree"
    )

    # Server limits
    max_concurrent_operations: int = 2
    operation_timeout_seconds: int = 1800


def get_config() -> tuple[AuditConfig, ServerConfig]:
    """Get configuration instances."""
    return AuditConfig(), ServerConfig()
