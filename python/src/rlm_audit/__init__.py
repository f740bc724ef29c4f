"""
RLM Security Audit

Language-model security analysis of source trees, served over MCP.

Strategies:
- Recursive pipeline: recon ranks security-critical modules, each module is
  analysed in context-sized chunks, a cross-module pass looks for issues that
  only appear between modules, and aggregation deduplicates the result
- Agent loops: the model explores the tree one action at a time (read,
  search, list, report, done), either from free text or structured tool calls
- REPL: the model writes analysis code that runs in an isolated container and
  can call back into the model with llm_query()

Every run is bounded by a model-call Budget.
"""

__version__ = "0.3.0"

from .analyzer import STRATEGIES, analyze, run_analysis
from .common_types import AnalysisResult, Finding, Module, Severity, SourceFile
from .config import AuditConfig, ServerConfig, get_config
from .file_collector import FileCollector
from .rlm_processor import RLMPipeline
from .server import create_server, main

__all__ = [
    "STRATEGIES",
    "analyze",
    "run_analysis",
    "AnalysisResult",
    "Finding",
    "Module",
    "Severity",
    "SourceFile",
    "AuditConfig",
    "ServerConfig",
    "get_config",
    "FileCollector",
    "RLMPipeline",
    "create_server",
    "main",
]
