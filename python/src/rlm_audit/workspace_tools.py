"""
Host-side tools the agent loops execute on the model's behalf.

- read_source_file: numbered file content, contained in the project root
- search_source_files: literal substring search over the indexed corpus
- list_source_files: nested directory listing with sizes in KB
- run_command: denylisted shell execution with timeout and output caps
- write_workspace_file: contained file writes (PoC tests, scratch scripts)

Failures surface as ToolError; the agent loop turns them into "Error: ..."
text for the model.
"""

import asyncio
import fnmatch
import logging
from pathlib import Path
from typing import Iterable

from .common_types import SourceFile
from .file_collector import number_lines

logger = logging.getLogger(__name__)


BLOCKED_COMMAND_FRAGMENTS = ("rm -rf /", "mkfs", "dd if=", ":(){", "chmod -R 777 /")

LISTED_EXTRA_FILES = ("README.md",)


class ToolError(Exception):
    """A host tool could not do what the model asked."""


def resolve_within(root: Path, relative_path: str) -> Path:
    """Resolve a model-supplied path, refusing anything outside root."""
    root = root.resolve()
    candidate = (root / relative_path.strip().lstrip("/")).resolve()
    if candidate != root and root not in candidate.parents:
        raise ToolError("path outside project")
    return candidate


def read_source_file(root: Path, relative_path: str, max_chars: int = 100_000) -> str:
    """Line-numbered content ("1: ...") of a file under root, truncated past max_chars."""
    full_path = resolve_within(root, relative_path)
    try:
        content = full_path.read_text(encoding="utf-8", errors="replace")
    except (OSError, ValueError):
        raise ToolError(f'could not read "{relative_path}"')

    if len(content) > max_chars:
        content = content[:max_chars] + "\n... (truncated)"
    return number_lines(content)


def search_source_files(files: Iterable[SourceFile], pattern: str, limit: int = 50) -> list[str]:
    """Literal substring matches as "path:line: text", at most `limit` of them."""
    results: list[str] = []
    if not pattern:
        return results

    for source_file in files:
        for i, line in enumerate(source_file.lines):
            if pattern in line:
                results.append(f"{source_file.path}:{i + 1}: {line.strip()}")
                if len(results) >= limit:
                    return results
    return results


def format_search_results(pattern: str, matches: list[str]) -> str:
    if not matches:
        return f'No matches found for "{pattern}"'
    return "\n".join(matches)


def list_source_files(
    root: Path,
    directory: str | None,
    included_extensions: Iterable[str],
    skipped_directories: Iterable[str],
) -> str:
    """Indented tree of source files under root/directory, with sizes in KB."""
    start = resolve_within(root, directory) if directory else root.resolve()
    if not start.is_dir():
        raise ToolError(f'not a directory: "{directory}"')

    extensions = {e.lower() for e in included_extensions}
    skip_patterns = list(skipped_directories)
    lines: list[str] = []

    def skipped(name: str) -> bool:
        return name.startswith(".") or any(fnmatch.fnmatch(name, p) for p in skip_patterns)

    def walk(current: Path, prefix: str) -> None:
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            return
        for entry in entries:
            if skipped(entry.name):
                continue
            if entry.is_dir():
                lines.append(f"{prefix}{entry.name}/")
                walk(entry, prefix + "  ")
            elif entry.suffix.lower() in extensions or entry.name in LISTED_EXTRA_FILES:
                try:
                    size_kb = round(entry.stat().st_size / 1024)
                    lines.append(f"{prefix}{entry.name} ({size_kb}KB)")
                except OSError:
                    lines.append(f"{prefix}{entry.name}")

    walk(start, "")
    return "\n".join(lines) or "No files found"


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "\n... (truncated)"
    return text


async def run_command(
    command: str,
    cwd: Path,
    timeout: float = 30.0,
    output_chars: int = 50_000,
    error_chars: int = 10_000,
) -> str:
    """
    Run a shell command in the project directory.

    Blocked fragments are refused outright. Output is capped; a non-zero exit
    reports the exit code with combined stdout/stderr.
    """
    if any(fragment in command for fragment in BLOCKED_COMMAND_FRAGMENTS):
        logger.warning(f"[AGENT] Blocked command: {command[:120]}")
        return "Error: command blocked for safety."

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
    except OSError as e:
        return f"Error: command failed to start: {e}"

    try:
        stdout_data, stderr_data = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return f"Error: command timed out after {timeout:g}s"

    stdout = stdout_data.decode("utf-8", errors="replace")
    stderr = stderr_data.decode("utf-8", errors="replace")

    if process.returncode == 0:
        return _truncate(stdout, output_chars) or "(no output)"

    combined = f"{stdout}\n{stderr}".strip()
    if combined:
        return f"Exit code {process.returncode}:\n{combined[:error_chars]}"
    return f"Command failed with exit code {process.returncode}"


def write_workspace_file(root: Path, relative_path: str, content: str) -> str:
    """Write a file under root, creating parent directories."""
    if not relative_path:
        raise ToolError("write_file requires a path")
    full_path = resolve_within(root, relative_path)
    try:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise ToolError(f"could not write file: {e}")
    return f"Written {len(content.encode('utf-8'))} bytes to {relative_path}"
