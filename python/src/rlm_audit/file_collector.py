"""
File Collector (indexer) for RLM security analysis.

Walks a target tree and builds the in-memory corpus every analysis
strategy reads from: one immutable SourceFile per accepted file.

Performance Optimizations:
- Async file I/O with aiofiles (non-blocking)
- Parallel file reads with asyncio.gather
- Semaphore-based concurrency control (prevent fd exhaustion)
- Symlink loop detection
- Timeout for file reads (network mount safety)
"""

import asyncio
import fnmatch
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Iterator

import aiofiles
import tiktoken

from .common_types import SourceFile
from .config import AuditConfig

logger = logging.getLogger(__name__)


# Constants for performance tuning
MAX_CONCURRENT_FILE_READS = 50  # Prevent fd exhaustion
FILE_READ_TIMEOUT_SECONDS = 30  # Timeout for slow/network files


@dataclass
class CollectionResult:
    """Result of indexing a target tree."""

    root: str = ""
    files: list[SourceFile] = field(default_factory=list)
    total_tokens: int = 0
    total_chars: int = 0
    skipped_files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.files)

    def get_file_list(self) -> list[str]:
        return [f.path for f in self.files]

    def get_file(self, path: str) -> SourceFile | None:
        normalized = normalize_path(path)
        for f in self.files:
            if f.path == normalized:
                return f
        return None


def normalize_path(path: str) -> str:
    """Relative, forward-slash path without a leading './'."""
    path = path.replace("\\", "/").strip()
    while path.startswith("./"):
        path = path[2:]
    return path


def iter_source_paths(
    root: Path,
    included_extensions: Iterable[str],
    skipped_directories: Iterable[str],
    skip_hidden: bool = True,
) -> Iterator[Path]:
    """
    Walk a tree yielding source files, with symlink loop detection.

    Shared by the indexer, the agent tools and the sandbox file listing so
    every strategy sees the same notion of "source file".
    """
    extensions = {e.lower() for e in included_extensions}
    skip_patterns = list(skipped_directories)
    visited: set[str] = set()

    def should_skip(name: str) -> bool:
        if skip_hidden and name.startswith("."):
            return True
        return any(fnmatch.fnmatch(name, pattern) for pattern in skip_patterns)

    def walk(directory: Path) -> Iterator[Path]:
        try:
            resolved = str(directory.resolve())
            if resolved in visited:
                return  # Symlink loop detected
            visited.add(resolved)
            entries = sorted(directory.iterdir(), key=lambda p: p.name)
        except (PermissionError, OSError):
            return

        for item in entries:
            try:
                if item.is_dir():
                    if not should_skip(item.name):
                        yield from walk(item)
                elif item.is_file() and item.suffix.lower() in extensions:
                    yield item
            except (PermissionError, OSError):
                continue

    yield from walk(root)


def build_file_tree(files: list[SourceFile]) -> str:
    """File listing for reconnaissance: files grouped by directory, with line counts."""
    dirs: dict[str, list[str]] = {}
    for f in files:
        posix = PurePosixPath(f.path)
        directory = str(posix.parent)
        dirs.setdefault(directory, []).append(f"{posix.name} ({len(f.lines)} lines)")

    lines = []
    for directory in sorted(dirs):
        lines.append(f"{directory}/")
        for name in dirs[directory]:
            lines.append(f"  {name}")
    return "\n".join(lines)


def number_lines(content: str) -> str:
    return "\n".join(f"{i + 1}: {line}" for i, line in enumerate(content.split("\n")))


def format_files_for_llm(files: list[SourceFile], max_chars_per_file: int | None = None) -> str:
    """Format files as numbered code blocks for model consumption."""
    parts = []
    for f in files:
        content = f.content
        if max_chars_per_file is not None and len(content) > max_chars_per_file:
            content = content[:max_chars_per_file] + "\n... (truncated)"
        parts.append(f"\n=== FILE: {f.path} ===\n{number_lines(content)}\n")
    return "".join(parts)


class FileCollector:
    """
    Collects source files from a directory tree.

    Features:
    - Async file I/O for non-blocking operations
    - Filters by extension and content size
    - Skips common non-code directories
    - Tracks token counts for context management
    - Symlink loop detection
    - Timeout protection for slow reads
    """

    def __init__(self, config: AuditConfig | None = None, track_tokens: bool = True):
        self.config = config or AuditConfig()
        self.track_tokens = track_tokens
        self._encoder: tiktoken.Encoding | None = None
        self._semaphore: asyncio.Semaphore | None = None

        self._token_cache: dict[str, int] = {}  # sha256_hash -> token_count
        self._token_cache_max_size = 10000

    @property
    def encoder(self) -> tiktoken.Encoding:
        """Lazy-load tiktoken encoder."""
        if self._encoder is None:
            self._encoder = tiktoken.encoding_for_model("gpt-4")
        return self._encoder

    def count_tokens(self, text: str) -> int:
        """Count tokens in text with caching."""
        if not text:
            return 0

        text_hash = hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()[:32]
        if text_hash in self._token_cache:
            return self._token_cache[text_hash]

        token_count = len(self.encoder.encode(text, disallowed_special=()))

        if len(self._token_cache) >= self._token_cache_max_size:
            # Remove oldest 20% of entries
            keys_to_remove = list(self._token_cache.keys())[:self._token_cache_max_size // 5]
            for key in keys_to_remove:
                del self._token_cache[key]

        self._token_cache[text_hash] = token_count
        return token_count

    def iter_source_paths(self, root: Path, extra_skipped: Iterable[str] = ()) -> Iterator[Path]:
        skipped = set(self.config.skipped_directories) | set(extra_skipped)
        return iter_source_paths(root, self.config.included_extensions, skipped)

    # -------------------------------------------------------------------------
    # Synchronous API
    # -------------------------------------------------------------------------

    def collect(self, target_path: str) -> CollectionResult:
        """Index a target tree (sync wrapper for async)."""
        return asyncio.run(self.collect_async(target_path))

    # -------------------------------------------------------------------------
    # Async API
    # -------------------------------------------------------------------------

    async def collect_async(
        self,
        target_path: str,
        progress_callback: Callable[[str], None] | None = None,
    ) -> CollectionResult:
        """
        Index every source file under target_path.

        Args:
            target_path: Directory (or single file) to index
            progress_callback: Optional callback for progress updates

        Returns:
            CollectionResult with files sorted by relative path
        """
        root = Path(target_path).resolve()
        result = CollectionResult(root=str(root))

        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_FILE_READS)

        if not root.exists():
            result.errors.append(f"Path not found: {target_path}")
            return result

        if root.is_file():
            base_dir = root.parent
            file_paths = [root] if root.suffix.lower() in self.config.included_extensions else []
        else:
            base_dir = root
            file_paths = list(self.iter_source_paths(root))

        if progress_callback:
            progress_callback(f"Found {len(file_paths)} files to index")

        collected: list[SourceFile | None] = await asyncio.gather(
            *(self._collect_file_async(p, base_dir, result) for p in file_paths)
        )

        result.files = sorted((f for f in collected if f is not None), key=lambda f: f.path)
        result.total_chars = sum(f.size for f in result.files)
        if self.track_tokens:
            result.total_tokens = sum(self.count_tokens(f.content) for f in result.files)

        logger.info(
            f"[RLM] Indexed {result.file_count} files ({result.total_chars:,} chars, "
            f"{len(result.skipped_files)} skipped)"
        )
        if progress_callback:
            progress_callback(f"Indexed {result.file_count} files")

        return result

    async def _collect_file_async(
        self,
        file_path: Path,
        base_dir: Path,
        result: CollectionResult,
    ) -> SourceFile | None:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self._read_source_file(file_path, base_dir, result),
                    timeout=FILE_READ_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError:
                result.skipped_files.append(f"{file_path} (read timeout)")
            except (OSError, ValueError) as e:
                result.errors.append(f"Error reading {file_path}: {e}")
        return None

    async def _read_source_file(
        self,
        file_path: Path,
        base_dir: Path,
        result: CollectionResult,
    ) -> SourceFile | None:
        content = await self._read_file_content(file_path)
        if content is None:
            result.skipped_files.append(f"{file_path} (encoding error)")
            return None

        if len(content) > self.config.max_file_chars:
            result.skipped_files.append(f"{file_path} (too large: {len(content):,} chars)")
            return None

        try:
            relative_path = file_path.relative_to(base_dir).as_posix()
        except ValueError:
            relative_path = file_path.as_posix()

        return SourceFile.from_content(relative_path, content)

    async def _read_file_content(self, file_path: Path) -> str | None:
        """Read file content, trying a few encodings."""
        for encoding in ("utf-8", "latin-1"):
            try:
                async with aiofiles.open(file_path, mode="r", encoding=encoding) as f:
                    return await f.read()
            except UnicodeDecodeError:
                continue
        return None


