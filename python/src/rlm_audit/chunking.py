"""
Chunking utilities for RLM Processing.

Packs the indexed corpus into context-sized groups:
- Files are pre-sorted by directory so related files land together
- Greedy sequential packing against a character budget
- Oversized files get a chunk of their own (never split, never dropped)
"""

from pathlib import PurePosixPath

from .common_types import SourceFile

# Per-file allowance for the "=== FILE: ... ===" header and line-number prefixes
FILE_OVERHEAD_CHARS = 50


def chunk_cost(source_file: SourceFile) -> int:
    """Characters a file contributes to a chunk."""
    return source_file.size + len(source_file.path) + FILE_OVERHEAD_CHARS


def directory_of(path: str) -> str:
    return str(PurePosixPath(path).parent)


def chunk_files(files: list[SourceFile], max_chars: int) -> list[list[SourceFile]]:
    """
    Greedy bin packing favouring locality over balance.

    A chunk is closed when the next file would push it past max_chars and it
    already holds something. Returns [] for an empty corpus.
    """
    ordered = sorted(files, key=lambda f: directory_of(f.path))

    chunks: list[list[SourceFile]] = []
    current: list[SourceFile] = []
    current_size = 0

    for source_file in ordered:
        cost = chunk_cost(source_file)
        if current and current_size + cost > max_chars:
            chunks.append(current)
            current = []
            current_size = 0
        current.append(source_file)
        current_size += cost

    if current:
        chunks.append(current)

    return chunks
