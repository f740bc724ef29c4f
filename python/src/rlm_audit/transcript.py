"""
Agent transcript: an ordered log of typed turns with a compaction policy.

The textual agent and the sandbox loop send the whole transcript to the model
as one user prompt every round, so it has to be kept under a size threshold.
Compaction keeps the opening turn (task and file tree), a synthesized summary
of what was explored, and the most recent turns.
"""

from dataclasses import dataclass, field

TURN_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class Turn:
    """One transcript entry."""
    role: str  # "task", "assistant", "result", "system", "summary"
    content: str

    @property
    def char_count(self) -> int:
        return len(self.content)

    @property
    def token_estimate(self) -> int:
        # Rough estimate: 1 token ~ 4 chars
        return len(self.content) // 4

    def render(self) -> str:
        return self.content


def summarize_progress(files_read: list[str], findings_count: int) -> str:
    return (
        f"[Previous turns summarized: Read {len(files_read)} files "
        f"({', '.join(files_read)}). Found {findings_count} vulnerabilities so far.]"
    )


def compact_turns(turns: list[Turn], summary: str, keep_last: int = 6) -> list[Turn]:
    """
    Head + summary + tail.

    Pure: returns a new list and leaves `turns` untouched. Transcripts too
    short to benefit are returned as a copy.
    """
    if len(turns) <= keep_last + 1:
        return list(turns)
    tail = turns[-keep_last:] if keep_last > 0 else []
    return [turns[0], Turn("summary", summary), *tail]


@dataclass
class Transcript:
    """Growing conversation state for single-prompt loops."""

    turns: list[Turn] = field(default_factory=list)
    compactions: int = 0

    def append(self, role: str, content: str) -> Turn:
        turn = Turn(role, content)
        self.turns.append(turn)
        return turn

    def __len__(self) -> int:
        return len(self.turns)

    @property
    def total_chars(self) -> int:
        return sum(t.char_count for t in self.turns)

    @property
    def token_estimate(self) -> int:
        return sum(t.token_estimate for t in self.turns)

    def render(self, separator: str = TURN_SEPARATOR) -> str:
        return separator.join(t.render() for t in self.turns)

    def compact_if_needed(self, limit_chars: int, summary: str, keep_last: int = 6) -> bool:
        """Compact when total size exceeds limit_chars. Returns True if it did."""
        if self.total_chars <= limit_chars or len(self.turns) <= keep_last + 1:
            return False
        self.turns = compact_turns(self.turns, summary, keep_last)
        self.compactions += 1
        return True
