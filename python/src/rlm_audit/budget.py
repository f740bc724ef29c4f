"""
Model-call budget shared by every phase of one analysis run.

The counter is charged synchronously right before a call is dispatched, so
concurrent fan-out from a single event loop never races on it.
"""

from dataclasses import dataclass


@dataclass
class Budget:
    """Call/iteration limiter. Exhaustion is sticky for the rest of the run."""

    max_iterations: int = 30
    concurrency: int = 3
    max_depth: int = 2
    call_count: int = 0

    @property
    def is_exhausted(self) -> bool:
        return self.call_count >= self.max_iterations

    @property
    def remaining(self) -> int:
        return max(0, self.max_iterations - self.call_count)

    def try_charge(self) -> bool:
        """Reserve one call. Returns False, without charging, once exhausted."""
        if self.is_exhausted:
            return False
        self.call_count += 1
        return True
