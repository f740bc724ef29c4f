"""
Progress reporting for long-running analyses.

A strategy reports through a ProgressTracker; the tracker turns each call
into a ProgressEvent and hands it to a callback:

- LoggingProgressCallback: default, logs with the [PROGRESS] tag
- CollectingProgressCallback: keeps the events, for callers that render them
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .common_types import Finding

logger = logging.getLogger(__name__)


class ProgressEventType(Enum):
    """Types of progress events during analysis."""
    STRATEGY_STARTED = "strategy_started"
    PHASE_STARTED = "phase_started"
    FINDING = "finding"
    PHASE_COMPLETED = "phase_completed"
    STRATEGY_COMPLETED = "strategy_completed"
    STRATEGY_FAILED = "strategy_failed"


@dataclass
class ProgressEvent:
    """A progress update. `findings`/`calls` are counts at the time of the event."""
    type: ProgressEventType
    strategy: str = ""
    phase: str = ""
    message: str = ""
    findings: int = 0
    calls: int = 0


class ProgressCallback:
    """Base class for progress callbacks."""

    def on_progress(self, event: ProgressEvent) -> None:
        raise NotImplementedError


class LoggingProgressCallback(ProgressCallback):

    def on_progress(self, event: ProgressEvent) -> None:
        where = f"{event.strategy}/{event.phase}" if event.phase else event.strategy
        if event.type == ProgressEventType.STRATEGY_STARTED:
            logger.info(f"[PROGRESS] Strategy started: {event.strategy}")
        elif event.type == ProgressEventType.PHASE_STARTED:
            logger.info(f"[PROGRESS] Phase started: {where}")
        elif event.type == ProgressEventType.FINDING:
            logger.debug(f"[PROGRESS] Finding #{event.findings} in {where}: {event.message}")
        elif event.type == ProgressEventType.PHASE_COMPLETED:
            logger.info(
                f"[PROGRESS] Phase completed: {where} "
                f"({event.findings} findings, {event.calls} model calls)"
            )
        elif event.type == ProgressEventType.STRATEGY_COMPLETED:
            logger.info(f"[PROGRESS] Strategy completed: {event.strategy} ({event.findings} findings)")
        elif event.type == ProgressEventType.STRATEGY_FAILED:
            logger.error(f"[PROGRESS] Strategy failed: {event.strategy}: {event.message}")


class CollectingProgressCallback(ProgressCallback):
    """Keeps every event in order."""

    def __init__(self):
        self.events: list[ProgressEvent] = []

    def on_progress(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: ProgressEventType) -> list[ProgressEvent]:
        return [e for e in self.events if e.type == event_type]


class ProgressTracker:
    """
    Tracks the current strategy and phase and fires callbacks.

    One tracker may be shared by several strategies run in sequence; the
    finding counter restarts with each strategy.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback or LoggingProgressCallback()
        self.strategy = ""
        self.phase = ""
        self.findings_count = 0

    def _emit(self, event_type: ProgressEventType, **fields) -> None:
        fields.setdefault("strategy", self.strategy)
        fields.setdefault("phase", self.phase)
        self.callback.on_progress(ProgressEvent(type=event_type, **fields))

    def on_strategy_started(self, strategy: str):
        self.strategy = strategy
        self.phase = ""
        self.findings_count = 0
        self._emit(ProgressEventType.STRATEGY_STARTED)

    def on_phase_started(self, phase: str):
        self.phase = phase
        self._emit(ProgressEventType.PHASE_STARTED)

    def on_finding(self, finding: Finding):
        self.findings_count += 1
        self._emit(ProgressEventType.FINDING, message=str(finding), findings=self.findings_count)

    def on_phase_completed(self, findings: int = 0, calls: int = 0):
        self._emit(ProgressEventType.PHASE_COMPLETED, findings=findings, calls=calls)

    def on_strategy_completed(self, findings: int, calls: int = 0):
        self._emit(ProgressEventType.STRATEGY_COMPLETED, phase="", findings=findings, calls=calls)

    def on_strategy_failed(self, strategy: str, message: str):
        self._emit(ProgressEventType.STRATEGY_FAILED, strategy=strategy, phase="", message=message)
