"""
Profiling hooks for RLM performance monitoring.

Provides a decorator and a context manager to measure latency per phase.
"""

import inspect
import functools
import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)


def profile_latency(phase_name: str = "operation"):
    """
    Decorator to profile latency of a function or coroutine function.

    Usage:
        @profile_latency("pipeline")
        async def run_pipeline(...):
            ...

    Logs: "[LATENCY] pipeline: 45.3ms"
    """
    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                with LatencyTracker(phase_name):
                    return await func(*args, **kwargs)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            with LatencyTracker(phase_name):
                return func(*args, **kwargs)
        return wrapper
    return decorator


class LatencyTracker:
    """
    Context manager to track latency for a code block.

    Usage:
        with LatencyTracker("recon"):
            # code to measure
            ...
    """
    def __init__(self, phase_name: str = "operation"):
        self.phase_name = phase_name
        self.start_time: float | None = None
        self.elapsed_ms: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        logger.info(f"[LATENCY] {self.phase_name}: {self.elapsed_ms:.1f}ms")


def enable_profiling(log_level=logging.INFO, stream=None):
    """Configure root logging so [LATENCY] records from the trackers are emitted."""
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=stream,
    )
