"""
Tests for latency instrumentation.
"""

import io
import logging

import pytest

from rlm_audit.profiling import LatencyTracker, enable_profiling, profile_latency


def test_tracker_logs_phase(caplog):
    caplog.set_level(logging.INFO, logger="rlm_audit.profiling")

    with LatencyTracker("recon") as tracker:
        pass

    assert tracker.elapsed_ms >= 0
    assert any(r.getMessage().startswith("[LATENCY] recon: ") for r in caplog.records)


def test_tracker_logs_on_error(caplog):
    caplog.set_level(logging.INFO, logger="rlm_audit.profiling")

    with pytest.raises(RuntimeError):
        with LatencyTracker("aggregation"):
            raise RuntimeError("boom")

    assert any("[LATENCY] aggregation" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_decorator_wraps_coroutines(caplog):
    caplog.set_level(logging.INFO, logger="rlm_audit.profiling")

    @profile_latency("scan")
    async def scan(value):
        return value * 2

    assert await scan(21) == 42
    assert scan.__name__ == "scan"
    assert any("[LATENCY] scan" in r.getMessage() for r in caplog.records)


def test_decorator_wraps_functions():
    @profile_latency("index")
    def index(value):
        return value + 1

    assert index(1) == 2


def test_enable_profiling_routes_to_stream(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    stream = io.StringIO()

    enable_profiling(logging.DEBUG, stream=stream)

    [kwargs] = calls
    assert kwargs["level"] == logging.DEBUG
    assert kwargs["stream"] is stream
    assert "%(name)s" in kwargs["format"]
