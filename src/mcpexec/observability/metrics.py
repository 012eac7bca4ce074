"""OpenTelemetry metrics for mcpexec.

Counters and a histogram for executions, egress decisions and sandbox
run time. All functions are no-ops if opentelemetry is not installed or
not configured.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator

_meter = None
_executions_total = None
_network_decisions_total = None
_sandbox_duration = None
_initialized = False


def _ensure_meter() -> bool:
    """Lazily initialize the meter and instruments."""
    global _meter, _executions_total, _network_decisions_total, _sandbox_duration, _initialized

    if _initialized:
        return _meter is not None

    _initialized = True

    try:
        from opentelemetry import metrics

        _meter = metrics.get_meter("mcpexec", "1.0.0")

        _executions_total = _meter.create_counter(
            "mcpexec.executions.total",
            description="Total execute() pipelines by outcome",
            unit="1",
        )
        _network_decisions_total = _meter.create_counter(
            "mcpexec.network.decisions.total",
            description="Egress policy decisions by reason",
            unit="1",
        )
        _sandbox_duration = _meter.create_histogram(
            "mcpexec.sandbox.duration_seconds",
            description="Wall-clock time spent inside sandboxes",
            unit="s",
        )
        return True
    except ImportError:
        return False


def record_execution(*, outcome: str, language: str, risk_level: str = "unknown") -> None:
    """Record a finished execute() pipeline."""
    if not _ensure_meter() or _executions_total is None:
        return
    _executions_total.add(
        1,
        {"mcpexec.outcome": outcome, "mcpexec.language": language, "mcpexec.risk_level": risk_level},
    )


def record_network_decision(reason: str) -> None:
    """Record one egress policy decision."""
    if not _ensure_meter() or _network_decisions_total is None:
        return
    _network_decisions_total.add(1, {"mcpexec.reason": reason})


def record_sandbox_duration(*, sandbox_kind: str, duration_seconds: float) -> None:
    if not _ensure_meter() or _sandbox_duration is None:
        return
    _sandbox_duration.record(duration_seconds, {"mcpexec.sandbox_kind": sandbox_kind})


@contextmanager
def measure_sandbox(sandbox_kind: str) -> Generator[None, None, None]:
    """Context manager to measure and record time spent in a sandbox."""
    start = time.monotonic()
    try:
        yield
    finally:
        record_sandbox_duration(sandbox_kind=sandbox_kind, duration_seconds=time.monotonic() - start)
