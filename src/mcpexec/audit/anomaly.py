"""
Anomaly detection over recent executions.

Looks at a sliding window of audit entries and flags:

- resource_spike: duration or memory above 3x the running average
  (only once 10 samples exist)
- unusual_timing: a sandbox run shorter than 10 ms or longer than 60 s
- repeated_failures: more than 3 failures in the last 10 executions
- suspicious_patterns: 3 or more blocked executions in the last 10
"""

from __future__ import annotations

from collections import deque

from mcpexec.core.models import Anomaly, AuditEntry, Outcome, RiskLevel
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.audit.anomaly")

SPIKE_FACTOR = 3.0
MIN_SAMPLES = 10
FAST_MS = 10
SLOW_MS = 60_000
FAILURE_THRESHOLD = 3
BLOCKED_THRESHOLD = 3

_FAILURES = (Outcome.ERROR, Outcome.TIMEOUT, Outcome.OOM)


class AnomalyDetector:
    def __init__(self, window: int = 10, history: int = 100):
        self.window = window
        self._recent: deque[AuditEntry] = deque(maxlen=window)
        self._durations: deque[int] = deque(maxlen=history)
        self._memory: deque[int] = deque(maxlen=history)

    def observe(self, entry: AuditEntry) -> list[Anomaly]:
        """Add one execution and return the anomalies it triggers."""
        anomalies: list[Anomaly] = []
        ran = entry.sandbox_kind is not None
        memory = int(entry.resource_usage.get("memory_bytes") or 0)

        if ran:
            anomalies += self._spikes(entry.duration_ms, memory)
            if entry.duration_ms < FAST_MS or entry.duration_ms > SLOW_MS:
                anomalies.append(Anomaly(
                    type="unusual_timing",
                    description=f"Execution took {entry.duration_ms} ms",
                    severity=RiskLevel.LOW,
                ))
            self._durations.append(entry.duration_ms)
            self._memory.append(memory)

        self._recent.append(entry)
        failures = sum(1 for e in self._recent if e.outcome in _FAILURES)
        if entry.outcome in _FAILURES and failures > FAILURE_THRESHOLD:
            anomalies.append(Anomaly(
                type="repeated_failures",
                description=f"{failures} of the last {len(self._recent)} executions failed",
                severity=RiskLevel.MEDIUM,
            ))
        blocked = sum(1 for e in self._recent if e.outcome == Outcome.BLOCKED)
        if entry.outcome == Outcome.BLOCKED and blocked >= BLOCKED_THRESHOLD:
            anomalies.append(Anomaly(
                type="suspicious_patterns",
                description=f"{blocked} of the last {len(self._recent)} executions were blocked",
                severity=RiskLevel.HIGH,
            ))

        for anomaly in anomalies:
            logger.warning(
                "Anomaly detected: %s", anomaly.description,
                extra={"session_id": entry.session_id, "event_type": anomaly.type},
            )
        return anomalies

    def _spikes(self, duration_ms: int, memory: int) -> list[Anomaly]:
        found = []
        if len(self._durations) >= MIN_SAMPLES:
            avg = sum(self._durations) / len(self._durations)
            if avg > 0 and duration_ms > SPIKE_FACTOR * avg:
                found.append(Anomaly(
                    type="resource_spike",
                    description=f"Duration {duration_ms} ms is above {SPIKE_FACTOR:g}x the average {avg:.0f} ms",
                ))
        if len(self._memory) >= MIN_SAMPLES:
            avg = sum(self._memory) / len(self._memory)
            if avg > 0 and memory > SPIKE_FACTOR * avg:
                found.append(Anomaly(
                    type="resource_spike",
                    description=f"Memory {memory} bytes is above {SPIKE_FACTOR:g}x the average {avg:.0f} bytes",
                ))
        return found
