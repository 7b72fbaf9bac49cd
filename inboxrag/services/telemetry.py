from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import time
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for pipeline outcome dashboards.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture embedding/generation latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def external_call_stats(integration: str, window_s: int = 300) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    samples = [s for s in _external_samples if s.integration == integration and s.ts >= cutoff]
    if not samples:
        return {"count": 0, "error_rate": None, "avg_latency_ms": None}
    failures = sum(1 for s in samples if not s.success)
    return {
        "count": len(samples),
        "error_rate": failures / len(samples),
        "avg_latency_ms": sum(s.latency_ms for s in samples) / len(samples),
    }


def reset_telemetry() -> None:
    # Tests reset in-process state between cases.
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
