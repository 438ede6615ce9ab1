from __future__ import annotations

import math
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque


# Process-local; each API replica and worker reports its own numbers.

@dataclass(frozen=True)
class SourceCallSample:
    at: float
    integration: str
    latency_ms: float
    ok: bool


_samples: Deque[SourceCallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _samples.append(SourceCallSample(at=time.time(), integration=integration, latency_ms=latency_ms, ok=success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _p95(sorted_values: list[float]) -> float:
    return sorted_values[max(0, math.ceil(0.95 * len(sorted_values)) - 1)]


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, Any]]:
    """Call count, failures, p95 and max latency per integration over the window."""
    cutoff = time.time() - window_s
    grouped: dict[str, list[SourceCallSample]] = defaultdict(list)
    for sample in _samples:
        if sample.at >= cutoff:
            grouped[sample.integration].append(sample)
    stats: dict[str, dict[str, Any]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        stats[integration] = {
            "calls": len(samples),
            "failures": sum(not sample.ok for sample in samples),
            "p95": _p95(latencies),
            "max": latencies[-1],
        }
    return stats


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _samples.clear()
    _counters.clear()
    _gauges.clear()
