from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class BackendCallSample:
    ts: float
    provider: str
    operation: str
    latency_ms: float
    success: bool


_backend_samples: Deque[BackendCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_backend_call(*, provider: str, operation: str, latency_ms: float, success: bool) -> None:
    # Capture backend call latency and outcomes per operation.
    _backend_samples.append(
        BackendCallSample(
            ts=time.time(),
            provider=provider,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def backend_latency_by_operation(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate p95/max latency and failure counts per provider operation.
    cutoff = time.time() - window_s
    grouped: dict[str, list[BackendCallSample]] = defaultdict(list)
    for sample in _backend_samples:
        if sample.ts < cutoff:
            continue
        grouped[f"{sample.provider}.{sample.operation}"].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for name, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[name] = {
            "count": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests reset process-wide telemetry between cases.
    _backend_samples.clear()
    _counters.clear()
    _gauges.clear()
