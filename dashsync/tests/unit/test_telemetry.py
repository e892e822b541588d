from __future__ import annotations

from dashsync.services.telemetry import (
    backend_latency_by_operation,
    counters_snapshot,
    gauges_snapshot,
    increment_counter,
    record_backend_call,
    reset_telemetry,
    set_gauge,
)


def test_backend_latency_aggregates_per_operation() -> None:
    for latency in (10.0, 20.0, 30.0):
        record_backend_call(provider="postgrest", operation="query", latency_ms=latency, success=True)
    record_backend_call(provider="postgrest", operation="insert", latency_ms=5.0, success=False)

    stats = backend_latency_by_operation(60)
    assert stats["postgrest.query"] == {"count": 3, "failures": 0, "p95": 30.0, "max": 30.0}
    assert stats["postgrest.insert"]["failures"] == 1


def test_counters_and_gauges_reset() -> None:
    increment_counter("retries_total")
    increment_counter("retries_total", 2)
    set_gauge("realtime_active_subscriptions", 3)
    assert counters_snapshot() == {"retries_total": 3}
    assert gauges_snapshot() == {"realtime_active_subscriptions": 3}
    reset_telemetry()
    assert counters_snapshot() == {}
    assert backend_latency_by_operation(60) == {}
