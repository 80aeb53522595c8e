"""Process-local metrics for the API and delivery workers.

Counters and gauges are plain name -> number maps; names carry their own
labels (``circuit_breaker_state.<channel_id>``). Request and outbound chat
call samples are kept in bounded deques and aggregated over a trailing
window when /v1/ops/metrics is read.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from typing import Any, NamedTuple


class _Request(NamedTuple):
    at: float
    path: str
    status_code: int
    latency_ms: float


class _ChatCall(NamedTuple):
    at: float
    integration: str
    latency_ms: float
    success: bool


def _percentile(values: list[float], fraction: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    return ordered[max(0, math.ceil(fraction * len(ordered)) - 1)]


class TelemetryStore:
    def __init__(self, *, max_requests: int = 20000, max_calls: int = 10000) -> None:
        self.requests: deque[_Request] = deque(maxlen=max_requests)
        self.calls: deque[_ChatCall] = deque(maxlen=max_calls)
        self.counters: dict[str, int] = defaultdict(int)
        self.gauges: dict[str, float] = {}

    def since(self, window_s: int) -> float:
        return time.time() - window_s

    def clear(self) -> None:
        self.requests.clear()
        self.calls.clear()
        self.counters.clear()
        self.gauges.clear()


_store = TelemetryStore()


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _store.requests.append(_Request(time.time(), path, status_code, latency_ms))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _store.calls.append(_ChatCall(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _store.counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _store.gauges[name] = float(value)


def request_latency_p95(window_s: int) -> float | None:
    cutoff = _store.since(window_s)
    return _percentile([sample.latency_ms for sample in _store.requests if sample.at >= cutoff], 0.95)


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, Any]]:
    cutoff = _store.since(window_s)
    latencies: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    for call in _store.calls:
        if call.at < cutoff:
            continue
        latencies[call.integration].append(call.latency_ms)
        if not call.success:
            failures[call.integration] += 1
    return {
        integration: {
            "calls": len(values),
            "failures": failures[integration],
            "p95": _percentile(values, 0.95),
            "max": max(values),
        }
        for integration, values in latencies.items()
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_store.counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_store.gauges)


def reset_telemetry() -> None:
    _store.clear()
