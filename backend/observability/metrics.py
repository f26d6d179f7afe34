"""Lightweight in-process metrics for IncidentDesk.

Request latency plus counters for incident lifecycle events; no Prometheus
client required.
"""

from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock


class InMemoryMetrics:
    def __init__(self, latency_window: int = 2000) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._status_counts: dict[str, int] = defaultdict(int)
        self._route_counts: dict[str, int] = defaultdict(int)
        self._latencies_ms = deque(maxlen=latency_window)
        self._incident_events: dict[str, int] = defaultdict(int)
        self._notification_failures: dict[str, int] = defaultdict(int)

    def observe_request(self, path: str, status_code: int, duration_ms: float) -> None:
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._requests_total += 1
            self._status_counts[bucket] += 1
            self._route_counts[path] += 1
            self._latencies_ms.append(float(duration_ms))

    def record_event(self, event_type: str) -> None:
        with self._lock:
            self._incident_events[event_type] += 1

    def record_notification_failure(self, channel: str) -> None:
        with self._lock:
            self._notification_failures[channel] += 1

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._status_counts.clear()
            self._route_counts.clear()
            self._latencies_ms.clear()
            self._incident_events.clear()
            self._notification_failures.clear()

    def snapshot(self) -> dict:
        with self._lock:
            sorted_latencies = sorted(self._latencies_ms)

            def percentile(p: float) -> float:
                if not sorted_latencies:
                    return 0.0
                idx = int((len(sorted_latencies) - 1) * p)
                return round(sorted_latencies[idx], 2)

            return {
                "requests_total": self._requests_total,
                "status_counts": dict(self._status_counts),
                "route_counts": dict(self._route_counts),
                "latency_ms": {
                    "samples": len(sorted_latencies),
                    "p50": percentile(0.50),
                    "p95": percentile(0.95),
                    "p99": percentile(0.99),
                },
                "incident_events": dict(self._incident_events),
                "notification_failures": dict(self._notification_failures),
            }


metrics = InMemoryMetrics()
