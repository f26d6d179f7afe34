from backend.observability.metrics import InMemoryMetrics


def test_metrics_snapshot_includes_latency_percentiles_and_counts():
    m = InMemoryMetrics(latency_window=10)

    m.observe_request("/api/health", 200, 12.0)
    m.observe_request("/api/health", 200, 24.0)
    m.observe_request("/api/incidents", 500, 200.0)

    snap = m.snapshot()

    assert snap["requests_total"] == 3
    assert snap["status_counts"]["2xx"] == 2
    assert snap["status_counts"]["5xx"] == 1
    assert snap["route_counts"]["/api/health"] == 2
    assert snap["latency_ms"]["samples"] == 3
    assert snap["latency_ms"]["p95"] >= snap["latency_ms"]["p50"]


def test_latency_window_drops_oldest_samples():
    m = InMemoryMetrics(latency_window=2)

    for duration in (500.0, 10.0, 20.0):
        m.observe_request("/api/incidents", 200, duration)

    snap = m.snapshot()
    assert snap["requests_total"] == 3
    assert snap["latency_ms"]["samples"] == 2
    assert snap["latency_ms"]["p99"] == 10.0


def test_event_and_failure_counters_reset():
    m = InMemoryMetrics()
    m.record_event("incident_created")
    m.record_event("incident_created")
    m.record_notification_failure("slack")

    snap = m.snapshot()
    assert snap["incident_events"] == {"incident_created": 2}
    assert snap["notification_failures"] == {"slack": 1}

    m.reset()
    empty = m.snapshot()
    assert empty["incident_events"] == {}
    assert empty["latency_ms"]["p50"] == 0.0
