"""Tests for the metrics engine over empty and populated incident sets."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from backend.analytics import engine
from backend.errors import ValidationError
from backend.models.incident import Incident
from backend.sla.scheduler import compute_sla_target

NOW = datetime(2026, 3, 16, 12, 0, tzinfo=UTC)


def _incident(
    severity="medium",
    category="Network",
    status="new",
    created=timedelta(days=1),
    resolved_after: timedelta | None = None,
    acknowledged_after: timedelta | None = None,
    **fields,
) -> Incident:
    created_at = NOW - created
    fields.setdefault("reopen_count", 0)
    return Incident(
        severity=severity,
        category=category,
        status=status,
        created_at=created_at,
        sla_target=compute_sla_target(severity, created_at),
        sla_is_breached=False,
        resolved_at=created_at + resolved_after if resolved_after is not None else None,
        acknowledged_at=created_at + acknowledged_after if acknowledged_after is not None else None,
        **fields,
    )


@pytest.fixture
def incidents() -> list[Incident]:
    return [
        # resolved in 30 minutes, inside its 1h target
        _incident("critical", "Network", "resolved", resolved_after=timedelta(minutes=30),
                  acknowledged_after=timedelta(minutes=5), resolved_by_id=7, satisfaction_rating=5,
                  time_spent_hours=0.5),
        # resolved after 3h against a 1h target
        _incident("critical", "Hardware", "closed", resolved_after=timedelta(hours=3),
                  acknowledged_after=timedelta(minutes=15), resolved_by_id=7, satisfaction_rating=3,
                  time_spent_hours=2.0),
        # open and already past its 4h target
        _incident("high", "Network", "in-progress", acknowledged_after=timedelta(minutes=40)),
        # open, still within its 72h target
        _incident("low", "Software", "new", created=timedelta(hours=2)),
        # created before the 7d window
        _incident("medium", "Network", "resolved", created=timedelta(days=20),
                  resolved_after=timedelta(hours=10), resolved_by_id=8, reopen_count=1),
    ]


def test_unknown_window_and_grouping_are_rejected(incidents):
    with pytest.raises(ValidationError):
        engine.window_start("2w", NOW)
    with pytest.raises(ValidationError):
        engine.aggregate_metrics(incidents, "7d", "assignee", NOW)


@pytest.mark.parametrize("window", ["7d", "30d", "90d", "1y"])
def test_empty_set_yields_zeroes(window):
    result = engine.aggregate_metrics([], window, "category", NOW)

    assert result.total_incidents == 0
    assert result.mttr_hours == 0.0
    assert result.mtta_minutes == 0.0
    assert result.resolution_rates == []
    assert result.sla_compliance == []
    assert result.overall_sla_compliance == 0.0


def test_aggregate_metrics_for_week(incidents):
    result = engine.aggregate_metrics(incidents, "7d", "category", NOW)

    assert result.total_incidents == 4
    assert result.resolved_incidents == 2
    assert result.mttr_hours == 1.75
    assert result.mtta_minutes == 20.0
    assert result.start == NOW - timedelta(days=7)

    rates = {r.key: r for r in result.resolution_rates}
    assert rates["Hardware"].rate == 100.0
    assert rates["Network"].rate == 50.0
    assert rates["Software"].rate == 0.0

    compliance = {c.severity: c for c in result.sla_compliance}
    assert (compliance["critical"].met, compliance["critical"].breached) == (1, 1)
    assert compliance["high"].breached == 1
    assert compliance["low"].rate == 100.0
    assert result.overall_sla_compliance == 50.0


def test_resolution_rates_by_severity(incidents):
    rates = {r.key: r.rate for r in engine.resolution_rates(incidents, "severity")}
    assert rates == {"critical": 100.0, "medium": 100.0, "high": 0.0, "low": 0.0}


def test_sla_trend_buckets_by_week(incidents):
    buckets = engine.sla_trend(incidents, NOW)
    assert [b.period for b in buckets] == sorted(b.period for b in buckets)
    assert sum(b.total for b in buckets) == 5


def test_metrics_result_serializes_dates(incidents):
    data = engine.aggregate_metrics(incidents, "30d", "severity", NOW).to_dict()
    assert data["end"] == NOW.isoformat()
    assert data["total_incidents"] == 5


def test_performance_by_severity_counts_first_contact(incidents):
    rows = {r["severity"]: r for r in engine.performance_by_severity(incidents, "30d", NOW)}
    assert rows["critical"]["avg_satisfaction"] == 4.0
    assert rows["critical"]["first_contact_resolution_rate"] == 100.0
    assert rows["medium"]["first_contact_resolution_rate"] == 0.0


def test_team_performance_groups_by_resolver(incidents):
    rows = engine.team_performance(incidents, "30d", NOW, names={7: "Alan Agent"})

    assert rows[0]["user_id"] == 7
    assert rows[0]["name"] == "Alan Agent"
    assert rows[0]["total_resolved"] == 2
    assert rows[0]["critical_resolved"] == 2
    assert rows[1]["user_id"] == 8


def test_dashboard_stats(incidents):
    stats = engine.dashboard_stats(incidents, NOW)

    assert stats["total_incidents"] == 5
    assert stats["open_incidents"] == 2
    assert stats["critical_incidents"] == 1
    assert stats["resolved_today"] == 0


def test_chart_data_covers_every_day(incidents):
    series = engine.chart_data(incidents, 7, NOW)

    assert len(series) == 7
    assert series[-1]["date"] == "2026-03-16"
    assert series[-1]["created"] == 1
    assert series[-2]["created"] == 3
    with pytest.raises(ValidationError):
        engine.chart_data(incidents, 0, NOW)


def test_category_stats_merges_catalogue(incidents):
    rows = {r["name"]: r for r in engine.category_stats(incidents, ["Network", "Email"])}

    assert rows["Network"]["total_incidents"] == 3
    assert rows["Email"]["total_incidents"] == 0
    assert rows["Hardware"]["critical_incidents"] == 1


def test_user_statistics(incidents):
    stats = engine.user_statistics(incidents, 7)
    assert stats["resolved_incidents"] == 2
    assert stats["avg_resolution_time"] == 1.25
