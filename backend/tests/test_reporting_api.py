"""Tests for the SLA, analytics, dashboard and category routes."""

from __future__ import annotations

import json

import pytest
import pytest_asyncio

from backend.config import settings
from backend.incident_manager import Actor
from backend.models.incident import ResolveRequest


@pytest_asyncio.fixture
async def seeded(db_session, manager, reporter, agent, incident_payload):
    """One critical assigned to the agent, one resolved high, one medium left new."""
    by_reporter = Actor.from_user(reporter)
    staff = Actor.from_user(agent)
    critical = await manager.create_incident(
        db_session, incident_payload(severity="critical", title="Core switch down"), by_reporter
    )
    await manager.assign(db_session, critical.incident_id, agent.id, staff)
    fixed = await manager.create_incident(
        db_session, incident_payload(severity="high", category="Email", title="Mail queue stuck"), by_reporter
    )
    await manager.resolve(
        db_session, fixed.incident_id, ResolveRequest(resolution_notes="Flushed queue", time_spent=0.5), staff
    )
    waiting = await manager.create_incident(
        db_session, incident_payload(severity="medium", category="Software"), by_reporter
    )
    return {"critical": critical, "fixed": fixed, "waiting": waiting}


# ── SLA ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sla_settings_admin_only(client, agent, admin, auth_headers):
    denied = await client.get("/api/sla/settings", headers=auth_headers(agent))
    allowed = await client.get("/api/sla/settings", headers=auth_headers(admin))

    assert denied.status_code == 403
    assert allowed.json()["critical"] == {"resolution_hours": 1.0, "first_response_minutes": 15.0}
    assert allowed.json()["warning_minutes"] == 30


@pytest.mark.asyncio
async def test_sla_settings_update_persists_overrides(client, admin, auth_headers, tmp_path, monkeypatch):
    path = tmp_path / "sla.json"
    monkeypatch.setattr(settings, "sla_overrides_path", str(path))
    current = (await client.get("/api/sla/settings", headers=auth_headers(admin))).json()
    current["critical"]["resolution_hours"] = 2
    current["warning_minutes"] = 45

    response = await client.put("/api/sla/settings", json=current, headers=auth_headers(admin))

    assert response.status_code == 200
    saved = json.loads(path.read_text())
    assert saved["critical"]["resolution_hours"] == 2
    assert saved["warning_minutes"] == 45


@pytest.mark.asyncio
async def test_sla_settings_reject_non_positive_targets(client, admin, auth_headers):
    current = (await client.get("/api/sla/settings", headers=auth_headers(admin))).json()
    current["low"]["resolution_hours"] = 0

    response = await client.put("/api/sla/settings", json=current, headers=auth_headers(admin))

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_at_risk_and_breached_queues(client, seeded, clock, agent, auth_headers):
    headers = auth_headers(agent)

    assert (await client.get("/api/sla/at-risk", headers=headers)).json() == []

    clock.advance(minutes=40)
    at_risk = (await client.get("/api/sla/at-risk", headers=headers)).json()
    assert [i["incident_id"] for i in at_risk] == [seeded["critical"].incident_id]

    clock.advance(hours=1)
    breached = (await client.get("/api/sla/breached", headers=headers)).json()
    assert [i["incident_id"] for i in breached] == [seeded["critical"].incident_id]
    assert breached[0]["sla"]["state"] == "breached"


@pytest.mark.asyncio
async def test_sla_performance(client, seeded, agent, reporter, auth_headers):
    body = (await client.get("/api/sla/performance", headers=auth_headers(agent))).json()

    assert body["by_severity"]["high"] == {
        "total": 1, "on_time": 1, "breached": 0, "on_time_percentage": 100.0, "breached_percentage": 0.0,
    }
    assert {c["severity"] for c in body["compliance"]} == {"critical", "high", "medium"}
    assert (await client.get("/api/sla/performance", headers=auth_headers(reporter))).status_code == 403


# ── Analytics ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_analytics_metrics(client, seeded, agent, auth_headers):
    body = (await client.get("/api/analytics/metrics?window=7d", headers=auth_headers(agent))).json()

    assert body["total_incidents"] == 3
    assert body["resolved_incidents"] == 1
    rates = {r["key"]: r["rate"] for r in body["resolution_rates"]}
    assert rates["Email"] == 100.0
    assert rates["Network"] == 0.0


@pytest.mark.asyncio
async def test_analytics_rejects_unknown_window(client, agent, auth_headers):
    response = await client.get("/api/analytics/metrics?window=2w", headers=auth_headers(agent))

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_analytics_is_it_only(client, reporter, auth_headers):
    response = await client.get("/api/analytics/trends", headers=auth_headers(reporter))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_team_performance_uses_user_names(client, seeded, agent, auth_headers):
    body = (await client.get("/api/analytics/team-performance", headers=auth_headers(agent))).json()

    assert body["team"][0]["user_id"] == agent.id
    assert body["team"][0]["name"] == "Alan Agent"
    assert body["team"][0]["total_resolved"] == 1


@pytest.mark.asyncio
async def test_resolution_rates_by_severity(client, seeded, agent, auth_headers):
    body = (await client.get(
        "/api/analytics/resolution-rates?group_by=severity", headers=auth_headers(agent)
    )).json()

    assert body["group_by"] == "severity"
    assert {r["key"]: r["rate"] for r in body["rates"]}["high"] == 100.0


# ── Dashboard ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dashboard_stats_for_staff(client, seeded, agent, auth_headers):
    stats = (await client.get("/api/dashboard/stats", headers=auth_headers(agent))).json()

    assert stats["total_incidents"] == 3
    assert stats["open_incidents"] == 2
    assert stats["critical_incidents"] == 1
    assert stats["resolved_today"] == 1


@pytest.mark.asyncio
async def test_dashboard_is_scoped_for_reporters(client, seeded, make_user, auth_headers):
    outsider = await make_user("reporter")

    stats = (await client.get("/api/dashboard/stats", headers=auth_headers(outsider))).json()
    recent = (await client.get("/api/dashboard/recent-incidents", headers=auth_headers(outsider))).json()

    assert stats["total_incidents"] == 0
    assert recent == []


@pytest.mark.asyncio
async def test_dashboard_recent_and_chart(client, seeded, reporter, auth_headers):
    headers = auth_headers(reporter)

    recent = (await client.get("/api/dashboard/recent-incidents?limit=2", headers=headers)).json()
    chart = (await client.get("/api/dashboard/chart-data?days=3", headers=headers)).json()

    assert [i["incident_id"] for i in recent] == [seeded["waiting"].incident_id, seeded["fixed"].incident_id]
    assert len(chart) == 3
    assert chart[-1]["created"] == 3


@pytest.mark.asyncio
async def test_dashboard_workload(client, seeded, agent, reporter, auth_headers):
    rows = (await client.get("/api/dashboard/workload", headers=auth_headers(agent))).json()

    assert rows == [{"user_id": agent.id, "name": "Alan Agent", "total": 1, "critical": 1, "high": 0}]
    assert (await client.get("/api/dashboard/workload", headers=auth_headers(reporter))).status_code == 403


# ── Categories ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_categories_merge_catalogue(client, seeded, reporter, auth_headers):
    rows = {r["name"]: r for r in (await client.get("/api/categories", headers=auth_headers(reporter))).json()}

    assert rows["Network"]["total_incidents"] == 1
    assert rows["Email"]["total_incidents"] == 1
    assert rows["Hardware & Equipment"]["total_incidents"] == 0


@pytest.mark.asyncio
async def test_category_trends(client, seeded, agent, auth_headers):
    rows = (await client.get("/api/categories/trends?days=7", headers=auth_headers(agent))).json()

    assert {r["category"] for r in rows} == {"Network", "Email", "Software"}
    assert all(r["total"] == 1 for r in rows)
