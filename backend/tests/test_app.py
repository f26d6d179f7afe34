"""Tests for the application shell: middleware headers, liveness and metrics."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from backend.main import app


@pytest.mark.asyncio
async def test_root_and_liveness():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        root = await client.get("/")
        live = await client.get("/api/health/live")

    assert root.json()["service"] == "incidentdesk-api"
    assert live.json() == {"status": "alive", "service": "incidentdesk"}


@pytest.mark.asyncio
async def test_request_id_and_security_headers():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/health/live", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


@pytest.mark.asyncio
async def test_metrics_endpoint_counts_requests():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.get("/api/health/live")
        body = (await client.get("/api/metrics")).json()

    assert body["service"] == "incidentdesk"
    assert body["metrics"]["route_counts"]["/api/health/live"] >= 1
