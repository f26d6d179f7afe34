"""Tests for the background SLA sweep scheduler."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest

from backend.incident_manager import Actor
from backend.workers.scheduler import BackgroundScheduler


@pytest.fixture
def session_factory(db_session):
    @asynccontextmanager
    async def _session():
        yield db_session

    return _session


@pytest.mark.asyncio
async def test_tick_marks_overdue_incidents(
    db_session, manager, clock, publisher, reporter, incident_payload, session_factory
):
    await manager.create_incident(db_session, incident_payload(severity="critical"), Actor.from_user(reporter))
    await manager.create_incident(db_session, incident_payload(severity="low"), Actor.from_user(reporter))
    sweeper = BackgroundScheduler(manager_factory=lambda: manager, interval=60, session_factory=session_factory)

    assert await sweeper.tick() == 0

    clock.advance(hours=2)
    assert await sweeper.tick() == 1
    assert sweeper.last_swept == 1
    assert publisher.types()[-1] == "sla_breached"

    assert await sweeper.tick() == 0


@pytest.mark.asyncio
async def test_start_and_stop_toggle_running(manager, session_factory):
    sweeper = BackgroundScheduler(manager_factory=lambda: manager, interval=3600, session_factory=session_factory)

    await sweeper.start()
    await sweeper.start()
    assert sweeper.running is True

    await asyncio.sleep(0)
    await sweeper.stop()
    assert sweeper.running is False
