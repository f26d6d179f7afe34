"""Dashboard data API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.analytics.engine import chart_data, dashboard_stats, sla_performance
from backend.api.auth import require_auth, require_it_staff
from backend.api.incidents import get_incident_manager, summarize_incident
from backend.database import get_session
from backend.incident_manager import IncidentManager
from backend.models.incident import Incident, IncidentSummaryResponse
from backend.models.user import User, UserRole

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


def _scoped(query, user: User):
    """Reporters only see figures for incidents they reported."""
    if user.role == UserRole.REPORTER.value:
        return query.where(Incident.reporter_id == user.id)
    return query


async def _load(session: AsyncSession, user: User) -> list[Incident]:
    result = await session.execute(_scoped(select(Incident), user))
    return list(result.scalars().all())


@router.get("/stats")
async def get_stats(
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """KPI cards: totals, open, resolved today, critical, MTTR/MTTA and weekly trends."""
    return dashboard_stats(await _load(session, user), manager.now())


@router.get("/recent-incidents", response_model=list[IncidentSummaryResponse])
async def get_recent_incidents(
    limit: int = Query(10, ge=1, le=50),
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    result = await session.execute(
        _scoped(select(Incident), user).order_by(desc(Incident.created_at), desc(Incident.id)).limit(limit)
    )
    return [summarize_incident(i, manager) for i in result.scalars().all()]


@router.get("/chart-data")
async def get_chart_data(
    days: int = Query(7, ge=1, le=365),
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    return chart_data(await _load(session, user), days, manager.now())


@router.get("/sla-performance")
async def get_sla_performance(
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    return sla_performance(await _load(session, user), manager.now())


@router.get("/workload")
async def get_workload(
    limit: int = Query(10, ge=1, le=100),
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    return await manager.balancer.workload_distribution(session, limit=limit)
