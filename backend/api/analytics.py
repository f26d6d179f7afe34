"""Analytics API — windowed incident metrics and report views."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.analytics import engine
from backend.api.auth import require_it_staff
from backend.api.incidents import get_incident_manager
from backend.database import get_session
from backend.incident_manager import IncidentManager
from backend.models.incident import Incident
from backend.models.user import User

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

_WINDOW = Query("30d", description="7d, 30d, 90d or 1y")


async def load_incidents(session: AsyncSession) -> list[Incident]:
    """Every incident; the engine applies the window itself."""
    result = await session.execute(select(Incident))
    return list(result.scalars().all())


@router.get("/metrics")
async def get_metrics(
    window: str = _WINDOW,
    group_by: str = Query("category", description="category or severity"),
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incidents = await load_incidents(session)
    return engine.aggregate_metrics(incidents, window, group_by, manager.now()).to_dict()


@router.get("/trends")
async def get_trends(
    window: str = _WINDOW,
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incidents = await load_incidents(session)
    return {"window": window, "trends": engine.incident_trends(incidents, window, manager.now())}


@router.get("/performance")
async def get_performance(
    window: str = _WINDOW,
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incidents = await load_incidents(session)
    return {"window": window, "by_severity": engine.performance_by_severity(incidents, window, manager.now())}


@router.get("/resolution-rates")
async def get_resolution_rates(
    window: str = _WINDOW,
    group_by: str = Query("category"),
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incidents = await load_incidents(session)
    result = engine.aggregate_metrics(incidents, window, group_by, manager.now())
    return {
        "window": window,
        "group_by": group_by,
        "rates": result.to_dict()["resolution_rates"],
    }


@router.get("/categories")
async def get_category_breakdown(
    window: str = _WINDOW,
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incidents = await load_incidents(session)
    return {"window": window, "categories": engine.category_breakdown(incidents, window, manager.now())}


@router.get("/team-performance")
async def get_team_performance(
    window: str = _WINDOW,
    limit: int = Query(20, ge=1, le=100),
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incidents = await load_incidents(session)
    users = await session.execute(select(User.id, User.first_name, User.last_name))
    names = {uid: f"{first} {last}".strip() for uid, first, last in users.all()}
    return {
        "window": window,
        "team": engine.team_performance(incidents, window, manager.now(), names=names, limit=limit),
    }
