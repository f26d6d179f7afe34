"""Category catalogue API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.analytics.engine import DEFAULT_CATEGORIES, category_stats, category_trends
from backend.api.auth import require_auth, require_it_staff
from backend.api.incidents import get_incident_manager
from backend.database import get_session
from backend.incident_manager import IncidentManager
from backend.models.incident import Incident
from backend.models.user import User

router = APIRouter(prefix="/api/categories", tags=["categories"])


@router.get("")
async def list_categories(
    _: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    """Default catalogue merged with categories seen on incidents, with counts."""
    result = await session.execute(select(Incident))
    return category_stats(result.scalars().all(), DEFAULT_CATEGORIES)


@router.get("/trends")
async def get_category_trends(
    days: int = Query(30, ge=1, le=365),
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    result = await session.execute(select(Incident))
    return category_trends(result.scalars().all(), days, manager.now())
