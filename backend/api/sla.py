"""SLA API — policy settings, compliance and at-risk/breached queues."""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.analytics.engine import sla_compliance, sla_performance
from backend.api.auth import require_admin, require_it_staff
from backend.api.incidents import get_incident_manager, summarize_incident
from backend.database import get_session
from backend.incident_manager import IncidentManager
from backend.models.incident import RESOLVED_STATUSES, Incident, IncidentSummaryResponse
from backend.models.user import User
from backend.sla.scheduler import SlaState, load_overrides, save_overrides

router = APIRouter(prefix="/api/sla", tags=["sla"])
logger = logging.getLogger("incidentdesk.sla")

AT_RISK_STATUSES = ("new", "assigned", "in-progress")


class SeverityTarget(BaseModel):
    resolution_hours: float = Field(gt=0)
    first_response_minutes: float = Field(gt=0)


class SlaSettings(BaseModel):
    critical: SeverityTarget
    high: SeverityTarget
    medium: SeverityTarget
    low: SeverityTarget
    warning_minutes: float = Field(default=30, ge=0)


@router.get("/settings", response_model=SlaSettings)
async def get_sla_settings(
    _: User = Depends(require_admin),
    manager: IncidentManager = Depends(get_incident_manager),
):
    return SlaSettings(**manager.policy.to_dict())


@router.put("/settings", response_model=SlaSettings)
async def update_sla_settings(
    body: SlaSettings,
    user: User = Depends(require_admin),
):
    """Persist policy overrides. Applies to incidents created afterwards."""
    overrides = load_overrides()
    overrides.update(body.model_dump())
    save_overrides(overrides)
    logger.info("SLA policy updated by user %s: %s", user.id, body.model_dump())
    return body


@router.get("/performance")
async def get_sla_performance(
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    result = await session.execute(select(Incident).where(Incident.sla_target.is_not(None)))
    incidents = result.scalars().all()
    now = manager.now()
    return {
        "by_severity": sla_performance(incidents, now),
        "compliance": [asdict(c) for c in sla_compliance(incidents, now)],
    }


@router.get("/at-risk", response_model=list[IncidentSummaryResponse])
async def get_at_risk(
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Open incidents whose target falls inside the warning window."""
    result = await session.execute(
        select(Incident)
        .where(Incident.status.in_(AT_RISK_STATUSES), Incident.sla_target.is_not(None))
        .order_by(Incident.sla_target)
    )
    return [
        summarize_incident(i, manager) for i in result.scalars().all()
        if manager.sla_status(i).state == SlaState.AT_RISK
    ]


@router.get("/breached", response_model=list[IncidentSummaryResponse])
async def get_breached(
    limit: int = Query(100, ge=1, le=500),
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    result = await session.execute(
        select(Incident)
        .where(Incident.status.not_in(RESOLVED_STATUSES), Incident.sla_target.is_not(None))
        .order_by(Incident.sla_target)
    )
    breached = [i for i in result.scalars().all() if manager.sla_status(i).is_breached]
    return [summarize_incident(i, manager) for i in breached[:limit]]
