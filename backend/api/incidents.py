"""Incident API endpoints."""

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from pydantic import BaseModel
from sqlalchemy import case, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.auth import current_actor, require_auth
from backend.database import get_session
from backend.errors import NotFound, ValidationError
from backend.incident_manager import Actor, IncidentManager
from backend.models.incident import (
    AssignRequest,
    CommentCreate,
    CommentResponse,
    Incident,
    IncidentCreate,
    IncidentResponse,
    IncidentSummaryResponse,
    IncidentUpdate,
    ResolveRequest,
    SlaResponse,
    TransitionRequest,
)
from backend.models.user import User, UserRole
from backend.storage.attachments import UploadedFile
from backend.utils.time import ensure_utc

router = APIRouter(prefix="/api/incidents", tags=["incidents"])

_manager: IncidentManager | None = None


def get_incident_manager() -> IncidentManager:
    """Process-wide manager; tests override this dependency with a pinned clock."""
    global _manager
    if _manager is None:
        _manager = IncidentManager()
    return _manager


class IncidentListResponse(BaseModel):
    items: list[IncidentSummaryResponse]
    total: int
    page: int
    limit: int
    pages: int


_LEVEL_ORDER = {"critical": 4, "high": 3, "medium": 2, "low": 1}
_SORTS = {
    "created_at": Incident.created_at,
    "updated_at": Incident.updated_at,
    "sla_target": Incident.sla_target,
    "priority": case(_LEVEL_ORDER, value=Incident.priority, else_=0),
    "severity": case(_LEVEL_ORDER, value=Incident.severity, else_=0),
}


def _sla_view(incident: Incident, manager: IncidentManager) -> SlaResponse:
    evaluation = manager.sla_status(incident)
    sla = SlaResponse.model_validate(incident.sla)
    sla.state = evaluation.state.value
    sla.remaining_minutes = evaluation.remaining_minutes
    sla.is_breached = sla.is_breached or evaluation.is_breached
    return sla


def _serialize(incident: Incident, manager: IncidentManager, actor: Actor) -> IncidentResponse:
    response = IncidentResponse.model_validate(incident)
    response.sla = _sla_view(incident, manager)
    if not actor.is_it_staff:
        response.comments = [c for c in response.comments if not c.is_internal]
    return response


def summarize_incident(incident: Incident, manager: IncidentManager) -> IncidentSummaryResponse:
    summary = IncidentSummaryResponse.model_validate(incident)
    summary.sla = _sla_view(incident, manager)
    return summary


async def _to_uploads(files: list[UploadFile]) -> list[UploadedFile]:
    return [
        UploadedFile(
            original_name=f.filename or "upload",
            mime_type=f.content_type or "application/octet-stream",
            content=await f.read(),
        )
        for f in files
    ]


@router.get("", response_model=IncidentListResponse)
async def list_incidents(
    status: str | None = Query(None),
    severity: str | None = Query(None),
    priority: str | None = Query(None),
    category: str | None = Query(None),
    assignee: str | None = Query(None, description="user id, 'me' or 'unassigned'"),
    reporter: str | None = Query(None, description="user id or 'me'"),
    search: str | None = Query(None),
    sort: str = Query("-created_at"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """List incidents with filtering, sorting and pagination.

    Reporters only ever see incidents they reported.
    """
    filters = []
    if status:
        filters.append(Incident.status.in_([s.strip() for s in status.split(",") if s.strip()]))
    if severity:
        filters.append(Incident.severity == severity)
    if priority:
        filters.append(Incident.priority == priority)
    if category:
        filters.append(Incident.category == category)
    if assignee == "me":
        filters.append(Incident.assignee_id == user.id)
    elif assignee == "unassigned":
        filters.append(Incident.assignee_id.is_(None))
    elif assignee:
        if not assignee.isdigit():
            raise ValidationError("assignee must be a user id, 'me' or 'unassigned'", details={"field": "assignee"})
        filters.append(Incident.assignee_id == int(assignee))
    if reporter == "me" or user.role == UserRole.REPORTER.value:
        filters.append(Incident.reporter_id == user.id)
    elif reporter:
        if not reporter.isdigit():
            raise ValidationError("reporter must be a user id or 'me'", details={"field": "reporter"})
        filters.append(Incident.reporter_id == int(reporter))
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(
            Incident.title.ilike(pattern),
            Incident.description.ilike(pattern),
            Incident.incident_id.ilike(pattern),
        ))

    sort_key = sort.lstrip("-")
    if sort_key not in _SORTS:
        raise ValidationError(f"Unknown sort '{sort}'", details={"field": "sort", "allowed": list(_SORTS)})
    order = desc(_SORTS[sort_key]) if sort.startswith("-") else _SORTS[sort_key]

    total = (await session.execute(select(func.count(Incident.id)).where(*filters))).scalar() or 0
    result = await session.execute(
        select(Incident)
        .where(*filters)
        .order_by(order, desc(Incident.id))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return IncidentListResponse(
        items=[summarize_incident(i, manager) for i in result.scalars().all()],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


def _ensure_visible(incident: Incident, actor: Actor) -> None:
    if not actor.is_it_staff and incident.reporter_id != actor.id:
        raise NotFound("Incident not found", details={"incident": incident.incident_id})


@router.get("/{ref}", response_model=IncidentResponse)
async def get_incident(
    ref: str,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Fetch one incident; counts as a view."""
    incident = await manager.get_incident(session, ref)
    _ensure_visible(incident, actor)
    await manager.record_view(session, incident)
    return _serialize(incident, manager, actor)


@router.post("", response_model=IncidentResponse, status_code=201)
async def create_incident(
    data: IncidentCreate,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.create_incident(session, data, actor)
    return _serialize(incident, manager, actor)


@router.put("/{ref}", response_model=IncidentResponse)
async def update_incident(
    ref: str,
    data: IncidentUpdate,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.update_fields(session, ref, data.model_dump(exclude_unset=True), actor)
    return _serialize(incident, manager, actor)


@router.put("/{ref}/assign", response_model=IncidentResponse)
async def assign_incident(
    ref: str,
    data: AssignRequest,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.assign(session, ref, data.assignee_id, actor, notes=data.notes)
    return _serialize(incident, manager, actor)


@router.put("/{ref}/resolve", response_model=IncidentResponse)
async def resolve_incident(
    ref: str,
    data: ResolveRequest,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.resolve(session, ref, data, actor)
    return _serialize(incident, manager, actor)


@router.post("/{ref}/acknowledge", response_model=IncidentResponse)
async def acknowledge_incident(
    ref: str,
    data: TransitionRequest | None = None,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Take the incident into active work."""
    incident = await manager.acknowledge(session, ref, actor, notes=data.notes if data else None)
    return _serialize(incident, manager, actor)


@router.post("/{ref}/close", response_model=IncidentResponse)
async def close_incident(
    ref: str,
    data: TransitionRequest | None = None,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.close(session, ref, actor, notes=data.notes if data else None)
    return _serialize(incident, manager, actor)


@router.post("/{ref}/reopen", response_model=IncidentResponse)
async def reopen_incident(
    ref: str,
    data: TransitionRequest | None = None,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Re-open a resolved or closed incident."""
    incident = await manager.reopen(session, ref, actor, notes=data.notes if data else None)
    return _serialize(incident, manager, actor)


@router.get("/{ref}/sla", response_model=SlaResponse)
async def get_incident_sla(
    ref: str,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.get_incident(session, ref)
    _ensure_visible(incident, actor)
    return _sla_view(incident, manager)


# ── Comments ────────────────────────────────────────────────────

@router.get("/{ref}/comments", response_model=list[CommentResponse])
async def list_comments(
    ref: str,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.get_incident(session, ref)
    _ensure_visible(incident, actor)
    return [
        CommentResponse.model_validate(c)
        for c in incident.comments
        if actor.is_it_staff or not c.is_internal
    ]


@router.post("/{ref}/comments", response_model=CommentResponse, status_code=201)
async def add_comment(
    ref: str,
    data: CommentCreate,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    comment = await manager.add_comment(session, ref, data.text, actor, is_internal=data.is_internal)
    return CommentResponse.model_validate(comment)


@router.post("/{ref}/comments/upload", response_model=CommentResponse, status_code=201)
async def add_comment_with_attachments(
    ref: str,
    text: str = Form(...),
    is_internal: bool = Form(False),
    files: list[UploadFile] = File(default=[]),
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    comment = await manager.add_comment(
        session, ref, text, actor, is_internal=is_internal, attachments=await _to_uploads(files)
    )
    return CommentResponse.model_validate(comment)


# ── Attachments ─────────────────────────────────────────────────

@router.post("/{ref}/attachments", response_model=IncidentResponse, status_code=201)
async def upload_attachments(
    ref: str,
    files: list[UploadFile] = File(...),
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.add_attachments(session, ref, await _to_uploads(files), actor)
    return _serialize(incident, manager, actor)


@router.get("/{ref}/attachments/{attachment_id}")
async def download_attachment(
    ref: str,
    attachment_id: int,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await manager.get_incident(session, ref)
    _ensure_visible(incident, actor)
    candidates = list(incident.attachments) + [
        a for c in incident.comments if actor.is_it_staff or not c.is_internal for a in c.attachments
    ]
    attachment = next((a for a in candidates if a.id == attachment_id), None)
    if attachment is None:
        raise NotFound("Attachment not found", details={"attachment_id": attachment_id})
    content = await manager.store.read(attachment.storage_ref)
    return Response(
        content=content,
        media_type=attachment.mime_type,
        headers={"Content-Disposition": f'inline; filename="{attachment.original_name}"'},
    )


# ── Timeline ────────────────────────────────────────────────────

@router.get("/{ref}/timeline")
async def get_incident_timeline(
    ref: str,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Work-log entries and visible comments in chronological order."""
    incident = await manager.get_incident(session, ref)
    _ensure_visible(incident, actor)

    timeline: list[dict] = []
    for log in incident.work_logs:
        timeline.append({
            "type": "work_log",
            "timestamp": ensure_utc(log.created_at).isoformat(),
            "content": log.action,
            "description": log.description,
            "user": log.user_name,
            "system": log.is_system_generated,
        })
    for comment in incident.comments:
        if comment.is_internal and not actor.is_it_staff:
            continue
        timeline.append({
            "type": "comment",
            "timestamp": ensure_utc(comment.created_at).isoformat(),
            "content": comment.text,
            "user": comment.author_name,
            "internal": comment.is_internal,
        })
    timeline.sort(key=lambda x: x["timestamp"])

    return {
        "incident_id": incident.incident_id,
        "timeline": timeline,
        "event_count": len(timeline),
    }


@router.delete("/{ref}", status_code=204)
async def delete_incident(
    ref: str,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Hard delete (admins only)."""
    await manager.delete_incident(session, ref, actor)
    return Response(status_code=204)
