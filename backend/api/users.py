"""User management API — team roster, workload, profiles and registration approvals."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.analytics.engine import user_performance, user_statistics
from backend.api.auth import require_admin, require_auth, require_it_staff, require_manager
from backend.api.incidents import get_incident_manager
from backend.database import get_session
from backend.errors import InvalidTransition, NotFound, PermissionDenied
from backend.incident_manager import Actor, IncidentManager
from backend.models.incident import Incident
from backend.models.registration import (
    RegistrationDecision,
    RegistrationRequest,
    RegistrationRequestResponse,
    RegistrationStatus,
)
from backend.models.user import IT_ROLES, MANAGER_ROLES, AdminUserUpdate, ProfileUpdate, User, UserResponse, UserRole

router = APIRouter(prefix="/api/users", tags=["users"])
logger = logging.getLogger("incidentdesk.users")

_ADMIN_FIELDS = set(AdminUserUpdate.model_fields) - set(ProfileUpdate.model_fields)


class UserDetailResponse(UserResponse):
    statistics: dict


async def _get_user(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFound("User not found", details={"user_id": user_id})
    return user


def _require_self_or_manager(current: User, user_id: int) -> None:
    if current.id != user_id and current.role not in MANAGER_ROLES:
        raise PermissionDenied("Access denied")


async def _active_admin_count(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count(User.id)).where(User.role == UserRole.ADMIN.value, User.is_active.is_(True))
    )
    return int(result.scalar() or 0)


async def _guard_last_admin(session: AsyncSession, user: User) -> None:
    if user.role == UserRole.ADMIN.value and user.is_active and await _active_admin_count(session) <= 1:
        raise InvalidTransition("Cannot remove the last active admin", details={"user_id": user.id})


# ── Roster ──────────────────────────────────────────────────────

@router.get("", response_model=list[UserResponse])
async def list_users(
    role: str | None = Query(None),
    department: str | None = Query(None),
    active: bool | None = Query(None),
    search: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    _: User = Depends(require_manager),
    session: AsyncSession = Depends(get_session),
):
    query = select(User).order_by(User.first_name, User.last_name)
    if role:
        query = query.where(User.role == role)
    if department:
        query = query.where(User.department == department)
    if active is not None:
        query = query.where(User.is_active.is_(active))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(
            User.first_name.ilike(pattern), User.last_name.ilike(pattern), User.email.ilike(pattern),
        ))
    result = await session.execute(query.limit(limit))
    return result.scalars().all()


@router.get("/team-members")
async def team_members(
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Assignable staff with their current workload."""
    members = await manager.balancer.team_members(session)
    return [m.to_dict() for m in members]


@router.get("/suggest-assignee")
async def suggest_assignee(
    category: str | None = Query(None),
    _: User = Depends(require_it_staff),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    member = await manager.balancer.suggest_assignee(session, category)
    return {"suggestion": member.to_dict() if member else None}


# ── Registration requests ───────────────────────────────────────

@router.get("/registration-requests", response_model=list[RegistrationRequestResponse])
async def list_registration_requests(
    status: str = Query(RegistrationStatus.PENDING.value),
    _: User = Depends(require_manager),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(RegistrationRequest)
        .where(RegistrationRequest.status == status)
        .order_by(RegistrationRequest.requested_at)
    )
    return result.scalars().all()


async def _pending_request(session: AsyncSession, request_id: int) -> RegistrationRequest:
    request = await session.get(RegistrationRequest, request_id)
    if request is None:
        raise NotFound("Registration request not found", details={"request_id": request_id})
    if request.status != RegistrationStatus.PENDING.value:
        raise InvalidTransition(
            f"Registration request already {request.status}",
            details={"request_id": request_id, "status": request.status},
        )
    return request


@router.post("/registration-requests/{request_id}/approve", response_model=UserResponse, status_code=201)
async def approve_registration(
    request_id: int,
    current: User = Depends(require_manager),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    request = await _pending_request(session, request_id)
    if request.role == UserRole.ADMIN.value and current.role != UserRole.ADMIN.value:
        raise PermissionDenied("Only admins can approve admin accounts")
    existing = await session.execute(select(User.id).where(User.email == request.email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail="Email already registered")

    now = manager.now()
    user = User(
        email=request.email,
        hashed_password=request.hashed_password,
        first_name=request.first_name,
        last_name=request.last_name,
        role=request.role,
        department=request.department,
        is_active=True,
        created_at=now,
    )
    request.status = RegistrationStatus.APPROVED.value
    request.processed_at = now
    request.processed_by_id = current.id
    session.add(user)
    await session.commit()
    logger.info("Approved registration for %s as %s", user.email, user.role, extra={"actor_id": current.id})
    return user


@router.post("/registration-requests/{request_id}/reject", response_model=RegistrationRequestResponse)
async def reject_registration(
    request_id: int,
    body: RegistrationDecision | None = None,
    current: User = Depends(require_manager),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    request = await _pending_request(session, request_id)
    request.status = RegistrationStatus.REJECTED.value
    request.processed_at = manager.now()
    request.processed_by_id = current.id
    request.rejection_reason = body.reason if body else None
    await session.commit()
    logger.info("Rejected registration for %s", request.email, extra={"actor_id": current.id})
    return request


# ── Single user ─────────────────────────────────────────────────

@router.get("/{user_id}", response_model=UserDetailResponse)
async def get_user(
    user_id: int,
    current: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    _require_self_or_manager(current, user_id)
    user = await _get_user(session, user_id)
    result = await session.execute(
        select(Incident)
        .where(or_(
            Incident.reporter_id == user_id,
            Incident.assignee_id == user_id,
            Incident.resolved_by_id == user_id,
        ))
    )
    return UserDetailResponse(
        **UserResponse.model_validate(user).model_dump(),
        statistics=user_statistics(result.scalars().all(), user_id),
    )


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    body: AdminUserUpdate,
    current: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Users edit their own profile; admins can also change role, status and capacity."""
    is_admin = current.role == UserRole.ADMIN.value
    if current.id != user_id and not is_admin:
        raise PermissionDenied("Access denied")
    user = await _get_user(session, user_id)

    changes = body.model_dump(exclude_unset=True)
    if not is_admin:
        changes = {k: v for k, v in changes.items() if k not in _ADMIN_FIELDS}

    if "email" in changes:
        email = (changes["email"] or "").strip().lower()
        if "@" not in email:
            raise HTTPException(status_code=400, detail="Invalid email address")
        taken = await session.execute(select(User.id).where(User.email == email, User.id != user.id))
        if taken.scalar_one_or_none() is not None:
            raise HTTPException(status_code=409, detail="Email already registered")
        changes["email"] = email
    if "role" in changes and changes["role"] is not None:
        changes["role"] = changes["role"].value
        if changes["role"] != UserRole.ADMIN.value:
            await _guard_last_admin(session, user)
    if changes.get("is_active") is False:
        await _guard_last_admin(session, user)

    for field, value in changes.items():
        if field in {"first_name", "last_name", "role"} and not value:
            raise HTTPException(status_code=400, detail=f"{field} cannot be empty")
        setattr(user, field, value)
    if not user.is_active or user.role not in IT_ROLES:
        # Assignees must stay active IT staff.
        await manager.unassign_for_user(session, user.id, Actor.from_user(current))
    await session.commit()
    logger.info("Updated user %s: %s", user.id, ", ".join(sorted(changes)), extra={"actor_id": current.id})
    return user


@router.put("/{user_id}/deactivate", response_model=UserResponse)
async def deactivate_user(
    user_id: int,
    current: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    """Deactivate a user and hand their active incidents back to the queue."""
    user = await _get_user(session, user_id)
    if not user.is_active:
        raise InvalidTransition("User is already inactive", details={"user_id": user_id})
    await _guard_last_admin(session, user)

    user.is_active = False
    released = await manager.unassign_for_user(session, user.id, Actor.from_user(current))
    await session.commit()
    logger.info("Deactivated user %s, released %d incidents", user.id, released, extra={"actor_id": current.id})
    return user


@router.get("/{user_id}/performance")
async def get_user_performance(
    user_id: int,
    current: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    manager: IncidentManager = Depends(get_incident_manager),
):
    _require_self_or_manager(current, user_id)
    await _get_user(session, user_id)
    result = await session.execute(
        select(Incident).where(Incident.resolved_by_id == user_id)
    )
    return user_performance(result.scalars().all(), user_id, manager.now())
