"""Authentication API — local accounts with bcrypt passwords and JWT bearer tokens.

Reporters register directly. IT roles file a registration request that an
admin or team lead approves (see ``api/users.py``).
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import settings
from backend.database import get_session
from backend.incident_manager import Actor
from backend.models.registration import (
    RegistrationRequest,
    RegistrationRequestCreate,
    RegistrationRequestResponse,
    RegistrationStatus,
)
from backend.models.user import (
    IT_ROLES,
    NotificationSettings,
    PasswordChange,
    ProfileUpdate,
    TokenResponse,
    User,
    UserLogin,
    UserRegister,
    UserResponse,
    UserRole,
)
from backend.utils.security import create_access_token, hash_password, verify_password
from backend.utils.time import utc_now

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger("incidentdesk.auth")

security = HTTPBearer(auto_error=False)


# ── Dependency: get current user ──────────────────────────────

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: AsyncSession = Depends(get_session),
) -> Optional[User]:
    """Resolve the bearer token to an active user; None when no token is sent."""
    if credentials is None:
        return None

    try:
        payload = jwt.decode(
            credentials.credentials, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
        user_id = int(payload.get("sub", 0))
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")
    except (JWTError, ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = await session.get(User, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


async def require_auth(
    user: Optional[User] = Depends(get_current_user),
) -> User:
    """Strict auth dependency — rejects unauthenticated requests."""
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_role(*roles: str):
    """Factory for role-checking dependencies."""
    async def _check(user: User = Depends(require_auth)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Requires one of: {', '.join(roles)}"
            )
        return user
    return _check


require_admin = require_role(UserRole.ADMIN.value)
require_manager = require_role(UserRole.ADMIN.value, UserRole.TEAM_LEAD.value)
require_it_staff = require_role(*sorted(IT_ROLES))


def current_actor(user: User = Depends(require_auth)) -> Actor:
    return Actor.from_user(user)


def _token_response(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user.id, user.role),
        expires_in=settings.jwt_expire_minutes * 60,
        user=UserResponse.model_validate(user),
    )


async def _email_taken(session: AsyncSession, email: str) -> bool:
    user = await session.execute(select(User.id).where(User.email == email))
    if user.scalar_one_or_none() is not None:
        return True
    pending = await session.execute(
        select(RegistrationRequest.id).where(
            RegistrationRequest.email == email,
            RegistrationRequest.status == RegistrationStatus.PENDING.value,
        )
    )
    return pending.scalar_one_or_none() is not None


# ── Endpoints ─────────────────────────────────────────────────

@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    body: UserRegister,
    session: AsyncSession = Depends(get_session),
):
    """Self-registration for reporters."""
    if await _email_taken(session, body.email):
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        email=body.email,
        hashed_password=hash_password(body.password),
        first_name=body.first_name.strip(),
        last_name=body.last_name.strip(),
        role=UserRole.REPORTER.value,
        department=body.department,
        phone=body.phone,
        is_active=True,
        created_at=utc_now(),
        last_login=utc_now(),
    )
    session.add(user)
    await session.commit()
    logger.info("Registered reporter %s", user.email)
    return _token_response(user)


@router.post("/registration-request", response_model=RegistrationRequestResponse, status_code=201)
async def request_registration(
    body: RegistrationRequestCreate,
    session: AsyncSession = Depends(get_session),
):
    """IT-role signup; the account is created once an admin or team lead approves."""
    if await _email_taken(session, body.email):
        raise HTTPException(status_code=409, detail="Email already registered or pending approval")

    request = RegistrationRequest(
        first_name=body.first_name.strip(),
        last_name=body.last_name.strip(),
        email=body.email,
        hashed_password=hash_password(body.password),
        role=body.role.value,
        department=body.department,
        status=RegistrationStatus.PENDING.value,
        requested_at=utc_now(),
    )
    session.add(request)
    await session.commit()
    logger.info("Registration request filed for %s as %s", request.email, request.role)
    return RegistrationRequestResponse.model_validate(request)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: UserLogin,
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(select(User).where(User.email == body.email.strip().lower()))
    user = result.scalar_one_or_none()
    if user is None or not verify_password(body.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    user.last_login = utc_now()
    await session.commit()
    return _token_response(user)


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(require_auth)):
    return user


@router.put("/profile", response_model=UserResponse)
async def update_profile(
    body: ProfileUpdate,
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    for field, value in body.model_dump(exclude_unset=True).items():
        if field in {"first_name", "last_name"} and not (value or "").strip():
            raise HTTPException(status_code=400, detail=f"{field} cannot be empty")
        setattr(user, field, value)
    await session.commit()
    return user


@router.put("/change-password")
async def change_password(
    body: PasswordChange,
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    if not verify_password(body.current_password, user.hashed_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    user.hashed_password = hash_password(body.new_password)
    await session.commit()
    logger.info("Password changed for user %s", user.id)
    return {"status": "ok"}


@router.get("/notification-settings", response_model=NotificationSettings)
async def get_notification_settings(user: User = Depends(require_auth)):
    return NotificationSettings(
        email_notifications=user.notify_email,
        incident_assigned=user.notify_incident_assigned,
        incident_updated=user.notify_incident_updated,
        sla_breaches=user.notify_sla_breaches,
    )


@router.put("/notification-settings", response_model=NotificationSettings)
async def update_notification_settings(
    body: NotificationSettings,
    user: User = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    user.notify_email = body.email_notifications
    user.notify_incident_assigned = body.incident_assigned
    user.notify_incident_updated = body.incident_updated
    user.notify_sla_breaches = body.sla_breaches
    await session.commit()
    return body
