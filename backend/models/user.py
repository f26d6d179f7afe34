"""User data model — reporters and IT staff."""

from __future__ import annotations

import enum
import json
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field, field_validator

from backend.database import Base
from backend.utils.time import utc_now


class UserRole(str, enum.Enum):
    REPORTER = "reporter"
    IT_SUPPORT = "it-support"
    TEAM_LEAD = "team-lead"
    ADMIN = "admin"


# Roles that may be assigned incidents and work them.
IT_ROLES = frozenset({UserRole.IT_SUPPORT.value, UserRole.TEAM_LEAD.value, UserRole.ADMIN.value})
MANAGER_ROLES = frozenset({UserRole.TEAM_LEAD.value, UserRole.ADMIN.value})


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    first_name: Mapped[str] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100))
    role: Mapped[str] = mapped_column(String(20), default=UserRole.REPORTER.value, index=True)
    department: Mapped[str] = mapped_column(String(100), default="General")
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    job_title: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    max_workload: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=10)
    expertise_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    notify_email: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_incident_assigned: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_incident_updated: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_sla_breaches: Mapped[bool] = mapped_column(Boolean, default=True)

    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def expertise(self) -> list[str]:
        if not self.expertise_json:
            return []
        try:
            parsed = json.loads(self.expertise_json)
        except (json.JSONDecodeError, TypeError):
            return []
        return [str(item) for item in parsed] if isinstance(parsed, list) else []

    @expertise.setter
    def expertise(self, values: list[str]) -> None:
        self.expertise_json = json.dumps([str(v) for v in values or []])

    @property
    def is_it_staff(self) -> bool:
        return self.role in IT_ROLES


# ── Pydantic Schemas ─────────────────────────────────────────

class UserRegister(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str
    password: str = Field(min_length=6)
    department: str = Field(min_length=1)
    phone: str | None = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("Invalid email address")
        return value


class UserLogin(BaseModel):
    email: str
    password: str


class ProfileUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    job_title: str | None = None
    bio: str | None = None

    model_config = {"extra": "ignore"}


class AdminUserUpdate(ProfileUpdate):
    email: str | None = None
    role: UserRole | None = None
    department: str | None = None
    is_active: bool | None = None
    expertise: list[str] | None = None
    max_workload: int | None = Field(default=None, ge=0)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


class NotificationSettings(BaseModel):
    email_notifications: bool = True
    incident_assigned: bool = True
    incident_updated: bool = True
    sla_breaches: bool = True


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    department: str
    phone: str | None = None
    job_title: str | None = None
    bio: str | None = None
    is_active: bool
    max_workload: int | None = None
    expertise: list[str] = []
    last_login: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
