"""Registration requests — IT-role signups awaiting approval."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field, field_validator

from backend.database import Base
from backend.models.user import UserRole
from backend.utils.time import utc_now


class RegistrationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RegistrationRequest(Base):
    __tablename__ = "registration_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(255), index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20))
    department: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), default=RegistrationStatus.PENDING.value, index=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_by_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class RegistrationRequestCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str
    password: str = Field(min_length=6)
    role: UserRole
    department: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("Invalid email address")
        return value

    @field_validator("role")
    @classmethod
    def _it_role_only(cls, value: UserRole) -> UserRole:
        if value == UserRole.REPORTER:
            raise ValueError("Reporters register directly; requests are for IT roles")
        return value


class RegistrationDecision(BaseModel):
    reason: str | None = None


class RegistrationRequestResponse(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    role: str
    department: str
    status: str
    requested_at: datetime
    processed_at: datetime | None = None
    processed_by_id: int | None = None
    rejection_reason: str | None = None

    model_config = {"from_attributes": True}
