"""Incident data model — reported IT incidents with their audit trail."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from pydantic import BaseModel, Field

from backend.database import Base
from backend.utils.time import ensure_utc, utc_now


class IncidentSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Urgency, impact and priority share the severity scale.
IncidentLevel = IncidentSeverity
IncidentPriority = IncidentSeverity


class IncidentStatus(str, enum.Enum):
    NEW = "new"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"


OPEN_STATUSES = frozenset({"new", "assigned", "in-progress"})
WORKLOAD_STATUSES = frozenset({"assigned", "in-progress"})
RESOLVED_STATUSES = frozenset({"resolved", "closed"})


# ── Value objects ────────────────────────────────────────────
# Snapshots copied at creation/assignment time; they do not follow later
# edits to the user record.

@dataclass(frozen=True)
class PersonSnapshot:
    user_id: int
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class AssignmentSnapshot:
    user_id: int
    name: str
    assigned_at: Optional[datetime]
    assigned_by: Optional[int]


@dataclass(frozen=True)
class SlaBlock:
    target: Optional[datetime]
    first_response_target: Optional[datetime]
    first_response_at: Optional[datetime]
    is_breached: bool
    breached_at: Optional[datetime]


@dataclass(frozen=True)
class ResolutionBlock:
    notes: Optional[str]
    root_cause: Optional[str]
    preventive_measures: Optional[str]
    category: Optional[str]
    resolved_by: Optional[int]
    resolved_at: Optional[datetime]
    time_spent: Optional[float]
    satisfaction_rating: Optional[int]


@dataclass(frozen=True)
class IncidentMetrics:
    view_count: int
    reopen_count: int
    last_viewed_at: Optional[datetime]


# ── ORM ──────────────────────────────────────────────────────

class Incident(Base):
    __tablename__ = "incidents"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[Optional[str]] = mapped_column(String(20), unique=True, index=True, nullable=True)
    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(20), index=True)
    urgency: Mapped[str] = mapped_column(String(20), default=IncidentSeverity.MEDIUM.value)
    impact: Mapped[str] = mapped_column(String(20), default=IncidentSeverity.MEDIUM.value)
    priority: Mapped[str] = mapped_column(String(20), default=IncidentSeverity.MEDIUM.value, index=True)
    status: Mapped[str] = mapped_column(String(20), default=IncidentStatus.NEW.value, index=True)
    category: Mapped[str] = mapped_column(String(100), index=True)
    subcategory: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    affected_services: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    steps_to_reproduce: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expected_behavior: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actual_behavior: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    workaround: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Reporter snapshot
    reporter_id: Mapped[int] = mapped_column(Integer, index=True)
    reporter_name: Mapped[str] = mapped_column(String(200))
    reporter_email: Mapped[str] = mapped_column(String(255))
    reporter_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Assignee snapshot
    assignee_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    assignee_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_by_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # SLA
    sla_target: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    sla_first_response_target: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_is_breached: Mapped[bool] = mapped_column(Boolean, default=False)
    sla_breached_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Resolution
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    root_cause: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preventive_measures: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolved_by_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    time_spent_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    satisfaction_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Metrics
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    reopen_count: Mapped[int] = mapped_column(Integer, default=0)
    last_viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    work_logs: Mapped[list["WorkLog"]] = relationship(
        back_populates="incident",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="WorkLog.id",
    )
    comments: Mapped[list["Comment"]] = relationship(
        back_populates="incident",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Comment.id",
    )
    # Incident-level attachments only; comment attachments hang off their comment.
    attachments: Mapped[list["Attachment"]] = relationship(
        lazy="selectin",
        order_by="Attachment.id",
        primaryjoin="and_(Incident.id == Attachment.incident_pk, Attachment.comment_id.is_(None))",
        viewonly=True,
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def reporter(self) -> PersonSnapshot:
        return PersonSnapshot(
            user_id=self.reporter_id,
            name=self.reporter_name,
            email=self.reporter_email,
            phone=self.reporter_phone,
        )

    @property
    def assignee(self) -> Optional[AssignmentSnapshot]:
        if self.assignee_id is None:
            return None
        return AssignmentSnapshot(
            user_id=self.assignee_id,
            name=self.assignee_name or "",
            assigned_at=ensure_utc(self.assigned_at),
            assigned_by=self.assigned_by_id,
        )

    @property
    def sla(self) -> SlaBlock:
        return SlaBlock(
            target=ensure_utc(self.sla_target),
            first_response_target=ensure_utc(self.sla_first_response_target),
            first_response_at=ensure_utc(self.sla_first_response_at),
            is_breached=bool(self.sla_is_breached),
            breached_at=ensure_utc(self.sla_breached_at),
        )

    @property
    def resolution(self) -> Optional[ResolutionBlock]:
        if self.resolved_at is None and not self.resolution_notes:
            return None
        return ResolutionBlock(
            notes=self.resolution_notes,
            root_cause=self.root_cause,
            preventive_measures=self.preventive_measures,
            category=self.resolution_category,
            resolved_by=self.resolved_by_id,
            resolved_at=ensure_utc(self.resolved_at),
            time_spent=self.time_spent_hours,
            satisfaction_rating=self.satisfaction_rating,
        )

    @property
    def metrics(self) -> IncidentMetrics:
        return IncidentMetrics(
            view_count=self.view_count or 0,
            reopen_count=self.reopen_count or 0,
            last_viewed_at=ensure_utc(self.last_viewed_at),
        )

    @property
    def tags(self) -> list[str]:
        if not self.tags_json:
            return []
        try:
            parsed = json.loads(self.tags_json)
        except (json.JSONDecodeError, TypeError):
            return []
        return [str(tag) for tag in parsed] if isinstance(parsed, list) else []

    @tags.setter
    def tags(self, values: list[str]) -> None:
        self.tags_json = json.dumps([str(v).strip() for v in values or [] if str(v).strip()])


class WorkLog(Base):
    """Append-only audit entry. ``time_spent_minutes`` is in minutes."""

    __tablename__ = "incident_work_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_pk: Mapped[int] = mapped_column(ForeignKey("incidents.id", ondelete="CASCADE"), index=True)
    action: Mapped[str] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[int] = mapped_column(Integer)
    user_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    time_spent_minutes: Mapped[float] = mapped_column(Float, default=0)
    is_system_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    incident: Mapped[Incident] = relationship(back_populates="work_logs")


class Comment(Base):
    __tablename__ = "incident_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_pk: Mapped[int] = mapped_column(ForeignKey("incidents.id", ondelete="CASCADE"), index=True)
    text: Mapped[str] = mapped_column(Text)
    author_id: Mapped[int] = mapped_column(Integer)
    author_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    incident: Mapped[Incident] = relationship(back_populates="comments")
    attachments: Mapped[list["Attachment"]] = relationship(
        back_populates="comment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Attachment.id",
    )


class Attachment(Base):
    """Attachment metadata; the bytes live behind ``storage_ref``."""

    __tablename__ = "incident_attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_pk: Mapped[int] = mapped_column(ForeignKey("incidents.id", ondelete="CASCADE"), index=True)
    comment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("incident_comments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    filename: Mapped[str] = mapped_column(String(300))
    original_name: Mapped[str] = mapped_column(String(300))
    mime_type: Mapped[str] = mapped_column(String(100))
    size: Mapped[int] = mapped_column(Integer)
    storage_ref: Mapped[str] = mapped_column(String(500))
    uploaded_by_id: Mapped[int] = mapped_column(Integer)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    comment: Mapped[Optional[Comment]] = relationship(back_populates="attachments")


# ── Pydantic Schemas ─────────────────────────────────────────

class IncidentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: str = Field(min_length=1)
    severity: IncidentSeverity
    category: str = Field(min_length=1)
    subcategory: str | None = None
    urgency: IncidentLevel = IncidentLevel.MEDIUM
    impact: IncidentLevel = IncidentLevel.MEDIUM
    affected_services: str | None = None
    steps_to_reproduce: str | None = None
    expected_behavior: str | None = None
    actual_behavior: str | None = None
    tags: list[str] = []

    model_config = {"extra": "ignore"}


class IncidentUpdate(BaseModel):
    """Partial update; unknown keys (including ``priority``) are dropped."""

    title: str | None = None
    description: str | None = None
    severity: IncidentSeverity | None = None
    category: str | None = None
    subcategory: str | None = None
    urgency: IncidentLevel | None = None
    impact: IncidentLevel | None = None
    affected_services: str | None = None
    steps_to_reproduce: str | None = None
    expected_behavior: str | None = None
    actual_behavior: str | None = None
    status: IncidentStatus | None = None
    workaround: str | None = None
    tags: list[str] | None = None

    model_config = {"extra": "ignore"}


class AssignRequest(BaseModel):
    assignee_id: int
    notes: str | None = None


class ResolveRequest(BaseModel):
    resolution_notes: str = ""
    root_cause: str | None = None
    preventive_measures: str | None = None
    resolution_category: str | None = None
    time_spent: float | None = Field(default=None, ge=0)
    satisfaction_rating: int | None = Field(default=None, ge=1, le=5)


class TransitionRequest(BaseModel):
    notes: str | None = None


class CommentCreate(BaseModel):
    text: str = Field(min_length=1)
    is_internal: bool = False


class PersonSnapshotResponse(BaseModel):
    user_id: int
    name: str
    email: str
    phone: str | None = None

    model_config = {"from_attributes": True}


class AssignmentResponse(BaseModel):
    user_id: int
    name: str
    assigned_at: datetime | None = None
    assigned_by: int | None = None

    model_config = {"from_attributes": True}


class SlaResponse(BaseModel):
    target: datetime | None = None
    first_response_target: datetime | None = None
    first_response_at: datetime | None = None
    is_breached: bool = False
    breached_at: datetime | None = None
    state: str | None = None
    remaining_minutes: float | None = None

    model_config = {"from_attributes": True}


class ResolutionResponse(BaseModel):
    notes: str | None = None
    root_cause: str | None = None
    preventive_measures: str | None = None
    category: str | None = None
    resolved_by: int | None = None
    resolved_at: datetime | None = None
    time_spent: float | None = None
    satisfaction_rating: int | None = None

    model_config = {"from_attributes": True}


class MetricsResponse(BaseModel):
    view_count: int = 0
    reopen_count: int = 0
    last_viewed_at: datetime | None = None

    model_config = {"from_attributes": True}


class AttachmentResponse(BaseModel):
    id: int
    filename: str
    original_name: str
    mime_type: str
    size: int
    uploaded_by_id: int
    uploaded_at: datetime

    model_config = {"from_attributes": True}


class WorkLogResponse(BaseModel):
    id: int
    action: str
    description: str | None = None
    user_id: int
    user_name: str | None = None
    time_spent_minutes: float = 0
    is_system_generated: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class CommentResponse(BaseModel):
    id: int
    text: str
    author_id: int
    author_name: str | None = None
    is_internal: bool = False
    created_at: datetime
    attachments: list[AttachmentResponse] = []

    model_config = {"from_attributes": True}


class IncidentSummaryResponse(BaseModel):
    id: int
    incident_id: str | None = None
    title: str
    severity: str
    urgency: str
    impact: str
    priority: str
    status: str
    category: str
    reporter: PersonSnapshotResponse
    assignee: AssignmentResponse | None = None
    sla: SlaResponse
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class IncidentResponse(IncidentSummaryResponse):
    description: str
    subcategory: str | None = None
    affected_services: str | None = None
    steps_to_reproduce: str | None = None
    expected_behavior: str | None = None
    actual_behavior: str | None = None
    workaround: str | None = None
    tags: list[str] = []
    resolution: ResolutionResponse | None = None
    metrics: MetricsResponse
    acknowledged_at: datetime | None = None
    closed_at: datetime | None = None
    work_logs: list[WorkLogResponse] = []
    comments: list[CommentResponse] = []
    attachments: list[AttachmentResponse] = []
