"""Incident lifecycle management — the state machine and every incident mutation.

All status changes go through ``IncidentManager._transition``, which validates
the move against ``TRANSITIONS``, applies the target state's side effects and
appends the one work-log entry for it. Each public mutation is a single
read-modify-write: checks first, then changes, then commit, then an event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from backend.config import settings
from backend.errors import ConcurrentModification, InvalidTransition, NotFound, PermissionDenied, ValidationError
from backend.models.incident import (
    WORKLOAD_STATUSES,
    Attachment,
    Comment,
    Incident,
    IncidentCreate,
    IncidentSeverity,
    IncidentStatus,
    ResolveRequest,
    WorkLog,
)
from backend.models.user import IT_ROLES, User, UserRole
from backend.services.notifier import IncidentEvent, IncidentEventPublisher, IncidentEventType
from backend.sla.scheduler import (
    SlaEvaluation,
    SlaPolicy,
    compute_first_response_target,
    compute_sla_target,
    current_policy,
    evaluate_sla,
    mark_breach,
)
from backend.storage.attachments import (
    MAX_FILES_PER_COMMENT,
    MAX_FILES_PER_UPLOAD,
    LocalAttachmentStore,
    StoredFile,
    UploadedFile,
)
from backend.triage.priority import apply_priority
from backend.utils.time import Clock, ensure_utc, utc_now
from backend.workload.balancer import WorkloadBalancer

logger = logging.getLogger("incidentdesk.incidents")

S = IncidentStatus

TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    S.NEW: frozenset({S.ASSIGNED, S.IN_PROGRESS, S.PENDING, S.RESOLVED}),
    S.ASSIGNED: frozenset({S.NEW, S.IN_PROGRESS, S.PENDING, S.RESOLVED}),
    S.IN_PROGRESS: frozenset({S.NEW, S.ASSIGNED, S.PENDING, S.RESOLVED}),
    S.PENDING: frozenset({S.ASSIGNED, S.IN_PROGRESS, S.RESOLVED}),
    S.RESOLVED: frozenset({S.CLOSED, S.REOPENED}),
    S.CLOSED: frozenset({S.REOPENED}),
    S.REOPENED: frozenset({S.ASSIGNED, S.IN_PROGRESS, S.PENDING, S.RESOLVED}),
}

UPDATABLE_FIELDS = frozenset({
    "title", "description", "severity", "category", "subcategory", "urgency", "impact",
    "affected_services", "steps_to_reproduce", "expected_behavior", "actual_behavior",
    "status", "workaround", "tags",
})
REPORTER_FIELDS = frozenset({
    "title", "description", "affected_services", "steps_to_reproduce",
    "expected_behavior", "actual_behavior", "tags",
})
_LEVEL_FIELDS = ("severity", "urgency", "impact")
_REQUIRED_TEXT_FIELDS = ("title", "description", "category")

# Work-log action per entry point; generic status writes use "Status changed to ...".
_ACTIONS = {
    "resolve": "Incident resolved",
    "acknowledge": "Incident acknowledged",
    "reopen": "Incident reopened",
    "close": "Incident closed",
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, as supplied by the auth layer."""

    id: int
    role: str
    name: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=user.id, role=user.role, name=user.full_name)

    @property
    def is_it_staff(self) -> bool:
        return self.role in IT_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _coerce_status(value: Any) -> IncidentStatus:
    try:
        return IncidentStatus(_enum_value(value))
    except ValueError:
        raise ValidationError(
            f"Unknown status '{value}'",
            details={"field": "status", "allowed": [s.value for s in IncidentStatus]},
        ) from None


def _coerce_level(value: Any, field: str) -> str:
    try:
        return IncidentSeverity(_enum_value(value)).value
    except ValueError:
        raise ValidationError(
            f"Unknown {field} '{value}'",
            details={"field": field, "allowed": [s.value for s in IncidentSeverity]},
        ) from None


class IncidentManager:
    """Owns incident creation, the status state machine and all incident mutations."""

    def __init__(
        self,
        clock: Clock = utc_now,
        policy: SlaPolicy | None = None,
        publisher: IncidentEventPublisher | None = None,
        store: LocalAttachmentStore | None = None,
        balancer: WorkloadBalancer | None = None,
        recompute_on_retriage: bool | None = None,
    ) -> None:
        self.clock = clock
        self._policy = policy
        self.publisher = publisher or IncidentEventPublisher()
        self.store = store or LocalAttachmentStore()
        self.balancer = balancer or WorkloadBalancer()
        self.recompute_on_retriage = (
            settings.sla_recompute_on_retriage if recompute_on_retriage is None else recompute_on_retriage
        )

    @property
    def policy(self) -> SlaPolicy:
        return self._policy or current_policy()

    def now(self):
        return ensure_utc(self.clock())

    # ── Lookup ───────────────────────────────────────────────

    async def get_incident(self, session: AsyncSession, ref: str | int, refresh: bool = False) -> Incident:
        """Load by ``INC-NNNNNN`` id or numeric key."""
        stmt = select(Incident)
        ref_text = str(ref).strip()
        if ref_text.upper().startswith("INC-"):
            stmt = stmt.where(Incident.incident_id == ref_text.upper())
        elif ref_text.isdigit():
            stmt = stmt.where(Incident.id == int(ref_text))
        else:
            raise NotFound("Incident not found", details={"incident": ref_text})
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)

        result = await session.execute(stmt)
        incident = result.scalar_one_or_none()
        if incident is None:
            raise NotFound("Incident not found", details={"incident": ref_text})
        return incident

    def sla_status(self, incident: Incident) -> SlaEvaluation:
        return evaluate_sla(incident, self.now(), self.policy)

    # ── Creation ─────────────────────────────────────────────

    async def create_incident(
        self,
        session: AsyncSession,
        data: IncidentCreate | Mapping[str, Any],
        actor: Actor,
    ) -> Incident:
        if not isinstance(data, IncidentCreate):
            try:
                data = IncidentCreate.model_validate(dict(data))
            except SchemaValidationError as exc:
                raise ValidationError(
                    "Invalid incident payload",
                    details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
                ) from None

        reporter = await session.get(User, actor.id)
        if reporter is None:
            raise NotFound("Reporter not found", details={"user_id": actor.id})

        now = self.now()
        policy = self.policy
        severity = _coerce_level(data.severity, "severity")
        sla_target = compute_sla_target(severity, now, policy)
        first_response_target = compute_first_response_target(severity, now, policy)

        incident = Incident(
            title=data.title.strip(),
            description=data.description,
            severity=severity,
            urgency=_coerce_level(data.urgency, "urgency"),
            impact=_coerce_level(data.impact, "impact"),
            status=IncidentStatus.NEW.value,
            category=data.category,
            subcategory=data.subcategory,
            affected_services=data.affected_services,
            steps_to_reproduce=data.steps_to_reproduce,
            expected_behavior=data.expected_behavior,
            actual_behavior=data.actual_behavior,
            reporter_id=reporter.id,
            reporter_name=reporter.full_name,
            reporter_email=reporter.email,
            reporter_phone=reporter.phone,
            sla_target=sla_target,
            sla_first_response_target=first_response_target,
            sla_is_breached=False,
            view_count=0,
            reopen_count=0,
            created_at=now,
            updated_at=now,
        )
        incident.tags = data.tags
        apply_priority(incident)
        incident.work_logs.append(WorkLog(
            action="Incident created",
            description=f"Incident reported by {reporter.full_name}",
            user_id=reporter.id,
            user_name=reporter.full_name,
            time_spent_minutes=0,
            is_system_generated=True,
            created_at=now,
        ))

        session.add(incident)
        await session.flush()
        incident.incident_id = f"INC-{incident.id:06d}"
        await self._commit(session)

        logger.info(
            "Incident created: severity=%s priority=%s",
            incident.severity, incident.priority,
            extra={"incident_id": incident.incident_id, "actor_id": actor.id},
        )
        await self._publish(session, IncidentEvent.from_incident(
            IncidentEventType.CREATED, incident, actor_id=actor.id, occurred_at=now,
        ))
        # Load the never-touched child collections.
        return await self.get_incident(session, incident.id, refresh=True)

    # ── Views ────────────────────────────────────────────────

    async def record_view(self, session: AsyncSession, incident: Incident) -> Incident:
        incident.view_count = (incident.view_count or 0) + 1
        incident.last_viewed_at = self.now()
        await self._commit(session)
        return incident

    # ── Assignment ───────────────────────────────────────────

    async def assign(
        self,
        session: AsyncSession,
        ref: str | int,
        assignee_id: int,
        actor: Actor,
        notes: str | None = None,
    ) -> Incident:
        self._require_it(actor, "assign incidents")
        incident = await self.get_incident(session, ref)

        assignee = await session.get(User, assignee_id)
        if assignee is None:
            raise NotFound("Assignee not found", details={"assignee_id": assignee_id})
        if not assignee.is_active:
            raise InvalidTransition("Cannot assign to an inactive user", details={"assignee_id": assignee_id})
        if not self.balancer.is_eligible(assignee):
            raise InvalidTransition(
                "Assignee must hold an IT role",
                details={"assignee_id": assignee_id, "role": assignee.role},
            )

        current = _coerce_status(incident.status)
        if current in (S.RESOLVED, S.CLOSED):
            raise InvalidTransition(
                f"Cannot assign an incident that is {current.value}",
                details={"status": current.value},
            )
        if current != S.ASSIGNED:
            self._check_transition(incident, S.ASSIGNED, has_assignee=True)

        workload = await self.balancer.current_workload(session, assignee.id)
        capacity = self.balancer.capacity_of(assignee)
        if incident.assignee_id != assignee.id and workload >= capacity:
            logger.warning(
                "Assigning beyond capacity: %s has %d of %d",
                assignee.full_name, workload, capacity,
                extra={"incident_id": incident.incident_id, "actor_id": actor.id},
            )

        now = self.now()
        incident.assignee_id = assignee.id
        incident.assignee_name = assignee.full_name
        incident.assigned_at = now
        incident.assigned_by_id = actor.id
        self._transition(incident, S.ASSIGNED, actor, now, via="assign", notes=notes)
        incident.updated_at = now
        await self._commit(session)

        logger.info(
            "Incident assigned to %s", assignee.full_name,
            extra={"incident_id": incident.incident_id, "actor_id": actor.id},
        )
        await self._publish(session, IncidentEvent.from_incident(
            IncidentEventType.ASSIGNED, incident, actor_id=actor.id,
            recipient_ids=(assignee.id,), occurred_at=now,
            assignee_id=assignee.id, assignee_name=assignee.full_name, notes=notes,
        ))
        return incident

    async def unassign_for_user(self, session: AsyncSession, user_id: int, actor: Actor) -> int:
        """Return a departing user's active incidents to ``new``; returns how many."""
        result = await session.execute(
            select(Incident).where(
                Incident.assignee_id == user_id,
                Incident.status.in_(WORKLOAD_STATUSES),
            )
        )
        incidents = list(result.scalars().all())
        now = self.now()
        for incident in incidents:
            self._transition(incident, S.NEW, actor, now, via="update")
            incident.assignee_id = None
            incident.assignee_name = None
            incident.assigned_at = None
            incident.assigned_by_id = None
            incident.updated_at = now
        if incidents:
            await self._commit(session)
            logger.info("Unassigned %d incidents from user %s", len(incidents), user_id, extra={"actor_id": actor.id})
        return len(incidents)

    # ── Resolution ───────────────────────────────────────────

    async def resolve(
        self,
        session: AsyncSession,
        ref: str | int,
        resolution: ResolveRequest | Mapping[str, Any],
        actor: Actor,
    ) -> Incident:
        self._require_it(actor, "resolve incidents")
        if not isinstance(resolution, ResolveRequest):
            try:
                resolution = ResolveRequest.model_validate(dict(resolution))
            except SchemaValidationError as exc:
                raise ValidationError(
                    "Invalid resolution payload",
                    details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
                ) from None

        notes = (resolution.resolution_notes or "").strip()
        if not notes:
            raise ValidationError("Resolution notes are required", details={"field": "resolution_notes"})

        incident = await self.get_incident(session, ref)
        current = _coerce_status(incident.status)
        if current == S.RESOLVED:
            raise InvalidTransition("Incident is already resolved", details={"status": current.value})
        self._check_transition(incident, S.RESOLVED, notes=notes)

        now = self.now()
        incident.resolution_notes = notes
        incident.root_cause = resolution.root_cause
        incident.preventive_measures = resolution.preventive_measures
        incident.resolution_category = resolution.resolution_category
        incident.time_spent_hours = resolution.time_spent
        incident.satisfaction_rating = resolution.satisfaction_rating
        self._transition(
            incident, S.RESOLVED, actor, now,
            via="resolve", notes=notes, time_spent_hours=resolution.time_spent,
        )
        incident.updated_at = now
        await self._commit(session)

        logger.info(
            "Incident resolved (breached=%s)", incident.sla_is_breached,
            extra={"incident_id": incident.incident_id, "actor_id": actor.id},
        )
        await self._publish(session, IncidentEvent.from_incident(
            IncidentEventType.RESOLVED, incident, actor_id=actor.id,
            recipient_ids=(incident.reporter_id,), occurred_at=now, notes=notes,
        ))
        return incident

    # ── Dedicated transitions ────────────────────────────────

    async def acknowledge(self, session: AsyncSession, ref: str | int, actor: Actor, notes: str | None = None) -> Incident:
        self._require_it(actor, "acknowledge incidents")
        return await self._dedicated(session, ref, S.IN_PROGRESS, actor, "acknowledge", notes,
                                     IncidentEventType.STATUS_CHANGED)

    async def close(self, session: AsyncSession, ref: str | int, actor: Actor, notes: str | None = None) -> Incident:
        self._require_it(actor, "close incidents")
        return await self._dedicated(session, ref, S.CLOSED, actor, "close", notes,
                                     IncidentEventType.STATUS_CHANGED)

    async def reopen(self, session: AsyncSession, ref: str | int, actor: Actor, notes: str | None = None) -> Incident:
        incident = await self.get_incident(session, ref)
        if not (actor.is_it_staff or actor.id == incident.reporter_id):
            raise PermissionDenied("Only IT staff or the reporter can reopen an incident")
        return await self._dedicated(session, incident, S.REOPENED, actor, "reopen", notes,
                                     IncidentEventType.REOPENED)

    async def _dedicated(
        self,
        session: AsyncSession,
        ref: str | int | Incident,
        target: IncidentStatus,
        actor: Actor,
        via: str,
        notes: str | None,
        event_type: IncidentEventType,
    ) -> Incident:
        incident = ref if isinstance(ref, Incident) else await self.get_incident(session, ref)
        if incident.status == target.value:
            raise InvalidTransition(
                f"Incident is already {target.value}",
                details={"status": incident.status},
            )
        self._check_transition(incident, target)

        now = self.now()
        self._transition(incident, target, actor, now, via=via, notes=notes)
        incident.updated_at = now
        await self._commit(session)

        logger.info(
            "Incident %s", _ACTIONS[via].split(" ", 1)[1],
            extra={"incident_id": incident.incident_id, "actor_id": actor.id},
        )
        await self._publish(session, IncidentEvent.from_incident(
            event_type, incident, actor_id=actor.id,
            recipient_ids=(incident.reporter_id, incident.assignee_id), occurred_at=now, notes=notes,
        ))
        return incident

    # ── Generic update ───────────────────────────────────────

    async def update_fields(
        self,
        session: AsyncSession,
        ref: str | int,
        fields: Mapping[str, Any],
        actor: Actor,
    ) -> Incident:
        """Allow-listed partial update; unknown or forbidden keys are dropped silently."""
        incident = await self.get_incident(session, ref)
        if not (actor.is_it_staff or actor.id == incident.reporter_id):
            raise PermissionDenied("Only IT staff or the reporter can update this incident")

        allowed = UPDATABLE_FIELDS if actor.is_it_staff else REPORTER_FIELDS
        changes = {key: value for key, value in fields.items() if key in allowed}

        for key in _LEVEL_FIELDS:
            if key in changes:
                changes[key] = _coerce_level(changes[key], key)
        for key in _REQUIRED_TEXT_FIELDS:
            if key in changes and not str(changes[key] or "").strip():
                raise ValidationError(f"{key} cannot be empty", details={"field": key})
        if "tags" in changes and changes["tags"] is None:
            changes["tags"] = []

        target: Optional[IncidentStatus] = None
        if "status" in changes:
            target = _coerce_status(changes.pop("status"))
            if target.value == incident.status:
                target = None
            else:
                self._check_transition(incident, target)

        changed: set[str] = set()
        for key, value in changes.items():
            if key == "tags":
                if list(value) != incident.tags:
                    incident.tags = list(value)
                    changed.add(key)
                continue
            if getattr(incident, key) != value:
                setattr(incident, key, value)
                changed.add(key)

        if changed & {"severity", "impact"}:
            apply_priority(incident)
        if "severity" in changed and self.recompute_on_retriage:
            created_at = ensure_utc(incident.created_at)
            incident.sla_target = compute_sla_target(incident.severity, created_at, self.policy)
            incident.sla_first_response_target = compute_first_response_target(
                incident.severity, created_at, self.policy
            )

        now = self.now()
        if target is not None:
            self._transition(incident, target, actor, now, via="update")
            changed.add("status")

        if not changed:
            return incident

        incident.updated_at = now
        await self._commit(session)
        logger.info(
            "Incident updated: %s", ", ".join(sorted(changed)),
            extra={"incident_id": incident.incident_id, "actor_id": actor.id},
        )
        if target is not None:
            await self._publish(session, IncidentEvent.from_incident(
                IncidentEventType.STATUS_CHANGED, incident, actor_id=actor.id,
                recipient_ids=(incident.reporter_id, incident.assignee_id), occurred_at=now,
            ))
        return incident

    # ── Comments and attachments ─────────────────────────────

    async def add_comment(
        self,
        session: AsyncSession,
        ref: str | int,
        text: str,
        actor: Actor,
        is_internal: bool = False,
        attachments: Iterable[UploadedFile] = (),
    ) -> Comment:
        incident = await self.get_incident(session, ref)
        self._require_participant(incident, actor)
        if is_internal and not actor.is_it_staff:
            raise PermissionDenied("Only IT staff can add internal comments")
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment text is required", details={"field": "text"})

        uploads = list(attachments)
        stored = await self.store.save_all(incident.incident_id, uploads, limit=MAX_FILES_PER_COMMENT) if uploads else []

        now = self.now()
        comment = Comment(
            text=text,
            author_id=actor.id,
            author_name=actor.name,
            is_internal=is_internal,
            created_at=now,
            attachments=[self._attachment_row(incident, item, actor, now) for item in stored],
        )
        incident.comments.append(comment)
        incident.updated_at = now
        await self._commit_with_files(session, stored)

        recipients = (incident.assignee_id,) if is_internal else (incident.reporter_id, incident.assignee_id)
        await self._publish(session, IncidentEvent.from_incident(
            IncidentEventType.COMMENTED, incident, actor_id=actor.id,
            recipient_ids=recipients, occurred_at=now,
            comment_id=comment.id, is_internal=is_internal, text=text[:200],
        ))
        return comment

    async def add_attachments(
        self,
        session: AsyncSession,
        ref: str | int,
        files: Iterable[UploadedFile],
        actor: Actor,
    ) -> Incident:
        incident = await self.get_incident(session, ref)
        self._require_participant(incident, actor)
        uploads = list(files)
        if not uploads:
            raise ValidationError("No files uploaded", details={"field": "files"})

        stored = await self.store.save_all(incident.incident_id, uploads, limit=MAX_FILES_PER_UPLOAD)
        now = self.now()
        for item in stored:
            session.add(self._attachment_row(incident, item, actor, now))
        incident.updated_at = now
        await self._commit_with_files(session, stored)
        logger.info(
            "Attached %d files", len(stored),
            extra={"incident_id": incident.incident_id, "actor_id": actor.id},
        )
        return await self.get_incident(session, incident.id, refresh=True)

    @staticmethod
    def _attachment_row(incident: Incident, item: StoredFile, actor: Actor, now) -> Attachment:
        return Attachment(
            incident_pk=incident.id,
            filename=item.filename,
            original_name=item.original_name,
            mime_type=item.mime_type,
            size=item.size,
            storage_ref=item.storage_ref,
            uploaded_by_id=actor.id,
            uploaded_at=now,
        )

    # ── Deletion ─────────────────────────────────────────────

    async def delete_incident(self, session: AsyncSession, ref: str | int, actor: Actor) -> None:
        if not actor.is_admin:
            raise PermissionDenied("Only admins can delete incidents")
        incident = await self.get_incident(session, ref)
        refs = [a.storage_ref for a in incident.attachments]
        refs += [a.storage_ref for c in incident.comments for a in c.attachments]
        incident_key = incident.incident_id

        await session.execute(
            delete(Attachment).where(Attachment.incident_pk == incident.id, Attachment.comment_id.is_(None))
        )
        await session.delete(incident)
        await self._commit(session)
        logger.info("Incident deleted", extra={"incident_id": incident_key, "actor_id": actor.id})

        for storage_ref in refs:
            try:
                await self.store.delete(storage_ref)
            except (OSError, NotFound) as exc:
                logger.warning("Could not remove attachment %s: %s", storage_ref, exc)

    # ── SLA breach sweep ─────────────────────────────────────

    async def sweep_breaches(self, session: AsyncSession) -> list[Incident]:
        """Flip the stored breach flag on overdue incidents. Idempotent."""
        now = self.now()
        result = await session.execute(
            select(Incident).where(
                Incident.sla_is_breached.is_(False),
                Incident.sla_target.is_not(None),
                Incident.sla_target < now,
            )
        )
        flipped = [incident for incident in result.scalars().all() if mark_breach(incident, now)]
        if not flipped:
            return []

        for incident in flipped:
            incident.updated_at = now
        await self._commit(session)
        logger.info("SLA sweep marked %d incidents as breached", len(flipped))
        for incident in flipped:
            await self._publish(session, IncidentEvent.from_incident(
                IncidentEventType.SLA_BREACHED, incident,
                recipient_ids=(incident.assignee_id,), occurred_at=now,
                sla_target=ensure_utc(incident.sla_target).isoformat(),
            ))
        return flipped

    # ── State machine ────────────────────────────────────────

    def _check_transition(
        self,
        incident: Incident,
        target: IncidentStatus,
        has_assignee: bool | None = None,
        notes: str | None = None,
    ) -> None:
        """Raise unless ``incident`` may move to ``target``. Mutates nothing."""
        current = _coerce_status(incident.status)
        if target not in TRANSITIONS[current]:
            raise InvalidTransition(
                f"Cannot move incident from {current.value} to {target.value}",
                details={"from": current.value, "to": target.value},
            )
        if has_assignee is None:
            has_assignee = incident.assignee_id is not None
        if target == S.ASSIGNED and not has_assignee:
            raise InvalidTransition("An assignee is required", details={"to": target.value})
        if target == S.RESOLVED and not (notes or incident.resolution_notes or "").strip():
            raise ValidationError("Resolution notes are required", details={"field": "resolution_notes"})

    def _transition(
        self,
        incident: Incident,
        target: IncidentStatus,
        actor: Actor,
        now,
        via: str,
        notes: str | None = None,
        time_spent_hours: float | None = None,
    ) -> bool:
        """Apply ``target``'s side effects and append its single work-log entry.

        Returns whether the status actually changed. A generic update that
        writes the current status appends nothing; ``assign`` always logs.
        """
        changed = incident.status != target.value
        if not changed and via != "assign":
            return False
        if changed:
            self._check_transition(incident, target, notes=notes)
            self._enter(incident, target, actor, now)

        incident.work_logs.append(self._log_entry(incident, target, actor, now, via, notes, time_spent_hours))
        return changed

    @staticmethod
    def _enter(incident: Incident, target: IncidentStatus, actor: Actor, now) -> None:
        incident.status = target.value
        if target == S.IN_PROGRESS:
            if incident.acknowledged_at is None:
                incident.acknowledged_at = now
            if incident.sla_first_response_at is None:
                incident.sla_first_response_at = now
        elif target == S.RESOLVED:
            incident.resolved_at = now
            incident.resolved_by_id = actor.id
            mark_breach(incident, now)
        elif target == S.CLOSED:
            incident.closed_at = now
        elif target == S.REOPENED:
            incident.reopen_count = (incident.reopen_count or 0) + 1
            incident.closed_at = None

    @staticmethod
    def _log_entry(
        incident: Incident,
        target: IncidentStatus,
        actor: Actor,
        now,
        via: str,
        notes: str | None,
        time_spent_hours: float | None,
    ) -> WorkLog:
        if via == "assign":
            return WorkLog(
                action=f"Assigned to {incident.assignee_name}",
                description=notes or "",
                user_id=actor.id,
                user_name=actor.name,
                time_spent_minutes=0,
                is_system_generated=False,
                created_at=now,
            )
        if via in _ACTIONS:
            return WorkLog(
                action=_ACTIONS[via],
                description=notes or "",
                user_id=actor.id,
                user_name=actor.name,
                time_spent_minutes=(time_spent_hours or 0) * 60,
                is_system_generated=False,
                created_at=now,
            )
        if incident.assignee_id is not None:
            user_id, user_name = incident.assignee_id, incident.assignee_name
        else:
            user_id, user_name = incident.reporter_id, incident.reporter_name
        return WorkLog(
            action=f"Status changed to {target.value}",
            description="",
            user_id=user_id,
            user_name=user_name,
            time_spent_minutes=0,
            is_system_generated=True,
            created_at=now,
        )

    # ── Helpers ──────────────────────────────────────────────

    @staticmethod
    def _require_it(actor: Actor, action: str) -> None:
        if not actor.is_it_staff:
            raise PermissionDenied(f"Only IT staff can {action}", details={"role": actor.role})

    @staticmethod
    def _require_participant(incident: Incident, actor: Actor) -> None:
        if not (actor.is_it_staff or actor.id == incident.reporter_id):
            raise PermissionDenied("Not allowed to act on this incident")

    @staticmethod
    async def _commit(session: AsyncSession) -> None:
        try:
            await session.commit()
        except StaleDataError:
            await session.rollback()
            raise ConcurrentModification("Incident was modified concurrently; reload and retry") from None

    async def _commit_with_files(self, session: AsyncSession, stored: list[StoredFile]) -> None:
        """Commit, removing freshly written files if no metadata row survives."""
        try:
            await self._commit(session)
        except Exception:
            for item in stored:
                try:
                    await self.store.delete(item.storage_ref)
                except (OSError, NotFound) as exc:
                    logger.warning("Could not remove orphaned attachment %s: %s", item.storage_ref, exc)
            raise

    async def _publish(self, session: AsyncSession, event: IncidentEvent) -> None:
        try:
            await self.publisher.publish(event, session=session)
        except Exception:
            logger.exception("Event publish failed: %s", event.type.value, extra={"incident_id": event.incident_id})
