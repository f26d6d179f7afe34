"""Tests for the incident lifecycle: creation, transitions, work-log rules and permissions."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select, text

from backend.errors import ConcurrentModification, InvalidTransition, NotFound, PermissionDenied, ValidationError
from backend.incident_manager import Actor
from backend.models.incident import Attachment, Incident
from backend.storage.attachments import UploadedFile

NOW = datetime(2026, 3, 16, 12, 0, tzinfo=UTC)
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _actions(incident: Incident) -> list[str]:
    return [log.action for log in incident.work_logs]


@pytest.fixture
def create(db_session, manager, reporter, incident_payload):
    async def _create(**overrides) -> Incident:
        return await manager.create_incident(db_session, incident_payload(**overrides), Actor.from_user(reporter))

    return _create


# ── Creation ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_snapshots_reporter_and_derives_priority_and_sla(create, reporter, publisher):
    incident = await create(severity="critical", impact="high", tags=["vpn", " remote "])

    assert incident.incident_id == "INC-000001"
    assert incident.status == "new"
    assert incident.priority == "critical"
    assert incident.reporter.name == "Rita Reporter"
    assert incident.reporter.email == reporter.email
    assert incident.sla.target == NOW + timedelta(hours=1)
    assert incident.sla.first_response_target == NOW + timedelta(minutes=15)
    assert incident.sla.is_breached is False
    assert incident.tags == ["vpn", "remote"]
    assert publisher.types() == ["incident_created"]


@pytest.mark.asyncio
async def test_create_logs_a_single_system_entry(create):
    incident = await create()

    assert len(incident.work_logs) == 1
    log = incident.work_logs[0]
    assert log.action == "Incident created"
    assert log.description == "Incident reported by Rita Reporter"
    assert log.is_system_generated is True


@pytest.mark.asyncio
async def test_create_rejects_unknown_severity_without_storing(create, db_session):
    with pytest.raises(ValidationError):
        await create(severity="sev1")

    result = await db_session.execute(select(Incident))
    assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_create_requires_existing_reporter(db_session, manager, incident_payload):
    with pytest.raises(NotFound):
        await manager.create_incident(db_session, incident_payload(), Actor(id=999, role="reporter"))


@pytest.mark.asyncio
async def test_incident_ids_are_sequential_and_stable(create, db_session, manager, agent):
    first = await create()
    second = await create()
    assert (first.incident_id, second.incident_id) == ("INC-000001", "INC-000002")

    await manager.update_fields(db_session, first.incident_id, {"title": "Renamed"}, Actor.from_user(agent))
    reloaded = await manager.get_incident(db_session, first.id, refresh=True)
    assert reloaded.incident_id == "INC-000001"
    assert reloaded.title == "Renamed"


@pytest.mark.asyncio
async def test_get_incident_by_unknown_ref(db_session, manager):
    with pytest.raises(NotFound):
        await manager.get_incident(db_session, "INC-999999")
    with pytest.raises(NotFound):
        await manager.get_incident(db_session, "not-a-ref")


# ── Assignment ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_assign_moves_new_to_assigned_and_logs_actor(create, db_session, manager, agent, admin, publisher):
    incident = await create()

    incident = await manager.assign(db_session, incident.incident_id, agent.id, Actor.from_user(admin), notes="take it")

    assert incident.status == "assigned"
    assert incident.assignee.name == "Alan Agent"
    assert incident.assignee.assigned_by == admin.id
    log = incident.work_logs[-1]
    assert log.action == "Assigned to Alan Agent"
    assert log.description == "take it"
    assert log.user_id == admin.id
    assert log.is_system_generated is False
    assert publisher.events[-1].type.value == "incident_assigned"
    assert publisher.events[-1].recipient_ids == (agent.id,)


@pytest.mark.asyncio
async def test_reassigning_logs_without_status_change(create, db_session, manager, agent, make_user):
    other = await make_user("team-lead", first_name="Tina", last_name="Lead")
    incident = await create()
    await manager.assign(db_session, incident.id, agent.id, Actor.from_user(agent))

    incident = await manager.assign(db_session, incident.id, other.id, Actor.from_user(other))

    assert incident.status == "assigned"
    assert _actions(incident) == ["Incident created", "Assigned to Alan Agent", "Assigned to Tina Lead"]


@pytest.mark.asyncio
async def test_assign_validation(create, db_session, manager, agent, reporter, make_user):
    incident = await create()
    it = Actor.from_user(agent)
    inactive = await make_user("it-support", is_active=False)

    with pytest.raises(NotFound):
        await manager.assign(db_session, incident.id, 404, it)
    with pytest.raises(InvalidTransition):
        await manager.assign(db_session, incident.id, reporter.id, it)
    with pytest.raises(InvalidTransition):
        await manager.assign(db_session, incident.id, inactive.id, it)
    with pytest.raises(PermissionDenied):
        await manager.assign(db_session, incident.id, agent.id, Actor.from_user(reporter))

    assert incident.status == "new"
    assert _actions(incident) == ["Incident created"]


@pytest.mark.asyncio
async def test_cannot_assign_resolved_incident(create, db_session, manager, agent):
    incident = await create()
    await manager.resolve(db_session, incident.id, {"resolution_notes": "fixed"}, Actor.from_user(agent))

    with pytest.raises(InvalidTransition):
        await manager.assign(db_session, incident.id, agent.id, Actor.from_user(agent))


@pytest.mark.asyncio
async def test_over_capacity_assignment_is_allowed_with_warning(create, db_session, manager, make_user, caplog):
    busy = await make_user("it-support", max_workload=1)
    first = await create()
    second = await create()
    await manager.assign(db_session, first.id, busy.id, Actor.from_user(busy))

    with caplog.at_level(logging.WARNING, logger="incidentdesk.incidents"):
        incident = await manager.assign(db_session, second.id, busy.id, Actor.from_user(busy))

    assert incident.assignee_id == busy.id
    assert any("beyond capacity" in r.getMessage() for r in caplog.records)


# ── Dedicated transitions ───────────────────────────────────

@pytest.mark.asyncio
async def test_acknowledge_records_first_response(create, db_session, manager, agent, clock):
    incident = await create()
    clock.advance(minutes=10)

    incident = await manager.acknowledge(db_session, incident.id, Actor.from_user(agent))

    assert incident.status == "in-progress"
    assert incident.acknowledged_at == NOW + timedelta(minutes=10)
    assert incident.sla.first_response_at == NOW + timedelta(minutes=10)
    assert incident.work_logs[-1].action == "Incident acknowledged"

    with pytest.raises(InvalidTransition):
        await manager.acknowledge(db_session, incident.id, Actor.from_user(agent))


@pytest.mark.asyncio
async def test_close_requires_resolution_first(create, db_session, manager, agent):
    incident = await create()
    with pytest.raises(InvalidTransition):
        await manager.close(db_session, incident.id, Actor.from_user(agent))
    assert incident.status == "new"


@pytest.mark.asyncio
async def test_resolve_close_reopen_cycle(create, db_session, manager, agent, reporter, publisher):
    incident = await create()
    it = Actor.from_user(agent)

    await manager.resolve(db_session, incident.id, {"resolution_notes": "Replaced router"}, it)
    await manager.close(db_session, incident.id, it)
    incident = await manager.reopen(db_session, incident.id, Actor.from_user(reporter), notes="Still broken")

    assert incident.status == "reopened"
    assert incident.reopen_count == 1
    assert incident.closed_at is None
    assert _actions(incident)[-3:] == ["Incident resolved", "Incident closed", "Incident reopened"]
    assert publisher.types()[-1] == "incident_reopened"


@pytest.mark.asyncio
async def test_only_it_or_reporter_may_reopen(create, db_session, manager, agent, make_user):
    stranger = await make_user("reporter")
    incident = await create()
    await manager.resolve(db_session, incident.id, {"resolution_notes": "done"}, Actor.from_user(agent))

    with pytest.raises(PermissionDenied):
        await manager.reopen(db_session, incident.id, Actor.from_user(stranger))


# ── Resolution ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_resolve_requires_notes(create, db_session, manager, agent):
    incident = await create()
    with pytest.raises(ValidationError):
        await manager.resolve(db_session, incident.id, {"resolution_notes": "  "}, Actor.from_user(agent))
    assert incident.status == "new"


@pytest.mark.asyncio
async def test_resolve_late_marks_breach_at_target(create, db_session, manager, agent, clock):
    incident = await create(severity="critical")
    clock.advance(hours=2)

    incident = await manager.resolve(
        db_session, incident.id,
        {"resolution_notes": "Rebooted core switch", "time_spent": 1.5, "root_cause": "firmware"},
        Actor.from_user(agent),
    )

    assert incident.status == "resolved"
    assert incident.sla.is_breached is True
    assert incident.sla.breached_at == NOW + timedelta(hours=1)
    assert incident.resolution.resolved_by == agent.id
    assert incident.resolution.root_cause == "firmware"
    log = incident.work_logs[-1]
    assert log.action == "Incident resolved"
    assert log.time_spent_minutes == 90
    assert log.is_system_generated is False


@pytest.mark.asyncio
async def test_resolve_on_time_is_not_breached(create, db_session, manager, agent, clock):
    incident = await create(severity="critical")
    clock.advance(minutes=30)

    incident = await manager.resolve(db_session, incident.id, {"resolution_notes": "ok"}, Actor.from_user(agent))

    assert incident.sla.is_breached is False
    assert incident.sla.breached_at is None


@pytest.mark.asyncio
async def test_resolving_twice_is_rejected(create, db_session, manager, agent):
    incident = await create()
    await manager.resolve(db_session, incident.id, {"resolution_notes": "ok"}, Actor.from_user(agent))
    with pytest.raises(InvalidTransition):
        await manager.resolve(db_session, incident.id, {"resolution_notes": "again"}, Actor.from_user(agent))


# ── Generic update ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_writing_current_status_appends_nothing(create, db_session, manager, agent, publisher):
    incident = await create()
    before = incident.updated_at

    incident = await manager.update_fields(db_session, incident.id, {"status": "new"}, Actor.from_user(agent))

    assert _actions(incident) == ["Incident created"]
    assert incident.updated_at == before
    assert publisher.types() == ["incident_created"]


@pytest.mark.asyncio
async def test_status_update_logs_system_entry_for_assignee(create, db_session, manager, agent, admin):
    incident = await create()
    await manager.assign(db_session, incident.id, agent.id, Actor.from_user(admin))

    incident = await manager.update_fields(db_session, incident.id, {"status": "pending"}, Actor.from_user(admin))

    log = incident.work_logs[-1]
    assert log.action == "Status changed to pending"
    assert log.is_system_generated is True
    assert log.user_id == agent.id


@pytest.mark.asyncio
async def test_status_update_without_assignee_is_attributed_to_reporter(create, db_session, manager, agent, reporter):
    incident = await create()
    incident = await manager.update_fields(db_session, incident.id, {"status": "pending"}, Actor.from_user(agent))
    assert incident.work_logs[-1].user_id == reporter.id


@pytest.mark.asyncio
async def test_update_to_assigned_needs_an_assignee(create, db_session, manager, agent):
    incident = await create()
    with pytest.raises(InvalidTransition):
        await manager.update_fields(db_session, incident.id, {"status": "assigned"}, Actor.from_user(agent))


@pytest.mark.asyncio
async def test_invalid_update_leaves_incident_unchanged(create, db_session, manager, agent):
    incident = await create()
    with pytest.raises(ValidationError):
        await manager.update_fields(
            db_session, incident.id, {"title": "New title", "severity": "catastrophic"}, Actor.from_user(agent)
        )
    assert incident.title == "VPN drops every few minutes"
    assert incident.severity == "high"


@pytest.mark.asyncio
async def test_reporter_updates_are_limited_to_descriptive_fields(create, db_session, manager, reporter):
    incident = await create()

    incident = await manager.update_fields(
        db_session, incident.id,
        {"description": "Happens on Wi-Fi only", "severity": "critical", "status": "resolved", "bogus": 1},
        Actor.from_user(reporter),
    )

    assert incident.description == "Happens on Wi-Fi only"
    assert incident.severity == "high"
    assert incident.status == "new"


@pytest.mark.asyncio
async def test_other_reporters_cannot_update(create, db_session, manager, make_user):
    incident = await create()
    stranger = await make_user("reporter")
    with pytest.raises(PermissionDenied):
        await manager.update_fields(db_session, incident.id, {"title": "x"}, Actor.from_user(stranger))


@pytest.mark.asyncio
async def test_severity_change_recomputes_priority_but_keeps_sla_target(create, db_session, manager, agent):
    incident = await create(severity="low", impact="low")
    assert incident.priority == "low"

    incident = await manager.update_fields(
        db_session, incident.id, {"severity": "critical", "impact": "critical"}, Actor.from_user(agent)
    )

    assert incident.priority == "critical"
    assert incident.sla.target == NOW + timedelta(hours=72)


@pytest.mark.asyncio
async def test_retriage_recomputes_sla_when_enabled(create, db_session, manager, agent, clock):
    manager.recompute_on_retriage = True
    incident = await create(severity="low")
    clock.advance(hours=3)

    incident = await manager.update_fields(db_session, incident.id, {"severity": "high"}, Actor.from_user(agent))

    assert incident.sla.target == NOW + timedelta(hours=4)


@pytest.mark.asyncio
async def test_concurrent_write_is_rejected(create, db_session, manager, agent):
    incident = await create()
    await db_session.execute(text("UPDATE incidents SET version = version + 1 WHERE id = :id"), {"id": incident.id})

    with pytest.raises(ConcurrentModification):
        await manager.update_fields(db_session, incident.id, {"title": "Mine"}, Actor.from_user(agent))


# ── Comments, attachments, deletion ─────────────────────────

@pytest.mark.asyncio
async def test_internal_comments_are_it_only(create, db_session, manager, reporter, agent, publisher):
    incident = await create()

    with pytest.raises(PermissionDenied):
        await manager.add_comment(db_session, incident.id, "psst", Actor.from_user(reporter), is_internal=True)

    comment = await manager.add_comment(db_session, incident.id, "Looking into it", Actor.from_user(agent), is_internal=True)
    assert comment.is_internal is True
    assert comment.author_name == "Alan Agent"
    assert publisher.types()[-1] == "incident_commented"


@pytest.mark.asyncio
async def test_comment_with_attachment_stores_file(create, db_session, manager, reporter, tmp_path):
    incident = await create()

    comment = await manager.add_comment(
        db_session, incident.id, "Screenshot attached", Actor.from_user(reporter),
        attachments=[UploadedFile("error.png", "image/png", PNG)],
    )

    assert len(comment.attachments) == 1
    stored = comment.attachments[0]
    assert stored.original_name == "error.png"
    assert stored.incident_pk == incident.id
    assert (tmp_path / "attachments" / stored.storage_ref).read_bytes() == PNG


@pytest.mark.asyncio
async def test_non_image_attachment_is_rejected(create, db_session, manager, reporter):
    incident = await create()
    with pytest.raises(ValidationError):
        await manager.add_attachments(
            db_session, incident.id, [UploadedFile("notes.txt", "text/plain", b"hi")], Actor.from_user(reporter)
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("via", ["upload", "comment"])
async def test_failed_commit_removes_written_files(create, db_session, manager, reporter, tmp_path, via):
    incident = await create()
    await db_session.execute(text("UPDATE incidents SET version = version + 1 WHERE id = :id"), {"id": incident.id})
    files = [UploadedFile("a.png", "image/png", PNG), UploadedFile("b.png", "image/png", PNG)]

    with pytest.raises(ConcurrentModification):
        if via == "upload":
            await manager.add_attachments(db_session, incident.id, files, Actor.from_user(reporter))
        else:
            await manager.add_comment(db_session, incident.id, "See screenshots", Actor.from_user(reporter), attachments=files)

    assert [p for p in (tmp_path / "attachments").rglob("*") if p.is_file()] == []


@pytest.mark.asyncio
async def test_delete_is_admin_only_and_removes_children(create, db_session, manager, agent, admin, reporter):
    incident = await create()
    incident = await manager.add_attachments(
        db_session, incident.id, [UploadedFile("a.png", "image/png", PNG)], Actor.from_user(reporter)
    )
    assert len(incident.attachments) == 1

    with pytest.raises(PermissionDenied):
        await manager.delete_incident(db_session, incident.id, Actor.from_user(agent))

    await manager.delete_incident(db_session, incident.id, Actor.from_user(admin))

    with pytest.raises(NotFound):
        await manager.get_incident(db_session, incident.id)
    remaining = await db_session.execute(select(Attachment))
    assert remaining.scalars().all() == []


# ── Deactivation and sweep ──────────────────────────────────

@pytest.mark.asyncio
async def test_unassign_for_user_returns_incidents_to_queue(create, db_session, manager, agent, admin):
    first = await create()
    second = await create()
    await manager.assign(db_session, first.id, agent.id, Actor.from_user(admin))
    await manager.assign(db_session, second.id, agent.id, Actor.from_user(admin))
    await manager.acknowledge(db_session, second.id, Actor.from_user(agent))

    released = await manager.unassign_for_user(db_session, agent.id, Actor.from_user(admin))

    assert released == 2
    for ref in (first.id, second.id):
        incident = await manager.get_incident(db_session, ref)
        assert incident.status == "new"
        assert incident.assignee is None
        assert incident.work_logs[-1].action == "Status changed to new"


@pytest.mark.asyncio
async def test_sweep_marks_breaches_once(create, db_session, manager, clock, publisher):
    critical = await create(severity="critical")
    await create(severity="low")
    clock.advance(hours=2)

    flipped = await manager.sweep_breaches(db_session)
    again = await manager.sweep_breaches(db_session)

    assert [i.id for i in flipped] == [critical.id]
    assert again == []
    assert publisher.types().count("sla_breached") == 1
