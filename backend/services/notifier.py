"""Notification dispatch — websocket fan-out, Email (Resend) and Slack webhooks.

``IncidentEventPublisher.publish`` is fire-and-forget from the caller's point of
view: delivery failures are logged and counted, never raised back into the
mutation that produced the event.
"""

from __future__ import annotations

import enum
import html as html_lib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

import httpx
from sqlalchemy import select

from backend.config import settings
from backend.observability.metrics import metrics
from backend.utils.time import utc_now

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.api.websocket import ConnectionManager
    from backend.models.incident import Incident

logger = logging.getLogger("incidentdesk.notifier")


class IncidentEventType(str, enum.Enum):
    CREATED = "incident_created"
    ASSIGNED = "incident_assigned"
    RESOLVED = "incident_resolved"
    STATUS_CHANGED = "incident_status_changed"
    REOPENED = "incident_reopened"
    COMMENTED = "incident_commented"
    SLA_BREACHED = "sla_breached"


# Which user preference gates email for each event type.
_EMAIL_PREFERENCE = {
    IncidentEventType.ASSIGNED: "notify_incident_assigned",
    IncidentEventType.RESOLVED: "notify_incident_updated",
    IncidentEventType.STATUS_CHANGED: "notify_incident_updated",
    IncidentEventType.REOPENED: "notify_incident_updated",
    IncidentEventType.COMMENTED: "notify_incident_updated",
    IncidentEventType.SLA_BREACHED: "notify_sla_breaches",
}

_SLACK_SEVERITIES = frozenset({"critical", "high"})


@dataclass(frozen=True)
class IncidentEvent:
    type: IncidentEventType
    incident_id: str
    title: str
    severity: str
    priority: str
    status: str
    actor_id: Optional[int] = None
    recipient_ids: tuple[int, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_incident(
        cls,
        event_type: IncidentEventType,
        incident: "Incident",
        actor_id: Optional[int] = None,
        recipient_ids: tuple[int, ...] = (),
        occurred_at: Optional[datetime] = None,
        **data: Any,
    ) -> "IncidentEvent":
        return cls(
            type=event_type,
            incident_id=incident.incident_id or str(incident.id),
            title=incident.title,
            severity=incident.severity,
            priority=incident.priority,
            status=incident.status,
            actor_id=actor_id,
            recipient_ids=tuple(r for r in recipient_ids if r is not None and r != actor_id),
            data=data,
            occurred_at=occurred_at or utc_now(),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["recipient_ids"] = list(self.recipient_ids)
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload


# ── Resend email ──────────────────────────────────────────────

async def send_email(to: str, subject: str, html: str) -> dict:
    """Send an email via Resend API.  Returns {"id": ..., "status": "sent"} or raises."""
    if not settings.resend_api_key:
        logger.debug("Resend API key not configured — skipping email")
        return {"status": "skipped", "reason": "RESEND_API_KEY not set"}

    import resend
    resend.api_key = settings.resend_api_key

    result = resend.Emails.send({
        "from": settings.notification_from_email,
        "to": [to],
        "subject": subject,
        "html": html,
    })
    logger.info("Email sent to %s: %s", to, subject)
    return {"status": "sent", "id": result.get("id", "")}


# ── Slack webhook ─────────────────────────────────────────────

async def send_slack(webhook_url: str, payload: dict) -> dict:
    """Post a message to a Slack webhook. Returns status."""
    async with httpx.AsyncClient() as client:
        resp = await client.post(webhook_url, json=payload, timeout=10)
        resp.raise_for_status()
    logger.info("Slack notification sent to webhook")
    return {"status": "sent"}


# ── Message formatting ────────────────────────────────────────

_EVENT_LABELS = {
    IncidentEventType.CREATED: "Created",
    IncidentEventType.ASSIGNED: "Assigned",
    IncidentEventType.RESOLVED: "Resolved",
    IncidentEventType.STATUS_CHANGED: "Updated",
    IncidentEventType.REOPENED: "Reopened",
    IncidentEventType.COMMENTED: "Commented",
    IncidentEventType.SLA_BREACHED: "SLA Breached",
}


def format_incident_email(event: IncidentEvent) -> tuple[str, str]:
    """Return (subject, html) for an incident notification email."""
    label = _EVENT_LABELS.get(event.type, "Updated")
    severity_colors = {"critical": "#ef4444", "high": "#f97316", "medium": "#eab308", "low": "#22c55e"}
    color = severity_colors.get(event.severity, "#6366f1")
    note = str(event.data.get("notes") or event.data.get("text") or "")

    subject = f"[{event.incident_id}] {label}: {event.title}"
    # Titles, references and notes are reporter-supplied.
    ref, title = html_lib.escape(event.incident_id), html_lib.escape(event.title)
    severity, priority, status = (html_lib.escape(str(v)) for v in (event.severity, event.priority, event.status))
    html = f"""
    <div style="font-family: -apple-system, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="background: {color}; padding: 20px; border-radius: 12px 12px 0 0;">
            <h2 style="color: white; margin: 0;">Incident {label}</h2>
        </div>
        <div style="background: #1a1a2e; color: #e0e0e0; padding: 24px; border-radius: 0 0 12px 12px;">
            <h3 style="color: #f8f8f8; margin-top: 0;">{ref}: {title}</h3>
            <table style="width: 100%; border-collapse: collapse;">
                <tr><td style="padding: 8px 0; color: #999;">Severity</td><td style="padding: 8px 0; color: {color}; font-weight: bold;">{severity.upper()}</td></tr>
                <tr><td style="padding: 8px 0; color: #999;">Priority</td><td style="padding: 8px 0;">{priority}</td></tr>
                <tr><td style="padding: 8px 0; color: #999;">Status</td><td style="padding: 8px 0;">{status}</td></tr>
            </table>
            <p style="margin-top: 16px; color: #ccc;">{html_lib.escape(note[:300])}</p>
        </div>
    </div>
    """
    return subject, html


def format_incident_slack(event: IncidentEvent) -> dict:
    """Return Slack Block Kit payload for an incident notification."""
    label = _EVENT_LABELS.get(event.type, "Updated")
    emoji = {"critical": "🔴", "high": "🟠", "medium": "🟡", "low": "🟢"}.get(event.severity, "⚪")

    return {
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} Incident {label}", "emoji": True}},
            {"type": "section", "fields": [
                {"type": "mrkdwn", "text": f"*Incident:*\n{event.incident_id}"},
                {"type": "mrkdwn", "text": f"*Severity:*\n{event.severity.upper()}"},
                {"type": "mrkdwn", "text": f"*Status:*\n{event.status}"},
                {"type": "mrkdwn", "text": f"*Priority:*\n{event.priority}"},
            ]},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*{event.title}*"}},
            {"type": "divider"},
        ]
    }


# ── Publisher ─────────────────────────────────────────────────

class IncidentEventPublisher:
    """Fans incident events out to websocket clients, Slack and email."""

    def __init__(
        self,
        connections: "ConnectionManager | None" = None,
        slack_webhook_url: str | None = None,
        email_enabled: bool | None = None,
    ) -> None:
        if connections is None:
            from backend.api.websocket import manager as connections
        self.connections = connections
        self.slack_webhook_url = settings.slack_webhook_url if slack_webhook_url is None else slack_webhook_url
        self.email_enabled = bool(settings.resend_api_key) if email_enabled is None else email_enabled

    async def publish(self, event: IncidentEvent, session: "AsyncSession | None" = None) -> list[dict]:
        metrics.record_event(event.type.value)
        results: list[dict] = []

        channel = "sla" if event.type == IncidentEventType.SLA_BREACHED else "incidents"
        try:
            delivered = await self.connections.broadcast({"type": event.type.value, "data": event.to_dict()}, channel)
            results.append({"channel": "websocket", "status": "sent", "delivered": delivered})
        except Exception as exc:
            results.append(self._failed("websocket", event, exc))

        if self.slack_webhook_url and self._wants_slack(event):
            try:
                await send_slack(self.slack_webhook_url, format_incident_slack(event))
                results.append({"channel": "slack", "status": "sent"})
            except Exception as exc:
                results.append(self._failed("slack", event, exc))

        if self.email_enabled and session is not None and event.recipient_ids:
            results.extend(await self._send_emails(event, session))

        return results

    @staticmethod
    def _wants_slack(event: IncidentEvent) -> bool:
        if event.type == IncidentEventType.SLA_BREACHED:
            return True
        return event.type == IncidentEventType.CREATED and event.severity in _SLACK_SEVERITIES

    async def _send_emails(self, event: IncidentEvent, session: "AsyncSession") -> list[dict]:
        from backend.models.user import User

        preference = _EMAIL_PREFERENCE.get(event.type)
        if preference is None:
            return []

        rows = await session.execute(select(User).where(User.id.in_(event.recipient_ids)))
        subject, html = format_incident_email(event)
        results: list[dict] = []
        for user in rows.scalars().all():
            if not (user.is_active and user.notify_email and getattr(user, preference)):
                continue
            try:
                await send_email(user.email, subject, html)
                results.append({"channel": "email", "target": user.email, "status": "sent"})
            except Exception as exc:
                results.append(self._failed("email", event, exc, target=user.email))
        return results

    @staticmethod
    def _failed(channel: str, event: IncidentEvent, exc: Exception, target: str | None = None) -> dict:
        metrics.record_notification_failure(channel)
        logger.warning(
            "Notification dispatch failed: %s %s -> %s: %s",
            channel, event.type.value, target or "-", exc,
            extra={"incident_id": event.incident_id},
        )
        return {"channel": channel, "target": target, "status": "failed", "error": str(exc)}
