"""SLA target scheduler — deadlines, breach and at-risk evaluation.

Targets are computed once from severity at creation time. Breach state is
evaluated on read against an explicit ``now``; ``mark_breach`` is the only
code path that writes the stored breach flag.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from backend.config import Settings, settings
from backend.errors import ValidationError
from backend.models.incident import RESOLVED_STATUSES, IncidentSeverity
from backend.utils.time import ensure_utc

if TYPE_CHECKING:
    from backend.models.incident import Incident

logger = logging.getLogger("incidentdesk.sla")


class SlaState(str, enum.Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"


@dataclass(frozen=True)
class SlaPolicy:
    """Resolution hours and first-response minutes per severity."""

    resolution_hours: dict[str, float] = field(default_factory=lambda: {
        "critical": 1, "high": 4, "medium": 24, "low": 72,
    })
    first_response_minutes: dict[str, float] = field(default_factory=lambda: {
        "critical": 15, "high": 30, "medium": 120, "low": 480,
    })
    warning_minutes: float = 30

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> "SlaPolicy":
        cfg = cfg or settings
        return cls(
            resolution_hours={
                "critical": cfg.sla_hours_critical,
                "high": cfg.sla_hours_high,
                "medium": cfg.sla_hours_medium,
                "low": cfg.sla_hours_low,
            },
            first_response_minutes={
                "critical": cfg.sla_response_minutes_critical,
                "high": cfg.sla_response_minutes_high,
                "medium": cfg.sla_response_minutes_medium,
                "low": cfg.sla_response_minutes_low,
            },
            warning_minutes=cfg.sla_warning_minutes,
        )

    def with_overrides(self, overrides: dict[str, Any]) -> "SlaPolicy":
        """Return a copy with per-severity overrides applied.

        ``overrides`` looks like ``{"critical": {"resolution_hours": 2,
        "first_response_minutes": 10}, "warning_minutes": 45}``.
        """
        hours = dict(self.resolution_hours)
        minutes = dict(self.first_response_minutes)
        for severity in IncidentSeverity:
            entry = overrides.get(severity.value)
            if not isinstance(entry, dict):
                continue
            if entry.get("resolution_hours") is not None:
                hours[severity.value] = float(entry["resolution_hours"])
            if entry.get("first_response_minutes") is not None:
                minutes[severity.value] = float(entry["first_response_minutes"])
        warning = overrides.get("warning_minutes")
        return replace(
            self,
            resolution_hours=hours,
            first_response_minutes=minutes,
            warning_minutes=float(warning) if warning is not None else self.warning_minutes,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            s.value: {
                "resolution_hours": self.resolution_hours[s.value],
                "first_response_minutes": self.first_response_minutes[s.value],
            }
            for s in IncidentSeverity
        }
        data["warning_minutes"] = self.warning_minutes
        return data


@dataclass(frozen=True)
class SlaEvaluation:
    state: SlaState
    is_breached: bool
    target: Optional[datetime]
    remaining_minutes: Optional[float]


# ── Policy loading ───────────────────────────────────────────

def load_overrides(path: str | None = None) -> dict[str, Any]:
    overrides_file = Path(path or settings.sla_overrides_path)
    if not overrides_file.exists():
        return {}
    try:
        data = json.loads(overrides_file.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable SLA overrides file %s: %s", overrides_file, exc)
        return {}
    return data if isinstance(data, dict) else {}


def save_overrides(overrides: dict[str, Any], path: str | None = None) -> None:
    overrides_file = Path(path or settings.sla_overrides_path)
    overrides_file.write_text(json.dumps(overrides, indent=2))
    _overrides_cache.pop(str(overrides_file), None)


# path -> (mtime_ns, parsed overrides)
_overrides_cache: dict[str, tuple[int, dict[str, Any]]] = {}


def cached_overrides(path: str | None = None) -> dict[str, Any]:
    """Overrides re-read only when the file's mtime changes."""
    overrides_file = Path(path or settings.sla_overrides_path)
    key = str(overrides_file)
    try:
        mtime = overrides_file.stat().st_mtime_ns
    except FileNotFoundError:
        _overrides_cache.pop(key, None)
        return {}
    except OSError as exc:
        logger.warning("Cannot stat SLA overrides file %s: %s", overrides_file, exc)
        return {}

    cached = _overrides_cache.get(key)
    if cached is not None and cached[0] == mtime:
        return cached[1]
    data = load_overrides(key)
    _overrides_cache[key] = (mtime, data)
    return data


def current_policy() -> SlaPolicy:
    """Settings-derived policy with any admin overrides applied."""
    return SlaPolicy.from_settings().with_overrides(cached_overrides())


# ── Targets ──────────────────────────────────────────────────

def _severity_key(severity: str | IncidentSeverity | None) -> str:
    if severity is None or severity == "":
        raise ValidationError("Severity is required to compute an SLA target", details={"field": "severity"})
    try:
        return IncidentSeverity(severity).value
    except ValueError:
        raise ValidationError(
            f"Unknown severity '{severity}'",
            details={"field": "severity", "allowed": [s.value for s in IncidentSeverity]},
        ) from None


def compute_sla_target(
    severity: str | IncidentSeverity | None,
    created_at: datetime,
    policy: SlaPolicy | None = None,
) -> datetime:
    policy = policy or SlaPolicy()
    key = _severity_key(severity)
    return ensure_utc(created_at) + timedelta(hours=policy.resolution_hours[key])


def compute_first_response_target(
    severity: str | IncidentSeverity | None,
    created_at: datetime,
    policy: SlaPolicy | None = None,
) -> datetime:
    policy = policy or SlaPolicy()
    key = _severity_key(severity)
    return ensure_utc(created_at) + timedelta(minutes=policy.first_response_minutes[key])


# ── Evaluation ───────────────────────────────────────────────

def is_resolved(incident: "Incident") -> bool:
    return incident.resolved_at is not None and incident.status in RESOLVED_STATUSES


def is_breached(incident: "Incident", now: datetime) -> bool:
    target = ensure_utc(incident.sla_target)
    if target is None:
        return False
    if is_resolved(incident):
        return ensure_utc(incident.resolved_at) > target
    return ensure_utc(now) > target


def remaining_minutes(incident: "Incident", now: datetime) -> Optional[float]:
    target = ensure_utc(incident.sla_target)
    if target is None:
        return None
    return (target - ensure_utc(now)).total_seconds() / 60


def compute_sla_status(incident: "Incident", now: datetime, policy: SlaPolicy | None = None) -> SlaState:
    policy = policy or SlaPolicy()
    if is_breached(incident, now):
        return SlaState.BREACHED
    if not is_resolved(incident):
        remaining = remaining_minutes(incident, now)
        if remaining is not None and 0 < remaining <= policy.warning_minutes:
            return SlaState.AT_RISK
    return SlaState.ON_TRACK


def evaluate_sla(incident: "Incident", now: datetime, policy: SlaPolicy | None = None) -> SlaEvaluation:
    state = compute_sla_status(incident, now, policy)
    remaining = None if is_resolved(incident) else remaining_minutes(incident, now)
    return SlaEvaluation(
        state=state,
        is_breached=state == SlaState.BREACHED,
        target=ensure_utc(incident.sla_target),
        remaining_minutes=round(remaining, 2) if remaining is not None else None,
    )


def mark_breach(incident: "Incident", now: datetime) -> bool:
    """Persist the breach flag if the predicate holds; returns True on first flip."""
    if incident.sla_is_breached or not is_breached(incident, now):
        return False
    incident.sla_is_breached = True
    incident.sla_breached_at = ensure_utc(incident.sla_target)
    return True
