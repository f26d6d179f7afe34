"""Aggregation engine — MTTR, MTTA, resolution rates and SLA compliance.

Every function here is pure: it takes already-loaded incidents and an explicit
``now`` and never touches the database. The API layer runs the windowed query
and hands the rows over. All functions return zeros or empty lists for an
empty input.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping, Optional, Sequence

from backend.errors import ValidationError
from backend.models.incident import OPEN_STATUSES, RESOLVED_STATUSES, Incident, IncidentSeverity
from backend.sla.scheduler import is_breached, is_resolved
from backend.utils.time import ensure_utc

WINDOWS: dict[str, int] = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
GROUP_KEYS = ("category", "severity")
SEVERITIES = [s.value for s in IncidentSeverity][::-1]  # critical first

# Period label format per window for trend charts.
TREND_FORMATS = {"7d": "%Y-%m-%d", "30d": "%Y-%m-%d", "90d": "%Y-W%U", "1y": "%Y-%m"}
WEEK_FORMAT = "%Y-W%U"

DEFAULT_CATEGORIES = [
    "Network & Connectivity",
    "Software & Applications",
    "Hardware & Equipment",
    "Security & Access",
    "Database & Storage",
    "Email & Communication",
    "Printer & Peripherals",
    "Phone & VoIP",
    "Website & Web Services",
    "Mobile & Tablets",
    "Other",
]


@dataclass
class GroupRate:
    key: str
    total: int
    resolved: int
    rate: float


@dataclass
class SeverityCompliance:
    severity: str
    total: int
    met: int
    breached: int
    rate: float


@dataclass
class ComplianceBucket:
    period: str
    total: int
    met: int
    breached: int
    rate: float


@dataclass
class MetricsResult:
    window: str
    group_by: str
    start: datetime
    end: datetime
    total_incidents: int = 0
    resolved_incidents: int = 0
    mttr_hours: float = 0.0
    mtta_minutes: float = 0.0
    resolution_rates: list[GroupRate] = field(default_factory=list)
    sla_compliance: list[SeverityCompliance] = field(default_factory=list)
    sla_trend: list[ComplianceBucket] = field(default_factory=list)
    overall_sla_compliance: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["start"] = self.start.isoformat()
        data["end"] = self.end.isoformat()
        return data


# ── Helpers ──────────────────────────────────────────────────

def window_start(window: str, now: datetime) -> datetime:
    if window not in WINDOWS:
        raise ValidationError(
            f"Unknown window '{window}'",
            details={"field": "window", "allowed": list(WINDOWS)},
        )
    return ensure_utc(now) - timedelta(days=WINDOWS[window])


def _pct(part: int | float, whole: int | float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _mean(values: Sequence[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _created(incident: Incident) -> datetime:
    return ensure_utc(incident.created_at)


def _created_since(incidents: Iterable[Incident], start: datetime) -> list[Incident]:
    return [i for i in incidents if i.created_at is not None and _created(i) >= start]


def _resolution_hours(incident: Incident) -> Optional[float]:
    if not is_resolved(incident):
        return None
    return (ensure_utc(incident.resolved_at) - _created(incident)).total_seconds() / 3600


def _ack_minutes(incident: Incident) -> Optional[float]:
    if incident.acknowledged_at is None:
        return None
    return (ensure_utc(incident.acknowledged_at) - _created(incident)).total_seconds() / 60


def _start_of_day(now: datetime) -> datetime:
    return ensure_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_month(now: datetime) -> datetime:
    return _start_of_day(now).replace(day=1)


def _group(incidents: Iterable[Incident], key: Callable[[Incident], str]) -> dict[str, list[Incident]]:
    groups: dict[str, list[Incident]] = defaultdict(list)
    for incident in incidents:
        groups[key(incident)].append(incident)
    return groups


def mean_time_to_resolve(incidents: Iterable[Incident], start: Optional[datetime] = None) -> float:
    """Mean hours from creation to resolution, over incidents resolved since ``start``."""
    hours = []
    for incident in incidents:
        value = _resolution_hours(incident)
        if value is None:
            continue
        if start is not None and ensure_utc(incident.resolved_at) < start:
            continue
        hours.append(value)
    return _mean(hours)


def mean_time_to_acknowledge(incidents: Iterable[Incident]) -> float:
    minutes = [m for m in (_ack_minutes(i) for i in incidents) if m is not None]
    return _mean(minutes)


def resolution_rates(incidents: Iterable[Incident], group_by: str = "category") -> list[GroupRate]:
    if group_by not in GROUP_KEYS:
        raise ValidationError(
            f"Unknown grouping '{group_by}'",
            details={"field": "group_by", "allowed": list(GROUP_KEYS)},
        )
    groups = _group(incidents, lambda i: getattr(i, group_by) or "Uncategorized")
    rates = []
    for key, members in groups.items():
        resolved = sum(1 for i in members if i.status in RESOLVED_STATUSES)
        rates.append(GroupRate(key=key, total=len(members), resolved=resolved, rate=_pct(resolved, len(members))))
    return sorted(rates, key=lambda r: (-r.rate, -r.total, r.key))


def sla_compliance(incidents: Iterable[Incident], now: datetime) -> list[SeverityCompliance]:
    with_target = [i for i in incidents if i.sla_target is not None]
    groups = _group(with_target, lambda i: i.severity)
    result = []
    for severity in SEVERITIES:
        members = groups.get(severity, [])
        if not members:
            continue
        breached = sum(1 for i in members if is_breached(i, now))
        met = len(members) - breached
        result.append(SeverityCompliance(
            severity=severity, total=len(members), met=met, breached=breached, rate=_pct(met, len(members)),
        ))
    return result


def sla_trend(incidents: Iterable[Incident], now: datetime) -> list[ComplianceBucket]:
    with_target = [i for i in incidents if i.sla_target is not None]
    groups = _group(with_target, lambda i: _created(i).strftime(WEEK_FORMAT))
    buckets = []
    for period in sorted(groups):
        members = groups[period]
        breached = sum(1 for i in members if is_breached(i, now))
        met = len(members) - breached
        buckets.append(ComplianceBucket(
            period=period, total=len(members), met=met, breached=breached, rate=_pct(met, len(members)),
        ))
    return buckets


# ── Core aggregate ───────────────────────────────────────────

def aggregate_metrics(
    incidents: Iterable[Incident],
    window: str,
    group_by: str,
    now: datetime,
) -> MetricsResult:
    start = window_start(window, now)
    if group_by not in GROUP_KEYS:
        raise ValidationError(
            f"Unknown grouping '{group_by}'",
            details={"field": "group_by", "allowed": list(GROUP_KEYS)},
        )
    scoped = _created_since(incidents, start)

    compliance = sla_compliance(scoped, now)
    total_with_target = sum(c.total for c in compliance)
    total_met = sum(c.met for c in compliance)

    return MetricsResult(
        window=window,
        group_by=group_by,
        start=start,
        end=ensure_utc(now),
        total_incidents=len(scoped),
        resolved_incidents=sum(1 for i in scoped if i.status in RESOLVED_STATUSES),
        mttr_hours=mean_time_to_resolve(scoped, start),
        mtta_minutes=mean_time_to_acknowledge(scoped),
        resolution_rates=resolution_rates(scoped, group_by),
        sla_compliance=compliance,
        sla_trend=sla_trend(scoped, now),
        overall_sla_compliance=_pct(total_met, total_with_target),
    )


# ── Dashboard and report views ───────────────────────────────

def incident_trends(incidents: Iterable[Incident], window: str, now: datetime) -> list[dict]:
    """Incident counts per period, split by severity."""
    start = window_start(window, now)
    fmt = TREND_FORMATS[window]
    groups = _group(_created_since(incidents, start), lambda i: _created(i).strftime(fmt))
    trends = []
    for period in sorted(groups):
        by_severity = {s: 0 for s in SEVERITIES}
        for incident in groups[period]:
            by_severity[incident.severity] = by_severity.get(incident.severity, 0) + 1
        trends.append({"period": period, "total": len(groups[period]), "by_severity": by_severity})
    return trends


def performance_by_severity(incidents: Iterable[Incident], window: str, now: datetime) -> list[dict]:
    """MTTR, MTTA, first-contact resolution and satisfaction per severity."""
    start = window_start(window, now)
    groups = _group(_created_since(incidents, start), lambda i: i.severity)
    rows = []
    for severity in SEVERITIES:
        members = groups.get(severity, [])
        if not members:
            continue
        resolution_hours = [
            h for i in members if (h := _resolution_hours(i)) is not None and ensure_utc(i.resolved_at) >= start
        ]
        ack_minutes = [m for m in (_ack_minutes(i) for i in members) if m is not None]
        ratings = [i.satisfaction_rating for i in members if i.satisfaction_rating]
        first_contact = sum(1 for i in members if not i.reopen_count)
        rows.append({
            "severity": severity,
            "total": len(members),
            "resolved": len(resolution_hours),
            "mttr_hours": _mean(resolution_hours),
            "acknowledged": len(ack_minutes),
            "mtta_minutes": _mean(ack_minutes),
            "first_contact_resolution_rate": _pct(first_contact, len(members)),
            "avg_satisfaction": _mean(ratings),
            "rated": len(ratings),
        })
    return rows


def category_breakdown(incidents: Iterable[Incident], window: str, now: datetime) -> list[dict]:
    start = window_start(window, now)
    groups = _group(_created_since(incidents, start), lambda i: i.category or "Uncategorized")
    rows = []
    for category, members in groups.items():
        resolved = [i for i in members if i.status in RESOLVED_STATUSES]
        time_spent = [i.time_spent_hours for i in resolved if i.time_spent_hours is not None]
        by_severity = {s: sum(1 for i in members if i.severity == s) for s in SEVERITIES}
        rows.append({
            "category": category,
            "total": len(members),
            "by_severity": by_severity,
            "resolved": len(resolved),
            "resolution_rate": _pct(len(resolved), len(members)),
            "avg_time_spent_hours": _mean(time_spent),
        })
    return sorted(rows, key=lambda r: (-r["total"], r["category"]))


def team_performance(
    incidents: Iterable[Incident],
    window: str,
    now: datetime,
    names: Mapping[int, str] | None = None,
    limit: int = 20,
) -> list[dict]:
    """Per-resolver totals for incidents resolved inside the window."""
    start = window_start(window, now)
    names = names or {}
    resolved = [
        i for i in incidents
        if i.resolved_by_id is not None and is_resolved(i) and ensure_utc(i.resolved_at) >= start
    ]
    rows = []
    for resolver_id, members in _group(resolved, lambda i: i.resolved_by_id).items():
        ratings = [i.satisfaction_rating for i in members if i.satisfaction_rating]
        rows.append({
            "user_id": resolver_id,
            "name": names.get(resolver_id, ""),
            "total_resolved": len(members),
            "avg_resolution_hours": _mean([_resolution_hours(i) for i in members]),
            "avg_satisfaction": _mean(ratings),
            "critical_resolved": sum(1 for i in members if i.severity == "critical"),
        })
    rows.sort(key=lambda r: (-r["total_resolved"], r["user_id"]))
    return rows[:limit]


def _trend(current: int, previous: int) -> int:
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100)


def dashboard_stats(incidents: Sequence[Incident], now: datetime) -> dict:
    """Headline counters with week-over-week trend percentages."""
    now = ensure_utc(now)
    start_of_day = _start_of_day(now)
    week_ago = now - timedelta(days=7)
    start_of_month = _start_of_month(now)

    def resolved_since(since: datetime) -> int:
        return sum(1 for i in incidents if is_resolved(i) and ensure_utc(i.resolved_at) >= since)

    total = len(incidents)
    open_count = sum(1 for i in incidents if i.status in OPEN_STATUSES)
    critical = sum(1 for i in incidents if i.severity == "critical" and i.status != "closed")
    recent = _created_since(incidents, week_ago)
    resolved_today = resolved_since(start_of_day)
    month = _created_since(incidents, start_of_month)

    return {
        "total_incidents": total,
        "open_incidents": open_count,
        "resolved_today": resolved_today,
        "critical_incidents": critical,
        "mttr_hours": mean_time_to_resolve(month),
        "mtta_minutes": mean_time_to_acknowledge(month),
        "total_incidents_trend": _trend(total, len(recent)),
        "open_incidents_trend": _trend(open_count, sum(1 for i in recent if i.status in OPEN_STATUSES)),
        "resolved_incidents_trend": _trend(resolved_today, resolved_since(week_ago)),
        "critical_incidents_trend": _trend(
            critical, sum(1 for i in recent if i.severity == "critical" and i.status != "closed")
        ),
    }


def chart_data(incidents: Iterable[Incident], days: int, now: datetime) -> list[dict]:
    """Created/resolved counts per UTC day for the last ``days`` days."""
    if days < 1:
        raise ValidationError("days must be positive", details={"field": "days"})
    now = ensure_utc(now)
    first_day = _start_of_day(now) - timedelta(days=days - 1)
    series = {
        (first_day + timedelta(days=n)).strftime("%Y-%m-%d"): {"created": 0, "resolved": 0}
        for n in range(days)
    }
    for incident in incidents:
        created = _created(incident).strftime("%Y-%m-%d")
        if created in series:
            series[created]["created"] += 1
        if incident.resolved_at is not None:
            resolved = ensure_utc(incident.resolved_at).strftime("%Y-%m-%d")
            if resolved in series:
                series[resolved]["resolved"] += 1
    return [{"date": day, **counts} for day, counts in series.items()]


def sla_performance(incidents: Iterable[Incident], now: datetime) -> dict[str, dict]:
    """On-time vs breached per severity for incidents created this month."""
    month = _created_since(incidents, _start_of_month(now))
    data = {s: {"total": 0, "on_time": 0, "breached": 0} for s in SEVERITIES}
    for incident in month:
        if incident.sla_target is None or incident.severity not in data:
            continue
        row = data[incident.severity]
        row["total"] += 1
        if is_breached(incident, now):
            row["breached"] += 1
        elif is_resolved(incident):
            row["on_time"] += 1
    for row in data.values():
        row["on_time_percentage"] = _pct(row["on_time"], row["total"])
        row["breached_percentage"] = _pct(row["breached"], row["total"])
    return data


def category_stats(incidents: Iterable[Incident], catalogue: Sequence[str] = DEFAULT_CATEGORIES) -> list[dict]:
    """Default catalogue merged with observed categories."""
    groups = _group(incidents, lambda i: i.category or "Other")

    def row(name: str) -> dict:
        members = groups.get(name, [])
        spent = [
            i.time_spent_hours for i in members
            if i.status in RESOLVED_STATUSES and i.time_spent_hours is not None
        ]
        return {
            "name": name,
            "total_incidents": len(members),
            "open_incidents": sum(1 for i in members if i.status in OPEN_STATUSES),
            "critical_incidents": sum(1 for i in members if i.severity == "critical"),
            "avg_resolution_time": _mean(spent),
        }

    rows = [row(name) for name in catalogue]
    extras = sorted((name for name in groups if name not in catalogue), key=lambda n: -len(groups[n]))
    rows.extend(row(name) for name in extras)
    return rows


def category_trends(incidents: Iterable[Incident], days: int, now: datetime) -> list[dict]:
    start = ensure_utc(now) - timedelta(days=days)
    groups = _group(_created_since(incidents, start), lambda i: i.category or "Other")
    rows = []
    for category, members in groups.items():
        per_day = _group(members, lambda i: _created(i).strftime("%Y-%m-%d"))
        rows.append({
            "category": category,
            "total": len(members),
            "data": [{"date": day, "count": len(per_day[day])} for day in sorted(per_day)],
        })
    return sorted(rows, key=lambda r: (-r["total"], r["category"]))


def user_statistics(incidents: Iterable[Incident], user_id: int) -> dict:
    incidents = list(incidents)
    resolved_by = [i for i in incidents if i.resolved_by_id == user_id and i.status in RESOLVED_STATUSES]
    spent = [i.time_spent_hours for i in resolved_by if i.time_spent_hours]
    return {
        "reported_incidents": sum(1 for i in incidents if i.reporter_id == user_id),
        "assigned_incidents": sum(
            1 for i in incidents if i.assignee_id == user_id and i.status in {"assigned", "in-progress"}
        ),
        "resolved_incidents": len(resolved_by),
        "avg_resolution_time": _mean(spent),
    }


def user_performance(incidents: Iterable[Incident], user_id: int, now: datetime) -> dict:
    """Resolver performance for this month compared with last month."""
    start_of_month = _start_of_month(now)
    start_of_last_month = (start_of_month - timedelta(days=1)).replace(day=1)
    mine = [i for i in incidents if i.resolved_by_id == user_id and i.resolved_at is not None]
    this_month = [i for i in mine if ensure_utc(i.resolved_at) >= start_of_month]
    last_month = [i for i in mine if start_of_last_month <= ensure_utc(i.resolved_at) < start_of_month]
    by_category = _group(this_month, lambda i: i.category or "Other")
    return {
        "current_month_resolved": len(this_month),
        "last_month_resolved": len(last_month),
        "monthly_trend": (
            round((len(this_month) - len(last_month)) / len(last_month) * 100) if last_month else 0
        ),
        "avg_resolution_time": _mean([i.time_spent_hours for i in this_month if i.time_spent_hours]),
        "customer_satisfaction": _mean([i.satisfaction_rating for i in this_month if i.satisfaction_rating]),
        "incidents_by_category": sorted(
            ({"category": c, "count": len(m)} for c, m in by_category.items()),
            key=lambda r: (-r["count"], r["category"]),
        ),
    }
