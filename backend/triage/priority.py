"""Priority calculator — derives incident priority from severity and impact.

Priority = band(weight(severity) + weight(impact))

    total >= 7 → critical
    total >= 5 → high
    total >= 3 → medium
    otherwise  → low
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from backend.errors import ValidationError
from backend.models.incident import IncidentPriority, IncidentSeverity

if TYPE_CHECKING:
    from backend.models.incident import Incident

LEVEL_WEIGHTS: dict[IncidentSeverity, int] = {
    IncidentSeverity.LOW: 1,
    IncidentSeverity.MEDIUM: 2,
    IncidentSeverity.HIGH: 3,
    IncidentSeverity.CRITICAL: 4,
}

# (minimum total weight, priority), highest band first
PRIORITY_BANDS: tuple[tuple[int, IncidentPriority], ...] = (
    (7, IncidentPriority.CRITICAL),
    (5, IncidentPriority.HIGH),
    (3, IncidentPriority.MEDIUM),
)


def _weight(value: str | IncidentSeverity, field: str) -> int:
    try:
        level = IncidentSeverity(value)
    except ValueError:
        raise ValidationError(
            f"Unknown {field} '{value}'",
            details={"field": field, "allowed": [s.value for s in IncidentSeverity]},
        ) from None
    return LEVEL_WEIGHTS[level]


def calculate_priority(severity: str | IncidentSeverity, impact: str | IncidentSeverity) -> IncidentPriority:
    """Return the priority band for a severity/impact pair."""
    total = _weight(severity, "severity") + _weight(impact, "impact")
    for threshold, priority in PRIORITY_BANDS:
        if total >= threshold:
            return priority
    return IncidentPriority.LOW


def apply_priority(incident: "Incident") -> IncidentPriority:
    """Overwrite ``incident.priority`` from its current severity and impact."""
    priority = calculate_priority(incident.severity, incident.impact or IncidentSeverity.MEDIUM.value)
    incident.priority = priority.value
    return priority
