"""Assignment workload balancer.

Workload is the number of incidents assigned to a user that are still being
worked (``assigned`` or ``in-progress``). Capacity is advisory: nothing here
blocks an assignment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import settings
from backend.models.incident import WORKLOAD_STATUSES, Incident
from backend.models.user import IT_ROLES, User


@dataclass
class TeamMemberLoad:
    user_id: int
    name: str
    email: str
    role: str
    department: str
    expertise: list[str] = field(default_factory=list)
    current_workload: int = 0
    max_workload: int = 10

    @property
    def at_capacity(self) -> bool:
        return self.current_workload >= self.max_workload

    @property
    def available_slots(self) -> int:
        return max(0, self.max_workload - self.current_workload)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "expertise": self.expertise,
            "current_workload": self.current_workload,
            "max_workload": self.max_workload,
            "at_capacity": self.at_capacity,
            "available_slots": self.available_slots,
        }


class WorkloadBalancer:
    def __init__(self, default_max_workload: int | None = None) -> None:
        self.default_max_workload = (
            settings.default_max_workload if default_max_workload is None else default_max_workload
        )

    @staticmethod
    def is_eligible(user: User) -> bool:
        return bool(user.is_active) and user.role in IT_ROLES

    def capacity_of(self, user: User) -> int:
        return user.max_workload if user.max_workload is not None else self.default_max_workload

    async def current_workload(self, session: AsyncSession, user_id: int) -> int:
        result = await session.execute(
            select(func.count(Incident.id)).where(
                Incident.assignee_id == user_id,
                Incident.status.in_(WORKLOAD_STATUSES),
            )
        )
        return int(result.scalar() or 0)

    async def _workloads(self, session: AsyncSession) -> dict[int, int]:
        result = await session.execute(
            select(Incident.assignee_id, func.count(Incident.id))
            .where(Incident.assignee_id.is_not(None), Incident.status.in_(WORKLOAD_STATUSES))
            .group_by(Incident.assignee_id)
        )
        return {int(user_id): int(count) for user_id, count in result.all()}

    async def team_members(self, session: AsyncSession) -> list[TeamMemberLoad]:
        users = await session.execute(
            select(User)
            .where(User.is_active.is_(True), User.role.in_(IT_ROLES))
            .order_by(User.first_name, User.last_name)
        )
        loads = await self._workloads(session)
        return [
            TeamMemberLoad(
                user_id=user.id,
                name=user.full_name,
                email=user.email,
                role=user.role,
                department=user.department,
                expertise=user.expertise,
                current_workload=loads.get(user.id, 0),
                max_workload=self.capacity_of(user),
            )
            for user in users.scalars().all()
        ]

    async def suggest_assignee(self, session: AsyncSession, category: str | None = None) -> Optional[TeamMemberLoad]:
        """Least-loaded member under capacity, expertise matches first."""
        candidates = [m for m in await self.team_members(session) if not m.at_capacity]
        if not candidates:
            return None

        wanted = (category or "").strip().lower()

        def rank(member: TeamMemberLoad) -> tuple:
            matches = bool(wanted) and any(
                tag.lower() in wanted or wanted in tag.lower() for tag in member.expertise if tag
            )
            return (not matches, member.current_workload, -member.available_slots, member.user_id)

        return min(candidates, key=rank)

    async def workload_distribution(self, session: AsyncSession, limit: int = 10) -> list[dict]:
        """Open incident counts per assignee with critical/high breakdown."""
        result = await session.execute(
            select(
                Incident.assignee_id,
                func.max(Incident.assignee_name),
                func.count(Incident.id),
                func.sum(case((Incident.severity == "critical", 1), else_=0)),
                func.sum(case((Incident.severity == "high", 1), else_=0)),
            )
            .where(Incident.assignee_id.is_not(None), Incident.status.in_(WORKLOAD_STATUSES))
            .group_by(Incident.assignee_id)
            .order_by(func.count(Incident.id).desc())
            .limit(limit)
        )
        return [
            {
                "user_id": int(user_id),
                "name": name or "",
                "total": int(total),
                "critical": int(critical or 0),
                "high": int(high or 0),
            }
            for user_id, name, total, critical, high in result.all()
        ]
