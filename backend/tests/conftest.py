"""Shared test fixtures for IncidentDesk backend tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from itertools import count

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.api.analytics import router as analytics_router
from backend.api.auth import router as auth_router
from backend.api.categories import router as categories_router
from backend.api.dashboard import router as dashboard_router
from backend.api.incidents import get_incident_manager, router as incidents_router
from backend.api.sla import router as sla_router
from backend.api.users import router as users_router
from backend.config import settings
from backend.database import Base, build_engine, get_session
from backend.errors import register_error_handlers
from backend.incident_manager import Actor, IncidentManager
from backend.models.user import User
from backend.sla.scheduler import SlaPolicy
from backend.storage.attachments import LocalAttachmentStore
from backend.utils.security import hash_password
from backend.workload.balancer import WorkloadBalancer

# Monday, mid-month, so day/week/month windows all have room on both sides.
FIXED_NOW = datetime(2026, 3, 16, 12, 0, tzinfo=UTC)
PASSWORD = "secret123"


class FixedClock:
    """Callable clock pinned to ``now``; tests move it with ``advance``."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingPublisher:
    """Stands in for the websocket/Slack/email fan-out and keeps what was published."""

    def __init__(self) -> None:
        self.events = []

    async def publish(self, event, session=None):
        self.events.append(event)
        return []

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest_asyncio.fixture
async def db_session():
    """Create a fresh in-memory database per test."""
    engine = build_engine("sqlite+aiosqlite://")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def manager(clock, publisher, tmp_path) -> IncidentManager:
    return IncidentManager(
        clock=clock,
        policy=SlaPolicy(),
        publisher=publisher,
        store=LocalAttachmentStore(tmp_path / "attachments"),
        balancer=WorkloadBalancer(default_max_workload=10),
        recompute_on_retriage=False,
    )


@pytest.fixture
def make_user(db_session):
    """Factory: ``await make_user("it-support", first_name="Ada")``."""
    seq = count(1)

    async def _make(role: str = "reporter", **fields) -> User:
        n = next(seq)
        user = User(
            email=fields.pop("email", f"{role}{n}@example.com"),
            hashed_password=hash_password(fields.pop("password", PASSWORD)),
            first_name=fields.pop("first_name", role.title().replace("-", "")),
            last_name=fields.pop("last_name", str(n)),
            role=role,
            department=fields.pop("department", "IT"),
            is_active=fields.pop("is_active", True),
            created_at=FIXED_NOW,
            **fields,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def reporter(make_user) -> User:
    return await make_user("reporter", first_name="Rita", last_name="Reporter")


@pytest_asyncio.fixture
async def agent(make_user) -> User:
    return await make_user("it-support", first_name="Alan", last_name="Agent")


@pytest_asyncio.fixture
async def admin(make_user) -> User:
    return await make_user("admin", first_name="Ada", last_name="Admin")


@pytest.fixture
def actor():
    return Actor.from_user


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict[str, str]:
        token = jwt.encode({"sub": str(user.id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def incident_payload():
    def _payload(**overrides) -> dict:
        payload = {
            "title": "VPN drops every few minutes",
            "description": "Remote staff lose the VPN tunnel repeatedly.",
            "severity": "high",
            "category": "Network",
            "urgency": "medium",
            "impact": "medium",
        }
        payload.update(overrides)
        return payload

    return _payload


@pytest.fixture
def api_app(db_session, manager):
    app = FastAPI()

    async def _override_session():
        yield db_session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_incident_manager] = lambda: manager
    register_error_handlers(app)
    for router in (
        auth_router, incidents_router, users_router, sla_router,
        analytics_router, dashboard_router, categories_router,
    ):
        app.include_router(router)
    return app


@pytest_asyncio.fixture
async def client(api_app):
    transport = ASGITransport(app=api_app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
