"""
tests/conftest.py
Shared fixtures: in-memory SQLite engine, API client with get_db
overridden, a fresh in-process change feed, and student/tutor profiles.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-unit-tests-only")
os.environ.setdefault("REALTIME_BACKEND", "local")
os.environ.setdefault("LOG_FORMAT", "text")

import uuid
from datetime import datetime, timedelta, timezone

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from main import app
from shared.models.models import ConnectionRequest, ConnectionStatus, Profile, ProfileRole
from shared.realtime.feed import LocalChangeFeed, get_change_feed, set_change_feed
from shared.utils.security import create_access_token


def auth_headers(profile: Profile) -> dict:
    token, _ = create_access_token(str(profile.id), profile.role.value, profile.email)
    return {"Authorization": f"Bearer {token}"}


def tomorrow(hours: int = 0) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=1, hours=hours)


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def feed():
    """Every test gets its own in-process change feed."""
    previous = get_change_feed()
    local = LocalChangeFeed(queue_size=16)
    set_change_feed(local)
    yield local
    await local.close()
    set_change_feed(previous)


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Profiles ──────────────────────────────────────────────────

async def make_profile(db: AsyncSession, role: ProfileRole, name: str) -> Profile:
    profile = Profile(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
        full_name=name,
        role=role,
    )
    db.add(profile)
    await db.commit()
    return profile


@pytest_asyncio.fixture
async def student(db: AsyncSession) -> Profile:
    return await make_profile(db, ProfileRole.STUDENT, "Sam Student")


@pytest_asyncio.fixture
async def other_student(db: AsyncSession) -> Profile:
    return await make_profile(db, ProfileRole.STUDENT, "Casey Classmate")


@pytest_asyncio.fixture
async def tutor(db: AsyncSession) -> Profile:
    return await make_profile(db, ProfileRole.TUTOR, "Terry Tutor")


@pytest_asyncio.fixture
async def other_tutor(db: AsyncSession) -> Profile:
    return await make_profile(db, ProfileRole.TUTOR, "Morgan Mentor")


@pytest_asyncio.fixture
async def connection(db: AsyncSession, student: Profile, tutor: Profile) -> ConnectionRequest:
    """An ACCEPTED relationship between student and tutor."""
    conn = ConnectionRequest(
        student_id=student.id,
        tutor_id=tutor.id,
        status=ConnectionStatus.ACCEPTED,
        message="help with calculus",
        responded_at=datetime.now(timezone.utc),
    )
    db.add(conn)
    await db.commit()
    return conn
