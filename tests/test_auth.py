"""
tests/test_auth.py
Tests for caller identity: bearer JWT verification, inactive profiles,
role guards and WebSocket authentication.
"""

import pytest
from httpx import AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import Profile, ProfileRole
from shared.utils.security import create_access_token
from tests.conftest import auth_headers, make_profile


@pytest.mark.asyncio
async def test_unauthenticated_returns_401(client: AsyncClient):
    """Protected endpoints return 401 without a token."""
    response = await client.get("/notifications")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_returns_401(client: AsyncClient):
    response = await client.get("/notifications", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_expired_token_returns_401(client: AsyncClient, student: Profile):
    token, _ = create_access_token(str(student.id), student.role.value, student.email, expires_minutes=-1)
    response = await client.get("/notifications", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_non_access_token_rejected(client: AsyncClient, student: Profile):
    token, _ = create_access_token(
        str(student.id), student.role.value, student.email, extra={"type": "refresh"}
    )
    response = await client.get("/notifications", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_token_signed_with_other_key_rejected(client: AsyncClient, student: Profile):
    token = jwt.encode(
        {"sub": str(student.id), "role": "STUDENT", "email": student.email, "jti": "x", "type": "access"},
        "some-other-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    response = await client.get("/notifications", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_profile_returns_401(client: AsyncClient):
    token, _ = create_access_token(
        "00000000-0000-0000-0000-000000000000", "STUDENT", "ghost@example.com"
    )
    response = await client.get("/notifications", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_inactive_profile_returns_403(client: AsyncClient, db: AsyncSession):
    profile = await make_profile(db, ProfileRole.STUDENT, "Dana Dormant")
    profile.is_active = False
    await db.commit()

    response = await client.get("/notifications", headers=auth_headers(profile))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_role_guards(client: AsyncClient, student: Profile, tutor: Profile):
    """Students cannot use tutor-only endpoints and vice versa."""
    response = await client.get("/connections/incoming", headers=auth_headers(student))
    assert response.status_code == 403

    response = await client.post(
        "/connections", headers=auth_headers(tutor), json={"tutor_id": str(student.id)}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_dual_role_profile_passes_both_guards(client: AsyncClient, db: AsyncSession):
    both = await make_profile(db, ProfileRole.BOTH, "Jordan Both")
    assert (await client.get("/connections/incoming", headers=auth_headers(both))).status_code == 200
    assert (await client.get("/connections", headers=auth_headers(both))).status_code == 200


@pytest.mark.asyncio
async def test_error_body_carries_request_id(client: AsyncClient, student: Profile):
    response = await client.get(
        "/sessions/00000000-0000-0000-0000-000000000000",
        headers={**auth_headers(student), "X-Request-ID": "req-123"},
    )
    assert response.status_code == 404
    assert response.json()["request_id"] == "req-123"
    assert response.headers["X-Request-ID"] == "req-123"
