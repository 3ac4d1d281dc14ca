"""
shared/middleware/auth.py
FastAPI dependencies that resolve the caller identity.
The JWT is issued by the external auth collaborator; here it is only
verified and turned into a Profile, which every service operation then
receives as an explicit argument.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_optional_redis
from shared.models.models import Profile, ProfileRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.role: ProfileRole = ProfileRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]


async def _decode(token: str, redis) -> TokenData:
    try:
        payload = verify_access_token(token)
        token_data = TokenData(payload)
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Check if token has been revoked (logged out)
    if redis is not None and await RedisCache(redis).is_token_revoked(token_data.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )
    return token_data


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_optional_redis),
) -> TokenData:
    """Extract and validate JWT from Authorization header."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await _decode(credentials.credentials, redis)


async def _load_profile(user_id: str, db: AsyncSession) -> Profile:
    try:
        profile_id = uuid.UUID(user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    result = await db.execute(select(Profile).where(Profile.id == profile_id))
    profile = result.scalar_one_or_none()

    if not profile:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not profile.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return profile


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """Load the caller's Profile using the JWT sub claim."""
    return await _load_profile(token_data.user_id, db)


async def get_websocket_user(websocket: WebSocket, db: AsyncSession) -> Profile:
    """Browsers cannot set headers on a WebSocket; the token rides in ?token=."""
    token = websocket.query_params.get("token")
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    token_data = await _decode(token, get_optional_redis())
    return await _load_profile(token_data.user_id, db)


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: ProfileRole):
        self.roles = roles

    async def __call__(
        self,
        current_user: Profile = Depends(get_current_user),
    ) -> Profile:
        if current_user.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return current_user


# Convenience role dependencies
require_student = RoleRequired(ProfileRole.STUDENT, ProfileRole.BOTH)
require_tutor = RoleRequired(ProfileRole.TUTOR, ProfileRole.BOTH)
