"""
Actor identification.

Every table and procedure call runs on behalf of one user, identified by a
Bearer JWT whose ``sub`` claim is the user_id. With ``KLYPP_DEBUG`` enabled a
bare user_id is also accepted as the token, which keeps local tooling simple.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import jwt
import structlog
from fastapi import Depends, HTTPException
from fastapi.security import APIKeyHeader

from app.core.config import get_settings

log = structlog.get_logger()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: uuid.UUID,
    *,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed access token for ``user_id``."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": exp,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    settings = get_settings()
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "PGRST301", "message": message, "details": None},
    )


def resolve_actor(token: str) -> uuid.UUID:
    """Map a bearer token to the acting user's id."""
    if get_settings().debug:
        try:
            return uuid.UUID(token)
        except ValueError:
            pass
    try:
        payload = decode_jwt(token)
    except jwt.PyJWTError as exc:
        log.info("auth.jwt_rejected", error=str(exc))
        raise _unauthorized("Invalid or expired token")
    try:
        return uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("Token subject is not a user id")


async def get_current_actor(
    authorization: str | None = Depends(api_key_header),
) -> uuid.UUID:
    """FastAPI dependency: the user on whose behalf the request runs."""
    if not authorization:
        raise _unauthorized("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Authorization must use the Bearer scheme")
    return resolve_actor(token.strip())
