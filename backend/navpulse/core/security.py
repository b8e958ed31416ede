"""
Bearer token handling.

Tokens are issued elsewhere (the account service); navpulse only verifies
them. A token is accepted when it is a valid, unexpired HS256 JWT with a
``sub`` claim; ``role=admin`` additionally unlocks manual job triggers.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from navpulse.core.config import settings

ADMIN_ROLE = "admin"


def create_access_token(
    subject: str,
    role: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.access_token_expire_minutes)
    )
    claims: dict[str, Any] = {"sub": subject, "exp": expire}
    if role:
        claims["role"] = role
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str | None) -> dict[str, Any] | None:
    """Claims of a usable token, or None."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if claims.get("sub") is None:
        return None
    return claims


def is_admin(claims: dict[str, Any]) -> bool:
    return claims.get("role") == ADMIN_ROLE


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token part of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
