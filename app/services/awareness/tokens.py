"""Signed access tokens shared by the REST API and the live update channel."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from jose import jwt

from app.config import settings


def decode_access_token(token: str) -> dict:
    """Decode and verify a JWT; raises ``jose.JWTError`` when invalid or expired."""
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def issue_access_token(user_id: str, role: str | None = None, expires_in: timedelta | None = None, **claims) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "userId": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + (expires_in or timedelta(hours=12))).timestamp()),
        **claims,
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
