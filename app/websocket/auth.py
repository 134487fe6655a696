"""Authentication for live update connections."""

from __future__ import annotations

from fastapi import WebSocket
from jose import JWTError
from sqlalchemy import select

from app.db import SessionLocal
from app.logging import get_logger
from app.models.awareness.directory import DirectoryUser
from app.services.awareness.tokens import decode_access_token

logger = get_logger(__name__)

# Policy violation
CLOSE_POLICY_VIOLATION = 1008


async def authenticate_live_client(websocket: WebSocket) -> dict | None:
    """
    Authenticate a live update connection.

    The token is passed once as the ``?token=`` query param. Returns
    ``{user_id, role}`` if valid; otherwise closes with 1008 and returns None.
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Authentication required")
        return None

    try:
        payload = decode_access_token(token)
    except JWTError as exc:
        logger.info("live_auth_rejected reason=invalid_token error=%s", exc)
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Authentication failed")
        return None

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Invalid authentication")
        return None

    db = SessionLocal()
    try:
        user = db.scalars(
            select(DirectoryUser).where(DirectoryUser.user_id == str(user_id), DirectoryUser.is_active.is_(True))
        ).first()
        if not user:
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Invalid authentication")
            return None
        return {"user_id": user.user_id, "role": payload.get("role") or user.role}
    except Exception as exc:
        logger.warning("live_auth_error error=%s", exc)
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Authentication failed")
        return None
    finally:
        db.close()
