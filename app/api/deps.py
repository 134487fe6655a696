from fastapi import Depends, Header, HTTPException
from jose import JWTError

from app.services.awareness.tokens import decode_access_token

CAMPAIGN_MANAGER_ROLES = ("super_admin", "client_admin", "admin")


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_user_auth(authorization: str | None = Header(default=None)) -> dict:
    """Resolve the caller from a bearer JWT.

    Returns a dict with user_id and role.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        payload = decode_access_token(token)
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"user_id": str(user_id), "role": payload.get("role")}


def require_role(*roles: str):
    allowed = set(roles)

    def _require_role(auth: dict = Depends(require_user_auth)) -> dict:
        if auth.get("role") not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return auth

    return _require_role


def get_current_user(auth=Depends(require_user_auth)):
    """Get current authenticated user info."""
    return auth
