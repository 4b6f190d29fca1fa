"""
FastAPI dependencies for admin identity.

Admin endpoints accept either a JWT access token carrying role "admin"
or the internal API key used by cron jobs (actor id "system").
"""

from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .security import verify_access_token, verify_internal_api_key
from .logging_config import actor_id_var

bearer_scheme = HTTPBearer(auto_error=False)

SYSTEM_ACTOR_ID = "system"


@dataclass
class AdminIdentity:
    actor_id: str
    is_system: bool = False


def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> AdminIdentity:
    """Resolve the authenticated admin or reject the request"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials

    if verify_internal_api_key(token):
        actor_id_var.set(SYSTEM_ACTOR_ID)
        return AdminIdentity(actor_id=SYSTEM_ACTOR_ID, is_system=True)

    payload = verify_access_token(token)
    if payload is None or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    actor_id_var.set(str(payload["sub"]))
    return AdminIdentity(actor_id=str(payload["sub"]))
