"""
Authentication dependencies for FastAPI.

Producers may enqueue work and cancel jobs that are still queued. Operator
actions such as dead-letter requeue, manual dispatch and template management
require the admin role.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from jobqueue.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()

ALLOWED_ROLES = {"admin", "producer"}


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str
    role: str


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.
    """
    payload = JWTService().verify_token(credentials.credentials)

    if payload is None or payload.get("role") not in ALLOWED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPayload(sub=payload["sub"], role=payload["role"])


def require_admin(principal: TokenPayload = Depends(get_current_principal)) -> TokenPayload:
    """
    Dependency that requires admin role.

    Usage:
        @router.post("/{job_id}/requeue")
        async def requeue(principal: TokenPayload = Depends(require_admin)):
            ...
    """
    if principal.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return principal
