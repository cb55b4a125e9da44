"""
Bearer-token guard for the Experimentation Engine API.

Callers are storefront services holding a JWT signed with the shared secret.
Any valid token may read and track; registry mutations need role "admin".
"""

from datetime import datetime, timedelta
from typing import Optional
from fastapi import HTTPException, Security, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from experiment_engine.config import settings


security_scheme = HTTPBearer(scheme_name="Bearer", auto_error=False)


class Caller(BaseModel):
    """The authenticated service behind a request."""
    user_id: str
    role: str


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_access_token(user_id: str, role: str = "user", expires_delta: Optional[timedelta] = None) -> str:
    """Signs a token for internal tooling; expiry defaults to JWT_EXPIRATION_MINUTES."""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.jwt_expiration_minutes))
    payload = {"sub": user_id, "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security_scheme)
) -> Caller:
    """FastAPI dependency: 401 unless the request carries a valid, unexpired token."""
    if not credentials:
        raise _unauthorized("Missing authentication token")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError as e:
        raise _unauthorized(f"Invalid or expired token: {str(e)}")

    if payload.get("sub") is None:
        raise _unauthorized("Invalid token: missing subject")

    return Caller(user_id=payload["sub"], role=payload.get("role", "user"))


async def require_admin(caller: Caller = Depends(verify_token)) -> Caller:
    """FastAPI dependency for registry mutations: admin role only."""
    if caller.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return caller
