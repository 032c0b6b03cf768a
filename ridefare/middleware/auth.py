from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from ridefare.config import get_settings

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"
PROVIDER_ROLE = "provider"


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    """Sign a JWT with the configured secret; ``exp`` is added when missing."""
    claims = dict(data)
    if "exp" not in claims:
        minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
        claims["exp"] = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_user_id(token_data: dict = Depends(get_current_user)) -> str:
    """Extract the subject (user or provider id) from the token payload."""
    user_id = token_data.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return user_id


async def get_current_provider(token_data: dict = Depends(get_current_user)) -> str:
    provider_id = token_data.get("sub")
    if not provider_id or token_data.get("role") not in (PROVIDER_ROLE, ADMIN_ROLE):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Provider token required")
    return provider_id


async def require_admin(token_data: dict = Depends(get_current_user)) -> str:
    """Rule administration is limited to tokens carrying ``role=admin``."""
    if token_data.get("role") != ADMIN_ROLE or not token_data.get("sub"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return token_data["sub"]
