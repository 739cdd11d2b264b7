"""
Authentication for the import API.

Users are managed by the wider dealership backend; this service only needs to
know who is acting and for which dealership. Both come from a signed JWT
bearer token with the claims ``sub`` (user id), ``dealership_id`` and ``role``.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.db.models import UserRole
from .config import settings

# Configuration
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


# Security scheme
security = HTTPBearer()


@dataclass(frozen=True)
class AuthContext:
    """The authenticated actor of a request."""
    user_id: str
    dealership_id: Optional[str]
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def create_access_token(
    user_id: str,
    dealership_id: Optional[str],
    role: str = UserRole.CUSTOMER_ADVISOR.value,
    expires_delta: Optional[timedelta] = None,
    secret_key: Optional[str] = None,
) -> str:
    """Create a JWT access token for an actor."""
    expire = _utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": user_id,
        "dealership_id": dealership_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(to_encode, secret_key or settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: Optional[str] = None) -> AuthContext:
    """
    Decode a bearer token into an ``AuthContext``.

    Raises:
        HTTPException: 401 if the token is invalid, expired or has no subject
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, secret_key or settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception

    return AuthContext(
        user_id=str(user_id),
        dealership_id=payload.get("dealership_id"),
        role=payload.get("role") or UserRole.CUSTOMER_ADVISOR.value,
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> AuthContext:
    """Get the current actor from the JWT bearer token."""
    return decode_access_token(credentials.credentials)


def require_dealership(current_user: AuthContext = Depends(get_current_user)) -> AuthContext:
    """Dependency that ensures the actor belongs to a dealership."""
    if not current_user.dealership_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User must be associated with a dealership to import data",
        )
    return current_user

