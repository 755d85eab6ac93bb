from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .config import settings
from . import models

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=True)


@dataclass(frozen=True)
class Principal:
    id: int
    role: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    vehicle_class: Optional[str] = None
    vehicle_number: Optional[str] = None
    rating: Optional[float] = None

    @property
    def is_driver(self) -> bool:
        return self.role == models.ROLE_DRIVER

    @classmethod
    def from_user(cls, user: dict) -> "Principal":
        return cls(
            id=user["id"],
            role=user["role"],
            name=user.get("name"),
            email=user.get("email"),
            phone=user.get("phone"),
            is_active=bool(user.get("is_active")),
            is_verified=bool(user.get("is_verified")),
            vehicle_class=user.get("vehicle_class"),
            vehicle_number=user.get("vehicle_number"),
            rating=user.get("rating"),
        )


class AuthError(Exception):
    def __init__(self, message: str, close_code: int):
        super().__init__(message)
        self.close_code = close_code


def create_access_token(user_id: int, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=settings.JWT_EXPIRE_SEC)).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


async def resolve_token(store, token: str) -> Principal:
    """Resolve a bearer token to an active principal.

    Raises AuthError with the WebSocket close code to use: 4401 for a bad
    token or unknown user, 4403 for an inactive account.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        user_id = int(payload["sub"])
    except jwt.ExpiredSignatureError:
        raise AuthError("token expired", 4401)
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
        raise AuthError("invalid token", 4401)
    user = await store.get_user(user_id)
    if not user:
        raise AuthError("user not found", 4401)
    if not user.get("is_active"):
        logger.info("resolve_token: user=%s inactive", user_id)
        raise AuthError("user inactive", 4403)
    return Principal.from_user(user)


async def get_principal(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Principal:
    from . import services
    try:
        return await resolve_token(services.store, creds.credentials)
    except AuthError as e:
        code = status.HTTP_403_FORBIDDEN if e.close_code == 4403 else status.HTTP_401_UNAUTHORIZED
        raise HTTPException(status_code=code, detail=str(e))


async def require_driver(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_driver:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="driver role required")
    return principal
