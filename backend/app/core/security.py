"""
Role gate — decodes bearer JWTs issued by the accounts service.

Tokens carry the caller's id (``id`` or ``sub``), ``role`` and, for campus
users, ``campusId`` and ``name``. This module never issues tokens for real
users; ``create_access_token`` exists for local tooling and tests.

Usage:
    from backend.app.core.security import require_roles, OPERATOR_ROLES

    @router.get("/", dependencies=[Depends(require_roles(*OPERATOR_ROLES))])
    async def list_alerts(): ...
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from backend.app.core.config import settings
from backend.app.core.errors import AuthenticationError, PermissionDeniedError

ADMIN_ROLES = ("admin", "superadmin")
POLICE_ROLES = ("police",)
OPERATOR_ROLES = ADMIN_ROLES + POLICE_ROLES

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as described by the token claims."""
    user_id: str
    role: str
    name: Optional[str] = None
    campus_id: Optional[str] = None

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


def create_access_token(claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token with the shared secret."""
    to_encode = dict(claims)
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=7))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Principal:
    """Validate a JWT and map its claims onto a Principal."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("id") or payload.get("sub")
    role = payload.get("role")
    if not user_id or not role:
        raise AuthenticationError("Token is missing identity claims")

    return Principal(
        user_id=str(user_id),
        role=str(role),
        name=payload.get("name") or payload.get("username"),
        campus_id=payload.get("campusId"),
    )


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Principal:
    """FastAPI dependency: the authenticated caller, or 401."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError()
    return decode_token(credentials.credentials)


def require_roles(*roles: str) -> Callable:
    """FastAPI dependency factory: caller must hold one of ``roles``."""
    allowed = list(roles)

    async def _checker(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in allowed:
            raise PermissionDeniedError(allowed, principal.role)
        return principal

    return _checker
