"""Bearer-token principal resolution.

Session tokens are issued by the shop's account service and signed with the
shared ``jwt_secret``. A missing token means an anonymous caller, which the
checkout endpoints accept; a present but invalid token is rejected.
"""
from __future__ import annotations

import logging
from typing import Optional

import jwt
from fastapi import Depends, Request

from orderflow.config import OrderflowSettings
from orderflow.context import SessionUser
from orderflow.exceptions import OrderflowAuthenticationError, OrderflowAuthorizationError

_logger = logging.getLogger("orderflow.api.authz")

_ALGORITHM = "HS256"


def get_settings() -> OrderflowSettings:
    """Dependency injection placeholder - must be overridden."""
    raise NotImplementedError("Dependency override required")


def decode_session_token(token: str, secret: str) -> SessionUser:
    try:
        claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except jwt.PyJWTError as e:
        _logger.warning("Rejected session token: %s", e)
        raise OrderflowAuthenticationError("Invalid session token") from e

    user_id = claims.get("sub")
    if not user_id:
        raise OrderflowAuthenticationError("Session token has no subject")
    return SessionUser(
        id=str(user_id),
        email=claims.get("email"),
        username=claims.get("username"),
        external_id=claims.get("external_id"),
        addresses=list(claims.get("addresses") or []),
        is_admin=claims.get("role") == "admin",
    )


async def get_principal(
    request: Request,
    settings: OrderflowSettings = Depends(get_settings),
) -> Optional[SessionUser]:
    """The caller's session user, or None for anonymous requests."""
    authorization = request.headers.get("Authorization", "")
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise OrderflowAuthenticationError("Unsupported authorization scheme")
    return decode_session_token(token.strip(), settings.jwt_secret)


async def require_principal(
    principal: Optional[SessionUser] = Depends(get_principal),
) -> SessionUser:
    if principal is None:
        raise OrderflowAuthenticationError("Login required")
    return principal


async def require_admin(
    principal: SessionUser = Depends(require_principal),
) -> SessionUser:
    if not principal.is_admin:
        raise OrderflowAuthorizationError("Admin access required")
    return principal
