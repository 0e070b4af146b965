"""Signed "unverified order" tokens.

A customer who registers inline during checkout is not logged in yet. The
token lets later checkout calls from the same browser keep acting as that
user until the account is verified.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import jwt

from orderflow.models import OrderUser, utc_now

logger = logging.getLogger(__name__)

UNVERIFIED_ORDER_COOKIE = "order_no_verif"
_ALGORITHM = "HS256"


@dataclass(frozen=True)
class UnverifiedOrderIdentity:
    user_id: str
    email: str


class OrderTokenSigner:
    """Issues and reads unverified-order tokens (HS256 JWT)."""

    def __init__(self, secret: str, ttl_hours: int = 24):
        self._secret = secret
        self._ttl = timedelta(hours=ttl_hours)

    def issue(self, user: OrderUser, now: Optional[datetime] = None) -> str:
        now = now or utc_now()
        payload = {
            "id": user.id,
            "email": user.email,
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def read(self, token: Optional[str]) -> Optional[UnverifiedOrderIdentity]:
        """Decode a token; invalid, expired or incomplete tokens yield None."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except jwt.PyJWTError as e:
            logger.warning("Rejected unverified-order token: %s", e)
            return None
        user_id = payload.get("id")
        email = payload.get("email")
        if not user_id or not email:
            return None
        return UnverifiedOrderIdentity(user_id=str(user_id), email=str(email))
