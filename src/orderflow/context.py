"""Per-call checkout context."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class SessionUser:
    """The authenticated caller, as resolved by the HTTP layer."""
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    external_id: Optional[str] = None
    addresses: List[Dict[str, Any]] = field(default_factory=list)
    is_admin: bool = False

    def address(self, kind: str) -> Optional[Dict[str, Any]]:
        for address in self.addresses:
            if address.get("type") == kind:
                return dict(address)
        return None


@dataclass
class CheckoutContext:
    """State threaded through one checkout request.

    Created per request by the API layer and never shared between requests.
    ``user_new`` and ``issued_token`` are written during processing.
    """
    cart_id: str
    session_user: Optional[SessionUser] = None
    unverified_token: Optional[str] = None
    ip: Optional[str] = None
    lang: Optional[str] = None
    user_new: bool = False
    issued_token: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.session_user and self.session_user.id)
