"""Client for the external order-intake (back-office) service."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from orderflow.exceptions import IntakeError
from orderflow.models import Order

logger = logging.getLogger(__name__)


class IntakeStatus(str, Enum):
    ACCEPTED = "accepted"
    CHANGED = "changed"
    REJECTED = "rejected"


@dataclass
class IntakeResponse:
    status: IntakeStatus
    order: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "order": self.order}


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


class OrderIntakeClient:
    """Submits saved orders to the intake service for acceptance."""

    def __init__(
        self,
        url: str,
        login: Optional[str] = None,
        password: Optional[str] = None,
        shop_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self.shop_id = shop_id
        auth = (login, password or "") if login else None
        self._client = client or httpx.AsyncClient(auth=auth, timeout=timeout)
        self._auth = auth

    async def submit(self, order: Order) -> IntakeResponse:
        """POST the order and parse the verdict.

        Raises:
            IntakeError: transport failure or malformed response
        """
        payload = {"shopId": self.shop_id, "order": _jsonable(order.to_dict())}
        try:
            response = await self._client.post(self.url, json=payload, auth=self._auth)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Order intake failed for order {order.id}: {e}")
            raise IntakeError(f"Order intake request failed: {e}") from e

        if not isinstance(body, dict):
            raise IntakeError("Order intake returned a non-object response")
        try:
            status = IntakeStatus(body.get("status"))
        except ValueError as e:
            raise IntakeError(f"Order intake returned unknown status {body.get('status')!r}") from e
        returned = body.get("order") or {}
        if not isinstance(returned, dict):
            raise IntakeError("Order intake returned a malformed order")

        logger.info(f"Order intake answered {status.value} for order {order.id}")
        return IntakeResponse(status=status, order=returned, raw=body)

    async def close(self):
        await self._client.aclose()
