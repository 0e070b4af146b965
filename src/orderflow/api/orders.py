"""Checkout wizard, order payments and payment provider callbacks."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from pydantic import BaseModel, Field

from orderflow.context import CheckoutContext, SessionUser
from orderflow.controller import OrderProgressController, ProgressRequest
from orderflow.exceptions import OrderflowValidationError
from orderflow.tokens import UNVERIFIED_ORDER_COOKIE
from orderflow.webhooks import WebhookRouter

from .authz import get_principal, require_principal

logger = logging.getLogger("orderflow.api.orders")

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderDependencies:
    """Dependencies for the order endpoints."""

    def __init__(
        self,
        controller: OrderProgressController,
        webhooks: WebhookRouter,
        secure_cookies: bool = False,
        token_ttl_hours: int = 24,
    ):
        self.controller = controller
        self.webhooks = webhooks
        self.secure_cookies = secure_cookies
        self.token_ttl_hours = token_ttl_hours


def get_deps() -> OrderDependencies:
    """Dependency injection placeholder - must be overridden."""
    raise NotImplementedError("Dependency override required")


class PaymentRequest(BaseModel):
    supplier: str
    action: str = "checkout"
    data: Dict[str, Any] = Field(default_factory=dict)


def _checkout_context(
    request: Request,
    cart_id: Optional[str],
    token: Optional[str],
    principal: Optional[SessionUser],
) -> CheckoutContext:
    if not cart_id:
        raise OrderflowValidationError("X-Cart-Id header is required", field="X-Cart-Id")
    return CheckoutContext(
        cart_id=cart_id,
        session_user=principal,
        unverified_token=token,
        ip=request.client.host if request.client else None,
        lang=request.headers.get("Accept-Language", "").split(",")[0].strip() or None,
    )


@router.post("/progress")
async def progress_order(
    request: Request,
    response: Response,
    payload: Optional[ProgressRequest] = None,
    x_cart_id: Optional[str] = Header(default=None, alias="X-Cart-Id"),
    deps: OrderDependencies = Depends(get_deps),
    principal: Optional[SessionUser] = Depends(get_principal),
) -> Dict[str, Any]:
    """Advance the checkout wizard for the caller's cart.

    An empty body re-evaluates the working order without saving it.
    """
    token = request.cookies.get(UNVERIFIED_ORDER_COOKIE)
    context = _checkout_context(request, x_cart_id, token, principal)
    partial = payload.model_dump(exclude_unset=True) if payload is not None else {}
    outcome = await deps.controller.progress(context, partial)
    if outcome.token:
        response.set_cookie(
            UNVERIFIED_ORDER_COOKIE,
            outcome.token,
            max_age=deps.token_ttl_hours * 3600,
            httponly=True,
            secure=deps.secure_cookies,
            samesite="lax",
        )
    return outcome.to_dict()


@router.get("/settings")
async def checkout_settings(
    request: Request,
    x_cart_id: Optional[str] = Header(default=None, alias="X-Cart-Id"),
    deps: OrderDependencies = Depends(get_deps),
    principal: Optional[SessionUser] = Depends(get_principal),
) -> Dict[str, Any]:
    context = _checkout_context(request, x_cart_id, None, principal)
    return await deps.controller.checkout_settings(context)


@router.get("")
async def list_orders(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    deps: OrderDependencies = Depends(get_deps),
    principal: SessionUser = Depends(require_principal),
) -> Dict[str, Any]:
    listing = await deps.controller.list_orders(principal, limit=limit, offset=offset)
    return {"total": listing["total"], "results": [o.to_dict() for o in listing["results"]]}


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    deps: OrderDependencies = Depends(get_deps),
    principal: SessionUser = Depends(require_principal),
) -> Dict[str, Any]:
    result = await deps.controller.cancel(order_id, principal)
    return {"success": result["success"], "order": result["order"].to_dict()}


@router.post("/{order_id}/payment")
async def start_payment(
    order_id: str,
    body: PaymentRequest,
    request: Request,
    deps: OrderDependencies = Depends(get_deps),
    principal: Optional[SessionUser] = Depends(get_principal),
) -> Dict[str, Any]:
    return await deps.controller.payment(
        order_id,
        body.supplier,
        body.action,
        body.data,
        principal=principal,
        unverified_token=request.cookies.get(UNVERIFIED_ORDER_COOKIE),
    )


@router.get("/payment/{supplier}/{result}")
async def payment_result(
    supplier: str,
    result: str,
    request: Request,
    deps: OrderDependencies = Depends(get_deps),
) -> Dict[str, Any]:
    """Customer return from the provider approval page (``success`` or ``cancel``)."""
    if result not in ("success", "cancel"):
        raise OrderflowValidationError(f"Unknown payment result '{result}'", field="result")
    return await deps.controller.payment_result(supplier, result, dict(request.query_params))


@router.post("/webhooks/{supplier}")
async def payment_webhook(
    supplier: str,
    request: Request,
    deps: OrderDependencies = Depends(get_deps),
) -> Dict[str, Any]:
    """Raw provider webhook. Rejected only when the delivery is not authentic."""
    payload = await request.body()
    return await deps.webhooks.handle_provider_event(supplier, payload, request.headers)
