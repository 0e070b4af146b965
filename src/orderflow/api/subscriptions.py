"""Subscription self-service and operator endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from orderflow.context import SessionUser
from orderflow.subscriptions import SubscriptionLifecycleManager

from .authz import get_principal, require_admin, require_principal

logger = logging.getLogger("orderflow.api.subscriptions")

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class SubscriptionDependencies:
    def __init__(self, manager: SubscriptionLifecycleManager):
        self.manager = manager


def get_deps() -> SubscriptionDependencies:
    """Dependency injection placeholder - must be overridden."""
    raise NotImplementedError("Dependency override required")


class SubscriptionActionRequest(BaseModel):
    reason: Optional[str] = None


class ImportRequest(BaseModel):
    # rows are validated one by one so a bad row becomes an error entry
    subscriptions: List[Dict[str, Any]]


@router.post("/import")
async def import_subscriptions(
    body: ImportRequest,
    deps: SubscriptionDependencies = Depends(get_deps),
    principal: Optional[SessionUser] = Depends(get_principal),
) -> Dict[str, Any]:
    summary = await deps.manager.import_subscriptions(
        body.subscriptions,
        principal,
    )
    return summary.to_dict()


@router.post("/ops/check")
async def check_subscriptions(
    deps: SubscriptionDependencies = Depends(get_deps),
    principal: SessionUser = Depends(require_admin),
) -> Dict[str, Any]:
    """Run the daily subscription sweep on demand."""
    logger.info(f"Subscription sweep triggered by {principal.id}")
    summary = await deps.manager.check_subscriptions()
    return summary.to_dict()


@router.post("/{subscription_id}/suspend")
async def suspend_subscription(
    subscription_id: str,
    body: Optional[SubscriptionActionRequest] = None,
    deps: SubscriptionDependencies = Depends(get_deps),
    principal: SessionUser = Depends(require_principal),
) -> Dict[str, Any]:
    kwargs = {"reason": body.reason} if body and body.reason else {}
    result = await deps.manager.suspend(subscription_id, actor=principal, **kwargs)
    return result.to_dict()


@router.post("/{subscription_id}/reactivate")
async def reactivate_subscription(
    subscription_id: str,
    body: Optional[SubscriptionActionRequest] = None,
    deps: SubscriptionDependencies = Depends(get_deps),
    principal: SessionUser = Depends(require_principal),
) -> Dict[str, Any]:
    kwargs = {"reason": body.reason} if body and body.reason else {}
    result = await deps.manager.reactivate(subscription_id, actor=principal, **kwargs)
    return result.to_dict()
