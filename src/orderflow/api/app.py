"""API composition root."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from orderflow.config import OrderflowSettings, load_settings
from orderflow.controller import OrderProgressController
from orderflow.exceptions import OrderflowException
from orderflow.intake import OrderIntakeClient
from orderflow.logging_config import generate_correlation_id, set_correlation_id, setup_logging
from orderflow.policy import PricePolicy, load_price_policy
from orderflow.providers import PayPalProvider, ProviderRegistry, StripeProvider
from orderflow.scheduler import OrderflowScheduler, register_default_jobs
from orderflow.stores import (
    CartStore,
    InMemoryCartStore,
    InMemoryOrderStore,
    InMemorySubscriptionStore,
    InMemoryUserDirectory,
    Notifier,
    OrderStore,
    SubscriptionStore,
    UserDirectory,
)
from orderflow.subscriptions import SubscriptionLifecycleManager
from orderflow.tokens import OrderTokenSigner
from orderflow.webhooks import WebhookRouter

from . import authz
from . import orders as orders_router
from . import subscriptions as subscriptions_router

logger = logging.getLogger("orderflow.api")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Binds the caller's X-Request-ID (or a fresh one) to the request and its logs."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_correlation_id()
        request.state.request_id = request_id
        set_correlation_id(request_id)
        try:
            response = await call_next(request)
        finally:
            set_correlation_id(None)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def get_request_id(request: Request) -> str:
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get(REQUEST_ID_HEADER, "unknown")


def register_exception_handlers(app: FastAPI, expose_details: bool = True) -> None:

    @app.exception_handler(OrderflowException)
    async def orderflow_exception_handler(request: Request, exc: OrderflowException) -> JSONResponse:
        request_id = get_request_id(request)
        if exc.http_status >= 500:
            logger.error(
                f"Server error: {exc.error_code} - {exc.message}",
                extra={"request_id": request_id, "error_code": exc.error_code, "details": exc.details},
            )
        else:
            logger.warning(
                f"Client error: {exc.error_code} - {exc.message}",
                extra={"request_id": request_id, "error_code": exc.error_code},
            )

        body = exc.to_dict()
        if exc.http_status >= 500 and not expose_details:
            body.pop("details", None)
        body["status"] = exc.http_status
        body["path"] = request.url.path
        body["request_id"] = request_id
        return JSONResponse(
            status_code=exc.http_status,
            content=body,
            headers={REQUEST_ID_HEADER: request_id},
        )


def build_providers(settings: OrderflowSettings) -> ProviderRegistry:
    """Register every payment provider that has credentials configured."""
    registry = ProviderRegistry()
    if settings.stripe.api_key:
        registry.register(StripeProvider(
            api_key=settings.stripe.api_key,
            webhook_secret=settings.stripe.webhook_secret or None,
            api_base=settings.stripe.api_base,
            tolerance_seconds=settings.stripe.tolerance_seconds,
        ))
    if settings.paypal.client_id and settings.paypal.client_secret:
        registry.register(PayPalProvider(
            client_id=settings.paypal.client_id,
            client_secret=settings.paypal.client_secret,
            webhook_id=settings.paypal.webhook_id or None,
            api_base=settings.paypal.api_base,
        ))
    if not registry.names():
        logger.warning("No payment provider configured")
    return registry


def build_intake(settings: OrderflowSettings) -> Optional[OrderIntakeClient]:
    if not settings.intake.url:
        return None
    return OrderIntakeClient(
        url=settings.intake.url,
        login=settings.intake.login,
        password=settings.intake.password,
        shop_id=settings.intake.shop_id,
    )


def create_app(
    settings: OrderflowSettings | None = None,
    *,
    order_store: Optional[OrderStore] = None,
    subscription_store: Optional[SubscriptionStore] = None,
    cart_store: Optional[CartStore] = None,
    users: Optional[UserDirectory] = None,
    providers: Optional[ProviderRegistry] = None,
    policy: Optional[PricePolicy] = None,
    notifier: Optional[Notifier] = None,
    intake: Optional[OrderIntakeClient] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the application.

    Collaborators default to the in-memory stores and to whatever providers
    ``settings`` configures; pass them explicitly to plug in real backends
    or test doubles.
    """
    settings = settings or load_settings()
    if configure_logging:
        setup_logging(level=settings.log_level, json_format=settings.log_json)

    order_store = order_store or InMemoryOrderStore()
    subscription_store = subscription_store or InMemorySubscriptionStore()
    cart_store = cart_store or InMemoryCartStore()
    users = users or InMemoryUserDirectory()
    providers = providers if providers is not None else build_providers(settings)
    policy = policy or load_price_policy(settings.price_policy_file or None)
    intake = intake if intake is not None else build_intake(settings)

    manager = SubscriptionLifecycleManager(
        store=subscription_store,
        order_store=order_store,
        providers=providers,
        policy=policy,
        tolerance_days=settings.subscription_tolerance_days,
    )
    controller = OrderProgressController(
        order_store=order_store,
        cart_store=cart_store,
        users=users,
        subscriptions=manager,
        providers=providers,
        policy=policy,
        token_signer=OrderTokenSigner(settings.jwt_secret, settings.order_token_ttl_hours),
        notifier=notifier,
        intake=intake,
        public_base_url=settings.public_base_url,
        stale_cart_days=settings.stale_cart_days,
    )
    webhooks = WebhookRouter(providers, controller.events)

    scheduler = OrderflowScheduler() if settings.enable_scheduler else None
    if scheduler is not None:
        register_default_jobs(scheduler, manager, controller, hour=settings.check_subscriptions_hour)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting orderflow API ({settings.environment})")
        if scheduler is not None:
            await scheduler.start()
        yield
        logger.info("Shutting down orderflow API...")
        if scheduler is not None:
            await scheduler.shutdown(wait=False)
        await providers.close()
        if intake is not None:
            await intake.close()

    app = FastAPI(title="orderflow", version="0.1.0", lifespan=lifespan)
    app.state.controller = controller
    app.state.subscriptions = manager
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER, "X-Cart-Id"],
    )
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app, expose_details=not settings.is_production)

    app.dependency_overrides[authz.get_settings] = lambda: settings
    app.dependency_overrides[orders_router.get_deps] = lambda: orders_router.OrderDependencies(
        controller=controller,
        webhooks=webhooks,
        secure_cookies=settings.is_production,
        token_ttl_hours=settings.order_token_ttl_hours,
    )
    app.dependency_overrides[subscriptions_router.get_deps] = lambda: subscriptions_router.SubscriptionDependencies(
        manager=manager,
    )
    app.include_router(orders_router.router)
    app.include_router(subscriptions_router.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "providers": providers.names()}

    return app
