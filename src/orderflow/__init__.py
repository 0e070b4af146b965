"""
orderflow: order checkout and subscription billing.

Prices orders, walks them through the checkout wizard and status machine,
reconciles payments confirmed by Stripe or PayPal and keeps recurring
subscriptions billed on schedule.

Typical wiring goes through :func:`orderflow.api.create_app`; the pieces are
usable directly as well::

    from orderflow import calculate_prices, default_price_policy

    priced = calculate_prices(order, default_price_policy())
"""
from orderflow.config import OrderflowSettings, load_settings
from orderflow.context import CheckoutContext, SessionUser
from orderflow.controller import OrderProgressController, ProgressOutcome
from orderflow.exceptions import (
    InvalidOrderTransition,
    OrderflowException,
    OrderflowNotFoundError,
    OrderflowValidationError,
    PaymentProviderError,
    WebhookSignatureError,
)
from orderflow.models import Order, OrderStatus, Subscription, SubscriptionStatus
from orderflow.policy import PricePolicy, default_price_policy, load_price_policy
from orderflow.pricing import CalculationMode, calculate_prices
from orderflow.readiness import ReadinessPipeline, ReadinessResult
from orderflow.subscriptions import SubscriptionLifecycleManager
from orderflow.webhooks import PaymentEventProcessor, WebhookRouter

__version__ = "0.1.0"

__all__ = [
    "CalculationMode",
    "CheckoutContext",
    "InvalidOrderTransition",
    "Order",
    "OrderProgressController",
    "OrderStatus",
    "OrderflowException",
    "OrderflowNotFoundError",
    "OrderflowSettings",
    "OrderflowValidationError",
    "PaymentEventProcessor",
    "PaymentProviderError",
    "PricePolicy",
    "ProgressOutcome",
    "ReadinessPipeline",
    "ReadinessResult",
    "SessionUser",
    "Subscription",
    "SubscriptionLifecycleManager",
    "SubscriptionStatus",
    "WebhookRouter",
    "WebhookSignatureError",
    "__version__",
    "calculate_prices",
    "default_price_policy",
    "load_price_policy",
    "load_settings",
]
