"""Unified exception hierarchy for orderflow.

All orderflow-specific exceptions inherit from OrderflowException, enabling:
- Consistent error handling across the checkout and subscription layers
- Proper HTTP status code mapping in the API layer
- Structured error responses with error codes

Usage:
    from orderflow.exceptions import (
        OrderflowException,
        OrderflowValidationError,
        OrderflowNotFoundError,
    )

    order = await store.get(order_id)
    if order is None:
        raise OrderflowNotFoundError("Order", order_id)

All exceptions have:
- error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class OrderflowException(Exception):
    """Base exception for all orderflow errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "ORDERFLOW_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Input Errors (4xx)
# =============================================================================

class OrderflowValidationError(OrderflowException):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class OrderflowNotFoundError(OrderflowException):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class OrderflowAuthenticationError(OrderflowException):
    """Authentication failed."""

    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class WebhookSignatureError(OrderflowAuthenticationError):
    """Inbound provider webhook failed signature verification.

    Answered with 400 so providers treat the delivery as rejected rather than
    as a transient failure.
    """

    error_code = "WEBHOOK_SIGNATURE_INVALID"
    http_status = 400

    def __init__(
        self,
        supplier: str,
        message: str = "Webhook signature verification failed",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["supplier"] = supplier
        self.supplier = supplier
        super().__init__(message, details=details)


class OrderflowAuthorizationError(OrderflowException):
    """Authorization failed - insufficient permissions."""

    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class OrderflowConflictError(OrderflowException):
    """Resource conflict (e.g., state no longer allows the operation)."""

    error_code = "CONFLICT"
    http_status = 409


class InvalidOrderTransition(OrderflowConflictError):
    """Order status change would regress or leave a terminal state."""

    error_code = "INVALID_ORDER_TRANSITION"

    def __init__(
        self,
        current: str,
        target: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["current_status"] = current
        details["target_status"] = target
        self.current = current
        self.target = target
        super().__init__(
            f"Order cannot move from '{current}' to '{target}'",
            details=details,
        )


# =============================================================================
# Payment Provider Errors
# =============================================================================

class PaymentProviderError(OrderflowException):
    """A payment provider call failed (network, auth or business error)."""

    error_code = "PAYMENT_PROVIDER_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        supplier: Optional[str] = None,
        provider_response: Optional[Any] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if supplier:
            details["supplier"] = supplier
        self.supplier = supplier
        self.provider_response = provider_response
        super().__init__(message, details=details)


class ProviderNotConfiguredError(OrderflowException):
    """No payment provider is registered under the requested supplier name."""

    error_code = "PROVIDER_NOT_CONFIGURED"
    http_status = 404

    def __init__(self, supplier: str) -> None:
        self.supplier = supplier
        super().__init__(
            f"Payment supplier '{supplier}' is not configured",
            details={"supplier": supplier},
        )


class IntakeError(OrderflowException):
    """Order-intake service unreachable or answered with an unusable response."""

    error_code = "INTAKE_ERROR"
    http_status = 502


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(OrderflowException):
    """Required configuration is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if setting:
            details["setting"] = setting
        super().__init__(message, details=details)


__all__ = [
    "OrderflowException",
    "OrderflowValidationError",
    "OrderflowNotFoundError",
    "OrderflowAuthenticationError",
    "WebhookSignatureError",
    "OrderflowAuthorizationError",
    "OrderflowConflictError",
    "InvalidOrderTransition",
    "PaymentProviderError",
    "ProviderNotConfiguredError",
    "IntakeError",
    "ConfigurationError",
]
