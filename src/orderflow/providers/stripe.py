"""Stripe payment provider (Checkout Sessions and Billing)."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from orderflow.exceptions import PaymentProviderError, WebhookSignatureError
from orderflow.models import Order, PaymentRecord, Subscription, utc_now
from orderflow.providers.base import (
    ChargeHandle,
    EventKind,
    PaymentProvider,
    ProviderEvent,
    ProviderResult,
    ReturnUrls,
    from_minor_units,
    header,
    to_minor_units,
)

logger = logging.getLogger(__name__)


def encode_form(data: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested params into Stripe's bracketed form encoding."""
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, entry in enumerate(value):
                entry_name = f"{name}[{index}]"
                if isinstance(entry, Mapping):
                    pairs.extend(encode_form(entry, entry_name))
                else:
                    pairs.append((entry_name, str(entry)))
        elif value is None:
            continue
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


class StripeProvider(PaymentProvider):
    """Stripe payment provider."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        api_base: str = "https://api.stripe.com/v1",
        tolerance_seconds: int = 300,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.tolerance_seconds = tolerance_seconds
        self._client = client or httpx.AsyncClient(
            base_url=self.api_base,
            auth=(api_key, ""),
            timeout=30.0,
        )

    @property
    def supplier(self) -> str:
        return "stripe"

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                path,
                data=dict(encode_form(data)) if data else None,
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            body = _safe_json(e.response)
            message = body.get("error", {}).get("message") or str(e)
            logger.error(f"Stripe {method} {path} failed: {message}")
            raise PaymentProviderError(message, supplier=self.supplier, provider_response=body) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Stripe {method} {path} failed: {e}")
            raise PaymentProviderError(str(e), supplier=self.supplier) from e

    async def create_charge(self, order: Order, urls: ReturnUrls) -> ChargeHandle:
        """Create a payment-mode Checkout Session for the outstanding amount."""
        currency = order.prices.currency.lower()
        payload = {
            "mode": "payment",
            "client_reference_id": order.id,
            "success_url": _with_session_placeholder(urls.success_url),
            "cancel_url": urls.cancel_url,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": f"Order {order.external_code or order.id}"},
                        "unit_amount": to_minor_units(order.prices.price_total_to_pay),
                    },
                    "quantity": 1,
                }
            ],
            "metadata": {"order_id": order.id},
        }
        if order.user.email:
            payload["customer_email"] = order.user.email
        data = await self._request("POST", "/checkout/sessions", payload)
        return ChargeHandle(url=data.get("url"), correlation_id=data["id"], raw=data)

    async def create_plan(self, subscription: Subscription, urls: ReturnUrls) -> ChargeHandle:
        """Create a subscription-mode Checkout Session billed every period."""
        template = subscription.data.order
        currency = (template.get("prices") or {}).get("currency") or "EUR"
        payload = {
            "mode": "subscription",
            "client_reference_id": subscription.id,
            "success_url": _with_session_placeholder(urls.success_url),
            "cancel_url": urls.cancel_url,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": subscription.order_item_name or subscription.id},
                        "unit_amount": to_minor_units(subscription.price),
                        "recurring": {
                            "interval": subscription.period.value,
                            "interval_count": subscription.duration,
                        },
                    },
                    "quantity": 1,
                }
            ],
            "metadata": {"subscription_id": subscription.id},
            "subscription_data": {"metadata": {"subscription_id": subscription.id}},
        }
        data = await self._request("POST", "/checkout/sessions", payload)
        return ChargeHandle(url=data.get("url"), correlation_id=data["id"], raw=data)

    async def execute(self, params: Dict[str, Any]) -> ProviderEvent:
        """Look up the returning Checkout Session and normalize it."""
        session_id = params.get("session_id")
        if not session_id:
            raise PaymentProviderError("Missing session_id", supplier=self.supplier)
        session = await self._request("GET", f"/checkout/sessions/{session_id}")
        if session.get("status") != "complete":
            return ProviderEvent(kind=EventKind.IGNORED, supplier=self.supplier, raw=session)
        return self._session_event(session, "checkout.session.completed")

    async def suspend(self, agreement_id: str, reason: str) -> ProviderResult:
        try:
            data = await self._request(
                "POST",
                f"/subscriptions/{agreement_id}",
                {"pause_collection": {"behavior": "void"}, "metadata": {"pause_reason": reason}},
            )
        except PaymentProviderError as e:
            return ProviderResult(success=False, message=e.message, raw=e.provider_response or {})
        return ProviderResult(success=True, raw=data)

    async def reactivate(self, agreement_id: str, reason: str) -> ProviderResult:
        try:
            # an empty value clears pause_collection
            data = await self._request(
                "POST",
                f"/subscriptions/{agreement_id}",
                {"pause_collection": "", "metadata": {"pause_reason": ""}},
            )
        except PaymentProviderError as e:
            return ProviderResult(success=False, message=e.message, raw=e.provider_response or {})
        return ProviderResult(success=True, raw=data)

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> None:
        """Verify the ``Stripe-Signature`` header (``t=...,v1=...``)."""
        if not self.webhook_secret:
            raise WebhookSignatureError(self.supplier, "Webhook secret not configured")
        signature = header(headers, "stripe-signature")
        if not signature:
            raise WebhookSignatureError(self.supplier, "Missing Stripe-Signature header")

        timestamp = None
        candidates = []
        for part in signature.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                candidates.append(value)
        if not timestamp or not candidates:
            raise WebhookSignatureError(self.supplier, "Malformed Stripe-Signature header")

        try:
            age = abs(time.time() - int(timestamp))
        except ValueError:
            raise WebhookSignatureError(self.supplier, "Malformed signature timestamp")
        if age > self.tolerance_seconds:
            raise WebhookSignatureError(self.supplier, "Signature timestamp outside tolerance")

        signed_payload = timestamp.encode() + b"." + payload
        expected = hmac.new(self.webhook_secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise WebhookSignatureError(self.supplier)

    def parse_event(self, payload: bytes) -> ProviderEvent:
        event = json.loads(payload)
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            return self._session_event(obj, event_type)

        if event_type == "invoice.payment_succeeded":
            agreement_id = _invoice_subscription(obj)
            record = PaymentRecord(
                event_id=obj.get("id") or event.get("id", ""),
                supplier=self.supplier,
                status="paid",
                succeeded=True,
                amount=from_minor_units(obj.get("amount_paid")),
                currency=(obj.get("currency") or "").upper() or None,
                received_at=utc_now(),
                raw=obj,
            )
            return ProviderEvent(
                kind=EventKind.SUBSCRIPTION_PAYMENT_COMPLETED,
                supplier=self.supplier,
                event_type=event_type,
                correlation_id=agreement_id,
                agreement_id=agreement_id,
                record=record,
                metadata=_invoice_metadata(obj),
                raw=event,
            )

        if event_type == "customer.subscription.deleted":
            return ProviderEvent(
                kind=EventKind.SUBSCRIPTION_CANCELED,
                supplier=self.supplier,
                event_type=event_type,
                agreement_id=obj.get("id"),
                metadata=dict(obj.get("metadata") or {}),
                raw=event,
            )

        return ProviderEvent(kind=EventKind.IGNORED, supplier=self.supplier, event_type=event_type, raw=event)

    def _session_event(self, session: Dict[str, Any], event_type: str) -> ProviderEvent:
        metadata = dict(session.get("metadata") or {})
        if session.get("mode") == "subscription":
            return ProviderEvent(
                kind=EventKind.SUBSCRIPTION_AGREED,
                supplier=self.supplier,
                event_type=event_type,
                correlation_id=session.get("id"),
                agreement_id=session.get("subscription"),
                metadata=metadata,
                raw=session,
            )

        paid = session.get("payment_status") == "paid"
        record = PaymentRecord(
            # keyed by payment intent so webhook and redirect confirmations dedupe
            event_id=session.get("payment_intent") or session.get("id", ""),
            supplier=self.supplier,
            status=session.get("payment_status") or "unknown",
            succeeded=paid,
            amount=from_minor_units(session.get("amount_total")),
            currency=(session.get("currency") or "").upper() or None,
            received_at=utc_now(),
            raw=session,
        )
        return ProviderEvent(
            kind=EventKind.ORDER_PAYMENT_COMPLETED,
            supplier=self.supplier,
            event_type=event_type,
            correlation_id=session.get("id"),
            record=record,
            metadata=metadata,
            raw=session,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return details.get("subscription")


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"body": response.text}
    return body if isinstance(body, dict) else {"body": body}


def _with_session_placeholder(url: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={{CHECKOUT_SESSION_ID}}"


def _invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    details = invoice.get("subscription_details") or ((invoice.get("parent") or {}).get("subscription_details")) or {}
    metadata = dict(invoice.get("metadata") or {})
    metadata.update(details.get("metadata") or {})
    return metadata
