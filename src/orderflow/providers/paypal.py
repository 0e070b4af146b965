"""PayPal payment provider (REST v2 orders, v1 billing subscriptions)."""
from __future__ import annotations

import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import httpx

from orderflow.exceptions import PaymentProviderError, WebhookSignatureError
from orderflow.models import Order, PaymentRecord, Subscription, to_decimal, utc_now
from orderflow.providers.base import (
    ChargeHandle,
    EventKind,
    PaymentProvider,
    ProviderEvent,
    ProviderResult,
    ReturnUrls,
    header,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

PLAN_INTERVALS = {"day": "DAY", "week": "WEEK", "month": "MONTH", "year": "YEAR"}


def _link(links: List[Dict[str, Any]], *rels: str) -> Optional[str]:
    for rel in rels:
        for link in links or []:
            if link.get("rel") == rel:
                return link.get("href")
    return None


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


class PayPalProvider(PaymentProvider):
    """PayPal payment provider.

    One-off payments go through Orders v2 (create, customer approval, capture).
    Subscriptions create a catalog product and a billing plan per
    subscription, then a v1 billing subscription the customer approves.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: Optional[str] = None,
        api_base: str = "https://api-m.sandbox.paypal.com",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.api_base, timeout=30.0)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def supplier(self) -> str:
        return "paypal"

    async def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at:
            return self._token
        try:
            response = await self._client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"PayPal authentication failed: {e}")
            raise PaymentProviderError(f"PayPal authentication failed: {e}", supplier=self.supplier) from e
        self._token = data["access_token"]
        # refresh a minute early
        self._token_expires_at = time.time() + int(data.get("expires_in", 0)) - 60
        return self._token

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = await self._access_token()
        try:
            response = await self._client.request(
                method,
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = {"body": e.response.text}
            message = body.get("message") or body.get("name") or str(e) if isinstance(body, dict) else str(e)
            logger.error(f"PayPal {method} {path} failed: {message}")
            raise PaymentProviderError(message, supplier=self.supplier, provider_response=body) from e
        except httpx.HTTPError as e:
            logger.error(f"PayPal {method} {path} failed: {e}")
            raise PaymentProviderError(str(e), supplier=self.supplier) from e

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise PaymentProviderError("PayPal returned a non-JSON response", supplier=self.supplier) from e

    async def create_charge(self, order: Order, urls: ReturnUrls) -> ChargeHandle:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.id,
                    "custom_id": order.id,
                    "amount": {
                        "currency_code": order.prices.currency,
                        "value": _money(order.prices.price_total_to_pay),
                    },
                }
            ],
            "application_context": {
                "return_url": urls.success_url,
                "cancel_url": urls.cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        data = await self._request("POST", "/v2/checkout/orders", payload)
        return ChargeHandle(
            url=_link(data.get("links"), "approve", "payer-action"),
            correlation_id=data["id"],
            raw=data,
        )

    async def create_plan(self, subscription: Subscription, urls: ReturnUrls) -> ChargeHandle:
        template = subscription.data.order
        currency = (template.get("prices") or {}).get("currency") or "EUR"
        name = subscription.order_item_name or subscription.id

        product = await self._request(
            "POST",
            "/v1/catalogs/products",
            {"name": name, "type": "SERVICE"},
        )
        plan = await self._request(
            "POST",
            "/v1/billing/plans",
            {
                "product_id": product["id"],
                "name": name,
                "billing_cycles": [
                    {
                        "frequency": {
                            "interval_unit": PLAN_INTERVALS[subscription.period.value],
                            "interval_count": subscription.duration,
                        },
                        "tenure_type": "REGULAR",
                        "sequence": 1,
                        "total_cycles": max(subscription.cycles, 0),
                        "pricing_scheme": {
                            "fixed_price": {"value": _money(subscription.price), "currency_code": currency},
                        },
                    }
                ],
                "payment_preferences": {"auto_bill_outstanding": True, "payment_failure_threshold": 1},
            },
        )
        data = await self._request(
            "POST",
            "/v1/billing/subscriptions",
            {
                "plan_id": plan["id"],
                "custom_id": subscription.id,
                "application_context": {
                    "return_url": urls.success_url,
                    "cancel_url": urls.cancel_url,
                    "user_action": "SUBSCRIBE_NOW",
                },
            },
        )
        return ChargeHandle(url=_link(data.get("links"), "approve"), correlation_id=data["id"], raw=data)

    async def execute(self, params: Dict[str, Any]) -> ProviderEvent:
        """Capture an approved order, or confirm an approved subscription."""
        subscription_id = params.get("subscription_id")
        if subscription_id:
            data = await self._request("GET", f"/v1/billing/subscriptions/{subscription_id}")
            if data.get("status") != "ACTIVE":
                return ProviderEvent(kind=EventKind.IGNORED, supplier=self.supplier, raw=data)
            return ProviderEvent(
                kind=EventKind.SUBSCRIPTION_AGREED,
                supplier=self.supplier,
                event_type="BILLING.SUBSCRIPTION.ACTIVATED",
                correlation_id=data.get("id"),
                agreement_id=data.get("id"),
                metadata={"subscription_id": data.get("custom_id")},
                raw=data,
            )

        token = params.get("token")
        if not token:
            raise PaymentProviderError("Missing token", supplier=self.supplier)
        data = await self._request("POST", f"/v2/checkout/orders/{token}/capture", {})
        captures = []
        for unit in data.get("purchase_units") or []:
            captures.extend((unit.get("payments") or {}).get("captures") or [])
        if not captures:
            return ProviderEvent(kind=EventKind.IGNORED, supplier=self.supplier, raw=data)
        capture = captures[0]
        return ProviderEvent(
            kind=EventKind.ORDER_PAYMENT_COMPLETED,
            supplier=self.supplier,
            event_type="PAYMENT.CAPTURE.COMPLETED",
            correlation_id=data.get("id"),
            record=self._capture_record(capture),
            raw=data,
        )

    async def suspend(self, agreement_id: str, reason: str) -> ProviderResult:
        return await self._subscription_action(agreement_id, "suspend", reason)

    async def reactivate(self, agreement_id: str, reason: str) -> ProviderResult:
        return await self._subscription_action(agreement_id, "activate", reason)

    async def _subscription_action(self, agreement_id: str, action: str, reason: str) -> ProviderResult:
        try:
            data = await self._request(
                "POST",
                f"/v1/billing/subscriptions/{agreement_id}/{action}",
                {"reason": reason},
            )
        except PaymentProviderError as e:
            body = e.provider_response if isinstance(e.provider_response, dict) else {}
            return ProviderResult(success=False, message=e.message, raw=body)
        return ProviderResult(success=True, raw=data)

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> None:
        """Verify a delivery through PayPal's verify-webhook-signature API."""
        if not self.webhook_id:
            raise WebhookSignatureError(self.supplier, "Webhook id not configured")
        fields = {}
        for field_name, header_name in SIGNATURE_HEADERS.items():
            value = header(headers, header_name)
            if not value:
                raise WebhookSignatureError(self.supplier, f"Missing {header_name} header")
            fields[field_name] = value
        try:
            event = json.loads(payload)
        except ValueError:
            raise WebhookSignatureError(self.supplier, "Webhook body is not JSON")

        try:
            data = await self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                {**fields, "webhook_id": self.webhook_id, "webhook_event": event},
            )
        except PaymentProviderError as e:
            raise WebhookSignatureError(self.supplier, f"Signature check unavailable: {e.message}") from e
        if data.get("verification_status") != "SUCCESS":
            raise WebhookSignatureError(self.supplier)

    def parse_event(self, payload: bytes) -> ProviderEvent:
        event = json.loads(payload)
        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            return ProviderEvent(
                kind=EventKind.ORDER_PAYMENT_COMPLETED,
                supplier=self.supplier,
                event_type=event_type,
                correlation_id=related.get("order_id"),
                record=self._capture_record(resource),
                metadata={"order_id": resource.get("custom_id")},
                raw=event,
            )

        if event_type == "PAYMENT.SALE.COMPLETED":
            amount = resource.get("amount") or {}
            agreement_id = resource.get("billing_agreement_id")
            record = PaymentRecord(
                event_id=resource.get("id") or event.get("id", ""),
                supplier=self.supplier,
                status=(resource.get("state") or "completed").lower(),
                succeeded=(resource.get("state") or "completed").lower() == "completed",
                amount=to_decimal(amount.get("total")),
                currency=amount.get("currency"),
                received_at=utc_now(),
                raw=resource,
            )
            return ProviderEvent(
                kind=EventKind.SUBSCRIPTION_PAYMENT_COMPLETED,
                supplier=self.supplier,
                event_type=event_type,
                correlation_id=agreement_id,
                agreement_id=agreement_id,
                record=record,
                metadata={"subscription_id": resource.get("custom")},
                raw=event,
            )

        if event_type == "BILLING.SUBSCRIPTION.ACTIVATED":
            return ProviderEvent(
                kind=EventKind.SUBSCRIPTION_AGREED,
                supplier=self.supplier,
                event_type=event_type,
                correlation_id=resource.get("id"),
                agreement_id=resource.get("id"),
                metadata={"subscription_id": resource.get("custom_id")},
                raw=event,
            )

        if event_type == "BILLING.SUBSCRIPTION.CANCELLED":
            return ProviderEvent(
                kind=EventKind.SUBSCRIPTION_CANCELED,
                supplier=self.supplier,
                event_type=event_type,
                agreement_id=resource.get("id"),
                metadata={"subscription_id": resource.get("custom_id")},
                raw=event,
            )

        return ProviderEvent(kind=EventKind.IGNORED, supplier=self.supplier, event_type=event_type, raw=event)

    def _capture_record(self, capture: Dict[str, Any]) -> PaymentRecord:
        amount = capture.get("amount") or {}
        status = (capture.get("status") or "").lower()
        return PaymentRecord(
            event_id=capture.get("id", ""),
            supplier=self.supplier,
            status=status,
            succeeded=status == "completed",
            amount=to_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            received_at=utc_now(),
            raw=capture,
        )

    async def close(self) -> None:
        await self._client.aclose()
