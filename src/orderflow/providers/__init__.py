"""Payment provider adapters and the supplier registry."""
from __future__ import annotations

import logging
from typing import Dict, List

from orderflow.exceptions import ProviderNotConfiguredError
from orderflow.providers.base import (
    ChargeHandle,
    EventKind,
    PaymentProvider,
    ProviderEvent,
    ProviderResult,
    ReturnUrls,
)
from orderflow.providers.paypal import PayPalProvider
from orderflow.providers.stripe import StripeProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps supplier names (``stripe``, ``paypal``) to provider adapters."""

    def __init__(self):
        self._providers: Dict[str, PaymentProvider] = {}

    def register(self, provider: PaymentProvider) -> None:
        self._providers[provider.supplier] = provider
        logger.info(f"Registered payment provider: {provider.supplier}")

    def unregister(self, supplier: str) -> bool:
        if supplier in self._providers:
            del self._providers[supplier]
            logger.info(f"Unregistered payment provider: {supplier}")
            return True
        return False

    def get(self, supplier: str) -> PaymentProvider:
        """
        Raises:
            ProviderNotConfiguredError: nothing is registered under ``supplier``
        """
        provider = self._providers.get(supplier)
        if provider is None:
            raise ProviderNotConfiguredError(supplier)
        return provider

    def names(self) -> List[str]:
        return sorted(self._providers)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


__all__ = [
    "ChargeHandle",
    "EventKind",
    "PaymentProvider",
    "PayPalProvider",
    "ProviderEvent",
    "ProviderRegistry",
    "ProviderResult",
    "ReturnUrls",
    "StripeProvider",
]
