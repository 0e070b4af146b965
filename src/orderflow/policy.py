"""Price policy: tax settings plus delivery and payment fee tables."""
from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from orderflow.models import TaxRegime


class PriceBand(BaseModel):
    """Fee applied while the items subtotal falls in ``[range_from, range_to)``."""
    range_from: Decimal = Decimal("0")
    range_to: Decimal
    price: Decimal
    tax: Optional[Decimal] = None

    @model_validator(mode="after")
    def check_range(self) -> "PriceBand":
        if self.range_to <= self.range_from:
            raise ValueError("range_to must be greater than range_from")
        return self

    def contains(self, amount: Decimal) -> bool:
        return self.range_from <= amount < self.range_to


class DeliveryMethod(BaseModel):
    codename: str
    subtype: str
    name: Dict[str, str] = Field(default_factory=dict)
    prices: List[PriceBand] = Field(default_factory=list)


class PaymentMethod(BaseModel):
    codename: str
    # provider registry key; None for offline methods such as cash on delivery
    supplier: Optional[str] = None
    # method cannot be used for mixed orders that include this subtype
    restricted_subtype: Optional[str] = None
    name: Dict[str, str] = Field(default_factory=dict)
    prices: List[PriceBand] = Field(default_factory=list)


class TaxPolicy(BaseModel):
    rate: Decimal = Decimal("0.2")
    regime: TaxRegime = TaxRegime.INCLUSIVE


class PricePolicy(BaseModel):
    """Read-only rate table consulted by the pricing engine."""
    currency: str = "EUR"
    tax: TaxPolicy = Field(default_factory=TaxPolicy)
    delivery_methods: List[DeliveryMethod] = Field(default_factory=list)
    payment_methods: List[PaymentMethod] = Field(default_factory=list)

    def delivery_method(self, codename: Optional[str]) -> Optional[DeliveryMethod]:
        if not codename:
            return None
        for method in self.delivery_methods:
            if method.codename == codename:
                return method
        return None

    def payment_method(self, codename: Optional[str]) -> Optional[PaymentMethod]:
        if not codename:
            return None
        for method in self.payment_methods:
            if method.codename == codename:
                return method
        return None

    def deliveries_for(self, subtypes: List[str]) -> List[DeliveryMethod]:
        """Delivery methods usable for any of the given item subtypes."""
        return [m for m in self.delivery_methods if m.subtype in subtypes]

    def payments_for(self, subtypes: List[str]) -> List[PaymentMethod]:
        """Payment methods whose restriction does not exclude the subtype mix."""
        mixed = len(subtypes) > 1
        return [
            m
            for m in self.payment_methods
            if not (mixed and m.restricted_subtype and m.restricted_subtype in subtypes)
        ]


def _bands(*rows: tuple) -> List[PriceBand]:
    return [
        PriceBand(range_from=Decimal(lo), range_to=Decimal(hi), price=Decimal(price), tax=Decimal(tax))
        for lo, hi, price, tax in rows
    ]


def default_price_policy() -> PricePolicy:
    """Shop defaults: personal pickup, courier, download; COD, PayPal, Stripe."""
    return PricePolicy(
        currency="EUR",
        tax=TaxPolicy(rate=Decimal("0.2"), regime=TaxRegime.INCLUSIVE),
        delivery_methods=[
            DeliveryMethod(
                codename="personaly",
                subtype="physical",
                name={"en": "Personal pickup", "sk": "Osobný odber"},
                prices=_bands(("0", "1000000", "0", "0.2")),
            ),
            DeliveryMethod(
                codename="courier",
                subtype="physical",
                name={"en": "Courier", "sk": "Kuriér"},
                prices=_bands(("0", "500", "5", "0.2"), ("500", "1000000", "0", "0.2")),
            ),
            DeliveryMethod(
                codename="download",
                subtype="digital",
                name={"en": "Download", "sk": "Stiahnutie"},
                prices=_bands(("0", "500", "5", "0.2"), ("500", "1000000", "0", "0.2")),
            ),
        ],
        payment_methods=[
            PaymentMethod(
                codename="cod",
                restricted_subtype="physical",
                name={"en": "Cash on delivery", "sk": "Platba pri prevzatí"},
                prices=_bands(("0", "500", "10", "0.2"), ("500", "1000000", "2", "0.2")),
            ),
            PaymentMethod(
                codename="online_paypal_paypal",
                supplier="paypal",
                name={"en": "PayPal", "sk": "PayPal"},
                prices=_bands(("0", "500", "2", "0.2"), ("500", "1000000", "0", "0.2")),
            ),
            PaymentMethod(
                codename="online_stripe",
                supplier="stripe",
                name={"en": "Pay online with Stripe", "sk": "Zaplatiť online cez Stripe"},
                prices=_bands(("0", "500", "2", "0.2"), ("500", "1000000", "0", "0.2")),
            ),
        ],
    )


def load_price_policy(path: Optional[str] = None) -> PricePolicy:
    """Load a policy from a JSON file, or the shop defaults when no path is given."""
    if not path:
        return default_price_policy()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return PricePolicy.model_validate(raw)
