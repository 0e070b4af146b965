"""
Pricing engine.

Pure functions that derive an order's price breakdown from its line items,
the chosen delivery/payment methods and the price policy. Nothing here
mutates its input: ``calculate_prices`` returns a recomputed copy, so running
it twice over the same snapshot yields the same result.

Amounts are accumulated at full precision and rounded to two places only when
written back at the end of a pass.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Optional

from orderflow.models import Order, OrderItem, TaxData, TaxRegime, ZERO
from orderflow.policy import PaymentMethod, PriceBand, PricePolicy


class CalculationMode(str, Enum):
    """Which part of the breakdown a pricing pass writes."""
    ITEMS = "items"
    TOTALS = "totals"
    ALL = "all"


def round_price(amount: Decimal, decimal_places: int = 2) -> Decimal:
    """Round an amount to currency precision."""
    quantize_str = "0." + "0" * decimal_places
    return amount.quantize(Decimal(quantize_str), rounding=ROUND_HALF_UP)


def compute_tax_data(price: Decimal, rate: Decimal, regime: TaxRegime) -> TaxData:
    """Split a unit price into its taxed and untaxed parts (unrounded)."""
    tax = price * rate
    if regime == TaxRegime.EXCLUSIVE:
        return TaxData(
            tax_rate=rate,
            tax=tax,
            price_with_tax=price + tax,
            price_without_tax=price,
            regime=regime,
        )
    return TaxData(
        tax_rate=rate,
        tax=tax,
        price_with_tax=price,
        price_without_tax=price - tax,
        regime=regime,
    )


def _rounded_tax_data(data: TaxData) -> TaxData:
    return TaxData(
        tax_rate=data.tax_rate,
        tax=round_price(data.tax),
        price_with_tax=round_price(data.price_with_tax),
        price_without_tax=round_price(data.price_without_tax),
        regime=data.regime,
    )


def _add_tax_data(left: Optional[TaxData], right: TaxData) -> TaxData:
    if left is None:
        return right
    return TaxData(
        tax_rate=left.tax_rate,
        tax=left.tax + right.tax,
        price_with_tax=left.price_with_tax + right.price_with_tax,
        price_without_tax=left.price_without_tax + right.price_without_tax,
        regime=left.regime,
    )


def item_rate(item: OrderItem, policy: PricePolicy) -> Decimal:
    return item.tax if item.tax is not None else policy.tax.rate


def items_subtotal(items: Iterable[OrderItem], subtype: Optional[str] = None) -> Decimal:
    """Sum of unit price x quantity, optionally restricted to one item subtype."""
    total = ZERO
    for item in items:
        if subtype is not None and item.subtype != subtype:
            continue
        total += item.price * item.amount
    return total


def select_band(bands: List[PriceBand], amount: Decimal) -> Optional[PriceBand]:
    for band in bands:
        if band.contains(amount):
            return band
    return None


@dataclass
class DeliveryQuote:
    """Delivery fees resolved per item subtype."""
    fees: Dict[str, Decimal] = field(default_factory=dict)
    covered_subtypes: List[str] = field(default_factory=list)
    unknown_codenames: List[str] = field(default_factory=list)
    # codenames filed under a subtype their method does not serve
    mismatched_codenames: List[str] = field(default_factory=list)
    total: Decimal = ZERO
    tax_data: Optional[TaxData] = None


@dataclass
class PaymentQuote:
    method: Optional[PaymentMethod] = None
    fee: Decimal = ZERO
    tax_data: Optional[TaxData] = None


def quote_delivery(order: Order, policy: PricePolicy) -> DeliveryQuote:
    """Resolve the delivery fee band for every chosen delivery codename.

    Each method is priced against the subtotal of the items of its own subtype
    so physical and digital goods are evaluated independently. A subtype is
    priced at most once; a codename filed under a subtype its method does not
    serve is reported and left unpriced.
    """
    quote = DeliveryQuote()
    for subtype, codename in order.data.delivery_data.codename.items():
        if not codename:
            continue
        method = policy.delivery_method(codename)
        if method is None:
            quote.unknown_codenames.append(codename)
            continue
        if method.subtype != subtype:
            quote.mismatched_codenames.append(codename)
            continue
        if method.subtype in quote.covered_subtypes:
            continue
        subtotal = items_subtotal(order.items, method.subtype)
        if subtotal <= ZERO:
            continue
        band = select_band(method.prices, subtotal)
        if band is None:
            continue
        rate = band.tax if band.tax is not None else policy.tax.rate
        quote.fees[method.subtype] = band.price
        quote.total += band.price
        quote.tax_data = _add_tax_data(quote.tax_data, compute_tax_data(band.price, rate, policy.tax.regime))
        quote.covered_subtypes.append(method.subtype)
    return quote


def quote_payment(order: Order, policy: PricePolicy) -> PaymentQuote:
    method = policy.payment_method(order.data.payment_data.codename)
    if method is None:
        return PaymentQuote()
    band = select_band(method.prices, items_subtotal(order.items))
    if band is None:
        return PaymentQuote(method=method)
    rate = band.tax if band.tax is not None else policy.tax.rate
    return PaymentQuote(
        method=method,
        fee=band.price,
        tax_data=compute_tax_data(band.price, rate, policy.tax.regime),
    )


def calculate_prices(
    order: Order,
    policy: PricePolicy,
    mode: CalculationMode = CalculationMode.ALL,
    *,
    with_fees: bool = True,
) -> Order:
    """Return a copy of ``order`` with its price breakdown recomputed.

    Args:
        order: Order snapshot; left untouched
        policy: Price policy supplying tax rates and fee bands
        mode: ``items`` writes per-item tax data and item totals, ``totals``
            writes fees and grand totals, ``all`` writes both
        with_fees: When False, delivery and payment fees are treated as zero
            (renewal orders are billed at the subscription price only)

    Returns:
        New Order with recomputed prices
    """
    result = copy.deepcopy(order)
    prices = result.prices
    regime = policy.tax.regime

    items_total = ZERO
    items_no_tax = ZERO
    items_tax = ZERO
    for item in result.items:
        tax_data = compute_tax_data(item.price, item_rate(item, policy), regime)
        items_total += item.price * item.amount
        items_no_tax += tax_data.price_without_tax * item.amount
        items_tax += tax_data.tax * item.amount
        if mode in (CalculationMode.ITEMS, CalculationMode.ALL):
            item.tax_data = _rounded_tax_data(tax_data)

    if mode in (CalculationMode.ITEMS, CalculationMode.ALL):
        prices.price_items = round_price(items_total)
        prices.price_items_no_tax = round_price(items_no_tax)
        prices.price_tax_total = round_price(items_tax)

    if mode in (CalculationMode.TOTALS, CalculationMode.ALL):
        delivery = quote_delivery(result, policy) if with_fees else DeliveryQuote()
        payment = quote_payment(result, policy) if with_fees else PaymentQuote()

        delivery_tax = delivery.tax_data.tax if delivery.tax_data else ZERO
        delivery_no_tax = delivery.tax_data.price_without_tax if delivery.tax_data else ZERO
        payment_tax = payment.tax_data.tax if payment.tax_data else ZERO
        payment_no_tax = payment.tax_data.price_without_tax if payment.tax_data else ZERO

        tax_total = items_tax + delivery_tax + payment_tax
        total = items_total + delivery.total + payment.fee
        if regime == TaxRegime.EXCLUSIVE:
            total += tax_total

        prices.price_delivery = round_price(delivery.total)
        prices.price_payment = round_price(payment.fee)
        prices.delivery_tax_data = _rounded_tax_data(delivery.tax_data) if delivery.tax_data else None
        prices.payment_tax_data = _rounded_tax_data(payment.tax_data) if payment.tax_data else None
        prices.price_tax_total = round_price(tax_total)
        prices.price_total_no_tax = round_price(items_no_tax + delivery_no_tax + payment_no_tax)
        prices.price_total = round_price(total)
        prices.price_total_to_pay = round_price(total - result.data.payment_data.paid_amount_total)

        result.data.delivery_data.prices = {k: round_price(v) for k, v in delivery.fees.items()}
        result.data.payment_data.price = round_price(payment.fee)
        if payment.method is not None:
            result.data.payment_data.name = dict(payment.method.name)

    return result
