"""Pricing engine: turns order lines into a price breakdown.

Amounts are whole currency units. Rounding is half-up, so
``round(598 * 0.05) == 30`` and ``x.5`` always rounds away from zero.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Sequence

from .domain import OrderLine, PriceBreakdown
from .errors import InvalidPricing, InvalidQuantity


@dataclass(frozen=True)
class PricingPolicy:
    """Delivery-fee and tax constants applied at checkout."""

    free_delivery_threshold: int = 1000
    delivery_fee: int = 99
    tax_rate: Decimal = Decimal("0.05")


def _round_units(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_breakdown(
    lines: Sequence[OrderLine],
    free_delivery_threshold: int,
    delivery_fee: int,
    tax_rate,
    discount: int = 0,
) -> PriceBreakdown:
    """Compute the price breakdown for ``lines``.

    Args:
        lines: Non-empty order lines with snapshotted unit prices.
        free_delivery_threshold: Subtotal at or above which delivery is free.
        delivery_fee: Fee charged below the threshold.
        tax_rate: Tax rate as a fraction (``0.05`` for 5%).
        discount: Non-negative amount subtracted from the total.

    Returns:
        PriceBreakdown: The computed, internally consistent breakdown.

    Raises:
        InvalidPricing: Empty lines, a negative price or discount, or a
            negative total.
        InvalidQuantity: A line quantity below one.
    """
    if not lines:
        raise InvalidPricing("an order needs at least one line")
    if discount < 0:
        raise InvalidPricing("discount cannot be negative")

    raw_subtotal = Decimal(0)
    for line in lines:
        if not isinstance(line.quantity, int) or line.quantity < 1:
            raise InvalidQuantity(f"quantity for {line.food_id} must be at least 1")
        if line.unit_price < 0:
            raise InvalidPricing(f"unit price for {line.food_id} cannot be negative")
        raw_subtotal += Decimal(str(line.unit_price)) * line.quantity

    subtotal = _round_units(raw_subtotal)
    fee = 0 if subtotal >= free_delivery_threshold else delivery_fee
    tax = _round_units(Decimal(subtotal) * Decimal(str(tax_rate)))

    breakdown = PriceBreakdown(subtotal=subtotal, delivery_fee=fee, tax=tax, discount=discount)
    if breakdown.total < 0:
        raise InvalidPricing(f"total {breakdown.total} is negative")
    return breakdown


def price_with_policy(lines: Sequence[OrderLine], policy: PricingPolicy, discount: int = 0) -> PriceBreakdown:
    return compute_breakdown(
        lines,
        free_delivery_threshold=policy.free_delivery_threshold,
        delivery_fee=policy.delivery_fee,
        tax_rate=policy.tax_rate,
        discount=discount,
    )
