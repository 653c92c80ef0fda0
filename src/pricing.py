"""Money handling and line-item pricing.

All arithmetic uses :class:`decimal.Decimal` with two fractional digits.
Prices are validated to whole cents when they enter the catalog, so a
subtotal ``quantity * unit_price`` is always exact and never rounded.

These helpers are pure: the order engine calls them at commit time with
the live catalog price, never with a price supplied by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable

from errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class PricedLine:
    """A basket line priced against the catalog, not yet persisted."""

    product_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


def to_money(value: object, field: str = "price") -> Decimal:
    """Convert ``value`` to a non-negative two-place Decimal.

    Floats go through ``repr`` so ``9.99`` stays ``9.99``.  Booleans,
    negative amounts and sub-cent precision are rejected.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(repr(value)) if isinstance(value, float) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite")
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation:
        raise ValidationError(f"{field} is too large")
    if amount != quantized:
        raise ValidationError(f"{field} cannot have more than two decimal places")
    return quantized


def price_line(product_id: int, quantity: int, unit_price: Decimal) -> PricedLine:
    """Snapshot one line at ``unit_price``."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"Quantity for product {product_id} must be a positive integer")
    unit = to_money(unit_price, "unit price")
    try:
        # Raises once the exact subtotal needs more digits than the context precision.
        subtotal = (unit * quantity).quantize(CENT)
    except InvalidOperation:
        raise ValidationError(f"Subtotal for product {product_id} is out of range")
    return PricedLine(product_id=product_id, quantity=quantity, unit_price=unit, subtotal=subtotal)


def order_total(lines: Iterable[PricedLine]) -> Decimal:
    total = ZERO
    for line in lines:
        total += line.subtotal
    try:
        return total.quantize(CENT)
    except InvalidOperation:
        raise ValidationError("Order total is out of range")


def format_money(amount: Decimal) -> str:
    return f"${amount.quantize(CENT):,}"
