# Overview: Fixed-point money and quantity arithmetic for document lines.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

from .errors import ValidationError


CENT = Decimal("0.01")
QUANTITY_STEP = Decimal("0.0001")
COST_STEP = Decimal("0.0001")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value, *, field: str = "value") -> Decimal:
    """
    Coerce user or database input into a Decimal.

    Floats go through str() so 0.1 stays 0.1. Booleans are rejected.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def quantize_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_quantity(value) -> Decimal:
    return to_decimal(value).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def quantize_cost(value) -> Decimal:
    return to_decimal(value).quantize(COST_STEP, rounding=ROUND_HALF_UP)


def tax_exclusive(price, tax_rate) -> Decimal:
    """Strip a percentage tax out of a tax-inclusive price: price / (1 + rate/100)."""
    rate = to_decimal(tax_rate or 0, field="tax_rate")
    return quantize_cost(to_decimal(price, field="price") / (1 + rate / HUNDRED))


@dataclass(frozen=True)
class LineAmounts:
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO

    def __add__(self, other: "LineAmounts") -> "LineAmounts":
        return LineAmounts(
            subtotal=self.subtotal + other.subtotal,
            discount=self.discount + other.discount,
            tax=self.tax + other.tax,
            total=self.total + other.total,
        )


def compute_line_amounts(quantity, unit_price, discount_rate=ZERO, tax_rate=ZERO) -> LineAmounts:
    """
    Derive the monetary fields of one line.

    subtotal = qty * price, discount = subtotal * rate%, tax is charged on
    (subtotal - discount), total = subtotal - discount + tax. Each field is
    rounded half-up to cents before it feeds the next one.
    """
    subtotal = quantize_money(to_decimal(quantity) * to_decimal(unit_price))
    discount = quantize_money(subtotal * to_decimal(discount_rate) / HUNDRED)
    tax = quantize_money((subtotal - discount) * to_decimal(tax_rate) / HUNDRED)
    return LineAmounts(
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=subtotal - discount + tax,
    )


def sum_amounts(amounts: Iterable[LineAmounts]) -> LineAmounts:
    total = LineAmounts()
    for item in amounts:
        total = total + item
    return total


def as_str(value) -> str | None:
    """JSON-safe decimal rendering."""
    if value is None:
        return None
    return str(value)
