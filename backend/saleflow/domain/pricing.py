"""
Line and document pricing (pure functions, integer cents in and out).

Invariants:
- Item subtotal = (unit_price * quantity - discount) + tax, where tax is
  computed on the discounted amount.
- Document totals are always derived from items; never hand-edited.
- Percentages are Decimals; every computed amount is rounded half-up to
  the nearest cent once, at the line level.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from ..errors import ValidationError

HUNDRED = Decimal(100)

# Kenya VAT, applied to the net of order lines
ORDER_VAT_PERCENT = Decimal(16)


def _to_decimal(value, field: str) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"{field} must be a number")


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: Decimal) -> int:
    return round_cents(Decimal(amount_cents) * percent / HUNDRED)


@dataclass(frozen=True)
class LineInput:
    quantity: int
    unit_price_cents: int
    discount_percent: Decimal = Decimal(0)
    discount_cents: int = 0
    tax_rate_percent: Decimal = Decimal(0)

    @classmethod
    def build(
        cls,
        *,
        quantity,
        unit_price_cents,
        discount_percent=None,
        discount_cents=None,
        tax_rate_percent=None,
    ) -> "LineInput":
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be at least 1", details={"quantity": quantity})
        if not isinstance(unit_price_cents, int) or unit_price_cents < 0:
            raise ValidationError("Price cannot be negative", details={"unit_price_cents": unit_price_cents})

        pct = _to_decimal(discount_percent, "discount_percent")
        if pct < 0 or pct > HUNDRED:
            raise ValidationError("Discount must be between 0 and 100 percent")

        flat = int(discount_cents or 0)
        if flat < 0:
            raise ValidationError("Discount cannot be negative")

        tax = _to_decimal(tax_rate_percent, "tax_rate_percent")
        if tax < 0 or tax > HUNDRED:
            raise ValidationError("Tax rate must be between 0 and 100 percent")

        return cls(
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            discount_percent=pct,
            discount_cents=flat,
            tax_rate_percent=tax,
        )


@dataclass(frozen=True)
class LineTotals:
    gross_cents: int
    discount_cents: int
    tax_cents: int
    subtotal_cents: int


@dataclass(frozen=True)
class DocumentTotals:
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    total_cents: int
    delivery_fee_cents: int = 0


def price_line(line: LineInput, *, apply_tax: bool = True) -> LineTotals:
    """Price one line. A percentage discount wins over a flat amount."""
    gross = line.unit_price_cents * line.quantity

    if line.discount_percent > 0:
        discount = percent_of(gross, line.discount_percent)
    else:
        discount = line.discount_cents
    if discount > gross:
        raise ValidationError("Discount cannot exceed line amount", details={"discount_cents": discount})

    taxable = gross - discount
    tax = percent_of(taxable, line.tax_rate_percent) if apply_tax else 0

    return LineTotals(
        gross_cents=gross,
        discount_cents=discount,
        tax_cents=tax,
        subtotal_cents=taxable + tax,
    )


def sale_totals(lines: Iterable[LineTotals]) -> DocumentTotals:
    subtotal = discount = tax = 0
    for lt in lines:
        subtotal += lt.gross_cents
        discount += lt.discount_cents
        tax += lt.tax_cents
    return DocumentTotals(
        subtotal_cents=subtotal,
        discount_cents=discount,
        tax_cents=tax,
        total_cents=subtotal - discount + tax,
    )


def order_totals(lines: Iterable[LineTotals], delivery_fee_cents: int = 0) -> DocumentTotals:
    """Orders carry VAT on the net of all lines plus an untaxed delivery fee."""
    if delivery_fee_cents < 0:
        raise ValidationError("Delivery fee cannot be negative")
    subtotal = discount = 0
    for lt in lines:
        subtotal += lt.gross_cents
        discount += lt.discount_cents
    net = subtotal - discount
    tax = percent_of(net, ORDER_VAT_PERCENT)
    return DocumentTotals(
        subtotal_cents=subtotal,
        discount_cents=discount,
        tax_cents=tax,
        total_cents=net + tax + delivery_fee_cents,
        delivery_fee_cents=delivery_fee_cents,
    )


def effective_price_cents(selling_price_cents: int, discount_percent) -> int:
    """Shelf price after the product-level discount."""
    pct = _to_decimal(discount_percent, "discount_percent")
    return selling_price_cents - percent_of(selling_price_cents, pct)


def refund_amount_cents(
    *,
    item_subtotal_cents: int,
    item_quantity: int,
    refund_quantity: int,
    refunded_quantity: int = 0,
    refunded_cents: int = 0,
) -> int:
    """
    Proportional refund: (item_subtotal / item_quantity) * refund_quantity.

    The refund that exhausts the line returns exactly what is left of the
    line subtotal, so rounding never lets cumulative refunds drift past it.
    """
    if refunded_quantity + refund_quantity >= item_quantity:
        return item_subtotal_cents - refunded_cents
    return round_cents(Decimal(item_subtotal_cents) * refund_quantity / item_quantity)
